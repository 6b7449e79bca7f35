"""
Collector package for nmcollector

This package provides configuration loading and the collector that
turns a capability catalog and an execution layer into discoverable,
collectable metrics.
"""

from .config import CollectorConfig, ConfigurationError
from .manager import NAMESPACE_PREFIX, Collector, Metric, build, make_name, parse_name

__all__ = [
    'CollectorConfig',
    'ConfigurationError',
    'Collector',
    'Metric',
    'NAMESPACE_PREFIX',
    'build',
    'make_name',
    'parse_name',
]

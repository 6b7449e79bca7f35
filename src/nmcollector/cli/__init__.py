"""
CLI package for nmcollector

This package provides the command-line interface for
discovering and collecting metrics.
"""

from .interface import main

__all__ = ['main']

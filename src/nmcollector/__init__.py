"""Intel Node Manager telemetry collection over IPMI."""

__version__ = "0.1.0"

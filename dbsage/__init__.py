"""dbsage: database telemetry sync and optimization suggestions."""

__version__ = "0.1.0"

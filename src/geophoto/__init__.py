"""GeoPhoto - media resolution and AI photo generation for scenario stops."""

__version__ = "0.1.0"

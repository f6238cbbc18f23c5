"""Cloudy Kangaroo operations dashboard."""

__version__ = "1.4.0"

"""Prometheus exporter for OctoPrint job and temperature status."""

__version__ = "0.1.0"

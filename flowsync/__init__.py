"""Offline sync service for flow tracking clients."""

__version__ = "0.1.0"

"""Shared paths, settings and logging helpers for hostsnap."""

__version__ = "1.0.0"

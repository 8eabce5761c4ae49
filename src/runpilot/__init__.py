"""Resumable agent control loop."""

__version__ = "0.1.0"

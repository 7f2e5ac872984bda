"""Moltbot fleet manager - provision and operate many isolated Moltbot instances."""

__version__ = "0.1.0"

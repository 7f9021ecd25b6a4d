"""Sandboxed session containers with a websocket terminal."""

__version__ = "0.1.0"

"""Core infrastructure: event bus, connection pools, process context."""

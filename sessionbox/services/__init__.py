"""Lifecycle services for sessionbox."""

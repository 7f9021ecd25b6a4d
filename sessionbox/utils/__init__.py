"""Utility helpers for sessionbox."""

"""Shrimp Task Viewer: web dashboard over Shrimp task manager task files."""

__version__ = "2.0.0"

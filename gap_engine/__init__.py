"""Keyword gap resolution and cache engine."""

__version__ = "0.1.0"

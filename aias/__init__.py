"""AIAS platform resilience toolkit."""

__version__ = "0.1.0"

"""Configuration package for online payments."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]

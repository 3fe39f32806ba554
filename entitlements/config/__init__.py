"""Configuration package for the entitlements service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]

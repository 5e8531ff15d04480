"""Application settings loading."""

from .app import AppSettings, get_settings, load_settings


__all__ = ["AppSettings", "get_settings", "load_settings"]

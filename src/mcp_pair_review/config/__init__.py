"""Configuration for MCP Pair Review."""

from .settings import ReviewSettings, load_settings

__all__ = ["ReviewSettings", "load_settings"]

"""SQLite persistence."""

from .store import FINAL_LEVEL, ReviewStore

__all__ = ["FINAL_LEVEL", "ReviewStore"]

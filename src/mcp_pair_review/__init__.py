"""MCP Pair Review - cascading AI code review with live progress and MCP tools."""

__version__ = "0.3.0"
__author__ = "Robert Matsuoka"
__email__ = "bobmatnyc@gmail.com"

from .core.exceptions import PairReviewError

__all__ = ["PairReviewError", "__version__"]

"""MCP integration for the analysis engine."""

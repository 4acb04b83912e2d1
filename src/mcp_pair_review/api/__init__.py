"""REST API for the analysis engine."""

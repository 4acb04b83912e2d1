"""Core utilities: exceptions, path handling, diff parsing and git access."""

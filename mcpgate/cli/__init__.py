"""Command-line interface for mcpgate."""

"""HTTP surface for mcpgate."""

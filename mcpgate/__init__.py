"""mcpgate - HTTP front door for stdio MCP servers."""

from loguru import logger

__version__ = "0.3.0"
__logo__ = "⛩"

logger.disable("mcpgate")

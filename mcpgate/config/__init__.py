"""Configuration module for mcpgate."""

from mcpgate.config.loader import load_config, get_config_path, save_config
from mcpgate.config.schema import Config

__all__ = ["Config", "load_config", "save_config", "get_config_path"]

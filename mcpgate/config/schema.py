"""Configuration schema using Pydantic.

Single data model and defaults for the proxy, persisted to ~/.mcpgate/config.json.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class ServerConfig(BaseModel):
    """HTTP listener configuration."""
    host: str = "127.0.0.1"
    port: int = Field(default=5000, ge=1, le=65535)
    graceful_shutdown_seconds: float = Field(default=5.0, gt=0)  # uvicorn timeout_graceful_shutdown


class ChildConfig(BaseModel):
    """How each session's child process is launched."""
    command: str = ""  # Shell-style command line, e.g. "npx -y @modelcontextprotocol/server-everything"
    color: bool = True  # Exported to the child as FORCE_COLOR=1|0
    env: dict[str, str] = Field(default_factory=dict)  # Layered over the inherited environment


class TimeoutConfig(BaseModel):
    """Per-method response budgets in seconds (long / medium / default tiers)."""
    long_seconds: float = Field(default=120.0, gt=0)  # tools/list, tools/call
    medium_seconds: float = Field(default=60.0, gt=0)  # resources/*, prompts/*, notifications/*
    default_seconds: float = Field(default=30.0, gt=0)


class SessionsConfig(BaseModel):
    """Session registry and HTTP dispatch policy."""
    default_session_id: str = "default"
    respawn_dead: bool = True  # Replace a terminated session on next lookup
    send_initialized_notification: bool = True
    forward_notifications: bool = False  # False: /mcp acknowledges notifications/* without the child
    require_api_key: bool = False  # Presence check only; no remote validation


class LoggingConfig(BaseModel):
    """Console and file logging."""
    verbose: bool = False
    quiet: bool = False
    log_file: bool = False  # Rotating sink under ~/.mcpgate/logs


class Config(BaseSettings):
    """Root configuration for mcpgate."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    child: ChildConfig = Field(default_factory=ChildConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(
        env_prefix="MCPGATE_",
        env_nested_delimiter="__"
    )

"""Configuration for the agent bridge."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class BridgeConfig(BaseSettings):
    """Bridge configuration, loaded from env vars or CLI args."""

    model_config = {"env_prefix": "AGENT_BRIDGE_"}

    host: str = Field(default="127.0.0.1", description="Host to bind the server to")
    port: int = Field(default=4096, description="Port to bind the server to")

    # Storage
    db_path: str = Field(
        default="agent_bridge.db",
        description="Path to SQLite database file",
    )

    # Agent subprocess
    agent_binary: str = Field(default="claude", description="Agent CLI executable")
    agent_extra_args: list[str] = Field(
        default_factory=list,
        description="Arguments inserted before the fixed stream-json flags",
    )
    permission_mode: str = Field(
        default="acceptEdits",
        description="Value passed to --permission-mode",
    )
    working_directory: str | None = Field(
        default=None,
        description="Default working directory for new sessions (server cwd if unset)",
    )
    turn_timeout_seconds: float = Field(
        default=300.0,
        description="Wall-clock limit for one agent run before it is terminated",
    )
    kill_grace_seconds: float = Field(
        default=5.0,
        description="Seconds between SIGTERM and SIGKILL on timeout",
    )
    stderr_max_bytes: int = Field(
        default=64 * 1024,
        description="How much trailing stderr to keep for diagnostics",
    )
    stripped_env_vars: list[str] = Field(
        default_factory=lambda: ["CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT"],
        description="Environment variables removed before spawning the agent",
    )

    # Questions and titles
    question_preview_chars: int = Field(
        default=200,
        description="Max chars of tool input shown in a permission question",
    )
    title_max_chars: int = Field(
        default=60,
        description="Max chars of a session title inferred from the first prompt",
    )

    # Event stream
    subscriber_queue_size: int = Field(
        default=1000,
        description="Buffered events per listener before it is evicted",
    )
    sse_keepalive_seconds: float = Field(
        default=15.0,
        description="Interval between keepalive comments on idle event streams",
    )

    # Display / logging
    verbose: bool = Field(default=False, description="Verbose terminal output")
    quiet: bool = Field(default=False, description="Suppress terminal output")
    log_level: str = Field(default="INFO", description="Log level for the bridge")

"""
Server Configuration

Configuration for the MCP HTTP adapter, read from the environment.

Environment variables (names kept compatible with the CLI wrapper that
spawns the adapter):
- PORT: Listening port (default: 3000)
- ROOT_DIR: Directory passed through to the MCP filesystem server
- DEBUG: "1" enables verbose logging
- MCP_HOST: Bind address (default: 127.0.0.1)
- MCP_SERVER_COMMAND: MCP server command line, ROOT_DIR is appended
- MCP_REQUEST_TIMEOUT / MCP_STARTUP_TIMEOUT / MCP_DRAIN_TIMEOUT /
  MCP_STOP_TIMEOUT: Timeouts in seconds
- MCP_LOG_DIR: Also write logs to <dir>/mcp_http_adapter.log
"""

import os
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging


logger = logging.getLogger(__name__)

DEFAULT_SERVER_COMMAND = "npx @modelcontextprotocol/server-filesystem"


def _env_float(env: Dict[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_port(env: Dict[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if not 0 < port < 65536:
        raise ValueError(f"{name} out of range: {port}")
    return port


@dataclass
class ServerConfig:
    """
    Adapter configuration.

    All settings overridable via environment variables (see from_env).
    """

    # Network
    port: int = 3000
    host: str = "127.0.0.1"

    # Subprocess
    root_dir: str = field(default_factory=os.getcwd)
    server_command: List[str] = field(default_factory=list)

    # Timeouts (seconds)
    request_timeout_seconds: float = 30.0
    startup_timeout_seconds: float = 10.0
    drain_timeout_seconds: float = 10.0
    stop_timeout_seconds: float = 5.0

    # Logging
    debug: bool = False
    log_dir: Optional[str] = None

    def __post_init__(self):
        if not self.server_command:
            self.server_command = shlex.split(DEFAULT_SERVER_COMMAND) + [self.root_dir]

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> 'ServerConfig':
        """
        Load configuration from environment variables.

        Args:
            env: Mapping to read (default: os.environ)

        Returns:
            ServerConfig instance

        Raises:
            ValueError: If a numeric variable is malformed or out of range
        """
        if env is None:
            env = dict(os.environ)

        root_dir = os.path.abspath(os.path.expanduser(env.get("ROOT_DIR") or os.getcwd()))
        command = shlex.split(env.get("MCP_SERVER_COMMAND") or DEFAULT_SERVER_COMMAND)
        if not command:
            raise ValueError("MCP_SERVER_COMMAND must not be empty")

        config = cls(
            port=_env_port(env, "PORT", 3000),
            host=env.get("MCP_HOST") or "127.0.0.1",
            root_dir=root_dir,
            server_command=command + [root_dir],
            request_timeout_seconds=_env_float(env, "MCP_REQUEST_TIMEOUT", 30.0),
            startup_timeout_seconds=_env_float(env, "MCP_STARTUP_TIMEOUT", 10.0),
            drain_timeout_seconds=_env_float(env, "MCP_DRAIN_TIMEOUT", 10.0),
            stop_timeout_seconds=_env_float(env, "MCP_STOP_TIMEOUT", 5.0),
            debug=env.get("DEBUG") == "1",
            log_dir=env.get("MCP_LOG_DIR") or None,
        )

        logger.debug(f"Configuration loaded: {config.to_dict()}")
        return config

    def __str__(self) -> str:
        """Human-readable configuration display."""
        return f"""
MCP HTTP Adapter Configuration
===================================================
Network:
  Listen:           http://{self.host}:{self.port}

Subprocess:
  Command:          {shlex.join(self.server_command)}
  Root Directory:   {self.root_dir}

Timeouts:
  Request:          {self.request_timeout_seconds:g}s
  Startup:          {self.startup_timeout_seconds:g}s
  Drain:            {self.drain_timeout_seconds:g}s
  Stop:             {self.stop_timeout_seconds:g}s

Logging:
  Debug:            {self.debug}
  Log Directory:    {self.log_dir or '(console only)'}
===================================================
        """.strip()

    def to_dict(self) -> dict:
        """
        Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return {
            "port": self.port,
            "host": self.host,
            "root_dir": self.root_dir,
            "server_command": list(self.server_command),
            "request_timeout_seconds": self.request_timeout_seconds,
            "startup_timeout_seconds": self.startup_timeout_seconds,
            "drain_timeout_seconds": self.drain_timeout_seconds,
            "stop_timeout_seconds": self.stop_timeout_seconds,
            "debug": self.debug,
            "log_dir": self.log_dir,
        }

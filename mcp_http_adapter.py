#!/usr/bin/env python3
"""
MCP HTTP Adapter - Main Entry Point

Exposes a stdio MCP server (by default @modelcontextprotocol/server-filesystem)
over a local HTTP endpoint so a tunnel can publish it. Many concurrent HTTP
callers share one long-lived subprocess.

Configured from the environment: PORT, ROOT_DIR, DEBUG (see ServerConfig).
"""

import sys
import logging
from pathlib import Path

import uvicorn
import setproctitle

# Add src to path
sys.path.insert(0, str(Path(__file__).parent))

from src.config.server_config import ServerConfig
from src.orchestrator.lifecycle_manager import LifecycleManager
from src.orchestrator.api import create_app, VERSION


logger = logging.getLogger(__name__)


class ListeningServer(uvicorn.Server):
    """uvicorn server that announces the address once the socket is bound."""

    async def startup(self, sockets=None):
        await super().startup(sockets=sockets)
        # Not started means the bind failed; the CLI wrapper must not see the line
        if self.started:
            logger.info(f"Filesystem adapter listening on http://{self.config.host}:{self.config.port}")


def setup_logging(config: ServerConfig):
    """Configure logging."""
    # stdout: the CLI wrapper waits for the "listening" line there
    handlers = [logging.StreamHandler(sys.stdout)]
    if config.log_dir:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "mcp_http_adapter.log"))

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main():
    """Main entry point."""
    # Set process name for easy identification in ps/top
    setproctitle.setproctitle("mcp-http-adapter")

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config)

    logger.info("=" * 70)
    logger.info("MCP HTTP Adapter")
    logger.info("=" * 70)
    logger.info(f"Version: {VERSION}")
    logger.info(f"Root directory: {config.root_dir}")
    logger.info(f"MCP server: {' '.join(config.server_command)}")
    logger.info(f"Request timeout: {config.request_timeout_seconds:g}s")
    logger.info(f"Debug logging: {config.debug}")
    logger.info("=" * 70)

    lifecycle_manager = LifecycleManager(config)
    app = create_app(config, lifecycle_manager)

    # uvicorn owns SIGINT/SIGTERM; the app lifespan drains and stops the subprocess
    server = ListeningServer(uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if config.debug else "info",
        timeout_graceful_shutdown=max(1, int(config.drain_timeout_seconds))
    ))
    server.run()
    logger.info("Shutdown complete")


if __name__ == "__main__":
    main()

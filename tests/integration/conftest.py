"""
Integration Test Fixtures

Runs the real FastAPI app under uvicorn in a background thread, with the
scripted fake MCP server as its subprocess, and talks to it over HTTP.
"""

import pytest
import socket
import sys
import threading
import time
from pathlib import Path
import requests
import uvicorn

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.config.server_config import ServerConfig
from src.orchestrator.api import create_app
from src.orchestrator.lifecycle_manager import LifecycleManager

FAKE_SERVER = Path(__file__).parent.parent / "fixtures" / "fake_mcp_server.py"


def free_port() -> int:
    """Ask the OS for an unused local port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class UvicornServer:
    """Uvicorn server wrapper for testing."""

    def __init__(self, app, host: str, port: int):
        self.app = app
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

    def start(self):
        """Start server in background thread."""
        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="warning",  # Reduce noise
            access_log=False
        )
        self.server = uvicorn.Server(config)

        self.thread = threading.Thread(
            target=self.server.run,
            daemon=True,
            name=f"TestUvicorn-{self.port}"
        )
        self.thread.start()

        # Wait for the listener (not for the MCP handshake)
        max_retries = 40
        for i in range(max_retries):
            try:
                response = requests.get(f"http://{self.host}:{self.port}/healthz", timeout=1)
                if response.status_code == 200:
                    return
            except requests.ConnectionError:
                pass
            if i == max_retries - 1:
                raise RuntimeError(f"Server on port {self.port} failed to start")
            time.sleep(0.25)

    def stop(self):
        """Stop server (runs the lifespan shutdown)."""
        if self.server:
            self.server.should_exit = True
            if self.thread:
                self.thread.join(timeout=10)


def wait_until_ready(base_url: str, timeout: float = 10.0) -> bool:
    """Poll /ready until 200 or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if requests.get(f"{base_url}/ready", timeout=1).status_code == 200:
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def start_adapter(tmp_path):
    """
    Factory starting an adapter on a free port.

    Each call gets its own subprocess and session; all are stopped at
    teardown.

    Returns:
        Callable(handshake="ok", wait_ready=True, **config_overrides) -> dict
        with 'url', 'manager', 'config', 'server'
    """
    servers = []

    def _start(handshake: str = "ok", wait_ready: bool = True, **overrides):
        values = dict(
            port=free_port(),
            host="127.0.0.1",
            root_dir=str(tmp_path),
            server_command=[sys.executable, str(FAKE_SERVER), f"--handshake={handshake}"],
            request_timeout_seconds=5.0,
            startup_timeout_seconds=5.0,
            drain_timeout_seconds=2.0,
            stop_timeout_seconds=2.0,
        )
        values.update(overrides)
        config = ServerConfig(**values)
        manager = LifecycleManager(config)

        server = UvicornServer(create_app(config, manager), config.host, config.port)
        server.start()
        servers.append(server)

        base_url = f"http://{config.host}:{config.port}"
        if wait_ready and not wait_until_ready(base_url):
            raise RuntimeError(f"Adapter never became ready (state: {manager.state.value})")

        return {"url": base_url, "manager": manager, "config": config, "server": server}

    yield _start

    for server in servers:
        server.stop()


@pytest.fixture
def adapter(start_adapter):
    """A ready adapter on the default fake server."""
    return start_adapter()


@pytest.fixture
def rpc(adapter):
    """POST one JSON-RPC message to /mcp."""
    def _rpc(method, request_id=1, params=None, **kwargs):
        body = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            body["params"] = params
        return requests.post(f"{adapter['url']}/mcp", json=body, timeout=kwargs.pop("timeout", 30), **kwargs)
    return _rpc

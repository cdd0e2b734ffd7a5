"""
Pytest Configuration and Shared Fixtures

Provides the scripted fake MCP server and configs pointing at it.
"""

import pytest
import shlex
import sys
from pathlib import Path
from unittest.mock import AsyncMock, Mock

# Add repo root to path for `src.` imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config.server_config import ServerConfig
from src.ipc.messages import JsonRpcResponse
from src.orchestrator.lifecycle_manager import LifecycleManager, LifecycleState

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


def fake_server_command(handshake: str = "ok") -> list:
    """argv launching the fake MCP server with the given handshake mode."""
    return [sys.executable, str(FAKE_SERVER), f"--handshake={handshake}"]


@pytest.fixture
def server_with_stdout_holder():
    """
    argv for the fake server launched like npx launches node.

    A background child inherits stdout and keeps it open after the fake
    server (the spawned pid) exits, so EOF never arrives with the exit.
    """
    script = f"sleep 20 & exec {shlex.quote(sys.executable)} {shlex.quote(str(FAKE_SERVER))}"
    return ["sh", "-c", script]


@pytest.fixture
def make_config(tmp_path):
    """
    Factory for ServerConfig pointing at the fake MCP server.

    Returns:
        Callable accepting handshake mode and ServerConfig overrides
    """
    def _make(handshake: str = "ok", **overrides) -> ServerConfig:
        values = dict(
            port=3999,
            host="127.0.0.1",
            root_dir=str(tmp_path),
            server_command=fake_server_command(handshake),
            request_timeout_seconds=5.0,
            startup_timeout_seconds=5.0,
            drain_timeout_seconds=1.0,
            stop_timeout_seconds=2.0,
        )
        values.update(overrides)
        return ServerConfig(**values)
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def mock_lifecycle_manager():
    """
    Mock LifecycleManager in the ready state.

    submit() answers {"ok": true} under internal id 0 unless reconfigured.
    """
    manager = Mock(spec=LifecycleManager)
    manager.session_id = "00000000-0000-0000-0000-000000000000"
    manager.state = LifecycleState.READY
    manager.is_ready = True
    manager.active_requests = 0
    manager.submit = AsyncMock(return_value=JsonRpcResponse(id=0, result={"ok": True}))
    manager.notify = AsyncMock(return_value=None)
    manager.health_check.return_value = {"healthy": True, "status": "ready", "pid": None}
    manager.get_status.return_value = {
        "session": manager.session_id,
        "state": "ready",
        "pid": None,
        "pending_requests": 0,
    }
    return manager

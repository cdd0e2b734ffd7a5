"""LifecycleManager - Owns the MCP server subprocess and its request state."""

import asyncio
import logging
import threading
import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from ..ipc.errors import (
    HandshakeFailureError,
    ParseError,
    ProcessSpawnError,
    ProcessUnavailableError,
)
from ..ipc.messages import JsonRpcResponse, Params, RequestId
from ..ipc.stdio_channel import SubprocessChannel
from .pending_requests import PendingRequestTable
from .prometheus_metrics import metrics_collector

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """Adapter lifecycle.

    stopped -> starting -> ready -> stopping -> stopped
    starting -> stopped   (spawn or handshake failure)
    ready -> stopped      (unexpected subprocess exit)
    """
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


class LifecycleManager:
    """
    Manages MCP server subprocess lifecycle.

    Holds the process-wide state for the whole life of the adapter:
    - session_id (generated once, reported by /healthz)
    - the PendingRequestTable shared with the channel
    - the current SubprocessChannel (one per start())

    A dead subprocess is never restarted automatically. Requests fail with
    ProcessUnavailableError until something external restarts the adapter.
    """

    def __init__(self, config, channel_factory=SubprocessChannel):
        """
        Initialize LifecycleManager.

        Args:
            config: ServerConfig instance
            channel_factory: Callable building the SubprocessChannel
                (same signature as SubprocessChannel)
        """
        self.config = config
        self.session_id: str = str(uuid.uuid4())
        self.started_at: float = time.time()
        self.pending = PendingRequestTable()

        self._channel_factory = channel_factory
        self._channel: Optional[SubprocessChannel] = None
        self._state = LifecycleState.STOPPED
        self._state_lock = threading.Lock()

        # Activity tracking for shutdown drain
        self.active_requests: int = 0
        self.last_exit_code: Optional[int] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is LifecycleState.READY

    @property
    def channel(self) -> Optional[SubprocessChannel]:
        return self._channel

    def _transition(self, new_state: LifecycleState) -> None:
        with self._state_lock:
            old_state = self._state
            self._state = new_state
        if old_state is not new_state:
            logger.info(f"Lifecycle: {old_state.value} -> {new_state.value}")
            metrics_collector.update_lifecycle_state(new_state.value)

    # =========================================================================
    # Start / stop
    # =========================================================================

    async def start(self) -> Any:
        """
        Spawn the MCP server and complete the handshake.

        Returns:
            The server's initialize result

        Raises:
            ProcessSpawnError: If the subprocess cannot be launched
            HandshakeFailureError: If initialize fails or exceeds the
                startup timeout
        """
        if self._state is not LifecycleState.STOPPED:
            raise RuntimeError(f"Cannot start from state {self._state.value}")

        self._transition(LifecycleState.STARTING)
        channel = self._channel_factory(
            self.config.server_command,
            self.pending,
            on_exit=self._on_process_exit,
            on_parse_error=self._on_parse_error,
        )
        self._channel = channel

        try:
            await channel.start()
            result = await channel.handshake(self.config.startup_timeout_seconds)
        except ProcessSpawnError as e:
            logger.error(f"MCP server failed to launch: {e}")
            self._transition(LifecycleState.STOPPED)
            raise
        except HandshakeFailureError as e:
            logger.error(f"MCP handshake failed: {e}")
            await channel.stop(timeout=self.config.stop_timeout_seconds)
            self._transition(LifecycleState.STOPPED)
            raise

        # Exit may have raced the handshake response
        if not channel.is_running:
            self._transition(LifecycleState.STOPPED)
            raise HandshakeFailureError("MCP server exited right after initialize")

        self._transition(LifecycleState.READY)
        server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.info(
            f"MCP server ready: {server_info.get('name', 'unknown')} "
            f"{server_info.get('version', '')} (PID {channel.pid})".rstrip()
        )
        return result

    def begin_stopping(self) -> None:
        """Stop accepting new work; in-flight requests keep running."""
        if self._state is LifecycleState.READY or self._state is LifecycleState.STARTING:
            self._transition(LifecycleState.STOPPING)

    async def stop(self) -> None:
        """
        Terminate the subprocess and fail whatever is still pending.

        Safe to call in any state.
        """
        self.begin_stopping()

        channel = self._channel
        if channel is not None:
            returncode = await channel.stop(timeout=self.config.stop_timeout_seconds)
            self.last_exit_code = returncode
            logger.info(f"MCP server stopped (returncode: {returncode})")

        failed = self.pending.fail_all(ProcessUnavailableError("MCP server shutting down"))
        if failed:
            logger.warning(f"{failed} request(s) still pending at shutdown")

        self._transition(LifecycleState.STOPPED)

    def _on_process_exit(self, returncode: Optional[int]) -> None:
        self.last_exit_code = returncode

        if self._state is LifecycleState.STOPPING or self._state is LifecycleState.STOPPED:
            return

        logger.error(
            f"MCP server process died (returncode: {returncode}). "
            f"Restart the adapter to recover."
        )
        self._transition(LifecycleState.STOPPED)
        failed = self.pending.fail_all(
            ProcessUnavailableError(f"MCP server exited with code {returncode}")
        )
        if failed:
            logger.error(f"Failed {failed} in-flight request(s) after subprocess exit")

    def _on_parse_error(self, error: ParseError) -> None:
        metrics_collector.record_parse_error()

    # =========================================================================
    # Traffic
    # =========================================================================

    async def submit(
        self,
        method: str,
        params: Params = None,
        timeout: Optional[float] = None,
        external_id: Optional[RequestId] = None
    ) -> JsonRpcResponse:
        """
        Forward a request to the MCP server.

        Args:
            method: JSON-RPC method
            params: JSON-RPC params
            timeout: Seconds to wait (default: config.request_timeout_seconds)
            external_id: Caller's id, for logging

        Returns:
            Subprocess response (result or error)

        Raises:
            ProcessUnavailableError: If not ready (immediately, no queueing)
            RequestTimeoutError: If the subprocess does not answer in time
            DuplicateIDError: If the internal id is already in flight
        """
        channel = self._require_ready()
        if timeout is None:
            timeout = self.config.request_timeout_seconds

        self.active_requests += 1
        metrics_collector.update_pending(len(self.pending) + 1)
        try:
            return await channel.submit(method, params, timeout=timeout, external_id=external_id)
        finally:
            self.active_requests -= 1
            metrics_collector.update_pending(len(self.pending))

    async def notify(self, method: str, params: Params = None) -> None:
        """Forward a notification to the MCP server."""
        channel = self._require_ready()
        await channel.notify(method, params)

    def _require_ready(self) -> SubprocessChannel:
        channel = self._channel
        if self._state is not LifecycleState.READY or channel is None or not channel.is_running:
            raise ProcessUnavailableError("MCP server not running")
        return channel

    # =========================================================================
    # Status
    # =========================================================================

    def health_check(self) -> Dict[str, Any]:
        """Liveness of the subprocess."""
        channel = self._channel
        alive = channel is not None and channel.is_running
        return {
            "healthy": alive and self.is_ready,
            "status": self._state.value,
            "pid": channel.pid if alive else None,
        }

    def get_status(self) -> Dict[str, Any]:
        """Full status snapshot for /status."""
        channel = self._channel
        return {
            "session": self.session_id,
            "state": self._state.value,
            "pid": channel.pid if channel is not None and channel.is_running else None,
            "last_exit_code": self.last_exit_code,
            "active_requests": self.active_requests,
            "pending_requests": len(self.pending),
            "next_internal_id": channel.next_id if channel is not None else 0,
            "parse_errors": channel.parse_errors if channel is not None else 0,
            "totals": {
                "registered": self.pending.total_registered,
                "resolved": self.pending.total_resolved,
                "expired": self.pending.total_expired,
                "failed": self.pending.total_failed,
            },
            "uptime_seconds": round(time.time() - self.started_at, 1),
        }

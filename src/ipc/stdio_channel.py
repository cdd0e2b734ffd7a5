"""stdin/stdout JSON-RPC channel to the MCP server subprocess."""

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from .errors import (
    METHOD_NOT_FOUND,
    HandshakeFailureError,
    ParseError,
    ProcessSpawnError,
    ProcessUnavailableError,
    RequestTimeoutError,
)
from .line_framer import LineFramer
from .messages import (
    INITIALIZED_NOTIFICATION,
    JsonRpcError,
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    Params,
    RequestId,
    build_initialize_request,
    classify_message,
)

if TYPE_CHECKING:
    from ..orchestrator.pending_requests import PendingRequestTable

logger = logging.getLogger(__name__)


class SubprocessChannel:
    """
    Owns one MCP server subprocess and multiplexes requests over its pipes.

    Writes:
    - Single writer lock; each message goes out as one complete line
    Reads:
    - Single background task feeds stdout through a LineFramer and routes
      each response to the pending table by id (never by arrival order)

    Internal ids come from a counter that starts at 0 and is never reused
    for the life of the channel, handshake included. Caller-supplied ids
    never reach the subprocess.
    """

    READ_CHUNK_BYTES = 64 * 1024
    EXIT_POLL_SECONDS = 0.1
    EXIT_DRAIN_SECONDS = 0.5

    def __init__(
        self,
        command: List[str],
        pending: 'PendingRequestTable',
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
        on_parse_error: Optional[Callable[[ParseError], None]] = None
    ):
        """
        Initialize channel (does not spawn).

        Args:
            command: argv of the MCP server
            pending: Table shared with the lifecycle manager
            cwd: Working directory for the subprocess
            env: Environment for the subprocess (default: inherit)
            on_exit: Called with the return code once the subprocess is gone
            on_parse_error: Called once per dropped line/message
        """
        if not command:
            raise ValueError("MCP server command must not be empty")

        self.command = list(command)
        self.pending = pending
        self.cwd = cwd
        self.env = env
        self._on_exit = on_exit
        self._on_parse_error = on_parse_error

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._framer = LineFramer(on_error=on_parse_error)
        self._background: Set[asyncio.Task] = set()

        self._next_id: int = 0
        self._invalid_messages: int = 0
        self._stopping = False

        self.returncode: Optional[int] = None
        self.initialize_result: Optional[Any] = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def next_id(self) -> int:
        """Id the next outbound request will get."""
        return self._next_id

    @property
    def parse_errors(self) -> int:
        return self._framer.parse_errors + self._invalid_messages

    # =========================================================================
    # Process control
    # =========================================================================

    async def start(self) -> None:
        """
        Spawn the subprocess and start the stdout reader.

        Raises:
            ProcessSpawnError: If the executable cannot be launched
        """
        if self._process is not None:
            raise RuntimeError("Channel already started")

        logger.info(f"Spawning MCP server: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,  # inherit: server logs go to our stderr
                cwd=self.cwd,
                env=self.env if self.env is not None else os.environ.copy(),
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to spawn MCP server {self.command[0]!r}: {e}")

        logger.debug(f"MCP server spawned with PID: {self._process.pid}")
        self._reader_task = asyncio.create_task(self._read_loop(), name="mcp-stdout-reader")
        self._exit_task = asyncio.create_task(self._watch_exit(), name="mcp-exit-watcher")

    async def handshake(self, timeout: float) -> Any:
        """
        Run the MCP initialize exchange before any caller traffic.

        Args:
            timeout: Seconds to wait for the initialize response

        Returns:
            The server's initialize result

        Raises:
            HandshakeFailureError: On error response, timeout, or exit
        """
        request = build_initialize_request(self._allocate_id())
        logger.debug(f"Sending initialize (id {request.id})")

        try:
            response = await self._call(request, timeout)
        except RequestTimeoutError:
            raise HandshakeFailureError(f"No initialize response within {timeout:g}s")
        except ProcessUnavailableError as e:
            raise HandshakeFailureError(f"MCP server exited during initialize: {e}")

        if response.is_error:
            raise HandshakeFailureError(
                f"initialize rejected: {response.error.code} {response.error.message}"
            )

        self.initialize_result = response.result
        await self.notify(INITIALIZED_NOTIFICATION)
        logger.debug("MCP server initialized")
        return response.result

    async def stop(self, timeout: float = 5.0) -> Optional[int]:
        """
        Terminate the subprocess.

        Steps:
        1. Close stdin (MCP servers exit on EOF)
        2. SIGTERM if still alive after a short grace
        3. SIGKILL if still alive after timeout
        4. Wait for the exit watcher (and with it the reader) to finish

        Returns:
            Subprocess return code (None if it was never started)
        """
        process = self._process
        if process is None:
            return None

        self._stopping = True

        if process.returncode is None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if not await self._wait_exit(process, min(1.0, timeout)):
                logger.info(f"Sending SIGTERM to MCP server (PID {process.pid})")
                self._signal(process, "terminate")
                if not await self._wait_exit(process, timeout):
                    logger.warning("MCP server did not exit gracefully, sending SIGKILL")
                    self._signal(process, "kill")
                    await self._wait_for_returncode(process)

        if self._exit_task is not None and not self._exit_task.done():
            done, _ = await asyncio.wait({self._exit_task}, timeout=timeout)
            if not done:
                self._exit_task.cancel()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()

        for task in list(self._background):
            task.cancel()

        self.returncode = process.returncode
        return self.returncode

    async def _wait_exit(self, process: asyncio.subprocess.Process, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._wait_for_returncode(process), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _wait_for_returncode(self, process: asyncio.subprocess.Process) -> int:
        """
        Wait for the spawned process itself to exit.

        process.wait() may not return until every pipe is closed, and a
        child of the server (npx -> node) can keep stdout open after the
        server is gone, so the return code is polled as well.
        """
        waiter = asyncio.ensure_future(process.wait())
        try:
            while process.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=self.EXIT_POLL_SECONDS)
        finally:
            if not waiter.done():
                waiter.cancel()
        return process.returncode

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, how: str) -> None:
        try:
            getattr(process, how)()
        except ProcessLookupError:
            pass

    # =========================================================================
    # Traffic
    # =========================================================================

    async def submit(
        self,
        method: str,
        params: Params = None,
        timeout: float = 30.0,
        external_id: Optional[RequestId] = None
    ) -> JsonRpcResponse:
        """
        Send a request under a fresh internal id and wait for its response.

        Args:
            method: JSON-RPC method
            params: JSON-RPC params
            timeout: Seconds before the request expires
            external_id: Caller's id, carried for logging only

        Returns:
            The subprocess response (result or error)

        Raises:
            ProcessUnavailableError: If the subprocess is not running or exits
            RequestTimeoutError: If no response arrives in time
            DuplicateIDError: If the allocated id is somehow still in flight
        """
        if not self.is_running:
            raise ProcessUnavailableError("MCP server not running")

        request = JsonRpcRequest(id=self._allocate_id(), method=method, params=params)
        return await self._call(request, timeout, external_id)

    async def notify(self, method: str, params: Params = None) -> None:
        """Send a notification (no id, no response)."""
        if not self.is_running:
            raise ProcessUnavailableError("MCP server not running")
        await self._write(JsonRpcNotification(method=method, params=params).to_wire())

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def _call(
        self,
        request: JsonRpcRequest,
        timeout: float,
        external_id: Optional[RequestId] = None
    ) -> JsonRpcResponse:
        loop = asyncio.get_running_loop()
        future = self.pending.register(
            request.id,
            loop.time() + timeout,
            external_id=external_id,
            method=request.method,
        )

        logger.debug(f"Sending to MCP: {request.id} {request.method}")
        try:
            await self._write(request.to_wire())
        except ProcessUnavailableError as e:
            self.pending.fail(request.id, e)
        except asyncio.CancelledError:
            # Entry stays until its deadline; expiry then finds the future done
            future.cancel()
            raise

        return await future

    async def _write(self, line: str) -> None:
        data = line.encode("utf-8") + b"\n"
        async with self._write_lock:
            process = self._process
            if process is None or process.stdin is None or process.returncode is not None:
                raise ProcessUnavailableError("MCP server not running")
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as e:
                raise ProcessUnavailableError(f"Failed to write to MCP server: {e}")

    # =========================================================================
    # Reader
    # =========================================================================

    async def _read_loop(self) -> None:
        process = self._process
        try:
            while True:
                chunk = await process.stdout.read(self.READ_CHUNK_BYTES)
                if not chunk:
                    break
                for data in self._framer.feed(chunk):
                    self._dispatch(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"MCP stdout reader failed: {e}", exc_info=True)
            self._signal(process, "kill")

        self._framer.finish()

    async def _watch_exit(self) -> None:
        """Report the process exit, whether or not stdout reached EOF."""
        process = self._process
        returncode = await self._wait_for_returncode(process)
        self.returncode = returncode

        # Deliver whatever the server wrote before exiting
        reader = self._reader_task
        if reader is not None and not reader.done():
            done, _ = await asyncio.wait({reader}, timeout=self.EXIT_DRAIN_SECONDS)
            if not done:
                logger.warning(
                    f"MCP server stdout still open {self.EXIT_DRAIN_SECONDS:g}s after exit "
                    f"(held by a child process?), closing reader"
                )
                reader.cancel()

        if self._stopping:
            logger.info(f"MCP server exited with code {returncode}")
        else:
            logger.error(f"MCP server exited unexpectedly with code {returncode}")

        if self._on_exit is not None:
            self._on_exit(returncode)

    def _dispatch(self, data: Dict[str, Any]) -> None:
        try:
            message = classify_message(data)
        except ParseError as e:
            self._invalid_messages += 1
            logger.warning(f"Dropping invalid message from MCP server: {e}")
            if self._on_parse_error is not None:
                self._on_parse_error(e)
            return

        if isinstance(message, JsonRpcResponse):
            kind = "error" if message.is_error else "result"
            if self.pending.resolve(message.id, message):
                logger.debug(f"MCP response: {message.id!r} {kind}")
            else:
                logger.debug(f"Dropping {kind} for unknown or expired id {message.id!r}")

        elif isinstance(message, JsonRpcRequest):
            # Server -> client calls (sampling, roots, ...) have no HTTP caller to go to
            logger.debug(f"Rejecting server request {message.method} (id {message.id!r})")
            reply = JsonRpcResponse(
                id=message.id,
                error=JsonRpcError(
                    code=METHOD_NOT_FOUND,
                    message=f"Method not supported by adapter: {message.method}",
                ),
            )
            task = asyncio.create_task(self._send_reply(reply))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        else:
            logger.debug(f"MCP notification: {message.method}")

    async def _send_reply(self, reply: JsonRpcResponse) -> None:
        try:
            await self._write(reply.to_wire())
        except ProcessUnavailableError as e:
            logger.debug(f"Could not answer server request {reply.id!r}: {e}")

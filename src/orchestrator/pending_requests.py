"""
Pending-request table: in-flight subprocess calls awaiting their response.

Each entry owns one asyncio future and one expiry timer. An entry leaves the
table through exactly one of resolve(), expire() or fail(), and all three go
through the same _pop() so only the first caller completes the future. A
response that arrives after its entry expired finds nothing and is dropped.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..ipc.errors import DuplicateIDError, RequestTimeoutError
from ..ipc.messages import RequestId

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """One in-flight call."""
    internal_id: RequestId
    external_id: Optional[RequestId]
    method: Optional[str]
    created_at: float  # loop.time()
    deadline: float    # loop.time()
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def timeout(self) -> float:
        return self.deadline - self.created_at


def _settle(future: asyncio.Future, result: Any = None, exc: Optional[BaseException] = None) -> None:
    # Caller may have gone away (task cancelled), which cancels the future
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)


class PendingRequestTable:
    """
    Maps internal request id -> PendingRequest.

    Thread Safety:
    - Dict mutations and counters are updated under a threading.Lock, so
      resolve/expire/fail and status snapshots may run on any thread
    - Futures are always completed on the loop that created them; calls
      from a foreign thread are handed over with call_soon_threadsafe
    """

    def __init__(self):
        self._entries: Dict[RequestId, PendingRequest] = {}
        self._lock = threading.Lock()

        # Counters (for /status and metrics)
        self.total_registered = 0
        self.total_resolved = 0
        self.total_expired = 0
        self.total_failed = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, request_id: RequestId) -> bool:
        with self._lock:
            return request_id in self._entries

    def register(
        self,
        request_id: RequestId,
        deadline: float,
        external_id: Optional[RequestId] = None,
        method: Optional[str] = None
    ) -> asyncio.Future:
        """
        Insert an entry and arm its expiry timer.

        Must be called from a running event loop.

        Args:
            request_id: Internal (subprocess-facing) id
            deadline: Absolute expiry time on the loop clock (loop.time())
            external_id: Caller's original id, kept for logging only
            method: JSON-RPC method, kept for logging only

        Returns:
            Future completed with the JsonRpcResponse, or failed with
            RequestTimeoutError / ProcessUnavailableError

        Raises:
            DuplicateIDError: If request_id is already in flight
        """
        loop = asyncio.get_running_loop()

        with self._lock:
            if request_id in self._entries:
                raise DuplicateIDError(request_id)

            entry = PendingRequest(
                internal_id=request_id,
                external_id=external_id,
                method=method,
                created_at=loop.time(),
                deadline=deadline,
                future=loop.create_future(),
            )
            entry.timer = loop.call_at(deadline, self.expire, request_id)
            self._entries[request_id] = entry
            self.total_registered += 1

        logger.debug(f"Registered request {request_id!r} (external {external_id!r}, method {method})")
        return entry.future

    def resolve(self, request_id: RequestId, response: Any) -> bool:
        """
        Complete an entry with its response.

        Returns:
            True if this call completed the entry, False if it was absent
            (already expired or never registered)
        """
        entry = self._pop(request_id)
        if entry is None:
            return False
        with self._lock:
            self.total_resolved += 1
        self._complete(entry, result=response)
        return True

    def expire(self, request_id: RequestId) -> bool:
        """
        Fail an entry with RequestTimeoutError.

        Returns:
            True if this call completed the entry, False if already resolved
        """
        entry = self._pop(request_id)
        if entry is None:
            return False
        with self._lock:
            self.total_expired += 1
        logger.warning(
            f"Request {request_id!r} ({entry.method}) timed out after {entry.timeout:.3f}s"
        )
        shown_id = entry.external_id if entry.external_id is not None else request_id
        self._complete(entry, exc=RequestTimeoutError(shown_id, entry.timeout))
        return True

    def fail(self, request_id: RequestId, exc: BaseException) -> bool:
        """Fail one entry with an arbitrary error."""
        entry = self._pop(request_id)
        if entry is None:
            return False
        with self._lock:
            self.total_failed += 1
        self._complete(entry, exc=exc)
        return True

    def fail_all(self, exc: BaseException) -> int:
        """
        Remove every entry and fail its future with exc.

        Returns:
            Number of entries failed
        """
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            self.total_failed += len(entries)

        for entry in entries:
            self._cancel_timer(entry)
            self._complete(entry, exc=exc)

        if entries:
            logger.warning(f"Failed {len(entries)} pending request(s): {exc}")
        return len(entries)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Point-in-time view of in-flight entries."""
        with self._lock:
            entries = list(self._entries.values())
        return [
            {
                "internal_id": e.internal_id,
                "external_id": e.external_id,
                "method": e.method,
                "timeout": e.timeout,
            }
            for e in entries
        ]

    def _pop(self, request_id: RequestId) -> Optional[PendingRequest]:
        with self._lock:
            entry = self._entries.pop(request_id, None)
        if entry is not None:
            self._cancel_timer(entry)
        return entry

    @staticmethod
    def _on_owner_loop(entry: PendingRequest) -> bool:
        try:
            return asyncio.get_running_loop() is entry.future.get_loop()
        except RuntimeError:
            return False

    def _cancel_timer(self, entry: PendingRequest) -> None:
        if entry.timer is None:
            return
        if self._on_owner_loop(entry):
            entry.timer.cancel()
        else:
            entry.future.get_loop().call_soon_threadsafe(entry.timer.cancel)

    def _complete(self, entry: PendingRequest, result: Any = None, exc: Optional[BaseException] = None) -> None:
        if self._on_owner_loop(entry):
            _settle(entry.future, result, exc)
        else:
            entry.future.get_loop().call_soon_threadsafe(_settle, entry.future, result, exc)

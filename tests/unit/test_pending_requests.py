"""
Unit tests for PendingRequestTable.

Central property: resolve / expire / fail are mutually exclusive per id.
"""

import asyncio
import threading

import pytest
from src.ipc.errors import DuplicateIDError, ProcessUnavailableError, RequestTimeoutError
from src.ipc.messages import JsonRpcResponse
from src.orchestrator.pending_requests import PendingRequestTable


def deadline_in(seconds: float) -> float:
    return asyncio.get_running_loop().time() + seconds


class TestRegister:
    """Tests for register()."""

    @pytest.mark.asyncio
    async def test_register_returns_pending_future(self):
        table = PendingRequestTable()
        future = table.register(0, deadline_in(5))
        assert not future.done()
        assert 0 in table
        assert len(table) == 1
        table.fail_all(ProcessUnavailableError("cleanup"))
        with pytest.raises(ProcessUnavailableError):
            await future

    @pytest.mark.asyncio
    async def test_duplicate_id_is_detected(self):
        table = PendingRequestTable()
        first = table.register(1, deadline_in(5))
        with pytest.raises(DuplicateIDError):
            table.register(1, deadline_in(5))
        # Original entry untouched
        assert table.resolve(1, JsonRpcResponse(id=1, result="first"))
        assert (await first).result == "first"

    @pytest.mark.asyncio
    async def test_snapshot(self):
        table = PendingRequestTable()
        table.register(3, deadline_in(2), external_id="a", method="ping")
        snap = table.snapshot()
        assert snap[0]["internal_id"] == 3
        assert snap[0]["external_id"] == "a"
        assert snap[0]["method"] == "ping"
        assert snap[0]["timeout"] == pytest.approx(2, abs=0.1)
        table.fail_all(ProcessUnavailableError("cleanup"))


class TestResolve:
    """Tests for resolve()."""

    @pytest.mark.asyncio
    async def test_resolve_completes_future_and_removes_entry(self):
        table = PendingRequestTable()
        future = table.register(0, deadline_in(5))
        response = JsonRpcResponse(id=0, result={"ok": True})

        assert table.resolve(0, response) is True
        assert await future is response
        assert 0 not in table
        assert table.total_resolved == 1

    @pytest.mark.asyncio
    async def test_resolve_unknown_id_is_noop(self):
        table = PendingRequestTable()
        assert table.resolve(42, JsonRpcResponse(id=42, result={})) is False

    @pytest.mark.asyncio
    async def test_resolve_cancels_expiry_timer(self):
        table = PendingRequestTable()
        future = table.register(0, deadline_in(0.05))
        table.resolve(0, JsonRpcResponse(id=0, result=1))
        await asyncio.sleep(0.1)
        assert (await future).result == 1
        assert table.total_expired == 0

    @pytest.mark.asyncio
    async def test_resolve_after_caller_cancelled(self):
        """Caller gone: the response is discarded without error."""
        table = PendingRequestTable()
        future = table.register(0, deadline_in(5))
        future.cancel()
        assert table.resolve(0, JsonRpcResponse(id=0, result=1)) is True
        assert 0 not in table


class TestExpire:
    """Tests for expire() and the deadline timer."""

    @pytest.mark.asyncio
    async def test_deadline_expires_entry(self):
        table = PendingRequestTable()
        future = table.register(0, deadline_in(0.05), external_id="a")

        with pytest.raises(RequestTimeoutError) as exc_info:
            await future

        assert exc_info.value.request_id == "a"
        assert 0 not in table
        assert table.total_expired == 1

    @pytest.mark.asyncio
    async def test_late_response_after_expiry_is_dropped(self):
        table = PendingRequestTable()
        future = table.register(0, deadline_in(0.01))
        with pytest.raises(RequestTimeoutError):
            await future
        assert table.resolve(0, JsonRpcResponse(id=0, result="late")) is False

    @pytest.mark.asyncio
    async def test_expire_after_resolve_is_noop(self):
        table = PendingRequestTable()
        future = table.register(0, deadline_in(5))
        table.resolve(0, JsonRpcResponse(id=0, result="on time"))
        assert table.expire(0) is False
        assert (await future).result == "on time"


class TestRace:
    """resolve and expire racing on the same id."""

    @pytest.mark.asyncio
    async def test_exactly_one_wins_in_either_order(self):
        for resolve_first in (True, False):
            table = PendingRequestTable()
            future = table.register(0, deadline_in(5))
            response = JsonRpcResponse(id=0, result="r")

            if resolve_first:
                outcomes = [table.resolve(0, response), table.expire(0)]
            else:
                outcomes = [table.expire(0), table.resolve(0, response)]

            assert outcomes.count(True) == 1
            if resolve_first:
                assert (await future).result == "r"
            else:
                with pytest.raises(RequestTimeoutError):
                    await future

    @pytest.mark.asyncio
    async def test_threads_racing_complete_once(self):
        """Many threads hitting resolve/expire/fail: one winner per id."""
        table = PendingRequestTable()
        ids = list(range(50))
        futures = {i: table.register(i, deadline_in(10)) for i in ids}
        wins = []
        wins_lock = threading.Lock()
        barrier = threading.Barrier(3)

        def worker(action):
            barrier.wait()
            for i in ids:
                if action(i):
                    with wins_lock:
                        wins.append(i)

        actions = [
            lambda i: table.resolve(i, JsonRpcResponse(id=i, result=i)),
            table.expire,
            lambda i: table.fail(i, ProcessUnavailableError("gone")),
        ]
        threads = [threading.Thread(target=worker, args=(a,)) for a in actions]
        for t in threads:
            t.start()
        await asyncio.get_running_loop().run_in_executor(None, lambda: [t.join() for t in threads])

        assert sorted(wins) == ids
        assert len(table) == 0
        assert table.total_registered == len(ids)
        assert table.total_resolved + table.total_expired + table.total_failed == len(ids)

        # Completions were handed back to this loop; let them run
        await asyncio.sleep(0)
        results = await asyncio.gather(*futures.values(), return_exceptions=True)
        assert all(
            isinstance(r, (JsonRpcResponse, RequestTimeoutError, ProcessUnavailableError))
            for r in results
        )


class TestFail:
    """Tests for fail() and fail_all()."""

    @pytest.mark.asyncio
    async def test_fail_all(self):
        table = PendingRequestTable()
        futures = [table.register(i, deadline_in(5)) for i in range(3)]

        assert table.fail_all(ProcessUnavailableError("exited")) == 3
        assert len(table) == 0
        assert table.total_failed == 3
        for future in futures:
            with pytest.raises(ProcessUnavailableError):
                await future

    @pytest.mark.asyncio
    async def test_fail_all_on_empty_table(self):
        assert PendingRequestTable().fail_all(ProcessUnavailableError("x")) == 0

    @pytest.mark.asyncio
    async def test_fail_single(self):
        table = PendingRequestTable()
        future = table.register(0, deadline_in(5))
        assert table.fail(0, ProcessUnavailableError("broken pipe")) is True
        assert table.fail(0, ProcessUnavailableError("again")) is False
        with pytest.raises(ProcessUnavailableError, match="broken pipe"):
            await future

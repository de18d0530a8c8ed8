"""
Tests for cooperative cancellation tokens.
"""

import asyncio

import pytest

from errors import OperationCancelled
from orchestration.cancellation import CancelToken


class TestCancelToken:
    def test_cancel_is_idempotent(self):
        token = CancelToken()
        calls = []
        token.add_callback(lambda: calls.append(1))
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"
        assert calls == [1]

    def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(OperationCancelled) as exc:
            token.raise_if_cancelled()
        assert exc.value.reason == "stop"

    def test_callback_after_cancel_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_removed_callback_not_run(self):
        token = CancelToken()
        calls = []

        def cb():
            calls.append(1)

        token.add_callback(cb)
        token.remove_callback(cb)
        token.cancel()
        assert calls == []

    def test_failing_callback_does_not_stop_others(self):
        token = CancelToken()
        calls = []

        def broken():
            raise RuntimeError("boom")

        token.add_callback(broken)
        token.add_callback(lambda: calls.append("ran"))
        token.cancel()
        assert calls == ["ran"]

    def test_child_follows_parent(self):
        parent = CancelToken()
        child = parent.child()
        parent.cancel("interrupted")
        assert child.cancelled
        assert child.reason == "interrupted"

    def test_child_cancel_leaves_parent(self):
        parent = CancelToken()
        child = parent.child()
        child.cancel("timeout")
        assert child.cancelled
        assert not parent.cancelled


class TestGuard:
    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        token = CancelToken()

        async def work():
            return 42

        assert await token.guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_aborts_pending_call(self):
        token = CancelToken()
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(3600)

        async def cancel_soon():
            await started.wait()
            token.cancel("user interrupt")

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(OperationCancelled) as exc:
            await asyncio.wait_for(token.guard(slow()), timeout=5)
        await canceller
        assert exc.value.reason == "user interrupt"

    @pytest.mark.asyncio
    async def test_guard_on_cancelled_token_raises_at_once(self):
        token = CancelToken()
        token.cancel()

        async def work():
            return 1

        coro = work()
        with pytest.raises(OperationCancelled):
            await token.guard(coro)
        coro.close()

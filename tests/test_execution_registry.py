"""Tests for coachstream.execution.registry - one controller per context."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from coachstream.adapters.base import (
    BaseBackend,
    Connected,
    Fragment,
    StreamFinished,
    StreamRequest,
)
from coachstream.execution.controller import StreamSessionController
from coachstream.execution.registry import SessionRegistry
from coachstream.execution.session import StreamState
from coachstream.tracing.log import TraceEventLog
from coachstream.tracing.sinks import InMemoryTraceStore


class GatedBackend(BaseBackend):
    """Connects, then waits for the gate before finishing."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()

    async def stream(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> AsyncIterator:
        yield Connected()
        await self.gate.wait()
        yield Fragment(text=f"re: {request.text}")
        yield StreamFinished()


@pytest.fixture
def backend() -> GatedBackend:
    return GatedBackend()


@pytest.fixture
def registry(backend) -> SessionRegistry:
    trace_log = TraceEventLog(InMemoryTraceStore())
    return SessionRegistry(
        lambda context_id: StreamSessionController(
            backend, trace_log, context_id=context_id
        )
    )


def _request(text: str) -> StreamRequest:
    return StreamRequest(user_id="user-1", text=text)


async def _until_connected(handle) -> None:
    async def _scan() -> None:
        async for snapshot in handle.updates():
            if snapshot.state == StreamState.loading_context:
                return

    await asyncio.wait_for(_scan(), timeout=2)


class TestControllerFor:
    """Test controller creation and reuse."""

    def test_same_context_same_controller(self, registry):
        assert registry.controller_for("a") is registry.controller_for("a")
        assert len(registry) == 1

    def test_different_contexts(self, registry):
        a = registry.controller_for("a")
        b = registry.controller_for("b")
        assert a is not b
        assert a.context_id == "a"
        assert "b" in registry


class TestLifecycle:
    """Test start/stop across contexts."""

    @pytest.mark.asyncio
    async def test_contexts_run_independently(self, registry, backend):
        first = await registry.start("a", _request("eins"))
        second = await registry.start("b", _request("zwei"))
        await _until_connected(first)
        await _until_connected(second)

        assert sorted(registry.live_contexts()) == ["a", "b"]

        backend.gate.set()
        assert (await first.wait()).content == "re: eins"
        assert (await second.wait()).content == "re: zwei"
        assert registry.live_contexts() == []

    @pytest.mark.asyncio
    async def test_restart_same_context_aborts_previous(self, registry, backend):
        first = await registry.start("a", _request("eins"))
        await _until_connected(first)

        second = await registry.start("a", _request("zwei"))

        assert first.snapshot().state == StreamState.aborted
        backend.gate.set()
        assert (await second.wait()).state == StreamState.done

    @pytest.mark.asyncio
    async def test_stop_unknown_context_is_noop(self, registry):
        await registry.stop("missing")

    @pytest.mark.asyncio
    async def test_stop_all(self, registry):
        handles = [
            await registry.start(context, _request(context)) for context in ("a", "b", "c")
        ]
        for handle in handles:
            await _until_connected(handle)

        await registry.stop_all()

        assert [h.snapshot().state for h in handles] == [StreamState.aborted] * 3
        assert registry.live_contexts() == []


class TestDiscard:
    """Test forgetting controllers."""

    def test_discard_unknown(self, registry):
        assert registry.discard("missing") is None

    def test_discard_idle_controller(self, registry):
        controller = registry.controller_for("a")
        assert registry.discard("a") is controller
        assert "a" not in registry

    @pytest.mark.asyncio
    async def test_discard_live_context_raises(self, registry):
        handle = await registry.start("a", _request("eins"))
        await _until_connected(handle)

        with pytest.raises(RuntimeError, match="live session"):
            registry.discard("a")

        await registry.stop("a")
        assert registry.discard("a") is not None

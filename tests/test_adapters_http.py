"""Tests for coachstream.adapters.http_adapter - coach endpoint backend.

Uses httpx.MockTransport, so tests run without network access.
"""

from __future__ import annotations

import json

import httpx
import pytest

from coachstream.adapters.base import (
    Attachment,
    BackendConfig,
    Fragment,
    FragmentSource,
    Message,
    StreamFinished,
    StreamRequest,
)
from coachstream.adapters.http_adapter import CoachEndpointBackend
from coachstream.adapters.registry import get_backend
from coachstream.adapters.simulated import SimulatedStreamBackend
from coachstream.execution.errors import ErrorKind, StreamError

URL = "https://coach.example/functions/v1/coach"


def _backend(handler, **extras) -> CoachEndpointBackend:
    config = BackendConfig(model="gpt-4o-mini", streaming=False, extras={"url": URL, **extras})
    backend = CoachEndpointBackend(config)
    backend._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return backend


def _json_reply(payload, status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload)

    return handler


def _request() -> StreamRequest:
    return StreamRequest(user_id="user-1", text="Wie viele Kalorien habe ich noch?")


class TestCoachEndpointReply:
    """Test reply parsing."""

    @pytest.mark.asyncio
    async def test_response_with_metadata(self):
        backend = _backend(
            _json_reply(
                {
                    "response": "Du hast 1200 kcal übrig.",
                    "traceId": "trace-edge-1",
                    "metadata": {"tokensUsed": 42, "hasRag": True, "hasMemory": False},
                }
            )
        )

        completion = await backend.complete(_request(), trace_id="t-local")

        assert completion.content == "Du hast 1200 kcal übrig."
        assert completion.trace_id == "trace-edge-1"
        assert completion.usage is not None
        assert completion.usage.completion_tokens == 42
        assert completion.model == "gpt-4o-mini"
        assert completion.data == {"rag_hit": True, "memory_used": False}

    @pytest.mark.asyncio
    async def test_message_shape(self):
        backend = _backend(_json_reply({"message": "Gut gemacht!"}))
        completion = await backend.complete(_request())
        assert completion.content == "Gut gemacht!"
        assert completion.usage is None
        assert completion.trace_id is None

    @pytest.mark.asyncio
    async def test_bare_string_body(self):
        backend = _backend(_json_reply("Weiter so."))
        completion = await backend.complete(_request())
        assert completion.content == "Weiter so."

    @pytest.mark.asyncio
    async def test_unknown_shape_is_unknown_error(self):
        backend = _backend(_json_reply({"answer": "nope"}))
        with pytest.raises(StreamError) as exc_info:
            await backend.complete(_request())
        assert exc_info.value.kind == ErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_invalid_json_is_unknown_error(self):
        backend = _backend(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(StreamError) as exc_info:
            await backend.complete(_request())
        assert exc_info.value.kind == ErrorKind.UNKNOWN


class TestCoachEndpointRequest:
    """Test the posted body and headers."""

    @pytest.mark.asyncio
    async def test_body_carries_turn(self, monkeypatch):
        monkeypatch.setenv("COACHSTREAM_COACH_TOKEN", "secret")
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"response": "ok"})

        backend = _backend(handler, enableRag=True)
        request = StreamRequest(
            user_id="user-1",
            text="Was soll ich essen?",
            attachments=[Attachment(url="https://cdn/meal.jpg")],
            history=[Message(role="assistant", content="Hallo!")],
            coach_id="lucy",
        )

        await backend.complete(request, trace_id="t-1")

        body = json.loads(seen[0].content)
        assert str(seen[0].url) == URL
        assert seen[0].headers["Authorization"] == "Bearer secret"
        assert body["message"] == "Was soll ich essen?"
        assert body["userId"] == "user-1"
        assert body["coachId"] == "lucy"
        assert body["traceId"] == "t-1"
        assert body["mediaUrls"] == ["https://cdn/meal.jpg"]
        assert body["conversationHistory"] == [{"role": "assistant", "content": "Hallo!"}]
        assert body["enableRag"] is True
        assert "url" not in body

    @pytest.mark.asyncio
    async def test_missing_url_is_config_missing(self, monkeypatch):
        monkeypatch.delenv("COACHSTREAM_COACH_URL", raising=False)
        backend = CoachEndpointBackend(BackendConfig(model="gpt-4o-mini"))

        with pytest.raises(StreamError) as exc_info:
            await backend.complete(_request())

        assert exc_info.value.kind == ErrorKind.CONFIG_MISSING

    @pytest.mark.asyncio
    async def test_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("COACHSTREAM_COACH_URL", URL)
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"content": "ok"})

        backend = CoachEndpointBackend(BackendConfig(model="gpt-4o-mini"))
        backend._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        await backend.complete(_request())

        assert seen == [URL]


class TestCoachEndpointErrors:
    """Test transport and status error mapping."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [
            (401, ErrorKind.UNAUTHORIZED),
            (404, ErrorKind.CONFIG_MISSING),
            (503, ErrorKind.BACKEND_5XX),
            (504, ErrorKind.TIMEOUT),
        ],
    )
    async def test_status_codes(self, status, kind):
        backend = _backend(_json_reply({"error": "x"}, status=status))
        with pytest.raises(StreamError) as exc_info:
            await backend.complete(_request())
        assert exc_info.value.kind == kind
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_connect_error_is_network(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(StreamError) as exc_info:
            await _backend(handler).complete(_request())
        assert exc_info.value.kind == ErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_read_timeout_is_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(StreamError) as exc_info:
            await _backend(handler).complete(_request())
        assert exc_info.value.kind == ErrorKind.TIMEOUT


class TestCoachEndpointStreaming:
    """The registry wraps the endpoint in simulated streaming."""

    def test_registry_wraps_in_simulated_stream(self):
        backend = get_backend("http", BackendConfig(model="gpt-4o-mini", extras={"url": URL}))
        assert isinstance(backend, SimulatedStreamBackend)
        assert isinstance(backend.inner, CoachEndpointBackend)

    @pytest.mark.asyncio
    async def test_simulated_events(self):
        inner = _backend(
            _json_reply({"response": "Du hast 1200 kcal übrig.", "traceId": "edge-7"})
        )
        events = [event async for event in SimulatedStreamBackend(inner).stream(_request())]

        fragments = [e for e in events if isinstance(e, Fragment)]
        assert "".join(f.text for f in fragments) == "Du hast 1200 kcal übrig."
        assert all(f.source == FragmentSource.simulated for f in fragments)
        finished = events[-1]
        assert isinstance(finished, StreamFinished)
        assert finished.trace_id == "edge-7"

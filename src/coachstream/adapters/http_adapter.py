"""Blocking backend for a coach HTTP endpoint.

Posts one turn as JSON and reads the complete reply back. The endpoint
answers with a body whose text sits under response, message or content
(see extract_content); an optional metadata object carries token counts
and context flags. Wrap it in SimulatedStreamBackend to drive it through
the session controller.

Configuration (BackendConfig.extras):
    url: Endpoint URL. Falls back to COACHSTREAM_COACH_URL.
    timeout_s: Request timeout in seconds (default 60).
Any other extras are sent in the request body. A bearer token is read
from COACHSTREAM_COACH_TOKEN when set.
"""

from __future__ import annotations

import os
from typing import Any

import httpx

from coachstream.adapters.base import BackendConfig, StreamRequest, TokenUsage
from coachstream.adapters.simulated import BlockingBackend, Completion, extract_content
from coachstream.execution.errors import ErrorKind, StreamError, kind_for_status

URL_ENV = "COACHSTREAM_COACH_URL"
TOKEN_ENV = "COACHSTREAM_COACH_TOKEN"
DEFAULT_TIMEOUT_S = 60.0

# Metadata flags copied into the completion data under telemetry names
_METADATA_FLAGS: dict[str, str] = {
    "hasRag": "rag_hit",
    "cacheHit": "cache_hit",
    "hasMemory": "memory_used",
}


class CoachEndpointBackend(BlockingBackend):
    """Non-streaming backend calling a JSON coach endpoint over HTTP."""

    def __init__(self, config: BackendConfig) -> None:
        self.config = config
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the httpx.AsyncClient."""
        if self._client is None:
            timeout = float(self.config.extras.get("timeout_s", DEFAULT_TIMEOUT_S))
            self._client = httpx.AsyncClient(timeout=timeout)
        return self._client

    def _url(self) -> str:
        url = self.config.extras.get("url") or os.environ.get(URL_ENV)
        if not url:
            raise StreamError(
                ErrorKind.CONFIG_MISSING,
                f"No coach endpoint configured (set backend.extras.url or {URL_ENV})",
            )
        return str(url)

    def _build_body(self, request: StreamRequest, trace_id: str | None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "message": request.text or "",
            "userId": request.user_id,
            "coachId": request.coach_id,
            "conversationHistory": [
                {"role": msg.role, "content": msg.content} for msg in request.history
            ],
            "mediaUrls": [attachment.url for attachment in request.attachments],
            "model": self.config.model,
            "traceId": trace_id,
        }
        if self.config.system_prompt:
            body["systemPrompt"] = self.config.system_prompt
        if self.config.temperature is not None:
            body["temperature"] = self.config.temperature
        if self.config.max_tokens is not None:
            body["maxTokens"] = self.config.max_tokens
        body.update(
            {k: v for k, v in self.config.extras.items() if k not in ("url", "timeout_s")}
        )
        return body

    async def complete(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> Completion:
        """Post the turn and return the complete reply.

        Raises:
            StreamError: CONFIG_MISSING without an endpoint URL, TIMEOUT or
                NETWORK on transport failures, a status-derived kind for
                HTTP errors, UNKNOWN for a body without reply text.
        """
        url = self._url()
        headers: dict[str, str] = {}
        token = os.environ.get(TOKEN_ENV)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        client = self._get_client()
        try:
            response = await client.post(
                url, json=self._build_body(request, trace_id), headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            # 404 means the endpoint URL is wrong, not a passing failure
            kind = ErrorKind.CONFIG_MISSING if status == 404 else kind_for_status(status)
            raise StreamError(
                kind,
                f"Coach endpoint returned HTTP {status}",
                status_code=status,
            ) from exc
        except httpx.TimeoutException as exc:
            raise StreamError(ErrorKind.TIMEOUT, str(exc) or "Request timed out") from exc
        except httpx.TransportError as exc:
            raise StreamError(ErrorKind.NETWORK, str(exc) or type(exc).__name__) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise StreamError(ErrorKind.UNKNOWN, "Coach endpoint returned invalid JSON") from exc

        metadata = payload.get("metadata") if isinstance(payload, dict) else None
        metadata = metadata if isinstance(metadata, dict) else {}

        usage = None
        tokens_used = metadata.get("tokensUsed")
        if isinstance(tokens_used, int) and not isinstance(tokens_used, bool):
            usage = TokenUsage(completion_tokens=tokens_used)

        data: dict[str, Any] = {
            telemetry_key: bool(metadata[flag])
            for flag, telemetry_key in _METADATA_FLAGS.items()
            if flag in metadata
        }

        return Completion(
            content=extract_content(payload),
            usage=usage,
            model=metadata.get("model") or self.config.model,
            trace_id=payload.get("traceId") if isinstance(payload, dict) else None,
            data=data,
        )

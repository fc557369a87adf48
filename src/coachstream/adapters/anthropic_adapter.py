"""Anthropic backend for the coachstream pipeline.

Streams the Messages API raw event sequence and translates it into
backend events: message_start -> Connected, text deltas -> Fragment,
message_stop -> StreamFinished.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from coachstream.adapters.base import (
    BackendConfig,
    BackendEvent,
    BaseBackend,
    Connected,
    Fragment,
    Message,
    StreamFinished,
    StreamRequest,
    TokenUsage,
)
from coachstream.execution.errors import ErrorKind, StreamError

DEFAULT_MODEL = "claude-haiku-4-5"
DEFAULT_MAX_TOKENS = 4096


class AnthropicBackend(BaseBackend):
    """Streaming backend for the Anthropic messages API.

    Uses lazy-initialized AsyncAnthropic client that reads ANTHROPIC_API_KEY
    from the environment automatically.
    """

    def __init__(self, config: BackendConfig | None = None) -> None:
        self.config = config or BackendConfig(model=DEFAULT_MODEL)
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazily initialize and return the AsyncAnthropic client.

        Raises:
            StreamError: CONFIG_MISSING if neither ANTHROPIC_API_KEY nor
                ANTHROPIC_AUTH_TOKEN is set. The SDK itself only notices
                on the first request.
        """
        if self._client is None:
            from anthropic import AsyncAnthropic

            client = AsyncAnthropic()
            if client.api_key is None and client.auth_token is None:
                raise StreamError(
                    ErrorKind.CONFIG_MISSING,
                    "Anthropic credentials are not configured (set ANTHROPIC_API_KEY)",
                )
            self._client = client
        return self._client

    async def _create(self, **kwargs: Any) -> Any:
        """Call messages.create, mapping a missing model to CONFIG_MISSING."""
        import anthropic

        client = self._get_client()
        try:
            return await client.messages.create(**kwargs)
        except anthropic.NotFoundError as exc:
            raise StreamError(
                ErrorKind.CONFIG_MISSING, str(exc), status_code=404
            ) from exc

    def _extract_system(
        self, messages: list[Message]
    ) -> tuple[str | None, list[Message]]:
        """Split system messages out of the history.

        Anthropic uses a separate 'system' parameter instead of a system
        message in the messages array. The configured system prompt comes
        first, followed by any system messages from the history.

        Returns:
            Tuple of (system_prompt or None, remaining messages).
        """
        system_parts: list[str] = []
        if self.config.system_prompt:
            system_parts.append(self.config.system_prompt)
        remaining: list[Message] = []
        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            else:
                remaining.append(msg)
        return ("\n\n".join(system_parts) if system_parts else None), remaining

    def _convert_request(self, request: StreamRequest) -> list[dict[str, Any]]:
        """Convert history plus the current turn to Anthropic message dicts.

        Image attachments become url image blocks.
        """
        _, history = self._extract_system(request.history)
        result: list[dict[str, Any]] = [
            {"role": msg.role, "content": msg.content} for msg in history
        ]

        if not request.attachments:
            result.append({"role": "user", "content": request.text or ""})
            return result

        blocks: list[dict[str, Any]] = []
        for attachment in request.attachments:
            if attachment.media_type is None or attachment.media_type.startswith("image/"):
                blocks.append(
                    {"type": "image", "source": {"type": "url", "url": attachment.url}}
                )
            else:
                blocks.append({"type": "text", "text": f"[attachment] {attachment.url}"})
        if request.text:
            blocks.append({"type": "text", "text": request.text})
        result.append({"role": "user", "content": blocks})
        return result

    async def stream(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        """Stream one Messages API call.

        Raises:
            StreamError: UNKNOWN if the stream ends without message_stop.
        """
        system_prompt, _ = self._extract_system(request.history)

        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": self._convert_request(request),
            "max_tokens": (
                self.config.max_tokens
                if self.config.max_tokens is not None
                else DEFAULT_MAX_TOKENS
            ),
            "stream": True,
        }

        if system_prompt is not None:
            kwargs["system"] = system_prompt

        if self.config.temperature is not None:
            kwargs["temperature"] = self.config.temperature

        # Pass through provider-specific extras
        kwargs.update(self.config.extras)

        response = await self._create(**kwargs)

        prompt_tokens = 0
        completion_tokens = 0
        model: str | None = None
        message_id: str | None = None
        stop_reason: str | None = None
        stopped = False

        try:
            async for event in response:
                if event.type == "message_start":
                    message_id = event.message.id
                    model = event.message.model
                    prompt_tokens = event.message.usage.input_tokens
                    yield Connected()
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta" and event.delta.text:
                        yield Fragment(text=event.delta.text)
                elif event.type == "message_delta":
                    completion_tokens = event.usage.output_tokens
                    stop_reason = event.delta.stop_reason
                elif event.type == "message_stop":
                    stopped = True
                    break
        finally:
            await response.close()

        if not stopped:
            raise StreamError(
                ErrorKind.UNKNOWN, "Anthropic stream ended without message_stop"
            )

        yield StreamFinished(
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            ),
            model=model or self.config.model,
            data={"finish_reason": stop_reason, "message_id": message_id},
        )

    def provider_name(self) -> str:
        """Return the provider name."""
        return "anthropic"

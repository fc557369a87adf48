"""OpenAI backends for the coachstream pipeline.

OpenAIBackend streams chat completion deltas as incremental fragments.
OpenAIBlockingBackend requests a complete reply; wrap it in
SimulatedStreamBackend to drive it through the same session controller.
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
    StreamFinished,
    StreamRequest,
    TokenUsage,
)
from coachstream.adapters.simulated import BlockingBackend, Completion
from coachstream.execution.errors import ErrorKind, StreamError

DEFAULT_MODEL = "gpt-4o-mini"


def _is_image(media_type: str | None) -> bool:
    return media_type is None or media_type.startswith("image/")


class _OpenAIClientMixin:
    """Shared client setup and request conversion."""

    config: BackendConfig
    _client: Any

    def _get_client(self) -> Any:
        """Lazily initialize and return the AsyncOpenAI client.

        Raises:
            StreamError: CONFIG_MISSING if the SDK cannot be configured
                (typically OPENAI_API_KEY is not set).
        """
        if self._client is None:
            import openai

            try:
                self._client = openai.AsyncOpenAI()
            except openai.OpenAIError as exc:
                raise StreamError(ErrorKind.CONFIG_MISSING, str(exc)) from exc
        return self._client

    def _convert_messages(self, request: StreamRequest) -> list[dict[str, Any]]:
        """Convert a request to OpenAI chat format.

        Image attachments on the current turn become image_url content
        parts; other attachments are referenced in the text.

        Args:
            request: The coaching turn.

        Returns:
            List of dicts in OpenAI chat completion message format.
        """
        result: list[dict[str, Any]] = []
        if self.config.system_prompt:
            result.append({"role": "system", "content": self.config.system_prompt})
        for msg in request.history:
            result.append({"role": msg.role, "content": msg.content})

        if not request.attachments:
            result.append({"role": "user", "content": request.text or ""})
            return result

        parts: list[dict[str, Any]] = []
        if request.text:
            parts.append({"type": "text", "text": request.text})
        for attachment in request.attachments:
            if _is_image(attachment.media_type):
                parts.append({"type": "image_url", "image_url": {"url": attachment.url}})
            else:
                parts.append({"type": "text", "text": f"[attachment] {attachment.url}"})
        result.append({"role": "user", "content": parts})
        return result

    def _build_kwargs(self, request: StreamRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": self._convert_messages(request),
        }

        if self.config.temperature is not None:
            kwargs["temperature"] = self.config.temperature

        if self.config.max_tokens is not None:
            kwargs["max_tokens"] = self.config.max_tokens

        if request.user_id:
            kwargs["user"] = request.user_id

        # Pass through provider-specific extras
        kwargs.update(self.config.extras)
        return kwargs

    async def _create(self, **kwargs: Any) -> Any:
        """Call chat.completions.create, mapping a missing model to CONFIG_MISSING."""
        import openai

        client = self._get_client()
        try:
            return await client.chat.completions.create(**kwargs)
        except openai.NotFoundError as exc:
            raise StreamError(
                ErrorKind.CONFIG_MISSING, str(exc), status_code=404
            ) from exc


class OpenAIBackend(_OpenAIClientMixin, BaseBackend):
    """Streaming backend for the OpenAI chat completion API.

    Uses lazy-initialized AsyncOpenAI client that reads OPENAI_API_KEY
    from the environment automatically.
    """

    def __init__(self, config: BackendConfig | None = None) -> None:
        self.config = config or BackendConfig(model=DEFAULT_MODEL)
        self._client: Any = None

    async def stream(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> AsyncIterator[BackendEvent]:
        """Stream one chat completion.

        Yields Connected once the HTTP response is open, a Fragment per
        non-empty content delta, and StreamFinished after a chunk with a
        finish_reason. Usage arrives in the trailing chunk requested via
        stream_options.

        Raises:
            StreamError: UNKNOWN if the stream ends without a finish_reason.
        """
        kwargs = self._build_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        response = await self._create(**kwargs)
        yield Connected()

        finish_reason: str | None = None
        usage: TokenUsage | None = None
        model: str | None = None
        completion_id: str | None = None

        try:
            async for chunk in response:
                completion_id = completion_id or getattr(chunk, "id", None)
                model = getattr(chunk, "model", None) or model

                if chunk.usage is not None:
                    usage = TokenUsage(
                        prompt_tokens=chunk.usage.prompt_tokens,
                        completion_tokens=chunk.usage.completion_tokens,
                    )

                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                content = choice.delta.content if choice.delta else None
                if content:
                    yield Fragment(text=content)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        finally:
            await response.close()

        if finish_reason is None:
            raise StreamError(
                ErrorKind.UNKNOWN, "OpenAI stream ended without a finish_reason"
            )

        yield StreamFinished(
            usage=usage,
            model=model or self.config.model,
            data={"finish_reason": finish_reason, "completion_id": completion_id},
        )

    def provider_name(self) -> str:
        """Return the provider name."""
        return "openai"


class OpenAIBlockingBackend(_OpenAIClientMixin, BlockingBackend):
    """Non-streaming OpenAI backend returning the complete reply."""

    def __init__(self, config: BackendConfig | None = None) -> None:
        self.config = config or BackendConfig(model=DEFAULT_MODEL, streaming=False)
        self._client: Any = None

    async def complete(
        self,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> Completion:
        response = await self._create(**self._build_kwargs(request))

        choice = response.choices[0]
        usage = TokenUsage(
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
        )

        return Completion(
            content=choice.message.content or "",
            usage=usage,
            model=response.model,
            data={"finish_reason": choice.finish_reason, "completion_id": response.id},
        )

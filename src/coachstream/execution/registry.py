"""Registry of session controllers keyed by conversation context.

Enforces one controller, and therefore at most one live session, per
conversation context. Starting a session on a context with a live one
stops the live one first (see StreamSessionController.start).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from coachstream.adapters.base import StreamRequest
from coachstream.execution.controller import SessionHandle, StreamSessionController

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[str], StreamSessionController]


class SessionRegistry:
    """Owns one StreamSessionController per context id.

    Args:
        factory: Builds a controller for a context id on first use.
    """

    def __init__(self, factory: ControllerFactory) -> None:
        self._factory = factory
        self._controllers: dict[str, StreamSessionController] = {}

    def __len__(self) -> int:
        return len(self._controllers)

    def __contains__(self, context_id: object) -> bool:
        return context_id in self._controllers

    def controller_for(self, context_id: str) -> StreamSessionController:
        """Return the controller for context_id, creating it if needed."""
        controller = self._controllers.get(context_id)
        if controller is None:
            controller = self._factory(context_id)
            self._controllers[context_id] = controller
            logger.debug("Created controller for context %s", context_id)
        return controller

    async def start(self, context_id: str, request: StreamRequest) -> SessionHandle:
        return await self.controller_for(context_id).start(request)

    async def stop(self, context_id: str) -> None:
        """Stop the live session of context_id, if any."""
        controller = self._controllers.get(context_id)
        if controller is not None:
            await controller.stop()

    async def stop_all(self) -> None:
        """Stop every live session concurrently."""
        controllers = list(self._controllers.values())
        if controllers:
            await asyncio.gather(*(controller.stop() for controller in controllers))

    def live_contexts(self) -> list[str]:
        """Return context ids whose current session is not terminal."""
        return [
            context_id
            for context_id, controller in self._controllers.items()
            if controller.current is not None and not controller.current.is_terminal
        ]

    def discard(self, context_id: str) -> StreamSessionController | None:
        """Forget the controller of context_id.

        Raises:
            RuntimeError: If the context still has a live session.
        """
        controller = self._controllers.get(context_id)
        if controller is None:
            return None
        if controller.current is not None and not controller.current.is_terminal:
            raise RuntimeError(
                f"Context '{context_id}' has a live session; stop it before discarding."
            )
        return self._controllers.pop(context_id)

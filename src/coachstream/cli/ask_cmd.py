"""coachstream ask -- stream one coaching reply to the terminal.

Loads coachstream.yaml, resolves the backend, runs a single session
through StreamSessionController, prints fragments as they arrive and
finishes with a summary line. Trace events go to the configured store.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console

from coachstream.adapters.base import Attachment, StreamRequest
from coachstream.adapters.registry import get_backend
from coachstream.execution.controller import SessionHandle, StreamSessionController
from coachstream.execution.session import SessionSnapshot, StreamState
from coachstream.models.config import build_trace_store, find_project_root, load_config
from coachstream.tracing.log import TraceEventLog

console = Console(stderr=True)

# Exit code mapping: terminal state -> exit code
EXIT_CODES: dict[StreamState, int] = {
    StreamState.done: 0,
    StreamState.error: 1,
    StreamState.aborted: 130,
}


def ask(
    text: str = typer.Argument(..., help="Message to send to the coach"),
    context: str = typer.Option("cli", "--context", "-c", help="Conversation context id"),
    adapter: Optional[str] = typer.Option(None, "--adapter", help="Override backend adapter"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Override model name"),
    user: str = typer.Option("cli-user", "--user", help="User id sent with the request"),
    attach: Optional[list[str]] = typer.Option(None, "--attach", help="Attachment URL (repeatable)"),
    simulate: bool = typer.Option(
        False, "--simulate", help="Use a blocking call with simulated streaming"
    ),
) -> None:
    """Send one message and stream the reply."""
    code = asyncio.run(
        _ask_async(
            text,
            context=context,
            adapter=adapter,
            model=model,
            user=user,
            attachments=attach or [],
            simulate=simulate,
        )
    )
    if code:
        raise typer.Exit(code=code)


async def _ask_async(
    text: str,
    *,
    context: str,
    adapter: str | None,
    model: str | None,
    user: str,
    attachments: list[str],
    simulate: bool,
) -> int:
    """Async implementation of the ask command. Returns the exit code."""
    project_root = find_project_root()
    config = load_config(project_root)

    overrides: dict[str, object] = {}
    if adapter is not None:
        overrides["adapter"] = adapter
    if model is not None:
        overrides["model"] = model
    if simulate:
        overrides["streaming"] = False
    settings = config.backend.model_copy(update=overrides)

    try:
        backend = get_backend(settings.adapter, settings.to_backend_config())
    except (ImportError, ValueError, TypeError) as exc:
        console.print(f"[bold red]Backend error:[/bold red] {exc}")
        return 1

    trace_log = TraceEventLog(build_trace_store(config.tracing, project_root))
    controller = StreamSessionController(
        backend,
        trace_log,
        context_id=context,
        retry_config=config.retry,
        timeouts=config.timeouts,
    )
    request = StreamRequest(
        user_id=user,
        text=text,
        attachments=[Attachment(url=url) for url in attachments],
    )

    try:
        handle = await controller.start(request)
        final = await _print_stream(handle, Console(soft_wrap=True))
    finally:
        await trace_log.close()

    _render_summary(final)
    return EXIT_CODES.get(final.state, 1)


async def _print_stream(handle: SessionHandle, out: Console) -> SessionSnapshot:
    """Print fragments as they are published; restart output on retries."""
    attempt = 0
    printed = 0
    async for snapshot in handle.updates():
        if snapshot.attempt_count != attempt:
            if printed:
                out.print()
                console.print("[dim]-- retrying --[/dim]")
            attempt = snapshot.attempt_count
            printed = 0
        for fragment in snapshot.fragments[printed:]:
            out.print(fragment, end="", markup=False, highlight=False)
        printed = snapshot.fragment_count
    if printed:
        out.print()
    return await handle.wait()


def _render_summary(snapshot: SessionSnapshot) -> None:
    metrics = snapshot.metrics
    if snapshot.state == StreamState.done:
        ttff = (
            f"{metrics.time_to_first_fragment_ms:.0f}ms"
            if metrics.time_to_first_fragment_ms is not None
            else "-"
        )
        duration = (
            f"{metrics.total_duration_ms:.0f}ms"
            if metrics.total_duration_ms is not None
            else "-"
        )
        console.print(
            f"[dim]attempts={snapshot.attempt_count} first fragment={ttff} "
            f"total={duration} fragments={metrics.fragment_count}[/dim]"
        )
    elif snapshot.state == StreamState.error and snapshot.last_error is not None:
        error = snapshot.last_error
        console.print(f"[bold red]{error.user_message}[/bold red]")
        console.print(
            f"[dim]{error.kind.value} after {snapshot.attempt_count} attempt(s): "
            f"{error.message}[/dim]"
        )
    else:
        console.print("[yellow]Stopped.[/yellow]")

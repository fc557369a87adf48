"""coachstream metrics -- aggregate recorded trace events.

Reads the trace store over a trailing window and renders
AggregatedMetrics as Rich tables, or as pure JSON with --json.
"""

from __future__ import annotations

import sys
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from coachstream.models.config import build_trace_store, find_project_root, load_config
from coachstream.telemetry.aggregation import AggregatedMetrics, BreakerStatus, TelemetryAggregator
from coachstream.tracing.events import now_ms
from coachstream.tracing.sinks import JsonlTraceStore

# Breaker styling: status -> Rich style
_BREAKER_STYLES: dict[BreakerStatus, str] = {
    BreakerStatus.closed: "bold green",
    BreakerStatus.half_open: "bold yellow",
    BreakerStatus.open: "bold red",
}


def _render_metrics(result: AggregatedMetrics, hours: float, console: Console) -> None:
    """Render aggregated metrics as a key/value table."""
    latency = result.latency
    cost = result.cost
    reliability = result.reliability
    quality = result.quality

    console.print()
    console.print(
        f"[bold]Window:[/bold] last {hours:g}h  "
        f"[bold]Events:[/bold] {result.event_count}  "
        f"[bold]Requests:[/bold] {reliability.request_count}"
    )

    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")

    table.add_row(
        "First fragment",
        f"avg={latency.ttff_avg_ms:.0f}ms p95={latency.ttff_p95_ms:.0f}ms",
    )
    table.add_row(
        "Duration",
        f"avg={latency.duration_avg_ms:.0f}ms p95={latency.duration_p95_ms:.0f}ms",
    )
    table.add_row(
        "Cost",
        f"total=${cost.total_usd:.4f} avg=${cost.per_request_usd:.4f}/request"
        + (f" ({cost.unpriced_requests} unpriced)" if cost.unpriced_requests else ""),
    )
    table.add_row(
        "Tokens",
        f"prompt={cost.prompt_tokens} completion={cost.completion_tokens} "
        f"total={cost.total_tokens}",
    )
    table.add_row("Error rate", f"{reliability.error_rate:.1%}")
    if reliability.error_counts:
        breakdown = ", ".join(
            f"{kind}={count}" for kind, count in sorted(reliability.error_counts.items())
        )
        table.add_row("Errors by kind", breakdown)
    table.add_row("Retry rate", f"{reliability.retry_rate:.1%}")
    table.add_row("Cache hit rate", f"{reliability.cache_hit_rate:.1%}")
    table.add_row("RAG hit rate", f"{reliability.rag_hit_rate:.1%}")
    style = _BREAKER_STYLES[reliability.circuit_breaker]
    table.add_row(
        "Circuit breaker",
        f"[{style}]{reliability.circuit_breaker.value}[/{style}]",
    )
    table.add_row("Sentiment", f"avg={quality.sentiment_avg:.2f}")
    table.add_row("PII detections", str(quality.pii_detections))
    console.print(table)

    if quality.persona_counts:
        persona_table = Table(box=box.ROUNDED, title="Personas")
        persona_table.add_column("Persona")
        persona_table.add_column("Requests", justify="right")
        for persona, count in sorted(
            quality.persona_counts.items(), key=lambda item: (-item[1], item[0])
        ):
            persona_table.add_row(persona, str(count))
        console.print(persona_table)
    console.print()


def metrics(
    hours: Optional[float] = typer.Option(
        None, "--hours", help="Trailing window in hours (default from config)"
    ),
    format_json: bool = typer.Option(False, "--json", help="Output pure JSON to stdout"),
) -> None:
    """Aggregate recorded trace events into health metrics."""
    console = Console()

    project_root = find_project_root()
    config = load_config(project_root)
    store = build_trace_store(config.tracing, project_root)
    if not isinstance(store, JsonlTraceStore):
        console.print(
            "[dim]Tracing sink is 'memory'; no persisted events to aggregate.[/dim]"
        )
        raise typer.Exit(code=0)

    window_hours = hours if hours is not None else config.telemetry.window_hours
    if window_hours <= 0:
        console.print("[bold red]--hours must be positive.[/bold red]")
        raise typer.Exit(code=1)

    since_ms = now_ms() - int(window_hours * 3_600_000)
    result = TelemetryAggregator(store).compute_metrics(since_ms)

    if format_json:
        sys.stdout.write(result.model_dump_json(indent=2))
        sys.stdout.write("\n")
        return

    _render_metrics(result, window_hours, console)

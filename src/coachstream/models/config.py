"""Pipeline configuration model for coachstream.

Captures coachstream.yaml fields with sensible defaults for the
backend, retry policy, per-state timeouts, trace storage and the
telemetry window.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from coachstream.adapters.base import BackendConfig
from coachstream.execution.retry import RetryConfig
from coachstream.execution.timeouts import StageTimeouts
from coachstream.tracing.sinks import InMemoryTraceStore, JsonlTraceStore

CONFIG_FILENAME = "coachstream.yaml"
STORAGE_DIRNAME = ".coachstream"


class BackendSettings(BaseModel):
    """Which backend answers coaching turns, and how it is called."""

    model_config = {"extra": "forbid"}

    adapter: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    system_prompt: str | None = None
    streaming: bool = True
    extras: dict[str, object] = Field(default_factory=dict)

    def to_backend_config(self) -> BackendConfig:
        return BackendConfig(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=self.system_prompt,
            streaming=self.streaming,
            extras=dict(self.extras),
        )


class TracingConfig(BaseModel):
    """Where trace events are written.

    A relative path is resolved against the project root.
    """

    model_config = {"extra": "forbid"}

    sink: Literal["memory", "jsonl"] = "jsonl"
    path: str = f"{STORAGE_DIRNAME}/traces.jsonl"


class TelemetryConfig(BaseModel):
    """Defaults for metrics aggregation."""

    model_config = {"extra": "forbid"}

    window_hours: float = Field(default=24.0, gt=0)


class PipelineConfig(BaseModel):
    """Project-level configuration loaded from coachstream.yaml."""

    model_config = {"extra": "forbid"}

    backend: BackendSettings = Field(default_factory=BackendSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeouts: StageTimeouts = Field(default_factory=StageTimeouts)
    tracing: TracingConfig = Field(default_factory=TracingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from start (default: cwd) looking for coachstream.yaml or .coachstream/.

    Args:
        start: Starting path (file or directory). Defaults to cwd.

    Returns:
        Path to the project root directory, or cwd if neither is found.
    """
    current = (start or Path.cwd()).resolve()
    if current.is_file():
        current = current.parent
    while current != current.parent:
        if (current / CONFIG_FILENAME).exists() or (current / STORAGE_DIRNAME).exists():
            return current
        current = current.parent
    return Path.cwd()


def load_config(project_root: Path | None = None) -> PipelineConfig:
    """Load PipelineConfig from coachstream.yaml. Returns defaults if not found.

    Args:
        project_root: Path to the project root directory. If None,
            uses find_project_root() to locate it.

    Returns:
        Validated PipelineConfig instance.
    """
    if project_root is None:
        project_root = find_project_root()
    config_path = project_root / CONFIG_FILENAME
    if not config_path.exists():
        return PipelineConfig()
    import yaml

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if raw is None:
        return PipelineConfig()
    return PipelineConfig.model_validate(raw)


def build_trace_store(
    config: TracingConfig,
    project_root: Path,
) -> InMemoryTraceStore | JsonlTraceStore:
    """Create the trace store selected by config."""
    if config.sink == "memory":
        return InMemoryTraceStore()
    path = Path(config.path)
    if not path.is_absolute():
        path = project_root / path
    return JsonlTraceStore(path)

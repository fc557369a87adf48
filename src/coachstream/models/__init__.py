"""coachstream configuration models."""

from coachstream.models.config import (
    BackendSettings,
    PipelineConfig,
    TelemetryConfig,
    TracingConfig,
    build_trace_store,
    find_project_root,
    load_config,
)

__all__ = [
    "BackendSettings",
    "PipelineConfig",
    "TelemetryConfig",
    "TracingConfig",
    "build_trace_store",
    "find_project_root",
    "load_config",
]

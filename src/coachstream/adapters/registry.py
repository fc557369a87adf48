"""Backend registry for resolving backend names to instances.

Supports both builtin backend names (e.g., "openai", "anthropic")
and custom dotted-path imports (e.g., "my.module.MyBackend"). Custom
classes may subclass either BaseBackend or BlockingBackend; blocking
ones are wrapped in SimulatedStreamBackend.
"""

from __future__ import annotations

import importlib

from coachstream.adapters.base import BackendConfig, BaseBackend
from coachstream.adapters.simulated import BlockingBackend, SimulatedStreamBackend

# Mapping of builtin backend short names to (streaming, blocking) class paths.
# These backends are lazily imported -- the provider SDK must be installed.
BUILTIN_BACKENDS: dict[str, tuple[str | None, str | None]] = {
    "openai": (
        "coachstream.adapters.openai_adapter.OpenAIBackend",
        "coachstream.adapters.openai_adapter.OpenAIBlockingBackend",
    ),
    "anthropic": ("coachstream.adapters.anthropic_adapter.AnthropicBackend", None),
    "http": (None, "coachstream.adapters.http_adapter.CoachEndpointBackend"),
}

# Maps builtin names to their pip install extras for helpful error messages.
_INSTALL_HINTS: dict[str, str] = {
    "openai": "pip install coachstream[openai]",
    "anthropic": "pip install coachstream[anthropic]",
    "http": "pip install coachstream[http]",
}


def _import_class(dotted_path: str, name: str) -> type:
    module_path, _, class_name = dotted_path.rpartition(".")
    if not module_path or not class_name:
        raise ValueError(
            f"Invalid backend path '{dotted_path}'. "
            f"Expected format: 'module.path.ClassName'."
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        # Provide helpful install hint for builtin backends
        if name in _INSTALL_HINTS:
            raise ImportError(
                f"Backend '{name}' requires the {name} package. "
                f"Install it: {_INSTALL_HINTS[name]}"
            ) from exc
        raise

    try:
        cls = getattr(module, class_name)
    except AttributeError:
        raise ImportError(
            f"Module '{module_path}' has no attribute '{class_name}'."
        ) from None

    if not isinstance(cls, type):
        raise TypeError(f"'{dotted_path}' is not a class.")
    return cls


def get_backend(name: str, config: BackendConfig) -> BaseBackend:
    """Resolve a backend by name or dotted path and return an instance.

    For builtin names, config.streaming selects the streaming class or
    the blocking class behind simulated streaming. Backends with only one
    of the two always use it.

    Args:
        name: A builtin backend name or a fully-qualified dotted path
              to a backend class taking a BackendConfig.
        config: Configuration passed to the backend constructor.

    Returns:
        A BaseBackend instance.

    Raises:
        ValueError: If the name is not a builtin and has no dots (unknown).
        ImportError: If the module cannot be imported (e.g., missing SDK).
        TypeError: If the resolved class is not a backend.
    """
    if name in BUILTIN_BACKENDS:
        streaming_path, blocking_path = BUILTIN_BACKENDS[name]
        if streaming_path is not None and (config.streaming or blocking_path is None):
            dotted_path = streaming_path
        else:
            dotted_path = blocking_path
    elif "." in name:
        dotted_path = name
    else:
        available = ", ".join(sorted(BUILTIN_BACKENDS.keys()))
        raise ValueError(
            f"Unknown backend '{name}'. "
            f"Available builtin backends: {available}. "
            f"For custom backends, provide the full dotted path "
            f"(e.g., 'my.module.MyBackend')."
        )

    cls = _import_class(dotted_path, name)

    if issubclass(cls, BaseBackend):
        return cls(config)
    if issubclass(cls, BlockingBackend):
        return SimulatedStreamBackend(cls(config))

    raise TypeError(
        f"'{dotted_path}' is not a subclass of BaseBackend or BlockingBackend. "
        f"Custom backends must inherit from coachstream.adapters.base.BaseBackend."
    )

from __future__ import annotations

from typing import Any, Callable, Optional, Tuple


class NullContainer:
    """Stand-in for layout blocks missing from older Gradio releases."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> "NullContainer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def component_factory(module: Any, name: str, fallback: Optional[Callable[..., Any]]) -> Optional[Callable[..., Any]]:
    """Look up a Gradio component class by name, using ``fallback`` when absent."""

    factory = getattr(module, name, None)
    return factory if callable(factory) else fallback


def safe_component(
    factory: Callable[..., Any],
    *args: Any,
    optional_keys: Tuple[str, ...] = ("type",),
    **kwargs: Any,
) -> Any:
    """Instantiate a Gradio component, dropping optional kwargs it rejects."""

    attempt_kwargs = dict(kwargs)
    while True:
        try:
            return factory(*args, **attempt_kwargs)
        except TypeError as exc:
            message = str(exc)
            rejected = next(
                (key for key in optional_keys if key in attempt_kwargs and f"'{key}'" in message),
                None,
            )
            if rejected is None:
                raise
            attempt_kwargs.pop(rejected)


__all__ = ["NullContainer", "component_factory", "safe_component"]

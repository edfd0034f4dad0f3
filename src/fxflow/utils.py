from __future__ import annotations

import inspect
import re
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .ledger import Ledger
    from .models import State, Step

_INDEX_RE = re.compile(r"^-?\d+$")


class _Missing:
    """Sentinel for an absent value (distinct from an explicit ``None``)."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


async def run_step(step: Step, state: State, ledger: Ledger) -> State:
    """Invoke a step and await its result when the step is asynchronous."""
    result = step(state, ledger)
    if inspect.isawaitable(result):
        return await result
    return result


async def resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def ensure_callable(value: Any, label: str) -> None:
    if not callable(value):
        raise TypeError(f"{label} must be callable, got {type(value).__name__}")


def ensure_steps(steps: Any) -> list[Any]:
    """Validate a list of steps up front so malformed workflows fail at build time."""
    if isinstance(steps, str | bytes) or not isinstance(steps, Sequence):
        raise TypeError(f"Steps must be a list, got {type(steps).__name__}")
    for index, candidate in enumerate(steps):
        if not callable(candidate):
            raise TypeError(f"Step at index {index} is not callable")
    return list(steps)


def parse_path(path: str | Sequence[str | int]) -> tuple[str | int, ...]:
    """Split a dotted path into segments; all-digit segments become integers.

    ``"items.0.name"`` -> ``("items", 0, "name")``. A sequence of segments is
    returned as a tuple unchanged.
    """
    if isinstance(path, str):
        if not path:
            raise ValueError("path must be non-empty")
        return tuple(int(part) if _INDEX_RE.match(part) else part for part in path.split("."))
    segments = tuple(path)
    if not segments:
        raise ValueError("path must contain at least one segment")
    return segments


def format_path(segments: Sequence[str | int]) -> str:
    return ".".join(str(segment) for segment in segments)

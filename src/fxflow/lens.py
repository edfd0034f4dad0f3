"""Path lenses and pure state operations over nested, immutable state.

A lens never mutates the containers it walks through: ``set`` rebuilds every
ancestor from the root down to the leaf and leaves siblings shared.
"""

from __future__ import annotations

import logging
import uuid
import warnings
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from .canonical import state_hash
from .errors import MutationWarning
from .utils import MISSING, ensure_callable, format_path, parse_path, run_step

if TYPE_CHECKING:
    from .ledger import Ledger
    from .models import State, Step

logger = logging.getLogger(__name__)

Segment = str | int
Transform = Callable[[Any], Any]


def _is_list(value: Any) -> bool:
    return isinstance(value, list | tuple)


def _mapping_key(container: Mapping[Any, Any], segment: Segment) -> Any:
    if segment in container:
        return segment
    if isinstance(segment, int):
        return str(segment)
    return segment


def _child(container: Any, segment: Segment) -> Any:
    if isinstance(container, Mapping):
        return container.get(_mapping_key(container, segment), MISSING)
    if _is_list(container) and isinstance(segment, int):
        if -len(container) <= segment < len(container):
            return container[segment]
        return MISSING
    return MISSING


def _assign(container: Any, segment: Segment, value: Any) -> Any:
    if isinstance(container, Mapping):
        rebuilt = dict(container)
        rebuilt[_mapping_key(container, segment)] = value
        return rebuilt
    if _is_list(container) and isinstance(segment, int):
        rebuilt_list = list(container)
        if segment < -len(rebuilt_list):
            raise IndexError(f"list index {segment} out of range for length {len(rebuilt_list)}")
        if segment >= len(rebuilt_list):
            rebuilt_list.extend([None] * (segment - len(rebuilt_list) + 1))
        rebuilt_list[segment] = value
        return tuple(rebuilt_list) if isinstance(container, tuple) else rebuilt_list
    # Absent or scalar intermediates are replaced with a fresh object.
    return {segment if isinstance(segment, str) else str(segment): value}


def _get_in(state: Any, segments: Sequence[Segment]) -> Any:
    current = state
    for segment in segments:
        current = _child(current, segment)
        if current is MISSING:
            return MISSING
    return current


def _set_in(state: Any, segments: Sequence[Segment], value: Any) -> Any:
    head, *rest = segments
    if not rest:
        return _assign(state, head, value)
    child = _child(state, head)
    return _assign(state, head, _set_in(None if child is MISSING else child, rest, value))


@dataclass(frozen=True)
class Lens:
    """Reusable get/set pair focused on one path into nested state."""

    segments: tuple[Segment, ...]

    @property
    def path(self) -> str:
        return format_path(self.segments)

    def get(self, state: State, default: Any = None) -> Any:
        value = _get_in(state, self.segments)
        return default if value is MISSING else value

    def set(self, value: Any, state: State) -> State:
        """Return a copy of ``state`` with ``value`` at this path.

        Writing ``None`` or ``MISSING`` to an absent path leaves the state
        unchanged, so ``set(get(s), s) == s`` holds for every path.

        Raises:
            IndexError: If a negative index reaches before the start of a list.
        """
        if (value is None or value is MISSING) and _get_in(state, self.segments) is MISSING:
            return state
        try:
            return _set_in(state, self.segments, value)
        except IndexError as exc:
            raise IndexError(f"Cannot set at path: {self.path}: {exc}") from exc

    def update(self, fn: Transform, state: State) -> State:
        return self.set(fn(self.get(state)), state)


def path_lens(*segments: Segment) -> Lens:
    """Build a lens from path segments: ``path_lens("user", "tags", 0)``.

    A single dotted string is also accepted: ``path_lens("user.tags.0")``.
    """
    if len(segments) == 1 and isinstance(segments[0], str) and "." in segments[0]:
        return Lens(parse_path(segments[0]))
    return Lens(parse_path(segments))


def focus(lens: Lens, inner: Step) -> Step:
    """Lift a step over the lens slice into a step over the whole state.

    The slice is written back and a ``lens`` event recorded only when the
    inner step returns a different object; returning the same slice leaves the
    state untouched and records nothing. In development mode an in-place
    mutation of the slice is reported as a ``MutationWarning``.
    """
    ensure_callable(inner, "Focused step")

    async def _focused(state: State, ledger: Ledger) -> State:
        part = lens.get(state)
        before = state_hash(part) if ledger.dev_mode else None
        result = await run_step(inner, part, ledger)
        if before is not None and state_hash(part) != before:
            logger.warning("Step focused on '%s' mutated its input slice in place", lens.path)
            warnings.warn(
                f"Slice at path '{lens.path}' was mutated in place; return a new value instead",
                MutationWarning,
                stacklevel=2,
            )
        if result is part:
            return state
        updated = lens.set(result, state)
        await ledger.emit("lens", state, updated, meta={"path": lens.path})
        return updated

    return _focused


# ---------------------------------------------------------------------------
# Pure state operations
# ---------------------------------------------------------------------------


def merge(updates: Mapping[str, Any]) -> Transform:
    """Shallow top-level update; always returns a new mapping."""

    def _merge(state: State) -> State:
        return {**state, **updates}

    return _merge


def get_at(path: str | Sequence[Segment]) -> Transform:
    lens = Lens(parse_path(path))
    return lens.get


def set_at(path: str | Sequence[Segment], value: Any) -> Transform:
    lens = Lens(parse_path(path))

    def _set(state: State) -> State:
        return lens.set(value, state)

    return _set


def update_at(path: str | Sequence[Segment], updater: Transform) -> Transform:
    ensure_callable(updater, "Updater")
    lens = Lens(parse_path(path))

    def _update(state: State) -> State:
        return lens.update(updater, state)

    return _update


def push(path: str | Sequence[Segment], item: Any) -> Transform:
    """Append ``item`` to the list at ``path``; an absent path starts a new list."""
    lens = Lens(parse_path(path))

    def _push(state: State) -> State:
        current = lens.get(state, [])
        if not isinstance(current, list):
            raise TypeError(f"Cannot push to non-array at path: {lens.path}")
        return lens.set([*current, item], state)

    return _push


def remove(path: str | Sequence[Segment], target: int | Callable[[Any, int], bool]) -> Transform:
    """Remove by index, or every item for which ``target(item, index)`` is true."""
    lens = Lens(parse_path(path))

    def _remove(state: State) -> State:
        current = lens.get(state, [])
        if not isinstance(current, list):
            raise TypeError(f"Cannot remove from non-array at path: {lens.path}")
        if isinstance(target, int):
            # Out-of-range indices leave the list unchanged.
            drop = target + len(current) if target < 0 else target
            kept = [item for index, item in enumerate(current) if index != drop]
        else:
            kept = [item for index, item in enumerate(current) if not target(item, index)]
        return lens.set(kept, state)

    return _remove


def add_memory(kind: str, content: str, metadata: Mapping[str, Any] | None = None) -> Transform:
    """Append a memory entry (``id``, ``type``, ``content``, ``timestamp``) to ``state["memory"]``."""

    def _add(state: State) -> State:
        entry: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "type": kind,
            "content": content,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if metadata is not None:
            entry["metadata"] = dict(metadata)
        return push("memory", entry)(state)

    return _add

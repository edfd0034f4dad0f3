"""Combinators over steps of shape ``(state, ledger) -> state``.

Every constructor validates its arguments immediately, so a malformed
workflow fails when it is built rather than when it runs.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from .errors import AllStepsFailedError, ParallelExecutionError, StepValidationError
from .utils import ensure_callable, ensure_steps, resolve, run_step

if TYPE_CHECKING:
    from .ledger import Ledger
    from .models import State, Step

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]
MergeFn = Callable[[list[Any], Any], Any]


def action(name: str, fn: Callable[[State], State | Awaitable[State]], *, args: Sequence[Any] = ()) -> Step:
    """Lift a plain state transform into a step that records an event ``name``.

    ``args`` are the call parameters the transform was built from; they are
    stored on the event for auditing.
    """
    if not name or not name.strip():
        raise ValueError("action name must be non-empty")
    ensure_callable(fn, f"Action '{name}'")
    recorded = tuple(args)

    async def _action(state: State, ledger: Ledger) -> State:
        result = await resolve(fn(state))
        await ledger.emit(name, state, result, args=recorded)
        return result

    return _action


step = action


def identity() -> Step:
    async def _identity(state: State, ledger: Ledger) -> State:
        return state

    return _identity


def sequence(steps: Sequence[Step]) -> Step:
    """Thread state through ``steps`` left to right."""
    ordered = ensure_steps(steps)
    if not ordered:
        return identity()

    async def _sequence(state: State, ledger: Ledger) -> State:
        current = state
        for item in ordered:
            current = await run_step(item, current, ledger)
        return current

    return _sequence


def _require_mappings(policy: str, results: list[Any], original: Any) -> None:
    for value in (original, *results):
        if not isinstance(value, Mapping):
            raise TypeError(f"{policy} requires mapping states, got {type(value).__name__}")


def merge_default(results: list[Any], original: Any) -> Any:
    _require_mappings("merge_default", results, original)
    merged = dict(original)
    for result in results:
        merged.update(result)
    return merged


def merge_first(results: list[Any], original: Any) -> Any:
    return results[0] if results else original


def merge_last(results: list[Any], original: Any) -> Any:
    return results[-1] if results else original


def merge_collect(results: list[Any], original: Any) -> Any:
    _require_mappings("merge_collect", [], original)
    return {**original, "parallel_results": list(results)}


def merge_selective(fields: Iterable[str]) -> MergeFn:
    selected = tuple(fields)

    def _merge(results: list[Any], original: Any) -> Any:
        _require_mappings("merge_selective", results, original)
        merged = dict(original)
        for result in results:
            for field in selected:
                if field in result:
                    merged[field] = result[field]
        return merged

    return _merge


def parallel(steps: Sequence[Step], merge: MergeFn | None = None) -> Step:
    """Run ``steps`` concurrently on independent copies of the same input.

    If any branch raises, ``ParallelExecutionError`` reports how many failed
    and every partial result is discarded. Otherwise the results are combined
    with ``merge(results, original)``; the default is last-writer-wins over
    top-level keys.
    """
    branches = ensure_steps(steps)
    if merge is not None:
        ensure_callable(merge, "Merge function")
    merge_fn = merge if merge is not None else merge_default
    if not branches:
        return identity()

    async def _parallel(state: State, ledger: Ledger) -> State:
        outcomes = await asyncio.gather(
            *(run_step(branch, copy.deepcopy(state), ledger) for branch in branches),
            return_exceptions=True,
        )
        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if failures:
            logger.debug("%d of %d parallel steps failed", len(failures), len(branches))
            raise ParallelExecutionError(failures) from failures[0]
        return merge_fn(list(outcomes), state)

    return _parallel


def loop_while(predicate: Predicate, body: Step) -> Step:
    """Apply ``body`` while ``predicate(state)`` holds.

    No iteration cap is imposed; encode one in state if needed.
    """
    ensure_callable(predicate, "Predicate")
    ensure_callable(body, "Loop body")

    async def _loop(state: State, ledger: Ledger) -> State:
        current = state
        while predicate(current):
            current = await run_step(body, current, ledger)
        return current

    return _loop


def when(predicate: Predicate, then_step: Step, else_step: Step | None = None) -> Step:
    ensure_callable(predicate, "Predicate")
    ensure_callable(then_step, "Then step")
    if else_step is not None:
        ensure_callable(else_step, "Else step")

    async def _when(state: State, ledger: Ledger) -> State:
        if predicate(state):
            return await run_step(then_step, state, ledger)
        if else_step is not None:
            return await run_step(else_step, state, ledger)
        return state

    return _when


def tap(effect: Callable[[State], Any]) -> Step:
    """Run a side effect and pass the state through unchanged."""
    ensure_callable(effect, "Effect")

    async def _tap(state: State, ledger: Ledger) -> State:
        await resolve(effect(state))
        return state

    return _tap


def guard(predicate: Predicate, message: str = "Validation failed") -> Step:
    ensure_callable(predicate, "Predicate")

    async def _guard(state: State, ledger: Ledger) -> State:
        if not predicate(state):
            raise StepValidationError(message)
        return state

    return _guard


def delay(seconds: float) -> Step:
    if seconds < 0:
        raise ValueError(f"seconds must be >= 0, got: {seconds}")

    async def _delay(state: State, ledger: Ledger) -> State:
        await asyncio.sleep(seconds)
        return state

    return _delay


def repeat(count: int, body: Step) -> Step:
    if count < 0:
        raise ValueError(f"count must be >= 0, got: {count}")
    ensure_callable(body, "Repeated step")

    async def _repeat(state: State, ledger: Ledger) -> State:
        current = state
        for _ in range(count):
            current = await run_step(body, current, ledger)
        return current

    return _repeat


def try_in_order(steps: Sequence[Step]) -> Step:
    """Return the result of the first step that succeeds."""
    candidates = ensure_steps(steps)

    async def _first_success(state: State, ledger: Ledger) -> State:
        errors: list[Exception] = []
        for candidate in candidates:
            try:
                return await run_step(candidate, state, ledger)
            except Exception as exc:
                logger.debug("Alternative step failed: %s", exc)
                errors.append(exc)
        raise AllStepsFailedError(errors)

    return _first_success

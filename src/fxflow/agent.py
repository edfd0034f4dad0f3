from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .engine import Engine, default_engine
from .ledger import Ledger
from .models import State, Step
from .utils import ensure_callable, run_step

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    state: Any
    ledger: Ledger


def agent(name: str, workflow: Step) -> Step:
    """Bracket ``workflow`` with ``start:<name>`` and ``stop:<name>`` events.

    Purely an audit marker; the workflow's behavior is unchanged. No stop
    event is recorded when the workflow raises.
    """
    if not name or not name.strip():
        raise ValueError("agent name must be non-empty")
    ensure_callable(workflow, f"Workflow of agent '{name}'")

    async def _agent(state: State, ledger: Ledger) -> State:
        await ledger.emit(f"start:{name}", state, state)
        result = await run_step(workflow, state, ledger)
        await ledger.emit(f"stop:{name}", state, result)
        return result

    return _agent


async def spawn(workflow: Step, seed: State, *, engine: Engine | None = None) -> RunResult:
    """Run ``workflow`` to completion on a fresh ledger, then flush the sink.

    The sink is flushed even when the workflow fails; the failure still
    propagates.
    """
    ensure_callable(workflow, "Workflow")
    active = engine if engine is not None else default_engine()
    ledger = active.new_ledger()
    try:
        state = await run_step(workflow, seed, ledger)
    finally:
        await ledger.sink.flush()
    logger.debug("Run finished with %d events", len(ledger))
    return RunResult(state=state, ledger=ledger)

from importlib.metadata import version

from .agent import RunResult, agent, spawn
from .canonical import EMPTY_HASH, state_hash, to_canonical_json
from .composition import (
    action,
    delay,
    guard,
    identity,
    loop_while,
    merge_collect,
    merge_default,
    merge_first,
    merge_last,
    merge_selective,
    parallel,
    repeat,
    sequence,
    step,
    tap,
    try_in_order,
    when,
)
from .concurrency import ConcurrencyLimiter, concurrency
from .engine import Engine, call_tool, default_engine, register_tool, resilient_action, set_default_engine, wrap
from .errors import (
    AllStepsFailedError,
    FxError,
    MutationWarning,
    ParallelExecutionError,
    StepTimeoutError,
    StepValidationError,
    ToolValidationError,
    UnregisteredToolError,
)
from .ledger import EventSink, JsonlFileSink, Ledger, MemorySink, NullSink, read_events
from .lens import Lens, add_memory, focus, get_at, merge, path_lens, push, remove, set_at, update_at
from .models import Event
from .resilience import RateLimiter, TTLCache, retry, timeout
from .settings import EngineSettings
from .tools import RegisteredTool, ToolRegistry


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AllStepsFailedError",
    "ConcurrencyLimiter",
    "EMPTY_HASH",
    "Engine",
    "EngineSettings",
    "Event",
    "EventSink",
    "FxError",
    "JsonlFileSink",
    "Ledger",
    "Lens",
    "MemorySink",
    "MutationWarning",
    "NullSink",
    "ParallelExecutionError",
    "RateLimiter",
    "RegisteredTool",
    "RunResult",
    "StepTimeoutError",
    "StepValidationError",
    "TTLCache",
    "ToolRegistry",
    "ToolValidationError",
    "UnregisteredToolError",
    "action",
    "add_memory",
    "agent",
    "call_tool",
    "concurrency",
    "default_engine",
    "delay",
    "focus",
    "get_at",
    "get_version",
    "guard",
    "identity",
    "loop_while",
    "merge",
    "merge_collect",
    "merge_default",
    "merge_first",
    "merge_last",
    "merge_selective",
    "parallel",
    "path_lens",
    "push",
    "read_events",
    "register_tool",
    "remove",
    "repeat",
    "resilient_action",
    "retry",
    "sequence",
    "set_at",
    "set_default_engine",
    "spawn",
    "state_hash",
    "step",
    "tap",
    "timeout",
    "to_canonical_json",
    "try_in_order",
    "update_at",
    "when",
    "wrap",
]

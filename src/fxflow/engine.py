from __future__ import annotations

import logging
import time
from collections.abc import Callable, Hashable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from . import composition, resilience
from .canonical import state_hash
from .ledger import EventSink, JsonlFileSink, Ledger, NullSink
from .models import Observer, State, Step
from .settings import EngineSettings
from .tools import RegisteredTool, ToolImpl, ToolRegistry, tool_step
from .utils import ensure_callable

logger = logging.getLogger(__name__)


class Engine:
    """Explicit context for one logical application.

    Bundles the result cache, the per-operation token buckets, the tool
    registry and the ledger sink, so separate engines never share cache,
    rate-limit or tool state.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        sink: EventSink | None = None,
        observer: Observer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings if settings is not None else EngineSettings()
        self.cache = resilience.TTLCache(
            self.settings.cache_ttl_seconds,
            max_entries=self.settings.cache_max_entries,
            clock=clock,
        )
        self.limiter = resilience.RateLimiter(self.settings.rate_limit_qps, clock=clock)
        self.tools = ToolRegistry()
        self.observer = observer
        if sink is not None:
            self.sink: EventSink = sink
        elif self.settings.ledger_file is not None:
            self.sink = JsonlFileSink(self.settings.ledger_file)
        else:
            self.sink = NullSink()

    @classmethod
    def from_env(cls, env_file: Path | None = None, **kwargs: Any) -> "Engine":
        return cls(EngineSettings.from_env(env_file), **kwargs)

    def new_ledger(self) -> Ledger:
        return Ledger(self.sink, self.observer, dev_mode=self.settings.dev_mode)

    def wrap(self, name: str, step: Step, *, key: Callable[[State], Hashable] | None = None) -> Step:
        """Decorate ``step`` with this engine's cache, rate limiter and retry policy."""
        return resilience.wrap(
            name,
            step,
            cache=self.cache,
            limiter=self.limiter,
            attempts=self.settings.retry_attempts,
            delay=self.settings.retry_delay_seconds,
            backoff=self.settings.retry_backoff,
            key=key,
        )

    def action(self, name: str, impl: Callable[..., Callable[[State], Any]]) -> Callable[..., Step]:
        """Build a parameterized action that runs through this engine's ``wrap``.

        ``impl(*params)`` returns the state transform. Each call of the result
        binds ``params``, records them as the event args and folds them into
        the cache key, so only identical params on an identical state hit the
        cache.
        """
        ensure_callable(impl, f"Action '{name}'")

        def _bind(*params: Any) -> Step:
            args_hash = state_hash(list(params))

            def _key(state: State) -> tuple[str, str]:
                return (state_hash(state), args_hash)

            return self.wrap(name, composition.action(name, impl(*params), args=params), key=_key)

        return _bind

    def register_tool(
        self,
        name: str,
        schema: type[BaseModel],
        impl: ToolImpl,
        *,
        description: str = "",
    ) -> RegisteredTool:
        return self.tools.register(name, schema, impl, description=description)

    def call_tool(self, name: str, params: Mapping[str, Any] | BaseModel | None = None) -> Step:
        """Validate ``params`` and return the wrapped step for tool ``name``.

        Raises:
            UnregisteredToolError: If no tool is registered under ``name``.
            ToolValidationError: If ``params`` fail the tool schema.
        """
        tool = self.tools.get(name)
        validated = tool.validate(params)
        args_hash = state_hash(validated.model_dump(mode="json"))

        def _key(state: State) -> tuple[str, str]:
            return (state_hash(state), args_hash)

        return self.wrap(f"tool:{name}", tool_step(tool, validated), key=_key)

    def reset(self) -> None:
        """Forget cached results, token buckets and registered tools."""
        self.cache.clear()
        self.limiter.clear()
        self.tools.clear()

    async def close(self) -> None:
        await self.sink.close()


_default_engine: Engine | None = None


def default_engine() -> Engine:
    """Return the process-wide engine, creating it from the environment on first use."""
    global _default_engine
    if _default_engine is None:
        _default_engine = Engine.from_env()
        logger.debug("Created default engine")
    return _default_engine


def set_default_engine(engine: Engine | None) -> None:
    global _default_engine
    _default_engine = engine


def wrap(name: str, step: Step) -> Step:
    return default_engine().wrap(name, step)


def resilient_action(name: str, impl: Callable[..., Callable[[State], Any]]) -> Callable[..., Step]:
    return default_engine().action(name, impl)


def register_tool(name: str, schema: type[BaseModel], impl: ToolImpl, *, description: str = "") -> RegisteredTool:
    return default_engine().register_tool(name, schema, impl, description=description)


def call_tool(name: str, params: Mapping[str, Any] | BaseModel | None = None) -> Step:
    return default_engine().call_tool(name, params)

from __future__ import annotations

import copy
import logging
import warnings
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ValidationError

from .canonical import state_hash
from .errors import MutationWarning, ToolValidationError, UnregisteredToolError
from .models import Event
from .utils import ensure_callable, resolve

if TYPE_CHECKING:
    from .ledger import Ledger
    from .models import State, Step

logger = logging.getLogger(__name__)

ToolImpl = Callable[[Any, Any], Any | Awaitable[Any]]


@dataclass(frozen=True)
class RegisteredTool:
    """A schema-validated, side-effecting operation exposed to workflows."""

    name: str
    schema: type[BaseModel]
    impl: ToolImpl
    description: str = ""

    def validate(self, params: Mapping[str, Any] | BaseModel | None) -> BaseModel:
        """Validate ``params`` against the tool schema.

        Raises:
            ToolValidationError: If the parameters do not satisfy the schema.
        """
        if isinstance(params, self.schema):
            return params
        payload: Any = params.model_dump() if isinstance(params, BaseModel) else (params or {})
        try:
            return self.schema.model_validate(payload)
        except ValidationError as exc:
            raise ToolValidationError(self.name, str(exc)) from exc


class ToolRegistry:
    """Name-keyed, write-once registry of tools.

    Registering a name twice keeps the first registration and logs a warning.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        schema: type[BaseModel],
        impl: ToolImpl,
        *,
        description: str = "",
    ) -> RegisteredTool:
        if not name or not name.strip():
            raise ValueError("tool name must be non-empty")
        if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
            raise TypeError(f"schema for tool '{name}' must be a pydantic model class")
        ensure_callable(impl, f"Implementation of tool '{name}'")

        existing = self._tools.get(name)
        if existing is not None:
            logger.warning("Tool '%s' is already registered; keeping the original registration", name)
            return existing

        tool = RegisteredTool(name=name, schema=schema, impl=impl, description=description)
        self._tools[name] = tool
        logger.debug("Registered tool '%s'", name)
        return tool

    def get(self, name: str) -> RegisteredTool:
        tool = self._tools.get(name)
        if tool is None:
            raise UnregisteredToolError(name)
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools)

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def tool_specs(self) -> list[dict[str, Any]]:
        """Describe every tool as an OpenAI-style function-calling spec.

        This is how the registry is surfaced to an LLM collaborator that picks
        which tool to call and with which parameters.
        """
        specs: list[dict[str, Any]] = []
        for name in self.names():
            tool = self._tools[name]
            spec = convert_to_openai_tool(tool.schema)
            spec["function"]["name"] = name
            if tool.description:
                spec["function"]["description"] = tool.description
            specs.append(spec)
        return specs


def tool_step(tool: RegisteredTool, params: BaseModel) -> Step:
    """Build the unwrapped step that runs ``tool`` with validated ``params``.

    The implementation receives a deep copy of the state, so an in-place
    mutation never leaks into the caller's state; in development mode such a
    mutation is also reported as a ``MutationWarning``.
    """
    args = (params.model_dump(mode="json"),)

    async def _run_tool(state: State, ledger: Ledger) -> State:
        before = state_hash(state)
        working = copy.deepcopy(state)
        result = await resolve(tool.impl(working, params))
        if ledger.dev_mode and state_hash(working) != before:
            logger.warning("Tool '%s' mutated its input state in place", tool.name)
            warnings.warn(
                f"Tool '{tool.name}' mutated its input state in place; return a new state instead",
                MutationWarning,
                stacklevel=2,
            )
        event = Event(
            name=f"tool:{tool.name}",
            args=args,
            before_hash=before,
            after_hash=state_hash(result),
        )
        await ledger.record(event, result)
        return result

    return _run_tool

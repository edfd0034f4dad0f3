from __future__ import annotations

from collections.abc import Sequence


class FxError(Exception):
    """Base class for engine errors."""


class ToolValidationError(FxError, ValueError):
    """Tool parameters failed schema validation; raised before the tool body runs."""

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"Invalid parameters for tool '{tool_name}': {detail}")
        self.tool_name = tool_name
        self.detail = detail


class UnregisteredToolError(FxError, LookupError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unregistered tool: '{tool_name}'")
        self.tool_name = tool_name


class ParallelExecutionError(FxError):
    """One or more parallel branches failed. Partial results are discarded."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors: tuple[BaseException, ...] = tuple(errors)
        super().__init__(f"Parallel execution failed: {self.failed_count} steps failed")

    @property
    def failed_count(self) -> int:
        return len(self.errors)


class StepTimeoutError(FxError, TimeoutError):
    def __init__(self, seconds: float) -> None:
        super().__init__(f"Step timed out after {seconds}s")
        self.seconds = seconds


class StepValidationError(FxError):
    """Raised by ``guard`` when its predicate rejects the state."""


class AllStepsFailedError(FxError):
    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors: tuple[BaseException, ...] = tuple(errors)
        super().__init__(f"All {len(self.errors)} steps failed")


class MutationWarning(UserWarning):
    """A step mutated the state it was handed instead of returning a new value."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from .ledger import Ledger

State: TypeAlias = Any
Step: TypeAlias = Callable[[State, "Ledger"], State | Awaitable[State]]


class Event(BaseModel):
    """One recorded state transition.

    ``before_hash`` and ``after_hash`` are canonical digests of the state
    entering and leaving the step, which proves a transition happened without
    storing its diff.
    """

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    args: tuple[Any, ...] = ()
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    before_hash: str
    after_hash: str
    meta: dict[str, Any] | None = None

    @property
    def changed(self) -> bool:
        return self.before_hash != self.after_hash


Observer: TypeAlias = Callable[[Event, State], None]

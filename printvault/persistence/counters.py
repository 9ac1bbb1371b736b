from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class CounterValue:
    # Post-increment value and the bound it is measured against.
    value: int
    limit: int

    @property
    def reached(self) -> bool:
        return self.limit > 0 and self.value >= self.limit


@runtime_checkable
class AtomicCounterStore(Protocol):
    """Shared counter mutated only by single conditional UPDATE statements.

    Workers run in separate processes, so increments must happen at the
    storage boundary; returning None means the guard rejected the increment.
    """

    async def increment(self, session: AsyncSession, record_id: str) -> CounterValue | None:
        ...

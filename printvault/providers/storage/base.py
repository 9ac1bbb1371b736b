from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ObjectHead:
    key: str
    size: int
    content_type: str | None


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def head(self, key: str) -> ObjectHead:
        ...

from __future__ import annotations

from typing import Protocol


class ObjectStore(Protocol):
    async def presign_get(
        self,
        key: str,
        *,
        expires_in: int,
        filename: str | None = None,
        as_attachment: bool = False,
    ) -> str:
        ...

    async def presign_put(
        self,
        key: str,
        *,
        content_type: str,
        expires_in: int,
        metadata: dict[str, str] | None = None,
    ) -> str:
        ...

"""Cache interface used by the engine for workflow definitions."""

from __future__ import annotations

from typing import Any, Optional, Protocol


class Cache(Protocol):
    """Minimal async key/value cache with per-key TTL."""

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value or ``None`` when missing or expired."""

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` for ``ttl`` seconds (no expiry when ``None``)."""

    async def delete(self, key: str) -> None:
        """Drop ``key`` if present."""

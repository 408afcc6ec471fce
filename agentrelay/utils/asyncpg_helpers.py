from __future__ import annotations

import inspect
from typing import Any

try:  # pragma: no cover - optional dependency
    import asyncpg
except ModuleNotFoundError:  # pragma: no cover - asyncpg optional
    asyncpg = None  # type: ignore[assignment]

from ..core.config import Settings


async def ensure_pool_ready(pool: Any) -> Any:
    """Ensure an asyncpg pool is fully initialized before use."""
    initializer = getattr(pool, "_async__init__", None)
    initialized = getattr(pool, "_initialized", True)
    if callable(initializer) and not initialized:
        await initializer()
    return pool


def create_pool_from_settings(settings: Settings) -> Any:
    if asyncpg is None:
        raise RuntimeError("asyncpg is not available")
    return asyncpg.create_pool(
        dsn=str(settings.postgres.dsn),
        min_size=settings.postgres.pool_min_size,
        max_size=settings.postgres.pool_max_size,
    )


class PoolBackedRepository:
    """Lazily resolves a pool, an awaitable pool, or a pool factory on first use."""

    def __init__(self, pool: Any) -> None:
        self._pool_or_factory = pool
        self._pool: Any | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_factory
        if inspect.isawaitable(candidate):
            candidate = await candidate
        elif callable(candidate):
            maybe_pool = candidate()
            candidate = await maybe_pool if inspect.isawaitable(maybe_pool) else maybe_pool
        if hasattr(candidate, "acquire") and hasattr(candidate, "close"):
            await ensure_pool_ready(candidate)
            self._pool = candidate
            self._pool_or_factory = candidate
            return self._pool
        raise RuntimeError(f"Invalid asyncpg pool supplied to {type(self).__name__}")


__all__ = ["PoolBackedRepository", "create_pool_from_settings", "ensure_pool_ready", "asyncpg"]

"""Worker pool - bounded asyncio fan-out for per-deploy orchestration.

Each Deploy of a build runs as its own task, and a semaphore caps how many
hold a slot at once.  The cap is a deployment-time setting
(``EnvforgeSettings.max_concurrency``), not a per-request choice.

A task that is only waiting on another task's output hands its slot back
with :func:`released_slot` and takes one again before it continues, so
waiters never starve the work they wait on.

Architecture:
    ::

        WorkerPool(max_concurrency=8)
          ├── .submit(name, coroutine_fn, *args)  ─ enqueue in dispatch order
          ├── .run_all()                          ─ gather under one semaphore
          │     └── released_slot()               ─ give the slot back while idle
          └── PoolResult                          ─ succeeded / failed / to_dict()

A failing item never cancels its siblings: ``run_all`` records the error
on the item and carries on.

Example::

    pool = WorkerPool(max_concurrency=4)
    for deploy in deploys:
        pool.submit(deploy.uuid, orchestrator.build_deploy, deploy)
    result = await pool.run_all()
    logger.info("build.dispatched", **result.to_dict())
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from envforge.core.logging import get_logger

logger = get_logger(__name__)

# Slot held by the current pool task, if any.
_current_slot: ContextVar[asyncio.Semaphore | None] = ContextVar("envforge_pool_slot", default=None)


@asynccontextmanager
async def released_slot() -> AsyncIterator[None]:
    """Give up the caller's pool slot for the duration of the block.

    Outside a pool task this is a no-op.
    """
    slot = _current_slot.get()
    if slot is None:
        yield
        return
    slot.release()
    try:
        yield
    finally:
        await slot.acquire()


@dataclass
class WorkItem:
    """One submitted coroutine and what became of it."""

    name: str
    handler: Callable[..., Coroutine[Any, Any, Any]]
    args: tuple[Any, ...] = ()
    status: str = "pending"
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class PoolResult:
    """Outcome of one :meth:`WorkerPool.run_all`."""

    pool_id: str
    items: list[WorkItem] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for i in self.items if i.status == "completed")

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if i.status == "failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "total": len(self.items),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "items": [
                {"name": i.name, "status": i.status, "duration_seconds": i.duration_seconds, "error": i.error}
                for i in self.items
            ],
        }


class WorkerPool:
    """Semaphore-bounded pool of coroutines, started in submission order."""

    def __init__(self, max_concurrency: int = 8) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._max_concurrency = max_concurrency
        self._items: list[WorkItem] = []
        self._pool_id = uuid.uuid4().hex[:12]

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def item_count(self) -> int:
        return len(self._items)

    def submit(self, name: str, handler: Callable[..., Coroutine[Any, Any, Any]], *args: Any) -> WorkerPool:
        """Queue ``handler(*args)``; returns ``self`` for chaining."""
        self._items.append(WorkItem(name=name, handler=handler, args=args))
        return self

    async def run_all(self) -> PoolResult:
        """Run every queued item, at most ``max_concurrency`` holding a slot."""
        slots = asyncio.Semaphore(self._max_concurrency)
        items, self._items = self._items, []

        logger.info("pool.start", pool_id=self._pool_id, items=len(items), max_concurrency=self._max_concurrency)

        async def _run_one(item: WorkItem) -> None:
            async with slots:
                _current_slot.set(slots)
                item.started_at = datetime.now(UTC)
                item.status = "running"
                try:
                    await item.handler(*item.args)
                    item.status = "completed"
                except Exception as e:
                    item.status = "failed"
                    item.error = str(e)
                    logger.warning("pool.item_failed", pool_id=self._pool_id, name=item.name, error=str(e))
                item.completed_at = datetime.now(UTC)

        await asyncio.gather(*(_run_one(item) for item in items))

        result = PoolResult(pool_id=self._pool_id, items=items)
        logger.info("pool.complete", pool_id=self._pool_id, succeeded=result.succeeded, failed=result.failed)
        return result

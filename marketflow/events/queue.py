"""Durable event queue with delayed delivery, retries and dead-lettering."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from ..config import QueueConfig
from ..contracts import Event, QueueBatchResult
from ..errors import NotFoundError
from ..persistence import QueueEntry, QueueStatus, WorkflowStore
from ..utils.clock import Clock, ensure_utc, utcnow
from ..utils.retry import compute_backoff
from .dispatcher import EventDispatcher

logger = logging.getLogger(__name__)

_PROCESSED = "processed"
_RETRIED = "retried"
_FAILED = "failed"


class EventQueue:
    """Persist events and deliver them through an :class:`EventDispatcher`.

    A failed delivery is retried with exponential backoff
    (``initial_backoff * 2^(attempts-1)`` seconds) until ``max_attempts`` is
    reached, after which the entry is dead-lettered and never selected again.
    """

    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: EventDispatcher,
        config: Optional[QueueConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or QueueConfig()
        self.clock = clock

    async def push(
        self,
        event: Union[Event, str],
        schedule_time: Optional[datetime] = None,
        priority: int = 0,
        *,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Queue ``event`` for delivery at ``schedule_time`` (default now)."""
        if isinstance(event, str):
            event = Event(name=event, payload=payload or {})
        if not event.name:
            raise ValueError("Event name must not be empty")

        scheduled_at = ensure_utc(schedule_time) if schedule_time else self.clock()
        entry_id = await self.store.enqueue(
            QueueEntry(
                event_name=event.name,
                payload=event.payload,
                status=QueueStatus.PENDING,
                attempts=0,
                priority=priority,
                scheduled_at=scheduled_at,
                created_at=self.clock(),
            )
        )
        logger.debug("Queued event %s as entry %s for %s", event.name, entry_id, scheduled_at)
        return entry_id

    async def process(
        self, batch_size: Optional[int] = None, concurrency: int = 1
    ) -> QueueBatchResult:
        """Deliver due entries; one failing entry never stops the batch."""
        limit = batch_size or self.config.batch_size
        entries = await self.store.due_queue_entries(self.clock(), limit)
        result = QueueBatchResult(batch=len(entries))
        if not entries:
            return result

        if concurrency <= 1:
            outcomes = [await self._process_entry(entry) for entry in entries]
        else:
            semaphore = asyncio.Semaphore(concurrency)

            async def bounded(entry: QueueEntry) -> Optional[str]:
                async with semaphore:
                    return await self._process_entry(entry)

            outcomes = await asyncio.gather(*(bounded(entry) for entry in entries))

        result.processed = outcomes.count(_PROCESSED)
        result.retried = outcomes.count(_RETRIED)
        result.failed = outcomes.count(_FAILED)
        logger.info(
            "Queue batch done: %d processed, %d retried, %d failed",
            result.processed,
            result.retried,
            result.failed,
        )
        return result

    async def _process_entry(self, entry: QueueEntry) -> Optional[str]:
        try:
            return await self._deliver(entry)
        except Exception:
            logger.exception("Queue entry %s (%s) could not be recorded", entry.id, entry.event_name)
            return None

    async def _deliver(self, entry: QueueEntry) -> Optional[str]:
        try:
            await self.dispatcher.dispatch(entry.event_name, entry.payload)
        except Exception as exc:
            return await self._record_failure(entry, exc)

        updated = await self.store.update_queue_entry(
            entry.id,
            QueueStatus.PENDING,
            status=QueueStatus.PROCESSED,
            processed_at=self.clock(),
            error=None,
        )
        return _PROCESSED if updated else None

    async def _record_failure(self, entry: QueueEntry, exc: Exception) -> Optional[str]:
        attempts = entry.attempts + 1
        now = self.clock()
        error = str(exc) or type(exc).__name__

        if attempts >= self.config.max_attempts:
            updated = await self.store.update_queue_entry(
                entry.id,
                QueueStatus.PENDING,
                status=QueueStatus.FAILED,
                attempts=attempts,
                processed_at=now,
                error=error,
            )
            if updated:
                logger.error(
                    "Event %s (entry %s) dead-lettered after %d attempts: %s",
                    entry.event_name,
                    entry.id,
                    attempts,
                    error,
                )
            return _FAILED if updated else None

        delay = compute_backoff(attempts, initial=self.config.initial_backoff)
        updated = await self.store.update_queue_entry(
            entry.id,
            QueueStatus.PENDING,
            attempts=attempts,
            scheduled_at=now + timedelta(seconds=delay),
            error=error,
        )
        if updated:
            logger.info(
                "Event %s (entry %s) failed, retry %d in %ss: %s",
                entry.event_name,
                entry.id,
                attempts,
                delay,
                error,
            )
        return _RETRIED if updated else None

    async def stats(self) -> Dict[str, int]:
        counts = await self.store.queue_counts()
        return {status.value: counts.get(status.value, 0) for status in QueueStatus}

    async def purge(self, days: Optional[int] = None) -> int:
        """Delete processed and failed entries older than ``days``."""
        days = self.config.retention_days if days is None else days
        removed = await self.store.purge_queue(self.clock() - timedelta(days=days))
        logger.info("Purged %d queue entries older than %d days", removed, days)
        return removed

    async def dead_letters(self, limit: Optional[int] = None) -> List[QueueEntry]:
        return await self.store.list_queue_entries(status=QueueStatus.FAILED, limit=limit)

    async def retry(self, entry_id: int) -> bool:
        """Move a dead-lettered entry back to pending and reset its attempts."""
        entry = await self.store.get_queue_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"Queue entry not found: {entry_id}", {"entry_id": entry_id})
        updated = await self.store.update_queue_entry(
            entry_id,
            QueueStatus.FAILED,
            status=QueueStatus.PENDING,
            attempts=0,
            scheduled_at=self.clock(),
            processed_at=None,
            error=None,
        )
        if updated:
            logger.info("Queue entry %s re-queued", entry_id)
        return updated

"""Periodic sweep draining the event queue and due scheduled executions."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .engine import WorkflowEngine
from .events import EventQueue

logger = logging.getLogger(__name__)


class Scheduler:
    """Drive :class:`EventQueue` and :class:`WorkflowEngine` sweeps on a timer."""

    def __init__(
        self,
        engine: WorkflowEngine,
        queue: EventQueue,
        queue_batch_size: Optional[int] = None,
        execution_batch_size: Optional[int] = None,
        concurrency: int = 1,
    ) -> None:
        self.engine = engine
        self.queue = queue
        self.queue_batch_size = queue_batch_size
        self.execution_batch_size = execution_batch_size
        self.concurrency = concurrency
        self.iterations = 0

    async def run_once(self) -> Dict[str, Any]:
        """Run a single sweep; a failing half does not prevent the other."""
        summary: Dict[str, Any] = {}
        try:
            batch = await self.queue.process(self.queue_batch_size, self.concurrency)
            summary["queue"] = batch.model_dump()
        except Exception as exc:
            logger.exception("Queue sweep failed")
            summary["queue_error"] = str(exc)
        try:
            executions = await self.engine.process_scheduled_executions(
                self.execution_batch_size
            )
            summary["executions"] = len(executions)
        except Exception as exc:
            logger.exception("Scheduled execution sweep failed")
            summary["executions_error"] = str(exc)
        self.iterations += 1
        return summary

    async def run(self, interval: float = 60.0, lifespan: Optional[float] = None) -> None:
        """Sweep every ``interval`` seconds.

        Args:
            interval: Seconds to wait between sweeps.
            lifespan: Maximum time in seconds to keep running. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Scheduler started (interval={interval}s, lifespan={lifespan})")

        while True:
            summary = await self.run_once()
            logger.debug(f"Sweep {self.iterations}: {summary}")

            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                await asyncio.sleep(min(interval, remaining))
                if loop.time() - start_time >= lifespan:
                    break
            else:
                await asyncio.sleep(interval)

        logger.info(f"Scheduler stopped after {self.iterations} sweep(s)")

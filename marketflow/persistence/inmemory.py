"""In-memory implementation of the workflow store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable

from ..utils.clock import utcnow
from .models import (
    ACTIVE_EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    Execution,
    ExecutionStatus,
    QueueEntry,
    QueueStatus,
    Workflow,
)
from .repository import EXECUTION_MUTABLE_FIELDS, QUEUE_MUTABLE_FIELDS, WorkflowStore

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, Execution] = {}
        self._queue: Dict[int, QueueEntry] = {}
        self._queue_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        async with self._lock:
            existing = self._workflows.get(workflow.workflow_id)
            stored = workflow.model_copy(deep=True)
            if existing is not None and existing.created_at is not None:
                stored.created_at = existing.created_at
            self._workflows[workflow.workflow_id] = stored

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(
        self,
        status: str | None = None,
        type: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        rows = [
            wf
            for wf in self._workflows.values()
            if (status is None or wf.status == status) and (type is None or wf.type == type)
        ]
        rows = list(reversed(rows))
        rows.sort(key=lambda wf: wf.created_at or _EPOCH, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [wf.model_copy(deep=True) for wf in rows]

    async def delete_workflow_if_idle(self, workflow_id: str) -> bool:
        async with self._lock:
            if workflow_id not in self._workflows:
                return False
            if any(
                e.workflow_id == workflow_id and e.status in ACTIVE_EXECUTION_STATUSES
                for e in self._executions.values()
            ):
                return False
            del self._workflows[workflow_id]
            for execution_id in [
                e.execution_id for e in self._executions.values() if e.workflow_id == workflow_id
            ]:
                del self._executions[execution_id]
            return True

    # ------------------------------------------------------------------
    async def insert_execution(
        self, execution: Execution, max_active: int | None = None
    ) -> bool:
        async with self._lock:
            if max_active is not None and execution.customer_id is not None:
                active = sum(
                    1
                    for e in self._executions.values()
                    if e.customer_id == execution.customer_id
                    and e.status in ACTIVE_EXECUTION_STATUSES
                )
                if active >= max_active:
                    return False
            stored = execution.model_copy(deep=True)
            if stored.created_at is None:
                stored.created_at = utcnow()
            self._executions[execution.execution_id] = stored
            return True

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        customer_id: str | None = None,
        limit: int | None = None,
    ) -> list[Execution]:
        rows = [
            e
            for e in reversed(list(self._executions.values()))
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
            and (customer_id is None or e.customer_id == str(customer_id))
        ]
        if limit is not None:
            rows = rows[:limit]
        return [e.model_copy(deep=True) for e in rows]

    async def transition_execution(
        self,
        execution_id: str,
        from_statuses: Iterable[ExecutionStatus],
        to_status: ExecutionStatus,
        **changes: Any,
    ) -> bool:
        _check_fields(changes, EXECUTION_MUTABLE_FIELDS)
        allowed = set(from_statuses)
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status not in allowed:
                return False
            updated = execution.model_copy(
                update={"status": to_status, **changes}, deep=True
            )
            self._executions[execution_id] = Execution.model_validate(updated.model_dump())
            return True

    async def due_executions(self, now: datetime, limit: int) -> list[Execution]:
        rows = [
            e
            for e in self._executions.values()
            if e.status == ExecutionStatus.SCHEDULED
            and e.scheduled_at is not None
            and e.scheduled_at <= now
        ]
        rows.sort(key=lambda e: e.scheduled_at)
        return [e.model_copy(deep=True) for e in rows[:limit]]

    async def count_active_executions(
        self, workflow_id: str | None = None, customer_id: str | None = None
    ) -> int:
        return sum(
            1
            for e in self._executions.values()
            if e.status in ACTIVE_EXECUTION_STATUSES
            and (workflow_id is None or e.workflow_id == workflow_id)
            and (customer_id is None or e.customer_id == str(customer_id))
        )

    async def execution_counts(self, workflow_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for e in self._executions.values():
            if e.workflow_id == workflow_id:
                counts[e.status.value] = counts.get(e.status.value, 0) + 1
        return counts

    async def delete_executions_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [
                e.execution_id
                for e in self._executions.values()
                if e.status in TERMINAL_EXECUTION_STATUSES
                and e.completed_at is not None
                and e.completed_at < cutoff
            ]
            for execution_id in stale:
                del self._executions[execution_id]
            return len(stale)

    # ------------------------------------------------------------------
    async def enqueue(self, entry: QueueEntry) -> int:
        async with self._lock:
            self._queue_id += 1
            stored = entry.model_copy(deep=True, update={"id": self._queue_id})
            if stored.created_at is None:
                stored.created_at = utcnow()
            self._queue[self._queue_id] = stored
            return self._queue_id

    async def get_queue_entry(self, entry_id: int) -> QueueEntry | None:
        entry = self._queue.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def due_queue_entries(self, now: datetime, limit: int) -> list[QueueEntry]:
        rows = [
            q
            for q in self._queue.values()
            if q.status == QueueStatus.PENDING and q.scheduled_at <= now
        ]
        rows.sort(key=lambda q: (-q.priority, q.scheduled_at, q.id))
        return [q.model_copy(deep=True) for q in rows[:limit]]

    async def update_queue_entry(
        self, entry_id: int, expected_status: QueueStatus, **changes: Any
    ) -> bool:
        _check_fields(changes, QUEUE_MUTABLE_FIELDS)
        async with self._lock:
            entry = self._queue.get(entry_id)
            if entry is None or entry.status != expected_status:
                return False
            self._queue[entry_id] = entry.model_copy(update=changes, deep=True)
            return True

    async def list_queue_entries(
        self, status: str | None = None, limit: int | None = None
    ) -> list[QueueEntry]:
        rows = [q for q in self._queue.values() if status is None or q.status == status]
        if limit is not None:
            rows = rows[:limit]
        return [q.model_copy(deep=True) for q in rows]

    async def queue_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for q in self._queue.values():
            counts[q.status.value] = counts.get(q.status.value, 0) + 1
        return counts

    async def purge_queue(self, before: datetime) -> int:
        async with self._lock:
            stale = [
                q.id
                for q in self._queue.values()
                if q.status in (QueueStatus.PROCESSED, QueueStatus.FAILED)
                and q.processed_at is not None
                and q.processed_at < before
            ]
            for entry_id in stale:
                del self._queue[entry_id]
            return len(stale)


def _check_fields(changes: dict, allowed: frozenset) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unsupported fields for update: {sorted(unknown)}")

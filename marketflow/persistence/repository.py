"""Store abstraction for workflow, execution and queue persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from .models import Execution, ExecutionStatus, QueueEntry, QueueStatus, Workflow

# Execution columns a conditional transition may change alongside the status.
EXECUTION_MUTABLE_FIELDS = frozenset(
    {"started_at", "completed_at", "result", "error", "context"}
)
# Queue columns a conditional update may change.
QUEUE_MUTABLE_FIELDS = frozenset(
    {"status", "attempts", "scheduled_at", "processed_at", "error"}
)


class WorkflowStore(Protocol):
    """Protocol for persistence backends.

    Every status change goes through a conditional update ("set X only if the
    current status is one of S") so concurrent sweeps never overwrite each
    other blindly.
    """

    # -- workflows -----------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self,
        status: str | None = None,
        type: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        """Return workflows matching the filters, newest first."""

    async def delete_workflow_if_idle(self, workflow_id: str) -> bool:
        """Delete a workflow and its executions unless one is running/scheduled.

        Returns ``True`` when the workflow row was deleted.
        """

    # -- executions ----------------------------------------------------
    async def insert_execution(
        self, execution: Execution, max_active: int | None = None
    ) -> bool:
        """Insert ``execution`` atomically with the per-customer admission check.

        When ``max_active`` is given and the execution has a customer, the row
        is only inserted if that customer has fewer than ``max_active``
        running/scheduled executions. Returns ``True`` on insert.
        """

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        customer_id: str | None = None,
        limit: int | None = None,
    ) -> list[Execution]:
        """Return executions matching the filters, newest first."""

    async def transition_execution(
        self,
        execution_id: str,
        from_statuses: Iterable[ExecutionStatus],
        to_status: ExecutionStatus,
        **changes: Any,
    ) -> bool:
        """Set ``to_status`` (plus ``changes``) only if the current status matches."""

    async def due_executions(self, now: datetime, limit: int) -> list[Execution]:
        """Scheduled executions with ``scheduled_at <= now``, oldest first."""

    async def count_active_executions(
        self, workflow_id: str | None = None, customer_id: str | None = None
    ) -> int:
        """Count running/scheduled executions."""

    async def execution_counts(self, workflow_id: str) -> dict[str, int]:
        """Execution counts per status for one workflow."""

    async def delete_executions_before(self, cutoff: datetime) -> int:
        """Delete terminal executions completed before ``cutoff``."""

    # -- event queue ---------------------------------------------------
    async def enqueue(self, entry: QueueEntry) -> int:
        """Persist a new queue entry and return its id."""

    async def get_queue_entry(self, entry_id: int) -> QueueEntry | None:
        """Retrieve a queue entry by id."""

    async def due_queue_entries(self, now: datetime, limit: int) -> list[QueueEntry]:
        """Pending entries due at ``now`` by priority desc, scheduled_at asc."""

    async def update_queue_entry(
        self, entry_id: int, expected_status: QueueStatus, **changes: Any
    ) -> bool:
        """Apply ``changes`` only if the entry is still in ``expected_status``."""

    async def list_queue_entries(
        self, status: str | None = None, limit: int | None = None
    ) -> list[QueueEntry]:
        """Return queue entries, oldest first."""

    async def queue_counts(self) -> dict[str, int]:
        """Queue entry counts per status."""

    async def purge_queue(self, before: datetime) -> int:
        """Delete processed/failed entries processed before ``before``."""

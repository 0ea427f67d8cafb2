"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ..utils.clock import ensure_utc, utcnow
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

_WORKFLOW_COLUMNS = (
    "workflow_id, name, description, type, status, definition, settings, created_at, updated_at"
)
_EXECUTION_COLUMNS = (
    "execution_id, workflow_id, customer_id, context, status, scheduled_at, started_at, "
    "completed_at, result, error, resume_node_id, parent_execution_id, created_at"
)
_QUEUE_COLUMNS = (
    "id, event_name, payload, status, attempts, priority, scheduled_at, processed_at, error, created_at"
)
_ACTIVE = tuple(s.value for s in ACTIVE_EXECUTION_STATUSES)
_TERMINAL = tuple(s.value for s in TERMINAL_EXECUTION_STATUSES)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text keeps lexical and chronological order identical.
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                definition TEXT NOT NULL,
                settings TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                customer_id TEXT,
                context TEXT,
                status TEXT NOT NULL,
                scheduled_at TEXT,
                started_at TEXT,
                completed_at TEXT,
                result TEXT,
                error TEXT,
                resume_node_id TEXT,
                parent_execution_id TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS event_queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_name TEXT NOT NULL,
                payload TEXT,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                priority INTEGER NOT NULL DEFAULT 0,
                scheduled_at TEXT NOT NULL,
                processed_at TEXT,
                error TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON workflow_executions (status, scheduled_at)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_status ON event_queue (status, scheduled_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _insert(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _delete_if_idle(self, workflow_id: str) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(
                    f"""
                    DELETE FROM workflows
                    WHERE workflow_id = ?
                      AND NOT EXISTS (
                        SELECT 1 FROM workflow_executions
                        WHERE workflow_id = ? AND status IN ({_placeholders(_ACTIVE)})
                      )
                    """,
                    (workflow_id, workflow_id, *_ACTIVE),
                )
                deleted = cur.rowcount == 1
                if deleted:
                    cur.execute(
                        "DELETE FROM workflow_executions WHERE workflow_id = ?",
                        (workflow_id,),
                    )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return deleted

    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            workflow_id=row["workflow_id"],
            name=row["name"],
            description=row["description"] or "",
            type=row["type"],
            status=row["status"],
            nodes=json.loads(row["definition"]),
            settings=json.loads(row["settings"]) if row["settings"] else {},
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> Execution:
        return Execution(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            customer_id=row["customer_id"],
            context=json.loads(row["context"]) if row["context"] else {},
            status=row["status"],
            scheduled_at=_dt(row["scheduled_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            result=json.loads(row["result"]) if row["result"] else {},
            error=row["error"],
            resume_node_id=row["resume_node_id"],
            parent_execution_id=row["parent_execution_id"],
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _row_to_queue_entry(row: sqlite3.Row) -> QueueEntry:
        return QueueEntry(
            id=row["id"],
            event_name=row["event_name"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            status=row["status"],
            attempts=row["attempts"],
            priority=row["priority"],
            scheduled_at=_dt(row["scheduled_at"]),
            processed_at=_dt(row["processed_at"]),
            error=row["error"],
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _encode(field: str, value: Any) -> Any:
        if isinstance(value, datetime):
            return _ts(value)
        if field == "result" and value is not None:
            return json.dumps(
                {k: v.model_dump(mode="json") if hasattr(v, "model_dump") else v for k, v in value.items()}
            )
        if field in ("context", "payload") and value is not None:
            return json.dumps(value)
        if hasattr(value, "value"):
            return value.value
        return value

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO workflows ({_WORKFLOW_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                type = excluded.type,
                status = excluded.status,
                definition = excluded.definition,
                settings = excluded.settings,
                updated_at = excluded.updated_at
            """,
            workflow.workflow_id,
            workflow.name,
            workflow.description,
            workflow.type,
            workflow.status.value,
            json.dumps([node.model_dump(mode="json") for node in workflow.nodes]),
            json.dumps(workflow.settings),
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE workflow_id = ?",
            workflow_id,
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(
        self,
        status: str | None = None,
        type: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows"
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(getattr(status, "value", status))
        if type is not None:
            conditions.append("type = ?")
            params.append(type)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_workflow(r) for r in rows]

    async def delete_workflow_if_idle(self, workflow_id: str) -> bool:
        return await asyncio.to_thread(self._delete_if_idle, workflow_id)

    # ------------------------------------------------------------------
    # Executions
    async def insert_execution(
        self, execution: Execution, max_active: int | None = None
    ) -> bool:
        values = (
            execution.execution_id,
            execution.workflow_id,
            execution.customer_id,
            json.dumps(execution.context),
            execution.status.value,
            _ts(execution.scheduled_at),
            _ts(execution.started_at),
            _ts(execution.completed_at),
            self._encode("result", execution.result),
            execution.error,
            execution.resume_node_id,
            execution.parent_execution_id,
            _ts(execution.created_at or utcnow()),
        )
        if max_active is None or execution.customer_id is None:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) VALUES ({_placeholders(values)})",
                *values,
            )
            return True

        # Single statement: the admission check and the insert cannot interleave.
        inserted = await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO workflow_executions ({_EXECUTION_COLUMNS})
            SELECT {_placeholders(values)}
            WHERE (
                SELECT COUNT(*) FROM workflow_executions
                WHERE customer_id = ? AND status IN ({_placeholders(_ACTIVE)})
            ) < ?
            """,
            *values,
            execution.customer_id,
            *_ACTIVE,
            int(max_active),
        )
        return inserted == 1

    async def get_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE execution_id = ?",
            execution_id,
        )
        return self._row_to_execution(row) if row else None

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        customer_id: str | None = None,
        limit: int | None = None,
    ) -> list[Execution]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions"
        conditions: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            conditions.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(getattr(status, "value", status))
        if customer_id is not None:
            conditions.append("customer_id = ?")
            params.append(str(customer_id))
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_execution(r) for r in rows]

    async def transition_execution(
        self,
        execution_id: str,
        from_statuses: Iterable[ExecutionStatus],
        to_status: ExecutionStatus,
        **changes: Any,
    ) -> bool:
        unknown = set(changes) - EXECUTION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported fields for update: {sorted(unknown)}")
        expected = [ExecutionStatus(s).value for s in from_statuses]
        assignments = ["status = ?"] + [f"{field} = ?" for field in changes]
        params = [ExecutionStatus(to_status).value] + [
            self._encode(field, value) for field, value in changes.items()
        ]
        updated = await asyncio.to_thread(
            self._execute,
            f"""
            UPDATE workflow_executions SET {", ".join(assignments)}
            WHERE execution_id = ? AND status IN ({_placeholders(expected)})
            """,
            *params,
            execution_id,
            *expected,
        )
        return updated == 1

    async def due_executions(self, now: datetime, limit: int) -> list[Execution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM workflow_executions
            WHERE status = ? AND scheduled_at <= ?
            ORDER BY scheduled_at ASC
            LIMIT ?
            """,
            ExecutionStatus.SCHEDULED.value,
            _ts(now),
            int(limit),
        )
        return [self._row_to_execution(r) for r in rows]

    async def count_active_executions(
        self, workflow_id: str | None = None, customer_id: str | None = None
    ) -> int:
        query = f"SELECT COUNT(*) AS cnt FROM workflow_executions WHERE status IN ({_placeholders(_ACTIVE)})"
        params: list[Any] = list(_ACTIVE)
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if customer_id is not None:
            query += " AND customer_id = ?"
            params.append(str(customer_id))
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return int(row["cnt"]) if row else 0

    async def execution_counts(self, workflow_id: str) -> dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT status, COUNT(*) AS cnt FROM workflow_executions WHERE workflow_id = ? GROUP BY status",
            workflow_id,
        )
        return {r["status"]: int(r["cnt"]) for r in rows}

    async def delete_executions_before(self, cutoff: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            f"""
            DELETE FROM workflow_executions
            WHERE status IN ({_placeholders(_TERMINAL)}) AND completed_at < ?
            """,
            *_TERMINAL,
            _ts(cutoff),
        )

    # ------------------------------------------------------------------
    # Event queue
    async def enqueue(self, entry: QueueEntry) -> int:
        return await asyncio.to_thread(
            self._insert,
            """
            INSERT INTO event_queue
                (event_name, payload, status, attempts, priority, scheduled_at, processed_at, error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            entry.event_name,
            json.dumps(entry.payload),
            entry.status.value,
            entry.attempts,
            entry.priority,
            _ts(entry.scheduled_at),
            _ts(entry.processed_at),
            entry.error,
            _ts(entry.created_at or utcnow()),
        )

    async def get_queue_entry(self, entry_id: int) -> QueueEntry | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_QUEUE_COLUMNS} FROM event_queue WHERE id = ?",
            entry_id,
        )
        return self._row_to_queue_entry(row) if row else None

    async def due_queue_entries(self, now: datetime, limit: int) -> list[QueueEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_QUEUE_COLUMNS} FROM event_queue
            WHERE status = ? AND scheduled_at <= ?
            ORDER BY priority DESC, scheduled_at ASC, id ASC
            LIMIT ?
            """,
            QueueStatus.PENDING.value,
            _ts(now),
            int(limit),
        )
        return [self._row_to_queue_entry(r) for r in rows]

    async def update_queue_entry(
        self, entry_id: int, expected_status: QueueStatus, **changes: Any
    ) -> bool:
        unknown = set(changes) - QUEUE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported fields for update: {sorted(unknown)}")
        if not changes:
            return False
        assignments = [f"{field} = ?" for field in changes]
        params = [self._encode(field, value) for field, value in changes.items()]
        updated = await asyncio.to_thread(
            self._execute,
            f"UPDATE event_queue SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            *params,
            entry_id,
            QueueStatus(expected_status).value,
        )
        return updated == 1

    async def list_queue_entries(
        self, status: str | None = None, limit: int | None = None
    ) -> list[QueueEntry]:
        query = f"SELECT {_QUEUE_COLUMNS} FROM event_queue"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(getattr(status, "value", status))
        query += " ORDER BY id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_queue_entry(r) for r in rows]

    async def queue_counts(self) -> dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT status, COUNT(*) AS cnt FROM event_queue GROUP BY status",
        )
        return {r["status"]: int(r["cnt"]) for r in rows}

    async def purge_queue(self, before: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            """
            DELETE FROM event_queue
            WHERE status IN (?, ?) AND processed_at < ?
            """,
            QueueStatus.PROCESSED.value,
            QueueStatus.FAILED.value,
            _ts(before),
        )

"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

import asyncpg

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
# Explicit casts let INSERT ... SELECT bind parameters without a VALUES list.
_EXECUTION_TYPES = (
    "text", "text", "text", "jsonb", "text", "timestamptz", "timestamptz",
    "timestamptz", "jsonb", "text", "text", "text", "timestamptz",
)
_JSON_FIELDS = {"context", "result", "payload"}
_ACTIVE = [s.value for s in ACTIVE_EXECUTION_STATUSES]
_TERMINAL = [s.value for s in TERMINAL_EXECUTION_STATUSES]


def _json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered.
    if isinstance(value, str):
        return json.loads(value)
    return value


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _encode(field: str, value: Any) -> Any:
    if field == "result" and value is not None:
        return json.dumps(
            {k: v.model_dump(mode="json") if hasattr(v, "model_dump") else v for k, v in value.items()}
        )
    if field in _JSON_FIELDS and value is not None:
        return json.dumps(value)
    if hasattr(value, "value"):
        return value.value
    return value


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                definition JSONB NOT NULL,
                settings JSONB,
                created_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                customer_id TEXT,
                context JSONB,
                status TEXT NOT NULL,
                scheduled_at TIMESTAMPTZ,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                result JSONB,
                error TEXT,
                resume_node_id TEXT,
                parent_execution_id TEXT,
                created_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS event_queue (
                id BIGSERIAL PRIMARY KEY,
                event_name TEXT NOT NULL,
                payload JSONB,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                priority INTEGER NOT NULL DEFAULT 0,
                scheduled_at TIMESTAMPTZ NOT NULL,
                processed_at TIMESTAMPTZ,
                error TEXT,
                created_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON workflow_executions (status, scheduled_at)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_status ON event_queue (status, scheduled_at)"
        )

    @staticmethod
    def _row_to_workflow(row: asyncpg.Record) -> Workflow:
        return Workflow(
            workflow_id=row["workflow_id"],
            name=row["name"],
            description=row["description"] or "",
            type=row["type"],
            status=row["status"],
            nodes=_json(row["definition"]),
            settings=_json(row["settings"]) or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_execution(row: asyncpg.Record) -> Execution:
        return Execution(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            customer_id=row["customer_id"],
            context=_json(row["context"]) or {},
            status=row["status"],
            scheduled_at=row["scheduled_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            result=_json(row["result"]) or {},
            error=row["error"],
            resume_node_id=row["resume_node_id"],
            parent_execution_id=row["parent_execution_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_queue_entry(row: asyncpg.Record) -> QueueEntry:
        return QueueEntry(
            id=row["id"],
            event_name=row["event_name"],
            payload=_json(row["payload"]) or {},
            status=row["status"],
            attempts=row["attempts"],
            priority=row["priority"],
            scheduled_at=row["scheduled_at"],
            processed_at=row["processed_at"],
            error=row["error"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO workflows ({_WORKFLOW_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (workflow_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    type = EXCLUDED.type,
                    status = EXCLUDED.status,
                    definition = EXCLUDED.definition,
                    settings = EXCLUDED.settings,
                    updated_at = EXCLUDED.updated_at
                """,
                workflow.workflow_id,
                workflow.name,
                workflow.description,
                workflow.type,
                workflow.status.value,
                json.dumps([node.model_dump(mode="json") for node in workflow.nodes]),
                json.dumps(workflow.settings),
                workflow.created_at,
                workflow.updated_at,
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE workflow_id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        return self._row_to_workflow(row) if row else None

    async def list_workflows(
        self,
        status: str | None = None,
        type: str | None = None,
        limit: int | None = None,
    ) -> list[Workflow]:
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            params.append(getattr(status, "value", status))
            conditions.append(f"status = ${len(params)}")
        if type is not None:
            params.append(type)
            conditions.append(f"type = ${len(params)}")
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC NULLS LAST"
        if limit is not None:
            params.append(int(limit))
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._row_to_workflow(r) for r in rows]

    async def delete_workflow_if_idle(self, workflow_id: str) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    """
                    DELETE FROM workflows
                    WHERE workflow_id = $1
                      AND NOT EXISTS (
                        SELECT 1 FROM workflow_executions
                        WHERE workflow_id = $1 AND status = ANY($2::text[])
                      )
                    """,
                    workflow_id,
                    _ACTIVE,
                )
                deleted = _affected(status) == 1
                if deleted:
                    await conn.execute(
                        "DELETE FROM workflow_executions WHERE workflow_id = $1",
                        workflow_id,
                    )
        finally:
            await conn.close()
        return deleted

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
            execution.scheduled_at,
            execution.started_at,
            execution.completed_at,
            _encode("result", execution.result),
            execution.error,
            execution.resume_node_id,
            execution.parent_execution_id,
            execution.created_at or utcnow(),
        )
        placeholders = ", ".join(
            f"${i}::{t}" for i, t in enumerate(_EXECUTION_TYPES, start=1)
        )
        conn = await self._connect()
        try:
            if max_active is None or execution.customer_id is None:
                await conn.execute(
                    f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) VALUES ({placeholders})",
                    *values,
                )
                return True
            async with conn.transaction():
                # Serializes admission per customer across concurrent writers.
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", execution.customer_id
                )
                n = len(values)
                status = await conn.execute(
                    f"""
                    INSERT INTO workflow_executions ({_EXECUTION_COLUMNS})
                    SELECT {placeholders}
                    WHERE (
                        SELECT COUNT(*) FROM workflow_executions
                        WHERE customer_id = ${n + 1} AND status = ANY(${n + 2}::text[])
                    ) < ${n + 3}
                    """,
                    *values,
                    execution.customer_id,
                    _ACTIVE,
                    int(max_active),
                )
            return _affected(status) == 1
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return self._row_to_execution(row) if row else None

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: str | None = None,
        customer_id: str | None = None,
        limit: int | None = None,
    ) -> list[Execution]:
        conditions: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            conditions.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(getattr(status, "value", status))
            conditions.append(f"status = ${len(params)}")
        if customer_id is not None:
            params.append(str(customer_id))
            conditions.append(f"customer_id = ${len(params)}")
        query = f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            params.append(int(limit))
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
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
        params: list[Any] = [ExecutionStatus(to_status).value]
        assignments = ["status = $1"]
        for field, value in changes.items():
            params.append(_encode(field, value))
            assignments.append(f"{field} = ${len(params)}")
        params.append(execution_id)
        id_ref = len(params)
        params.append([ExecutionStatus(s).value for s in from_statuses])
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"""
                UPDATE workflow_executions SET {", ".join(assignments)}
                WHERE execution_id = ${id_ref} AND status = ANY(${id_ref + 1}::text[])
                """,
                *params,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def due_executions(self, now: datetime, limit: int) -> list[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_EXECUTION_COLUMNS} FROM workflow_executions
                WHERE status = $1 AND scheduled_at <= $2
                ORDER BY scheduled_at ASC
                LIMIT $3
                """,
                ExecutionStatus.SCHEDULED.value,
                now,
                int(limit),
            )
        finally:
            await conn.close()
        return [self._row_to_execution(r) for r in rows]

    async def count_active_executions(
        self, workflow_id: str | None = None, customer_id: str | None = None
    ) -> int:
        params: list[Any] = [_ACTIVE]
        query = "SELECT COUNT(*) FROM workflow_executions WHERE status = ANY($1::text[])"
        if workflow_id is not None:
            params.append(workflow_id)
            query += f" AND workflow_id = ${len(params)}"
        if customer_id is not None:
            params.append(str(customer_id))
            query += f" AND customer_id = ${len(params)}"
        conn = await self._connect()
        try:
            count = await conn.fetchval(query, *params)
        finally:
            await conn.close()
        return int(count or 0)

    async def execution_counts(self, workflow_id: str) -> dict[str, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS cnt FROM workflow_executions WHERE workflow_id = $1 GROUP BY status",
                workflow_id,
            )
        finally:
            await conn.close()
        return {r["status"]: int(r["cnt"]) for r in rows}

    async def delete_executions_before(self, cutoff: datetime) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                DELETE FROM workflow_executions
                WHERE status = ANY($1::text[]) AND completed_at < $2
                """,
                _TERMINAL,
                cutoff,
            )
        finally:
            await conn.close()
        return _affected(status)

    # ------------------------------------------------------------------
    # Event queue
    async def enqueue(self, entry: QueueEntry) -> int:
        conn = await self._connect()
        try:
            entry_id = await conn.fetchval(
                """
                INSERT INTO event_queue
                    (event_name, payload, status, attempts, priority, scheduled_at, processed_at, error, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING id
                """,
                entry.event_name,
                json.dumps(entry.payload),
                entry.status.value,
                entry.attempts,
                entry.priority,
                entry.scheduled_at,
                entry.processed_at,
                entry.error,
                entry.created_at or utcnow(),
            )
        finally:
            await conn.close()
        return int(entry_id)

    async def get_queue_entry(self, entry_id: int) -> QueueEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_QUEUE_COLUMNS} FROM event_queue WHERE id = $1", entry_id
            )
        finally:
            await conn.close()
        return self._row_to_queue_entry(row) if row else None

    async def due_queue_entries(self, now: datetime, limit: int) -> list[QueueEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_QUEUE_COLUMNS} FROM event_queue
                WHERE status = $1 AND scheduled_at <= $2
                ORDER BY priority DESC, scheduled_at ASC, id ASC
                LIMIT $3
                """,
                QueueStatus.PENDING.value,
                now,
                int(limit),
            )
        finally:
            await conn.close()
        return [self._row_to_queue_entry(r) for r in rows]

    async def update_queue_entry(
        self, entry_id: int, expected_status: QueueStatus, **changes: Any
    ) -> bool:
        unknown = set(changes) - QUEUE_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported fields for update: {sorted(unknown)}")
        if not changes:
            return False
        params: list[Any] = []
        assignments: list[str] = []
        for field, value in changes.items():
            params.append(_encode(field, value))
            assignments.append(f"{field} = ${len(params)}")
        params.extend([entry_id, QueueStatus(expected_status).value])
        n = len(params)
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"UPDATE event_queue SET {', '.join(assignments)} WHERE id = ${n - 1} AND status = ${n}",
                *params,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def list_queue_entries(
        self, status: str | None = None, limit: int | None = None
    ) -> list[QueueEntry]:
        params: list[Any] = []
        query = f"SELECT {_QUEUE_COLUMNS} FROM event_queue"
        if status is not None:
            params.append(getattr(status, "value", status))
            query += " WHERE status = $1"
        query += " ORDER BY id ASC"
        if limit is not None:
            params.append(int(limit))
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [self._row_to_queue_entry(r) for r in rows]

    async def queue_counts(self) -> dict[str, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS cnt FROM event_queue GROUP BY status"
            )
        finally:
            await conn.close()
        return {r["status"]: int(r["cnt"]) for r in rows}

    async def purge_queue(self, before: datetime) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                DELETE FROM event_queue
                WHERE status = ANY($1::text[]) AND processed_at < $2
                """,
                [QueueStatus.PROCESSED.value, QueueStatus.FAILED.value],
                before,
            )
        finally:
            await conn.close()
        return _affected(status)

"""Data models for persisted workflow, execution and queue state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import NodeDefinition, NodeResult


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ExecutionStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_EXECUTION_STATUSES = (ExecutionStatus.RUNNING, ExecutionStatus.SCHEDULED)
TERMINAL_EXECUTION_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class Workflow(BaseModel):
    """Persisted workflow definition."""

    workflow_id: str
    name: str
    description: str = ""
    type: str
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    nodes: list[NodeDefinition] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        return next((node for node in self.nodes if node.id == node_id), None)

    def start_node(self) -> Optional[NodeDefinition]:
        return next((node for node in self.nodes if node.is_trigger), None)


class Execution(BaseModel):
    """One run (or continuation leg) of a workflow."""

    execution_id: str
    workflow_id: str
    customer_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: dict[str, NodeResult] = Field(default_factory=dict)
    error: Optional[str] = None
    resume_node_id: Optional[str] = None
    parent_execution_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class QueueEntry(BaseModel):
    """Persisted event waiting for (or done with) delivery."""

    id: Optional[int] = None
    event_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    priority: int = 0
    scheduled_at: datetime
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None

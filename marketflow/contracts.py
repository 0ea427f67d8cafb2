"""Core contracts exchanged between the engine, node handlers and the queue."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

TRIGGER_NODE_TYPE = "trigger"


class NodeDefinition(BaseModel):
    """One step of a workflow graph."""

    id: str
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    next_nodes: List[str] = Field(default_factory=list)

    @property
    def is_trigger(self) -> bool:
        return self.type == TRIGGER_NODE_TYPE


class WorkflowDefinition(BaseModel):
    """User supplied workflow definition for create/update.

    Name and type are deliberately lenient here; the engine reports missing
    values as field-level validation errors.
    """

    name: str = ""
    description: str = ""
    type: str = ""
    status: str = "active"
    nodes: List[NodeDefinition] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)

    def trigger_nodes(self) -> List[NodeDefinition]:
        return [node for node in self.nodes if node.is_trigger]


class NodeResult(BaseModel):
    """Normalized outcome of a single node execution."""

    success: bool
    node_id: str
    node_type: str
    execution_time: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


class Event(BaseModel):
    """A business event travelling through the queue and dispatcher."""

    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkflowSummary(BaseModel):
    """Returned by create/update operations."""

    workflow_id: str
    name: str
    type: str
    status: str
    nodes_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class QueueBatchResult(BaseModel):
    """Counters describing one ``EventQueue.process`` sweep."""

    processed: int = 0
    failed: int = 0
    retried: int = 0
    batch: int = 0

"""Workflow engine: definition lifecycle, executions and graph traversal."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type, Union

from pydantic import ValidationError as PydanticValidationError

from .cache import Cache, InMemoryCache, get_cache
from .config import MarketflowConfig, WorkflowConfig, load_config
from .contracts import NodeDefinition, NodeResult, WorkflowDefinition, WorkflowSummary
from .errors import (
    ConflictError,
    ExecutionTimeoutError,
    LimitExceededError,
    MarketflowError,
    NotFoundError,
    StateError,
    StructureError,
    ValidationError,
)
from .events import EventDispatcher
from .nodes import CUSTOM_EVENT, NODE_TYPES, ConditionNode, NodeHandler, create_handler, run_node
from .persistence import (
    Execution,
    ExecutionStatus,
    InMemoryWorkflowStore,
    Workflow,
    WorkflowStatus,
    WorkflowStore,
    get_store,
)
from .providers import ProviderRegistry
from .utils.clock import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)

CACHE_PREFIX = "workflow:"


@dataclass
class EngineServices:
    """Collaborators handed to :class:`WorkflowEngine` in one bundle."""

    store: WorkflowStore = field(default_factory=InMemoryWorkflowStore)
    cache: Cache = field(default_factory=InMemoryCache)
    providers: ProviderRegistry = field(default_factory=ProviderRegistry)
    dispatcher: Optional[EventDispatcher] = None
    node_types: Mapping[str, Type[NodeHandler]] = field(default_factory=lambda: NODE_TYPES)
    settings: WorkflowConfig = field(default_factory=WorkflowConfig)
    clock: Clock = utcnow

    @classmethod
    def from_config(
        cls, config: Optional[MarketflowConfig] = None, **overrides: Any
    ) -> "EngineServices":
        """Build services from configuration, picking store and cache backends."""
        config = config or load_config()
        values: Dict[str, Any] = {"settings": config.workflow}
        if "store" not in overrides:
            values["store"] = get_store(config=config)
        if "cache" not in overrides:
            values["cache"] = get_cache(config=config)
        values.update(overrides)
        return cls(**values)


def _customer_id(context: Mapping[str, Any]) -> Optional[str]:
    value = context.get("customer_id")
    if value is None or value == "":
        return None
    return str(value)


class WorkflowEngine:
    """Create, run and schedule workflows.

    Node failures never escape :meth:`execute_workflow`: they are recorded
    on the returned execution. Definition problems, unknown ids, inactive
    workflows and the per-customer limit are raised to the caller.
    """

    def __init__(self, services: EngineServices) -> None:
        self.services = services
        self.store = services.store
        self.cache = services.cache
        self.settings = services.settings
        self.clock = services.clock

    # ------------------------------------------------------------------
    # Definitions
    def _validate_definition(
        self, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        if not isinstance(definition, WorkflowDefinition):
            try:
                definition = WorkflowDefinition.model_validate(dict(definition))
            except PydanticValidationError as exc:
                errors = {
                    ".".join(str(p) for p in err["loc"]) or "definition": err["msg"]
                    for err in exc.errors()
                }
                raise ValidationError("Workflow definition is invalid", errors) from exc

        errors: Dict[str, str] = {}
        if not definition.name.strip():
            errors["name"] = "Workflow name is required"
        if not definition.type.strip():
            errors["type"] = "Workflow type is required"
        if not definition.nodes:
            errors["nodes"] = "Workflow must contain at least one node"
        elif len(definition.nodes) > self.settings.max_nodes_per_workflow:
            errors["nodes"] = (
                f"Workflow cannot have more than {self.settings.max_nodes_per_workflow} nodes"
            )
        if definition.status not in {s.value for s in WorkflowStatus}:
            errors["status"] = f"Unsupported workflow status: {definition.status}"
        if errors:
            raise ValidationError("Workflow definition is invalid", errors)

        self._validate_structure(definition.nodes)
        return definition

    @staticmethod
    def _validate_structure(nodes: Sequence[NodeDefinition]) -> None:
        ids = [node.id for node in nodes]
        duplicates = sorted({node_id for node_id in ids if ids.count(node_id) > 1})
        if duplicates:
            raise StructureError(
                f"Duplicate node ids: {', '.join(duplicates)}", {"node_ids": duplicates}
            )
        if not any(node.is_trigger for node in nodes):
            raise StructureError("Workflow must have at least one trigger node")
        known = set(ids)
        for node in nodes:
            for next_id in node.next_nodes:
                if next_id not in known:
                    raise StructureError(
                        f"Node {node.id} references unknown node: {next_id}",
                        {"node_id": node.id, "next_node_id": next_id},
                    )
            if node.type == ConditionNode.node_type:
                WorkflowEngine._validate_branches(node)

    @staticmethod
    def _validate_branches(node: NodeDefinition) -> None:
        branches = {
            key: node.config.get(key)
            for key in ("true_node_id", "false_node_id")
            if node.config.get(key)
        }
        for key, target in branches.items():
            if target not in node.next_nodes:
                raise StructureError(
                    f"Condition {node.id} {key} {target} is not one of its successors",
                    {"node_id": node.id, key: target},
                )
        if len(node.next_nodes) > 1 and len(branches) < 2:
            raise StructureError(
                f"Condition {node.id} has several successors but does not name both branches",
                {"node_id": node.id, "next_nodes": list(node.next_nodes)},
            )

    async def _cache_workflow(self, workflow: Workflow) -> None:
        await self.cache.set(
            CACHE_PREFIX + workflow.workflow_id,
            workflow.model_dump(mode="json"),
            self.settings.cache_ttl,
        )

    @staticmethod
    def _summary(workflow: Workflow) -> WorkflowSummary:
        return WorkflowSummary(
            workflow_id=workflow.workflow_id,
            name=workflow.name,
            type=workflow.type,
            status=workflow.status.value,
            nodes_count=len(workflow.nodes),
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
        )

    async def create_workflow(
        self, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowSummary:
        definition = self._validate_definition(definition)
        now = self.clock()
        workflow = Workflow(
            workflow_id=uuid.uuid4().hex,
            name=definition.name,
            description=definition.description,
            type=definition.type,
            status=WorkflowStatus(definition.status),
            nodes=definition.nodes,
            settings=definition.settings,
            created_at=now,
            updated_at=now,
        )
        await self.store.save_workflow(workflow)
        await self._cache_workflow(workflow)
        logger.info(f"Workflow created: {workflow.workflow_id} ({workflow.name})")
        return self._summary(workflow)

    async def update_workflow(
        self, workflow_id: str, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowSummary:
        existing = await self.store.get_workflow(workflow_id)
        if existing is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        definition = self._validate_definition(definition)
        workflow = Workflow(
            workflow_id=workflow_id,
            name=definition.name,
            description=definition.description,
            type=definition.type,
            status=WorkflowStatus(definition.status),
            nodes=definition.nodes,
            settings=definition.settings,
            created_at=existing.created_at,
            updated_at=self.clock(),
        )
        await self.store.save_workflow(workflow)
        await self._cache_workflow(workflow)
        logger.info(f"Workflow updated: {workflow_id}")
        return self._summary(workflow)

    async def delete_workflow(self, workflow_id: str) -> None:
        if await self.store.get_workflow(workflow_id) is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        if not await self.store.delete_workflow_if_idle(workflow_id):
            active = await self.store.count_active_executions(workflow_id=workflow_id)
            raise ConflictError(
                f"Cannot delete workflow {workflow_id}: {active} active execution(s)",
                {"workflow_id": workflow_id, "active_executions": active},
            )
        await self.cache.delete(CACHE_PREFIX + workflow_id)
        logger.info(f"Workflow deleted: {workflow_id}")

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        cached = await self.cache.get(CACHE_PREFIX + workflow_id)
        if cached is not None:
            return Workflow.model_validate(cached)
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is not None:
            await self._cache_workflow(workflow)
        return workflow

    async def list_workflows(
        self,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Workflow]:
        return await self.store.list_workflows(status=status, type=type, limit=limit)

    # ------------------------------------------------------------------
    # Executions
    async def _require_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        return workflow

    async def _admit(self, execution: Execution) -> None:
        admitted = await self.store.insert_execution(
            execution, max_active=self.settings.max_active_per_customer
        )
        if not admitted:
            raise LimitExceededError(
                f"Customer {execution.customer_id} already has "
                f"{self.settings.max_active_per_customer} active executions",
                {
                    "customer_id": execution.customer_id,
                    "limit": self.settings.max_active_per_customer,
                },
            )

    async def execute_workflow(
        self, workflow_id: str, context: Optional[Dict[str, Any]] = None
    ) -> Execution:
        workflow = await self._require_workflow(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise StateError(
                f"Workflow is not active: {workflow_id}",
                {"workflow_id": workflow_id, "status": workflow.status.value},
            )

        context = dict(context or {})
        now = self.clock()
        execution = Execution(
            execution_id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            customer_id=_customer_id(context),
            context=context,
            status=ExecutionStatus.RUNNING,
            started_at=now,
            created_at=now,
        )
        await self._admit(execution)
        logger.info(f"Executing workflow {workflow_id} as {execution.execution_id}")
        return await self._run(workflow, execution)

    async def schedule_workflow(
        self,
        workflow_id: str,
        context: Optional[Dict[str, Any]] = None,
        when: Optional[datetime] = None,
    ) -> Execution:
        await self._require_workflow(workflow_id)
        now = self.clock()
        if when is None or ensure_utc(when) <= now:
            raise ValidationError(
                "Scheduled time must be in the future",
                {"scheduled_at": "Scheduled time must be in the future"},
            )

        context = dict(context or {})
        execution = Execution(
            execution_id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            customer_id=_customer_id(context),
            context=context,
            status=ExecutionStatus.SCHEDULED,
            scheduled_at=ensure_utc(when),
            created_at=now,
        )
        await self._admit(execution)
        logger.info(
            f"Workflow {workflow_id} scheduled as {execution.execution_id} for {execution.scheduled_at}"
        )
        return execution

    async def cancel_execution(self, execution_id: str) -> bool:
        cancelled = await self.store.transition_execution(
            execution_id,
            [ExecutionStatus.SCHEDULED],
            ExecutionStatus.CANCELLED,
            completed_at=self.clock(),
        )
        if cancelled:
            logger.info(f"Execution cancelled: {execution_id}")
        return cancelled

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        return await self.store.get_execution(execution_id)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        customer_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        return await self.store.list_executions(
            workflow_id=workflow_id, status=status, customer_id=customer_id, limit=limit
        )

    async def process_scheduled_executions(
        self, batch_size: Optional[int] = None
    ) -> List[Execution]:
        """Run due scheduled executions and continuations, oldest first."""
        limit = batch_size or self.settings.scheduler_batch_size
        due = await self.store.due_executions(self.clock(), limit)
        processed: List[Execution] = []
        for execution in due:
            try:
                started_at = self.clock()
                promoted = await self.store.transition_execution(
                    execution.execution_id,
                    [ExecutionStatus.SCHEDULED],
                    ExecutionStatus.RUNNING,
                    started_at=started_at,
                )
                if not promoted:
                    logger.debug(f"Execution {execution.execution_id} no longer scheduled")
                    continue
                execution.status = ExecutionStatus.RUNNING
                execution.started_at = started_at

                workflow = await self.get_workflow(execution.workflow_id)
                if workflow is None or workflow.status != WorkflowStatus.ACTIVE:
                    await self.store.transition_execution(
                        execution.execution_id,
                        [ExecutionStatus.RUNNING],
                        ExecutionStatus.FAILED,
                        completed_at=self.clock(),
                        error=f"Workflow not found or inactive: {execution.workflow_id}",
                    )
                    final = await self.store.get_execution(execution.execution_id)
                else:
                    final = await self._run(workflow, execution)
            except Exception as exc:
                logger.exception(f"Scheduled execution {execution.execution_id} failed")
                await self.store.transition_execution(
                    execution.execution_id,
                    [ExecutionStatus.RUNNING],
                    ExecutionStatus.FAILED,
                    completed_at=self.clock(),
                    error=str(exc),
                )
                final = await self.store.get_execution(execution.execution_id)
            if final is not None:
                processed.append(final)
        if processed:
            logger.info(f"Processed {len(processed)} scheduled execution(s)")
        return processed

    async def cleanup_old_executions(self, days: Optional[int] = None) -> int:
        days = self.settings.execution_retention_days if days is None else days
        removed = await self.store.delete_executions_before(self.clock() - timedelta(days=days))
        logger.info(f"Removed {removed} execution(s) older than {days} days")
        return removed

    async def get_workflow_statistics(self, workflow_id: str) -> Dict[str, Any]:
        if await self.store.get_workflow(workflow_id) is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id})
        counts = await self.store.execution_counts(workflow_id)
        total = sum(counts.values())
        stats: Dict[str, Any] = {"total_executions": total}
        for status in ExecutionStatus:
            stats[f"{status.value}_executions"] = counts.get(status.value, 0)
        completed = counts.get(ExecutionStatus.COMPLETED.value, 0)
        stats["success_rate"] = round(completed / total * 100, 2) if total else 0
        return stats

    # ------------------------------------------------------------------
    # Events
    @staticmethod
    def _listens_for(workflow: Workflow, event_name: str) -> bool:
        for node in workflow.nodes:
            if not node.is_trigger or node.config.get("enabled", True) is False:
                continue
            event = node.config.get("event")
            if event == event_name:
                return True
            if event == CUSTOM_EVENT and node.config.get("custom_event_name") == event_name:
                return True
        return False

    async def trigger_workflows_by_event(
        self, event_name: str, payload: Optional[Dict[str, Any]] = None
    ) -> List[Execution]:
        """Execute every active workflow whose trigger listens for ``event_name``."""
        workflows = await self.store.list_workflows(status=WorkflowStatus.ACTIVE.value)
        executions: List[Execution] = []
        for workflow in workflows:
            if not self._listens_for(workflow, event_name):
                continue
            context = dict(payload or {})
            context["event"] = event_name
            try:
                executions.append(await self.execute_workflow(workflow.workflow_id, context))
            except MarketflowError as exc:
                logger.warning(
                    f"Workflow {workflow.workflow_id} not triggered by {event_name}: {exc}"
                )
            except Exception:
                logger.warning(
                    f"Workflow {workflow.workflow_id} crashed on {event_name}", exc_info=True
                )
        return executions

    def register_event_listeners(
        self,
        dispatcher: Optional[EventDispatcher] = None,
        events: Sequence[str] = ("*",),
        priority: int = 0,
    ):
        """Start workflows from dispatched events; returns the listener."""
        dispatcher = dispatcher or self.services.dispatcher
        if dispatcher is None:
            raise ValueError("No event dispatcher available")

        async def trigger_listener(payload, event_name, _dispatcher):
            return await self.trigger_workflows_by_event(event_name, payload)

        for event in events:
            dispatcher.add_listener(event, trigger_listener, priority)
        return trigger_listener

    # ------------------------------------------------------------------
    # Traversal
    async def _run(self, workflow: Workflow, execution: Execution) -> Execution:
        context = dict(execution.context)
        results: Dict[str, NodeResult] = {}
        try:
            error = await self._traverse(workflow, execution, context, results)
        except MarketflowError as exc:
            error = str(exc)
        except Exception as exc:
            await self._finish(execution, context, results, str(exc))
            raise

        await self._finish(execution, context, results, error)
        final = await self.store.get_execution(execution.execution_id)
        return final or execution

    async def _finish(
        self,
        execution: Execution,
        context: Dict[str, Any],
        results: Dict[str, NodeResult],
        error: Optional[str],
    ) -> None:
        status = ExecutionStatus.FAILED if error else ExecutionStatus.COMPLETED
        updated = await self.store.transition_execution(
            execution.execution_id,
            [ExecutionStatus.RUNNING],
            status,
            completed_at=self.clock(),
            result=results,
            context=context,
            error=error,
        )
        if not updated:
            logger.warning(f"Execution {execution.execution_id} left running state concurrently")
        elif error:
            logger.info(f"Execution {execution.execution_id} failed: {error}")
        else:
            logger.info(f"Execution {execution.execution_id} completed")

    async def _traverse(
        self,
        workflow: Workflow,
        execution: Execution,
        context: Dict[str, Any],
        results: Dict[str, NodeResult],
    ) -> Optional[str]:
        """Walk the graph; returns the failing node's error or ``None``."""
        if execution.resume_node_id:
            node_id: Optional[str] = execution.resume_node_id
        else:
            start = workflow.start_node()
            if start is None:
                raise StructureError(f"Workflow {workflow.workflow_id} has no trigger node")
            node_id = start.id

        started_at = execution.started_at or self.clock()
        timeout = self.settings.execution_timeout

        while node_id is not None:
            elapsed = (self.clock() - started_at).total_seconds()
            if elapsed > timeout:
                raise ExecutionTimeoutError(
                    f"Execution exceeded {timeout:g}s timeout",
                    {"execution_id": execution.execution_id, "node_id": node_id},
                )

            node = workflow.get_node(node_id)
            if node is None:
                raise NotFoundError(f"Node not found: {node_id}", {"node_id": node_id})
            handler = create_handler(
                node.type,
                node.id,
                node.config,
                registry=self.services.node_types,
                providers=self.services.providers,
                clock=self.clock,
            )
            result = await run_node(handler, context)
            results[node.id] = result
            if not result.success:
                return result.error or f"Node {node.id} failed"

            output = result.output or {}
            context.update(output)
            next_id = self._next_node_id(node, output)

            resume_at = self._delayed_until(node, output)
            if resume_at is not None and next_id is not None:
                continuation_id = await self._schedule_continuation(
                    execution, context, next_id, resume_at
                )
                result.meta = {**(result.meta or {}), "continuation_execution_id": continuation_id}
                return None

            logger.debug(f"Execution {execution.execution_id}: {node.id} -> {next_id}")
            node_id = next_id
        return None

    @staticmethod
    def _next_node_id(node: NodeDefinition, output: Mapping[str, Any]) -> Optional[str]:
        selected = output.get("selected_next_node_id")
        if selected:
            if selected not in node.next_nodes:
                raise StructureError(
                    f"Node {node.id} selected {selected}, which is not one of its successors",
                    {"node_id": node.id, "selected_next_node_id": selected},
                )
            return selected
        # An unbranched condition outcome ends the run.
        if node.type == ConditionNode.node_type:
            return None
        return node.next_nodes[0] if node.next_nodes else None

    def _delayed_until(self, node: NodeDefinition, output: Mapping[str, Any]) -> Optional[datetime]:
        raw = output.get("delayed_until")
        if not raw:
            return None
        try:
            moment = ensure_utc(raw if isinstance(raw, datetime) else datetime.fromisoformat(raw))
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"Node {node.id} returned an invalid delayed_until: {raw!r}",
                context={"node_id": node.id, "delayed_until": repr(raw)},
            ) from exc
        return moment if moment > self.clock() else None

    async def _schedule_continuation(
        self,
        execution: Execution,
        context: Dict[str, Any],
        next_id: str,
        resume_at: datetime,
    ) -> str:
        continuation = Execution(
            execution_id=uuid.uuid4().hex,
            workflow_id=execution.workflow_id,
            customer_id=execution.customer_id,
            context=dict(context),
            status=ExecutionStatus.SCHEDULED,
            scheduled_at=resume_at,
            resume_node_id=next_id,
            parent_execution_id=execution.execution_id,
            created_at=self.clock(),
        )
        # Continuations belong to an already admitted run.
        await self.store.insert_execution(continuation)
        logger.info(
            f"Execution {execution.execution_id} suspended until {resume_at}, "
            f"continuing as {continuation.execution_id}"
        )
        return continuation.execution_id

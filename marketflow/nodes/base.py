"""Node handler interface and the shared lifecycle driver."""

from __future__ import annotations

import logging
import time
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..contracts import NodeResult
from ..errors import StateError, ValidationError
from ..providers import ProviderRegistry
from ..utils.clock import Clock, utcnow
from .schema import FieldRule, apply_defaults, validate_config

logger = logging.getLogger(__name__)


class NodeConfig(BaseModel):
    """Base for the typed per-kind configuration models."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = True


class NodeHandler:
    """Executes one node of a workflow.

    Subclasses declare ``node_type``, a ``schema`` of :class:`FieldRule`s for
    the dynamic configuration map, and a ``config_model`` the map is parsed
    into once it passed validation. The body lives in :meth:`execute_node`
    and reads the typed configuration from ``self.options``.
    """

    node_type: ClassVar[str] = ""
    schema: ClassVar[Dict[str, FieldRule]] = {}
    config_model: ClassVar[Type[NodeConfig]] = NodeConfig

    def __init__(
        self,
        node_id: str,
        config: Optional[Mapping[str, Any]] = None,
        *,
        providers: Optional[ProviderRegistry] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.node_id = node_id
        self.config: Dict[str, Any] = dict(config or {})
        self.providers = providers
        self.clock = clock
        self.options: Any = None
        self.executing = False

    def validate(self) -> List[str]:
        """Return every schema and handler-specific violation."""
        errors = validate_config(self.config, self.schema)
        errors.extend(self.validate_custom())
        return errors

    def validate_custom(self) -> List[str]:
        """Hook for checks that span several fields."""
        return []

    def parse_config(self) -> NodeConfig:
        try:
            return self.config_model.model_validate(apply_defaults(self.config, self.schema))
        except PydanticValidationError as exc:
            messages = [
                f"Field '{'.'.join(str(p) for p in err['loc'])}' {err['msg']}"
                for err in exc.errors()
            ]
            raise ValidationError("Node configuration is invalid", messages) from exc

    async def execute_node(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Run the node body.

        Returns a mapping with the optional keys ``success`` (default
        ``True``), ``output``, ``error`` and ``meta``.
        """
        raise NotImplementedError


async def run_node(handler: NodeHandler, context: Dict[str, Any]) -> NodeResult:
    """Validate, execute and normalize one node step.

    Re-entrant use of the same handler raises :class:`StateError`; every
    other failure is reported through the returned :class:`NodeResult`.
    """
    if handler.executing:
        raise StateError(
            f"Node is already executing: {handler.node_id}",
            {"node_id": handler.node_id},
        )

    handler.executing = True
    started = time.perf_counter()
    try:
        try:
            errors = handler.validate()
            if errors:
                raise ValidationError("Node validation failed", errors)
            handler.options = handler.parse_config()
            logger.debug("Executing node %s (%s)", handler.node_id, handler.node_type)
            body = await handler.execute_node(context)
        except Exception as exc:
            meta: Optional[Dict[str, Any]] = None
            if isinstance(exc, ValidationError):
                meta = {"validation_errors": exc.errors}
            logger.warning("Node %s failed: %s", handler.node_id, exc)
            return NodeResult(
                success=False,
                node_id=handler.node_id,
                node_type=handler.node_type,
                execution_time=time.perf_counter() - started,
                timestamp=handler.clock(),
                error=str(exc),
                meta=meta,
            )

        body = body or {}
        return NodeResult(
            success=bool(body.get("success", True)),
            node_id=handler.node_id,
            node_type=handler.node_type,
            execution_time=time.perf_counter() - started,
            timestamp=handler.clock(),
            output=body.get("output"),
            error=body.get("error"),
            meta=body.get("meta"),
        )
    finally:
        handler.executing = False

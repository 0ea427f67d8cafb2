from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from ..errors import ValidationError
from ..utils.context import get_path
from .base import NodeConfig, NodeHandler
from .schema import FieldRule

MAX_DELAY_AMOUNT = 99999
_UNITS = {
    "seconds": timedelta(seconds=1),
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


class DelayConfig(NodeConfig):
    delay_type: Literal["fixed", "dynamic", "random"] = "fixed"
    delay_amount: int = Field(default=1, ge=0, le=MAX_DELAY_AMOUNT)
    delay_unit: Literal["seconds", "minutes", "hours", "days", "weeks"] = "hours"
    context_variable: Optional[str] = None
    min_delay_amount: int = Field(default=1, ge=0)
    max_delay_amount: int = Field(default=24, ge=0)
    max_delay_days: int = Field(default=30, ge=1)
    skip_weekends: bool = False


def skip_weekends(moment: datetime) -> datetime:
    """Move a Saturday or Sunday to the following Monday, same time of day."""
    weekday = moment.weekday()
    if weekday == 5:
        return moment + timedelta(days=2)
    if weekday == 6:
        return moment + timedelta(days=1)
    return moment


class DelayNode(NodeHandler):
    """Suspend the workflow until a computed point in time.

    The node only computes the end time. The engine persists the rest of the
    run as a scheduled continuation when ``delayed_until`` lies ahead.
    """

    node_type = "delay"
    schema = {
        "delay_type": FieldRule(type="string", options=["fixed", "dynamic", "random"], default="fixed"),
        "delay_amount": FieldRule(type="int", min=0, max=MAX_DELAY_AMOUNT),
        "delay_unit": FieldRule(
            type="string", options=list(_UNITS), default="hours"
        ),
        "context_variable": FieldRule(type="string"),
        "min_delay_amount": FieldRule(type="int", min=0),
        "max_delay_amount": FieldRule(type="int", min=0),
        "max_delay_days": FieldRule(type="int", min=1, max=365, default=30),
        "skip_weekends": FieldRule(type="bool", default=False),
        "enabled": FieldRule(type="bool", default=True),
    }
    config_model = DelayConfig

    def validate_custom(self) -> List[str]:
        errors = []
        delay_type = self.config.get("delay_type", "fixed")
        if delay_type == "dynamic" and not self.config.get("context_variable"):
            errors.append("Context variable is required for dynamic delays")
        if delay_type == "random":
            low = self.config.get("min_delay_amount", 1)
            high = self.config.get("max_delay_amount", 24)
            try:
                if int(low) > int(high):
                    errors.append("Minimum delay amount must not exceed maximum delay amount")
            except (TypeError, ValueError):
                pass
        return errors

    def _amount(self, context: Dict[str, Any]) -> int:
        opts = self.options
        if opts.delay_type == "dynamic":
            raw = get_path(context, opts.context_variable, 0)
            try:
                amount = int(float(raw))
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    "Dynamic delay amount is not numeric",
                    [f"Context value '{opts.context_variable}' must be numeric"],
                ) from exc
        elif opts.delay_type == "random":
            amount = random.randint(opts.min_delay_amount, opts.max_delay_amount)
        else:
            amount = opts.delay_amount
        return max(0, min(amount, MAX_DELAY_AMOUNT))

    def calculate_end_time(self, context: Dict[str, Any]) -> datetime:
        opts = self.options
        now = self.clock()
        amount = self._amount(context)
        end = now + _UNITS[opts.delay_unit] * amount
        end = min(end, now + timedelta(days=opts.max_delay_days))
        if opts.skip_weekends:
            end = skip_weekends(end)
        return end

    async def execute_node(self, context: Dict[str, Any]) -> Dict[str, Any]:
        if not self.options.enabled:
            return {"output": {"delayed": False}, "meta": {"reason": "Delay node is disabled"}}

        end = self.calculate_end_time(context)
        now = self.clock()
        if end <= now:
            return {
                "output": {"delayed": False},
                "meta": {"reason": "No delay needed", "calculated_end_time": end.isoformat()},
            }
        return {
            "output": {
                "delayed": True,
                "delayed_until": end.isoformat(),
                "delay_node_id": self.node_id,
            },
            "meta": {
                "delay_type": self.options.delay_type,
                "delay_seconds": (end - now).total_seconds(),
            },
        }

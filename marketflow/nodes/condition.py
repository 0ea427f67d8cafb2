from __future__ import annotations

import operator
import re
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..utils.context import get_path
from .base import NodeConfig, NodeHandler
from .schema import FieldRule


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        if actual is None:
            return False
        try:
            return op(float(actual), float(expected))
        except (TypeError, ValueError):
            try:
                return op(actual, expected)
            except TypeError:
                return False

    return check


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    # Loose comparison so "5" matches 5 coming from JSON payloads.
    return actual is not None and expected is not None and str(actual) == str(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, str):
        return str(expected) in actual
    try:
        return expected in actual
    except TypeError:
        return False


def _member(actual: Any, expected: Any) -> bool:
    if isinstance(expected, str):
        expected = [part.strip() for part in expected.split(",")]
    try:
        return any(_equals(actual, item) for item in expected)
    except TypeError:
        return False


def _regex(actual: Any, expected: Any) -> bool:
    if actual is None or not expected:
        return False
    return re.search(str(expected), str(actual)) is not None


def _empty(actual: Any, _: Any = None) -> bool:
    return actual is None or actual == "" or actual == [] or actual == {}


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": _equals,
    "==": _equals,
    "!=": lambda a, e: not _equals(a, e),
    "<>": lambda a, e: not _equals(a, e),
    ">": _compare(operator.gt),
    ">=": _compare(operator.ge),
    "<": _compare(operator.lt),
    "<=": _compare(operator.le),
    "contains": _contains,
    "not_contains": lambda a, e: not _contains(a, e),
    "in": _member,
    "not_in": lambda a, e: not _member(a, e),
    "regex": _regex,
    "empty": _empty,
    "not_empty": lambda a, e: not _empty(a),
}


class Rule(BaseModel):
    field: str
    operator: str = "="
    value: Any = None


class ConditionConfig(NodeConfig):
    conditions: List[Rule] = Field(default_factory=list)
    match: Literal["all", "any"] = "all"
    true_node_id: Optional[str] = None
    false_node_id: Optional[str] = None


def evaluate_rule(rule: Rule, context: Dict[str, Any]) -> bool:
    return OPERATORS[rule.operator](get_path(context, rule.field), rule.value)


class ConditionNode(NodeHandler):
    """Evaluate rules against the context and pick the branch to follow."""

    node_type = "condition"
    schema = {
        "conditions": FieldRule(type="array", required=True),
        "match": FieldRule(type="string", options=["all", "any"], default="all"),
        "true_node_id": FieldRule(type="string"),
        "false_node_id": FieldRule(type="string"),
        "enabled": FieldRule(type="bool", default=True),
    }
    config_model = ConditionConfig

    def validate_custom(self) -> List[str]:
        errors = []
        conditions = self.config.get("conditions")
        if not isinstance(conditions, list):
            return errors
        for index, rule in enumerate(conditions):
            if not isinstance(rule, dict) or not rule.get("field"):
                errors.append(f"Condition {index} requires a field")
                continue
            op = rule.get("operator", "=")
            if op not in OPERATORS:
                errors.append(f"Condition {index} has unsupported operator '{op}'")
        return errors

    async def execute_node(self, context: Dict[str, Any]) -> Dict[str, Any]:
        opts = self.options
        if not opts.enabled:
            return {"output": self._branch(True), "meta": {"reason": "Condition disabled"}}

        results = [evaluate_rule(rule, context) for rule in opts.conditions]
        outcome = all(results) if opts.match == "all" else any(results)
        return {"output": self._branch(outcome), "meta": {"rule_results": results}}

    def _branch(self, outcome: bool) -> Dict[str, Any]:
        # Without a branch id for the outcome the engine stops after this node.
        output: Dict[str, Any] = {"condition_result": outcome}
        branch = self.options.true_node_id if outcome else self.options.false_node_id
        if branch:
            output["selected_next_node_id"] = branch
        return output

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Dict, Optional, Sequence

from flowkernel.nodes.base import NodeProcessor
from flowkernel.service.context import ExecutionContext
from flowkernel.service.errors import NodeError
from flowkernel.service.sandbox import safe_eval_expr
from flowkernel.service.variables import TOKEN_PATTERN, to_display

_RANGE_PATTERN = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$")


def resolve_operand(context: ExecutionContext, variable: Any) -> Any:
    """Raw value behind ``variable``; ``None`` when it does not resolve."""
    if not isinstance(variable, str):
        return variable
    found, value = context.lookup(variable)
    if found:
        return value
    if TOKEN_PATTERN.fullmatch(variable.strip()):
        return None
    if "{{" in variable:
        return context.resolve(variable)
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, Mapping)):
        return len(value) == 0
    return False


def values_equal(left: Any, right: Any) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return to_display(left) == to_display(right)


def _contains(container: Any, needle: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, (list, tuple)):
        return any(values_equal(item, needle) for item in container)
    if isinstance(container, Mapping):
        return to_display(needle) in container
    return to_display(needle) in to_display(container)


def _ordered(left: Any, right: Any, compare) -> bool:
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is None or right_num is None:
        return False
    return compare(left_num, right_num)


def compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "equals":
        return values_equal(actual, expected)
    if operator == "notEquals":
        return not values_equal(actual, expected)
    if operator == "greaterThan":
        return _ordered(actual, expected, lambda a, b: a > b)
    if operator == "lessThan":
        return _ordered(actual, expected, lambda a, b: a < b)
    if operator == "greaterOrEqual":
        return _ordered(actual, expected, lambda a, b: a >= b)
    if operator == "lessOrEqual":
        return _ordered(actual, expected, lambda a, b: a <= b)
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "notContains":
        return not _contains(actual, expected)
    if operator == "startsWith":
        return actual is not None and to_display(actual).startswith(to_display(expected))
    if operator == "endsWith":
        return actual is not None and to_display(actual).endswith(to_display(expected))
    if operator == "isEmpty":
        return _is_empty(actual)
    if operator == "isNotEmpty":
        return not _is_empty(actual)
    raise NodeError(f"unknown condition operator '{operator}'")


def evaluate_condition(context: ExecutionContext, condition) -> Dict[str, Any]:
    actual = resolve_operand(context, condition.variable)
    expected = context.resolve_value(condition.value)
    return {
        "variable": condition.variable,
        "operator": condition.operator,
        "actual": actual,
        "expected": expected,
        "result": compare(condition.operator, actual, expected),
    }


class ConditionProcessor(NodeProcessor):
    """Selects branch ``"true"`` or ``"false"``."""

    node_type = "CONDITION"

    def _evaluate_expression(self, context: ExecutionContext, expression: str) -> bool:
        text = context.resolve(expression)
        try:
            return bool(safe_eval_expr(text, context.template_namespace()))
        except (ValueError, TypeError, ZeroDivisionError, OverflowError) as exc:
            raise NodeError(f"condition expression failed: {exc}") from exc

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        evaluated = [evaluate_condition(context, condition) for condition in config.conditions]
        if evaluated:
            outcomes = [entry["result"] for entry in evaluated]
            met = all(outcomes) if config.evaluation_mode == "all" else any(outcomes)
        else:
            met = self._evaluate_expression(context, config.expression or "")
        branch = "true" if met else "false"
        data = {
            "result": met,
            "branch": branch,
            "conditionsMet": met,
            "evaluatedConditions": evaluated,
        }
        if not evaluated:
            data["expression"] = config.expression
        return self.success(node, data, branch=branch)


class SwitchProcessor(NodeProcessor):
    """Selects the first matching case id, else ``"default"``."""

    node_type = "SWITCH"

    def _matches(self, config, actual: Any, case) -> bool:
        expected = case.value
        if config.match_type == "range":
            found = _RANGE_PATTERN.match(to_display(expected))
            number = _as_number(actual)
            if not found or number is None:
                return False
            low, high = sorted((float(found.group(1)), float(found.group(2))))
            return low <= number <= high
        left, right = to_display(actual), to_display(expected)
        if config.match_type == "regex":
            flags = 0 if config.case_sensitive else re.IGNORECASE
            try:
                return re.search(right, left, flags) is not None
            except re.error as exc:
                raise NodeError(f"case {case.id!r} has an invalid pattern: {exc}") from exc
        if not config.case_sensitive:
            left, right = left.lower(), right.lower()
        if config.match_type == "contains":
            return right in left
        if _as_number(actual) is not None and _as_number(expected) is not None:
            return _as_number(actual) == _as_number(expected)
        return left == right

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        actual = resolve_operand(context, config.switch_variable)
        default_case = next((case for case in config.cases if case.is_default), None)
        for case in config.cases:
            if case.is_default:
                continue
            if self._matches(config, actual, case):
                data = {
                    "result": case.value,
                    "value": actual,
                    "branch": case.id,
                    "matchedCase": case.id,
                    "matchedLabel": case.label,
                    "isDefault": False,
                }
                return self.success(node, data, branch=case.id)
        if default_case is None and not config.include_default:
            raise NodeError(f"no case matched value {to_display(actual)!r} and there is no default branch")
        data = {
            "result": actual,
            "value": actual,
            "branch": "default",
            "matchedCase": default_case.id if default_case else None,
            "matchedLabel": default_case.label if default_case else "default",
            "isDefault": True,
        }
        return self.success(node, data, branch="default")

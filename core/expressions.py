import logging
from collections.abc import Mapping
from typing import Any

from simpleeval import EvalWithCompoundTypes, InvalidExpression

from core.types_registry import NodeExecutionError

logger = logging.getLogger(__name__)

SAFE_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
}

SAFE_FUNCTIONS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "any": any,
    "all": all,
    "sorted": sorted,
    "list": list,
    "dict": dict,
}


class ExpressionError(NodeExecutionError):
    """Raised when a user expression cannot be parsed or evaluated."""

    def __init__(self, expression: str, original_exc: BaseException):
        super().__init__(f"Failed to evaluate expression '{expression}': {original_exc}", original_exc)
        self.expression = expression


def evaluate(expression: str, names: Mapping[str, Any] | None = None) -> Any:
    """Evaluate ``expression`` in a sandbox exposing only ``names`` and a few builtins."""
    evaluator = EvalWithCompoundTypes(
        names={**SAFE_NAMES, **(names or {})},
        functions=SAFE_FUNCTIONS,
    )
    try:
        return evaluator.eval(expression)
    except (InvalidExpression, SyntaxError, TypeError, ValueError, KeyError, IndexError,
            AttributeError, ArithmeticError) as e:
        raise ExpressionError(expression, e) from e


def evaluate_condition(expression: str, names: Mapping[str, Any] | None = None) -> bool:
    return bool(evaluate(expression, names))

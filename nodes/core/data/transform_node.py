import json
import logging
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import Field

from core.expressions import evaluate
from core.types_registry import ExecutionContext, ExecutionResult, NodeExecutionError, error_message
from nodes.base.definition import create_node_definition
from nodes.base.executable import (
    NodeExecutable,
    create_node_executable,
    failure_result,
    get_input_value,
    result_metadata,
    success_result,
)
from nodes.base.metadata import create_node_metadata
from nodes.base.parameters import create_node_parameters
from nodes.base.ports import create_node_ports

logger = logging.getLogger(__name__)

TransformOperation = Literal["map", "filter", "reduce", "sort", "group", "flatten", "unique", "reverse"]

transform_parameters = create_node_parameters(
    {
        "operation": (TransformOperation, Field(default="map", description="Transformation to apply")),
        "transform_function": (str, Field(default="item", description="Expression over item and index")),
        "filter_condition": (str, Field(default="", description="Filter expression; defaults to transform_function")),
        "reduce_function": (str, Field(default="acc + item", description="Expression over acc, item and index")),
        "reduce_initial": (str, Field(default="0", description="Initial accumulator as JSON")),
        "sort_key": (str, Field(default="", description="Field name or expression to sort by")),
        "sort_order": (Literal["asc", "desc"], Field(default="asc", description="Sort direction")),
        "group_key": (str, Field(default="", description="Field name or expression to group by")),
        "flatten_depth": (int, Field(default=1, ge=1, description="Levels to flatten")),
    },
    {
        "operation": "map",
        "transform_function": "item",
        "filter_condition": "",
        "reduce_function": "acc + item",
        "reduce_initial": "0",
        "sort_key": "",
        "sort_order": "asc",
        "group_key": "",
        "flatten_depth": 1,
    },
    {
        "operation": {
            "control_type": "select",
            "label": "Operation",
            "options": [
                {"value": op, "label": op.title()}
                for op in ("map", "filter", "reduce", "sort", "group", "flatten", "unique", "reverse")
            ],
        },
        "transform_function": {"control_type": "code", "label": "Transform", "placeholder": "item['price'] * 2"},
        "filter_condition": {"control_type": "code", "label": "Filter", "placeholder": "item['active']"},
        "reduce_function": {"control_type": "code", "label": "Reducer", "placeholder": "acc + item"},
        "reduce_initial": {"control_type": "text", "label": "Initial value", "placeholder": "0"},
    },
    model_name="TransformParams",
)

transform_definition = create_node_definition(
    id="transform",
    type="transform",
    metadata=create_node_metadata(
        {
            "id": "transform",
            "name": "Transform",
            "description": "Map, filter, reduce, sort and reshape arrays",
            "category": "data",
            "icon": "shuffle",
            "keywords": ["transform", "map", "filter", "reduce", "sort", "group", "flatten", "unique", "array"],
        }
    ),
    parameters=transform_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "data", "name": "Data", "data_type": "array", "required": True},
                {"id": "function", "name": "Function", "data_type": "string"},
            ],
            "output": [
                {"id": "result", "name": "Result", "data_type": "any"},
                {"id": "data", "name": "Data", "data_type": "any"},
                {"id": "output_count", "name": "Output count", "data_type": "number"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


def parse_initial_value(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


def _key_fn(key: str):
    def get(item: Any, index: int) -> Any:
        if isinstance(item, Mapping) and key in item:
            return item[key]
        return evaluate(key, {"item": item, "index": index})

    return get


def _flatten(items: list[Any], depth: int) -> list[Any]:
    flat: list[Any] = []
    for item in items:
        if isinstance(item, (list, tuple)) and depth > 0:
            flat.extend(_flatten(list(item), depth - 1))
        else:
            flat.append(item)
    return flat


def _unique(items: list[Any]) -> list[Any]:
    seen: set[str] = set()
    result: list[Any] = []
    for item in items:
        marker = json.dumps(item, sort_keys=True, default=str)
        if marker in seen:
            continue
        seen.add(marker)
        result.append(item)
    return result


def apply_transform(items: list[Any], params: dict[str, Any], function_override: str | None = None) -> Any:
    operation = params["operation"]
    expression = function_override or params["transform_function"]

    if operation == "map":
        return [evaluate(expression, {"item": item, "index": i}) for i, item in enumerate(items)]
    if operation == "filter":
        condition = params["filter_condition"] or expression
        return [item for i, item in enumerate(items) if evaluate(condition, {"item": item, "index": i})]
    if operation == "reduce":
        acc = parse_initial_value(params["reduce_initial"])
        reducer = function_override or params["reduce_function"]
        for i, item in enumerate(items):
            acc = evaluate(reducer, {"acc": acc, "item": item, "index": i})
        return acc
    if operation == "sort":
        reverse = params["sort_order"] == "desc"
        if not params["sort_key"]:
            return sorted(items, reverse=reverse)
        get = _key_fn(params["sort_key"])
        keyed = [(get(item, i), item) for i, item in enumerate(items)]
        try:
            keyed.sort(key=lambda pair: pair[0], reverse=reverse)
        except TypeError as e:
            raise NodeExecutionError(f"Cannot sort by {params['sort_key']}: {e}") from e
        return [item for _, item in keyed]
    if operation == "group":
        if not params["group_key"]:
            raise NodeExecutionError("group_key is required for group")
        get = _key_fn(params["group_key"])
        groups: dict[str, list[Any]] = {}
        for i, item in enumerate(items):
            groups.setdefault(str(get(item, i)), []).append(item)
        return groups
    if operation == "flatten":
        return _flatten(items, params["flatten_depth"])
    if operation == "unique":
        return _unique(items)
    return list(reversed(items))


def create_transform_executable() -> NodeExecutable:
    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        data = get_input_value(context, "data", params, [])
        if not isinstance(data, (list, tuple)):
            return failure_result("Input data must be an array for transformation")
        items = list(data)
        operation = params["operation"]
        context.logger.info(f"Performing {operation} transformation on {len(items)} items")

        try:
            transformed = apply_transform(items, params, get_input_value(context, "function"))
        except NodeExecutionError as e:
            context.logger.error(f"Transform {operation} failed: {error_message(e)}")
            return failure_result(e)
        except TypeError as e:
            return failure_result(f"Transform {operation} failed: {e}")

        if isinstance(transformed, (list, dict)):
            output_count = len(transformed)
        else:
            output_count = 1
        outputs = {
            "result": transformed,
            "data": transformed,
            "input_count": len(items),
            "output_count": output_count,
            "operation": operation,
            "success": True,
        }
        return success_result(outputs, **result_metadata(context, "transform"))

    return create_node_executable(execute, validate_config=transform_parameters.parse)

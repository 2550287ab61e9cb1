import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from core.types_registry import NodeValidationError

logger = logging.getLogger(__name__)

# Fields every node accepts. Only the first three carry defaults.
BASE_DEFAULTS: dict[str, Any] = {
    "enabled": True,
    "timeout": 30000,
    "retries": 1,
}

BASE_SCHEMA: dict[str, Any] = {
    "enabled": (bool, Field(default=True, description="Whether the node runs")),
    "timeout": (int, Field(default=30000, ge=0, description="Timeout in milliseconds")),
    "retries": (int, Field(default=1, ge=0, description="Retry attempts on failure")),
    "label": (str | None, Field(default=None, description="Display label")),
    "description": (str | None, Field(default=None, description="Free-form notes")),
}


class _ParamsBase(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore", arbitrary_types_allowed=True)


@dataclass(frozen=True)
class SafeParseResult:
    success: bool
    data: dict[str, Any] | None = None
    error: NodeValidationError | None = None


def _issues(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"path": list(err.get("loc", ())), "message": err.get("msg", ""), "type": err.get("type")}
        for err in exc.errors()
    ]


def _format_issues(issues: list[dict[str, Any]]) -> str:
    parts = []
    for issue in issues:
        path = ".".join(str(p) for p in issue["path"]) or "<root>"
        parts.append(f"{path}: {issue['message']}")
    return "; ".join(parts)


class NodeParameters:
    """Validated parameter capsule for a node type.

    ``fields`` is an opaque UI descriptor; nothing here reads it.
    """

    def __init__(
        self,
        schema: type[BaseModel],
        defaults: dict[str, Any],
        fields: dict[str, Any],
    ):
        self.schema = schema
        self.defaults = defaults
        self.fields = fields

    def parse(self, params: Any) -> dict[str, Any]:
        """Validate ``params`` (defaults filled in) and return a plain dict.

        Raises NodeValidationError when validation fails, including for ``None``.
        """
        data = {**self.defaults, **params} if isinstance(params, Mapping) else params
        try:
            model = self.schema.model_validate(data)
        except ValidationError as ve:
            issues = _issues(ve)
            raise NodeValidationError(
                f"Invalid parameters: {_format_issues(issues)}", issues
            ) from ve
        return model.model_dump()

    def safe_parse(self, params: Any) -> SafeParseResult:
        try:
            return SafeParseResult(success=True, data=self.parse(params))
        except NodeValidationError as e:
            return SafeParseResult(success=False, error=e)

    def is_valid(self, params: Any) -> bool:
        return self.safe_parse(params).success

    def with_defaults(self, partial: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Shallow overlay of ``partial`` onto the defaults; nested values replace, never merge."""
        return {**self.defaults, **(partial or {})}


def create_node_parameters(
    schema: dict[str, Any] | None,
    defaults: dict[str, Any] | None,
    fields: dict[str, Any] | None = None,
    model_name: str = "NodeParams",
) -> NodeParameters:
    """Build a parameter capsule from pydantic field definitions.

    ``schema`` maps field names to ``create_model`` definitions, e.g.
    ``{"count": (int | None, None)}``. The base fields (enabled, timeout,
    retries, label, description) are always present; caller definitions and
    defaults override them.
    """
    field_defs = {**BASE_SCHEMA, **(schema or {})}
    model = create_model(model_name, __base__=_ParamsBase, **field_defs)
    merged_defaults = {**BASE_DEFAULTS, **(defaults or {})}
    return NodeParameters(schema=model, defaults=merged_defaults, fields=dict(fields or {}))

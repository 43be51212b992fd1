"""Schema validation of tool-call arguments produced by the model."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from engezna_agent.errors import ErrorKind
from engezna_agent.models import ToolResult
from engezna_agent.tools.params import field_errors
from engezna_agent.tools.registry import get_tool_definition


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


@dataclass(frozen=True)
class ParamValidation:
    valid: bool
    params: BaseModel | None = None
    errors: tuple[FieldError, ...] = field(default_factory=tuple)
    error_kind: ErrorKind | None = None

    def to_tool_result(self) -> ToolResult:
        """Failed validation as the result fed back to the model."""
        if self.valid:
            raise ValueError("a valid ParamValidation has no failure result")
        if self.error_kind is ErrorKind.UNKNOWN_TOOL:
            return ToolResult.failure(ErrorKind.UNKNOWN_TOOL, self.errors[0].message)
        detail = json.dumps(
            [{"field": e.field, "message": e.message} for e in self.errors], ensure_ascii=False,
        )
        return ToolResult.failure(ErrorKind.VALIDATION_ERROR, f"Invalid parameters: {detail}")


def validate_tool_params(tool_name: str, raw_params: Any) -> ParamValidation:
    """Check ``raw_params`` against the tool's schema, collecting every error.

    Pure: depends only on its arguments and the static registry.
    """
    definition = get_tool_definition(tool_name)
    if definition is None:
        return ParamValidation(
            valid=False,
            errors=(FieldError("tool_name", f"Unknown tool: {tool_name}"),),
            error_kind=ErrorKind.UNKNOWN_TOOL,
        )

    if raw_params is None:
        raw_params = {}
    if not isinstance(raw_params, dict):
        return ParamValidation(
            valid=False,
            errors=(FieldError("params", "Arguments must be a JSON object"),),
            error_kind=ErrorKind.VALIDATION_ERROR,
        )

    try:
        params = definition.params_model.model_validate(raw_params)
    except ValidationError as exc:
        return ParamValidation(
            valid=False,
            errors=tuple(FieldError(e["field"], e["message"]) for e in field_errors(exc)),
            error_kind=ErrorKind.VALIDATION_ERROR,
        )
    return ParamValidation(valid=True, params=params)

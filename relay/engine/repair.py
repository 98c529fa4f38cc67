"""Repair of tool-call arguments that failed validation.

Local repair first (syntactic JSON fixes plus scalar coercion), then
a single request to a repair model. If both fail the original
ToolValidationError is re-raised for the dispatcher to report.
"""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from .cancellation import CancellationToken, race
from .errors import OperationCancelledError, ProviderError, ToolValidationError
from .json_repair import loads_repaired
from .models import ParamType, ToolCallRequest, ToolDefinition
from .validation import validate_input

if TYPE_CHECKING:
    from .providers.base import Provider

logger = logging.getLogger(__name__)

REPAIR_SYSTEM_PROMPT = (
    "You fix malformed tool call arguments. Reply with a single JSON "
    "object that satisfies the given schema and nothing else."
)


def build_repair_prompt(
    request: ToolCallRequest, definition: ToolDefinition, error: ToolValidationError
) -> str:
    raw = request.raw_input
    return "\n".join([
        f'The model tried to call the tool "{request.tool_name}" with the following arguments:',
        raw if isinstance(raw, str) else json.dumps(raw),
        "The tool accepts the following schema:",
        json.dumps(definition.to_json_schema()),
        "Validation failed with:",
        str(error),
        "Please fix the arguments.",
    ])


def _coerce_scalar(param_type: ParamType, value: Any) -> Any:
    """Undo the usual stringification of numbers and booleans."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if param_type == ParamType.NUMBER:
        try:
            number = float(text)
        except ValueError:
            return value
        return int(number) if number.is_integer() and "." not in text else number
    if param_type == ParamType.BOOLEAN and text.lower() in ("true", "false"):
        return text.lower() == "true"
    if param_type in (ParamType.ARRAY, ParamType.OBJECT) and text[:1] in "[{":
        try:
            return loads_repaired(text)
        except ValueError:
            return value
    return value


def local_repair(request: ToolCallRequest, definition: ToolDefinition) -> dict[str, Any]:
    """Apply syntactic fixes and re-validate. Raises on failure."""
    raw = request.raw_input
    data = loads_repaired(raw) if isinstance(raw, str) else dict(raw)
    if not isinstance(data, dict):
        raise ValueError("repaired input is not an object")
    for param in definition.parameters:
        if param.name in data:
            data[param.name] = _coerce_scalar(param.type, data[param.name])
    return validate_input(definition.name, definition.parameters, data)


class ToolCallRepairer:
    """Best-effort correction of invalid tool-call input."""

    def __init__(self, provider: Provider | None = None, model: str | None = None):
        self.provider = provider
        self.model = model

    async def repair(
        self,
        request: ToolCallRequest,
        definition: ToolDefinition,
        error: ToolValidationError,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, Any]:
        logger.warning("Attempting to repair tool call: %s (%s)", request.tool_name, error)
        try:
            repaired = local_repair(request, definition)
            logger.debug("Tool call %s repaired locally: %s", request.call_id, repaired)
            return repaired
        except (ValueError, ToolValidationError) as exc:
            logger.info("Local repair failed for %s: %s", request.tool_name, exc)

        if self.provider is None:
            raise error
        try:
            repaired = await self._remote_repair(request, definition, error, cancel_token)
        except OperationCancelledError:
            raise
        except (ProviderError, ValueError, ToolValidationError) as exc:
            logger.warning("Remote repair failed for %s: %s", request.tool_name, exc)
            raise error from exc
        logger.debug("Tool call %s repaired remotely: %s", request.call_id, repaired)
        return repaired

    async def _remote_repair(
        self,
        request: ToolCallRequest,
        definition: ToolDefinition,
        error: ToolValidationError,
        cancel_token: CancellationToken | None,
    ) -> dict[str, Any]:
        reply = await race(
            self.provider.complete(
                build_repair_prompt(request, definition, error),
                model=self.model,
                system_prompt=REPAIR_SYSTEM_PROMPT,
                json_output=True,
                cancel_token=cancel_token,
            ),
            cancel_token,
            "tool repair",
        )
        data = loads_repaired(reply)
        return validate_input(definition.name, definition.parameters, data)

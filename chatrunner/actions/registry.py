"""Registry for action registration and dispatch."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ConfigDict, ValidationError, create_model

from chatrunner.actions.base import Action, ActionContext
from chatrunner.db import Database
from chatrunner.exceptions import ActionError, UnknownActionError
from chatrunner.models import ActionResult

LOGGER = logging.getLogger(__name__)


class ActionRegistry:
    """Explicit name-keyed registry of actions.

    The first action registered under a name wins; later duplicates are
    ignored so that the advertised declarations and dispatch agree.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._actions: dict[str, Action] = {}

    def register(self, action: Action) -> None:
        if action.name in self._actions:
            LOGGER.warning("Ignoring duplicate action definition %r", action.name)
            return
        self._actions[action.name] = action

    def load(self) -> list[Action]:
        return list(self._actions.values())

    def resolve(self, name: str) -> Action | None:
        return self._actions.get(name)

    def resolve_command(self, command: str) -> Action | None:
        return next((a for a in self._actions.values() if a.command == command), None)

    def list_declarations(self) -> list[dict[str, Any]]:
        return [
            {
                "name": action.name,
                "description": action.description,
                "parameters": {
                    "type": "OBJECT",
                    "properties": action.parameters_schema.get("properties", {}),
                    "required": action.parameters_schema.get("required", []),
                },
            }
            for action in self._actions.values()
        ]

    async def dispatch(
        self,
        name: str,
        context: ActionContext,
        arguments: dict[str, Any],
        call_id: str | None = None,
    ) -> ActionResult:
        action = self._actions.get(name)
        if action is None:
            raise UnknownActionError(name)

        validated = _validate_json_schema(action.parameters_schema, arguments)
        try:
            value = await action.run(context, validated, call_id)
        except Exception as exc:  # noqa: BLE001
            self._db.log_action_execution(
                context.chat_id, name, call_id, validated, {"error": str(exc)}, succeeded=False
            )
            if isinstance(exc, ActionError):
                raise
            raise ActionError(str(exc)) from exc

        result = action.to_result(value)
        self._db.log_action_execution(context.chat_id, name, call_id, validated, result.result, succeeded=True)
        return result


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[Any, Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        default = ... if name in required else config.get("default")
        fields[name] = (typ, default)

    # Context keys merged by the caller (e.g. group_name) pass through untouched.
    model = create_model("ActionInputModel", __config__=ConfigDict(extra="allow"), **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ActionError(f"Invalid input for action: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> Any:
    mapping: dict[str, Any] = {
        "string": str,
        "integer": int,
        # Whole numbers stay ints ("10", not "10.0").
        "number": int | float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type.lower(), str)

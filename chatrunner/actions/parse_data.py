"""Structured movement extraction written to the group's spreadsheet tab."""

from __future__ import annotations

import logging
import re
from typing import Any

from chatrunner.actions.base import Action, ActionContext
from chatrunner.exceptions import ActionError
from chatrunner.models import ActionPermissions
from chatrunner.sheets import SheetsManager

LOGGER = logging.getLogger(__name__)

_CURRENCY_PATTERN = re.compile(r"\(([^)]+)\)")


class ParseDataAction(Action):
    """Append one movement (ODT id, description, amount) to the sheet named after the group."""

    name = "parseData"
    description = "Extrae la información de un mensaje y la estructura."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "odt_id": {
                "type": "string",
                "description": (
                    "ID de la ODT, que generalmente es un número o GAD, Préstamo, Transcuenta, "
                    "Cambio de moneda, Comisiones o Venta"
                ),
            },
            "description": {
                "type": "string",
                "description": "Descripcion del movimiento realizado",
            },
            "amount": {
                "type": "number",
                "description": (
                    "Monto del movimiento realizado, puedes identificarlo fácilmente porque es el monto "
                    "que está en la misma moneda que la usada en el nombre del grupo"
                ),
            },
        },
        "required": ["odt_id", "description", "amount"],
    }
    permissions = ActionPermissions(auto_execute=True, use_root_db=True)

    def __init__(self, sheets: SheetsManager, spreadsheet_id: str) -> None:
        self._sheets = sheets
        self._spreadsheet_id = spreadsheet_id

    async def run(self, context: ActionContext, args: dict[str, Any], call_id: str | None) -> str:
        group_name = args.get("group_name") or context.group_name
        if not group_name:
            raise ActionError("parseData can only run in a group chat")

        match = _CURRENCY_PATTERN.search(group_name)
        currency = match.group(1) if match else group_name

        row = await self._sheets.get_last_row(group_name, "A", self._spreadsheet_id) + 1
        await self._sheets.write(group_name, "A", row, self._spreadsheet_id, args["odt_id"])
        await self._sheets.write(group_name, "B", row, self._spreadsheet_id, args["description"])
        await self._sheets.write(group_name, "C", row, self._spreadsheet_id, args["amount"])
        LOGGER.info("parseData wrote row %d of %r (call %s)", row, group_name, call_id)

        await context.reply(
            "Ha sido registrado el siguiente movimiento:\n\n"
            f"- *ODT*: {args['odt_id']}\n"
            f"- *Descripción*: {args['description']}\n"
            f"- *Monto*: {currency}{args['amount']}",
            context.sender_ids[0] if context.sender_ids else None,
        )
        return "Message parsed and data written to Google Sheets"

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from flask import Blueprint, g, jsonify

from ..errors import BadRequest, NotFound
from ..extensions import get_store
from ..orders import default_printer, machine_spec
from ..security import require_admin
from . import as_float, as_int, request_data, require_fields, text

logger = logging.getLogger(__name__)

bp = Blueprint("printers", __name__, url_prefix="/api/printers")

PRINTER_STATUSES = ("online", "offline", "maintenance")
DEFAULT_MAINTENANCE_INTERVAL_DAYS = 30
SPEC_FIELDS = ("power_watts", "cost_pln", "lifespan_hours", "maintenance_rate")


def _printer_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in ("name", "model", "location", "build_volume", "notes"):
        if key in data:
            out[key] = text(data, key) or None
    if "status" in data:
        status = text(data, "status")
        if status not in PRINTER_STATUSES:
            raise BadRequest("Invalid status", allowed=list(PRINTER_STATUSES))
        out["status"] = status
    if "maintenance_interval_days" in data:
        out["maintenance_interval_days"] = as_int(data["maintenance_interval_days"], "maintenance_interval_days", 1, 3650)
    if "total_print_hours" in data:
        out["total_print_hours"] = as_float(data["total_print_hours"], "total_print_hours", minimum=0)
    for key in SPEC_FIELDS:
        if key in data and text(data, key):
            out[key] = as_float(data[key], key, minimum=0)
            if key != "maintenance_rate" and out[key] <= 0:
                raise BadRequest(f"Invalid {key}")
    if "is_default" in data:
        out["is_default"] = data["is_default"] in (True, "true", "1", 1)
    return out


def _make_default(printer_id: str) -> Dict[str, Any]:
    store = get_store()
    store.update_where("printers", {"is_default": True}, {"is_default": False})
    printer = store.update("printers", printer_id, {"is_default": True})
    logger.info("Printer %s set as default", printer_id)
    return printer


def _get(printer_id: str) -> Dict[str, Any]:
    printer = get_store().get("printers", printer_id)
    if not printer:
        raise NotFound("Printer not found")
    return printer


@bp.get("")
@require_admin
def list_printers():
    rows = get_store().select("printers", order_by="name")
    return jsonify({"ok": True, "printers": rows, "count": len(rows)})


@bp.get("/default")
def default_printer_specs():
    """Public: running-cost figures used for price estimates."""
    printer = default_printer(get_store())
    return jsonify({
        "ok": True,
        "printer": machine_spec(printer).to_dict(),
        "printerId": printer["id"] if printer else None,
        "name": printer.get("name") if printer else None,
    })


@bp.get("/<printer_id>")
@require_admin
def get_printer(printer_id: str):
    printer = _get(printer_id)
    logs = get_store().select(
        "maintenance_logs", {"printer_id": printer_id}, order_by="created_at", descending=True, limit=20
    )
    return jsonify({"ok": True, "printer": printer, "maintenance": logs})


@bp.post("")
@require_admin
def create_printer():
    data = request_data()
    require_fields(data, ("name",))
    fields = _printer_fields(data)
    fields.setdefault("status", "offline")
    fields.setdefault("maintenance_interval_days", DEFAULT_MAINTENANCE_INTERVAL_DAYS)
    fields.setdefault("total_print_hours", 0.0)
    make_default = fields.pop("is_default", False)
    printer = get_store().insert("printers", dict(fields, is_default=False))
    if make_default:
        printer = _make_default(printer["id"])
    logger.info("Printer %s created (%s)", printer["id"], printer.get("name"))
    return jsonify({"ok": True, "message": "Printer created", "printer": printer}), 201


@bp.put("/<printer_id>")
@require_admin
def update_printer(printer_id: str):
    _get(printer_id)
    changes = _printer_fields(request_data())
    if "name" in changes and not changes["name"]:
        raise BadRequest("Name must not be empty")
    if not changes:
        raise BadRequest("Nothing to update")
    make_default = changes.pop("is_default", None)
    printer = get_store().update("printers", printer_id, changes) if changes else _get(printer_id)
    if make_default:
        printer = _make_default(printer_id)
    elif make_default is False:
        printer = get_store().update("printers", printer_id, {"is_default": False})
    return jsonify({"ok": True, "message": "Printer updated", "printer": printer})


@bp.delete("/<printer_id>")
@require_admin
def delete_printer(printer_id: str):
    _get(printer_id)
    get_store().delete("printers", printer_id)
    logger.info("Printer %s deleted", printer_id)
    return jsonify({"ok": True, "message": "Printer deleted"})


@bp.patch("/<printer_id>/set-default")
@require_admin
def set_default(printer_id: str):
    _get(printer_id)
    return jsonify({"ok": True, "message": "Default printer updated", "printer": _make_default(printer_id)})


@bp.post("/<printer_id>/maintenance")
@require_admin
def log_maintenance(printer_id: str):
    printer = _get(printer_id)
    data = request_data()
    require_fields(data, ("description",))

    now = datetime.now(timezone.utc)
    interval = int(printer.get("maintenance_interval_days") or DEFAULT_MAINTENANCE_INTERVAL_DAYS)
    store = get_store()
    entry = store.insert(
        "maintenance_logs",
        {
            "printer_id": printer_id,
            "type": text(data, "type", "routine"),
            "description": text(data, "description"),
            "cost": as_float(data["cost"], "cost", minimum=0) if text(data, "cost") else None,
            "performed_by": g.user.get("email"),
        },
    )
    updated = store.update(
        "printers",
        printer_id,
        {
            "last_maintenance": now.isoformat(),
            "next_maintenance": (now + timedelta(days=interval)).isoformat(),
        },
    )
    logger.info("Maintenance logged for printer %s", printer_id)
    return jsonify({"ok": True, "printer": updated, "entry": entry}), 201

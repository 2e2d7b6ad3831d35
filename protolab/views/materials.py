from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, jsonify, request

from ..errors import BadRequest, NotFound
from ..extensions import get_store
from ..orders import get_business_settings
from ..security import require_admin
from . import as_float, as_int, request_data, require_fields, text

logger = logging.getLogger(__name__)

bp = Blueprint("materials", __name__, url_prefix="/api/materials")


def unavailable_message(days: int) -> str:
    return f"Material is currently unavailable. Processing will take up to {days} business days."


def _material_fields(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in ("name", "material_type", "color", "description", "supplier"):
        if key in data:
            out[key] = text(data, key) or None
    if "price_per_kg" in data or not partial:
        out["price_per_kg"] = as_float(data.get("price_per_kg"), "price_per_kg", minimum=0)
    if "stock_kg" in data:
        out["stock_kg"] = as_float(data.get("stock_kg"), "stock_kg", minimum=0)
    if "lead_time_days" in data:
        out["lead_time_days"] = as_int(data.get("lead_time_days"), "lead_time_days", 0, 365) if text(data, "lead_time_days") else None
    for flag in ("available", "is_active"):
        if flag in data:
            out[flag] = bool(data.get(flag))
    return out


@bp.get("/available")
def available_materials():
    store = get_store()
    default_days = int(get_business_settings(store)["default_lead_time_days"])
    out = []
    for m in store.select("materials", {"is_active": True}, order_by="name"):
        is_available = bool(m.get("available", True))
        days = m.get("lead_time_days") or default_days
        out.append({
            "id": m["id"],
            "name": m.get("name"),
            "material_type": m.get("material_type"),
            "color": m.get("color"),
            "price_per_kg": m.get("price_per_kg"),
            "available": is_available,
            "lead_time_days": days,
            "message": None if is_available else unavailable_message(int(days)),
        })
    return jsonify({"ok": True, "materials": out})


@bp.get("")
@require_admin
def list_materials():
    rows = get_store().select("materials", order_by="name")
    if request.args.get("active") == "1":
        rows = [r for r in rows if r.get("is_active")]
    return jsonify({"ok": True, "materials": rows, "count": len(rows)})


@bp.post("")
@require_admin
def create_material():
    data = request_data()
    require_fields(data, ("name", "material_type", "price_per_kg"))
    fields = _material_fields(data)
    fields.setdefault("available", True)
    fields.setdefault("is_active", True)
    material = get_store().insert("materials", fields)
    logger.info("Material %s created (%s)", material["id"], material.get("name"))
    return jsonify({"ok": True, "message": "Material created", "material": material}), 201


@bp.put("/<material_id>")
@require_admin
def update_material(material_id: str):
    store = get_store()
    if not store.get("materials", material_id):
        raise NotFound("Material not found")
    changes = _material_fields(request_data(), partial=True)
    if "name" in changes and not changes["name"]:
        raise BadRequest("Name must not be empty")
    if not changes:
        raise BadRequest("Nothing to update")
    material = store.update("materials", material_id, changes)
    logger.info("Material %s updated: %s", material_id, sorted(changes))
    return jsonify({"ok": True, "message": "Material updated", "material": material})


@bp.delete("/<material_id>")
@require_admin
def delete_material(material_id: str):
    store = get_store()
    if not store.get("materials", material_id):
        raise NotFound("Material not found")
    store.update("materials", material_id, {"is_active": False})
    logger.info("Material %s deactivated", material_id)
    return jsonify({"ok": True, "message": "Material deactivated"})

from __future__ import annotations

import logging

from flask import Blueprint, jsonify

from ..errors import BadRequest
from ..extensions import get_store
from ..orders import DEFAULT_SETTINGS, get_business_settings
from ..security import require_admin
from . import as_float, as_int, request_data

logger = logging.getLogger(__name__)

bp = Blueprint("settings", __name__, url_prefix="/api/settings")


@bp.get("")
def get_settings():
    return jsonify({"ok": True, "settings": get_business_settings(get_store())})


@bp.put("")
@require_admin
def update_settings():
    data = request_data()
    changes = {}
    if "labor_minutes" in data:
        changes["labor_minutes"] = as_float(data["labor_minutes"], "labor_minutes", minimum=0)
    if "service_fee" in data:
        changes["service_fee"] = as_float(data["service_fee"], "service_fee", minimum=0)
    if "default_lead_time_days" in data:
        changes["default_lead_time_days"] = as_int(data["default_lead_time_days"], "default_lead_time_days", 0, 365)
    if not changes:
        raise BadRequest("Nothing to update", allowed=sorted(DEFAULT_SETTINGS))

    store = get_store()
    row = store.find_one("settings", {})
    if row:
        store.update("settings", row["id"], changes)
    else:
        store.insert("settings", {**DEFAULT_SETTINGS, **changes})
    logger.info("Settings updated: %s", changes)
    return jsonify({"ok": True, "message": "Settings updated", "settings": get_business_settings(store)})

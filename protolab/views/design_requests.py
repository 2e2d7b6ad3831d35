from __future__ import annotations

import logging
from typing import Any, Dict, List

from flask import Blueprint, g, jsonify, request

from ..errors import BadRequest, NotFound
from ..extensions import get_mailer, get_store
from ..orders import SHIPPING_METHODS
from ..security import is_admin, optional_user, require_admin, require_auth
from ..shipping import generate_order_number
from ..uploads import REFERENCE_EXTS, save_upload, signed_file_url
from . import as_float, as_int, request_data, require_fields, text, valid_email

logger = logging.getLogger(__name__)

bp = Blueprint("design_requests", __name__, url_prefix="/api/design-requests")

REQUEST_STATUSES = ("pending", "in_review", "in_progress", "completed", "cancelled")
MAX_REFERENCE_FILES = 10


def serialize_request(req: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(req)
    out["reference_files"] = [
        {**f, "url": signed_file_url(f.get("path"), f.get("name"))} for f in (req.get("reference_files") or [])
    ]
    return out


def _load(request_id: str) -> Dict[str, Any]:
    req = get_store().get("design_requests", request_id)
    if not req:
        raise NotFound("Design request not found")
    if is_admin():
        return req
    mine = req.get("user_id") == g.user["userId"] or req.get("email") == (g.user.get("email") or "").lower()
    if not mine:
        raise NotFound("Design request not found")
    return req


@bp.post("")
def create_request():
    data = request_data()
    require_fields(data, ("name", "email", "projectDescription"))
    email = text(data, "email").lower()
    if not valid_email(email):
        raise BadRequest("Invalid email address")

    uploads = [f for f in request.files.getlist("referenceFiles") if f and f.filename]
    if len(uploads) > MAX_REFERENCE_FILES:
        raise BadRequest(f"Too many reference files (max {MAX_REFERENCE_FILES})")
    files: List[Dict[str, Any]] = [save_upload(f, "references", REFERENCE_EXTS) for f in uploads]

    store = get_store()
    user = optional_user()
    if user is None:
        linked = store.find_one("users", {"email": email})
        user_id = linked["id"] if linked else None
    else:
        user_id = user["userId"]

    req = store.insert(
        "design_requests",
        {
            "user_id": user_id,
            "name": text(data, "name"),
            "email": email,
            "phone": text(data, "phone") or None,
            "project_description": text(data, "projectDescription"),
            "usage_context": text(data, "usageContext") or None,
            "desired_completion_date": text(data, "desiredCompletionDate") or None,
            "reference_files": files,
            "status": "pending",
            "admin_notes": None,
            "estimated_completion_date": None,
            "price": None,
            "final_files": [],
        },
    )
    logger.info("Design request %s from %s (%d files)", req["id"], email, len(files))

    mailer = get_mailer()
    mailer.send_design_request_confirmation(req)
    mailer.send_design_request_admin(req)

    return jsonify({
        "ok": True,
        "message": "Design request submitted successfully",
        "request": serialize_request(req),
    }), 201


@bp.get("")
@require_auth
def list_requests():
    store = get_store()
    if is_admin():
        status = (request.args.get("status") or "").strip()
        rows = store.select("design_requests", {"status": status} if status else None)
    else:
        by_user = store.select("design_requests", {"user_id": g.user["userId"]})
        by_email = store.select("design_requests", {"email": (g.user.get("email") or "").lower()})
        merged = {r["id"]: r for r in by_email}
        merged.update({r["id"]: r for r in by_user})
        rows = list(merged.values())
    rows.sort(key=lambda r: str(r.get("created_at") or ""), reverse=True)
    return jsonify({"ok": True, "requests": [serialize_request(r) for r in rows], "count": len(rows)})


@bp.get("/<request_id>")
@require_auth
def get_request(request_id: str):
    return jsonify({"ok": True, "request": serialize_request(_load(request_id))})


@bp.put("/<request_id>")
@require_admin
def update_request(request_id: str):
    store = get_store()
    req = store.get("design_requests", request_id)
    if not req:
        raise NotFound("Design request not found")

    data = request_data()
    changes: Dict[str, Any] = {}
    if "status" in data:
        status = text(data, "status")
        if status not in REQUEST_STATUSES:
            raise BadRequest("Invalid status", allowed=list(REQUEST_STATUSES))
        changes["status"] = status
    if "admin_notes" in data:
        changes["admin_notes"] = text(data, "admin_notes") or None
    if "estimated_completion_date" in data:
        changes["estimated_completion_date"] = text(data, "estimated_completion_date") or None
    if "price" in data:
        changes["price"] = as_float(data["price"], "price", minimum=0) if text(data, "price") else None
    if "final_files" in data:
        if not isinstance(data["final_files"], list):
            raise BadRequest("final_files must be a list")
        changes["final_files"] = data["final_files"]
    if not changes:
        raise BadRequest("Nothing to update")

    updated = store.update("design_requests", request_id, changes) or {**req, **changes}
    logger.info("Design request %s updated: %s", request_id, sorted(changes))
    return jsonify({"ok": True, "message": "Design request updated", "request": serialize_request(updated)})


@bp.post("/<request_id>/convert")
@require_admin
def convert_to_order(request_id: str):
    """Turn an accepted design into a print order the customer can pay for."""
    store = get_store()
    req = store.get("design_requests", request_id)
    if not req:
        raise NotFound("Design request not found")
    if not req.get("user_id"):
        raise BadRequest("Design request is not linked to a customer account")

    data = request_data()
    require_fields(data, ("material", "color", "price"))
    shipping_method = text(data, "shippingMethod", "pickup").lower()
    if shipping_method not in SHIPPING_METHODS:
        raise BadRequest("Invalid shipping method", allowed=list(SHIPPING_METHODS))

    final_files = req.get("final_files") or []
    first = final_files[0] if final_files and isinstance(final_files[0], dict) else {}
    order = store.insert(
        "orders",
        {
            "user_id": req["user_id"],
            "order_number": generate_order_number(),
            "order_type": "design",
            "parent_request_id": req["id"],
            "project_name": text(data, "projectName") or f"Projekt: {req.get('name')}",
            "file_name": first.get("name"),
            "file_path": first.get("path"),
            "material": text(data, "material"),
            "color": text(data, "color"),
            "quantity": as_int(data.get("quantity") or 1, "quantity", 1, 1000),
            "shipping_method": shipping_method,
            "shipping_address": data.get("shippingAddress"),
            "price": as_float(data["price"], "price", minimum=0),
            "paid_amount": 0.0,
            "status": "submitted",
            "payment_status": "unpaid",
            "is_archived": False,
            "deleted_at": None,
        },
    )
    store.update("design_requests", request_id, {"status": "completed", "order_id": order["id"]})
    logger.info("Design request %s converted to order %s", request_id, order["id"])
    return jsonify({"ok": True, "message": "Order created from design request", "order": order}), 201

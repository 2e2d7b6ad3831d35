from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

from flask import Blueprint, g, jsonify, request

from ..errors import BadRequest, NotFound
from ..extensions import get_mailer, get_store
from ..model_analysis import analyze_model
from ..orders import SHIPPING_METHODS, profile_for, quote_model
from ..security import is_admin, require_auth
from ..shipping import generate_order_number
from ..storage import now_iso
from ..uploads import MODEL_EXTS, read_upload, safe_upload_path, signed_file_url, store_bytes
from . import as_float, as_int, request_data, require_fields, text

logger = logging.getLogger(__name__)

bp = Blueprint("orders", __name__, url_prefix="/api/orders")

EDITABLE_STATUSES = ("submitted",)
REVIEWABLE_STATUSES = ("finished", "delivered")
REFUNDABLE_STATUSES = ("submitted", "in_queue", "on_hold")
REFUND_METHODS = ("credit", "bank", "original")
MEASURED_TYPES = ("STL", "OBJ")


def serialize_order(order: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(order)
    out["file_url"] = signed_file_url(order.get("file_path"), order.get("file_name"))
    return out


def load_order_for_user(order_id: str) -> Dict[str, Any]:
    """Owner or admin; anything else looks like a missing order."""
    order = get_store().get("orders", order_id)
    if not order:
        raise NotFound("Order not found")
    if order.get("user_id") != g.user["userId"] and not is_admin():
        raise NotFound("Order not found")
    return order


def _shipping_address(raw: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    value = str(raw or "").strip()
    if value.startswith("{"):
        try:
            return json.loads(value)
        except ValueError:
            raise BadRequest("Invalid shippingAddress")
    return value or None


def _print_options(data: Dict[str, Any]) -> Dict[str, Any]:
    shipping_method = text(data, "shippingMethod").lower()
    if shipping_method not in SHIPPING_METHODS:
        raise BadRequest("Invalid shipping method", allowed=list(SHIPPING_METHODS))
    address = _shipping_address(data.get("shippingAddress"))
    if shipping_method != "pickup" and not address:
        raise BadRequest("Shipping address is required for delivery")

    layer_height = None
    if text(data, "layerHeight"):
        layer_height = as_float(data.get("layerHeight"), "layerHeight", minimum=0.05)
        if layer_height > 1.0:
            raise BadRequest("Invalid layerHeight")
    infill = as_int(data.get("infill"), "infill", 0, 100) if text(data, "infill") else None

    return {
        "material": text(data, "material"),
        "color": text(data, "color"),
        "quantity": as_int(data.get("quantity"), "quantity", 1, 1000),
        "shipping_method": shipping_method,
        "shipping_address": address if shipping_method != "pickup" else None,
        "quality": text(data, "quality", "standard").lower(),
        "purpose": text(data, "purpose").lower() or None,
        "layer_height": layer_height,
        "infill": infill,
    }


def _quote(metadata: Dict[str, Any], opts: Dict[str, Any]) -> Dict[str, Any]:
    profile = profile_for(opts["quality"], opts["purpose"], opts["layer_height"], opts["infill"])
    quote = quote_model(
        get_store(),
        metadata,
        opts["material"],
        opts["color"],
        profile,
        quantity=opts["quantity"],
        shipping_method=opts["shipping_method"],
    )
    if metadata.get("fileType") in MEASURED_TYPES and not quote["validation"]["valid"]:
        raise BadRequest("Model file is not printable", errors=quote["validation"]["errors"])
    quote["profile"] = profile
    return quote


def _order_fields(opts: Dict[str, Any], metadata: Dict[str, Any], quote: Dict[str, Any]) -> Dict[str, Any]:
    profile = quote["profile"]
    estimation = quote["estimation"] or {}
    return {
        "material": opts["material"],
        "color": opts["color"],
        "quantity": opts["quantity"],
        "quality": opts["quality"],
        "purpose": opts["purpose"],
        "layer_height": profile.layer_height,
        "infill": profile.infill,
        "shipping_method": opts["shipping_method"],
        "shipping_address": opts["shipping_address"],
        "model_volume_cm3": metadata.get("volume_cm3") if quote["price"] is not None else None,
        "material_weight": estimation.get("material_weight_g"),
        "print_time": estimation.get("print_time_minutes"),
        "price": quote["price"] if quote["price"] is not None else 0.0,
        "price_pending": quote["price"] is None,
    }


@bp.post("")
@require_auth
def create_order():
    data = request_data()
    require_fields(data, ("material", "color", "quantity", "shippingMethod"))
    opts = _print_options(data)
    store = get_store()
    user = store.get("users", g.user["userId"]) or {}
    invoice_info = None
    if text(data, "invoiceRequired").lower() in ("1", "true", "yes"):
        invoice_info = user.get("business_info")
        if not invoice_info:
            raise BadRequest("Save your business information before requesting an invoice")
    original, ext, blob = read_upload(request.files.get("file"), MODEL_EXTS)

    metadata = analyze_model(blob, original)
    quote = _quote(metadata, opts)
    rel = store_bytes("models", ext, blob)

    order = store.insert(
        "orders",
        {
            "user_id": g.user["userId"],
            "order_number": generate_order_number(),
            "order_type": "print",
            "file_name": original,
            "file_path": rel,
            "project_name": text(data, "projectName") or os.path.splitext(original)[0],
            "notes": text(data, "notes") or None,
            "status": "submitted",
            "payment_status": "unpaid",
            "paid_amount": 0.0,
            "is_archived": False,
            "deleted_at": None,
            "invoice_required": invoice_info is not None,
            "invoice_business_info": invoice_info,
            **_order_fields(opts, metadata, quote),
        },
    )
    logger.info("Order %s created by %s (%.2f PLN)", order["id"], g.user["email"], order["price"])

    get_mailer().send_order_received(user.get("email") or g.user["email"], user.get("name") or "", order)

    return jsonify({
        "ok": True,
        "message": "Order created successfully",
        "order": serialize_order(order),
        "estimation": quote["estimation"],
        "warnings": quote["validation"]["warnings"],
    }), 201


@bp.get("")
@require_auth
def list_orders():
    view = (request.args.get("filter") or "active").strip().lower()
    order_type = (request.args.get("type") or "").strip().lower()
    rows = get_store().select("orders", {"user_id": g.user["userId"]}, order_by="created_at", descending=True)

    def _visible(o: Dict[str, Any]) -> bool:
        if order_type and (o.get("order_type") or "print") != order_type:
            return False
        if view == "deleted":
            return bool(o.get("deleted_at"))
        if o.get("deleted_at"):
            return False
        if view == "archived":
            return bool(o.get("is_archived"))
        return not o.get("is_archived")

    orders = [serialize_order(o) for o in rows if _visible(o)]
    return jsonify({"ok": True, "orders": orders, "count": len(orders)})


@bp.get("/<order_id>")
@require_auth
def get_order(order_id: str):
    return jsonify({"ok": True, "order": serialize_order(load_order_for_user(order_id))})


@bp.patch("/<order_id>")
@require_auth
def update_order(order_id: str):
    order = load_order_for_user(order_id)
    if order.get("status") not in EDITABLE_STATUSES or order.get("payment_status") not in ("unpaid", "failed", None):
        raise BadRequest("Order can no longer be edited")

    data = request_data()
    merged = {
        "material": data.get("material", order.get("material")),
        "color": data.get("color", order.get("color")),
        "quantity": data.get("quantity", order.get("quantity")),
        "shippingMethod": data.get("shippingMethod", order.get("shipping_method")),
        "shippingAddress": data.get("shippingAddress", order.get("shipping_address")),
        "quality": data.get("quality", order.get("quality")),
        "purpose": data.get("purpose", order.get("purpose")),
        "layerHeight": data.get("layerHeight", order.get("layer_height")),
        "infill": data.get("infill", order.get("infill")),
    }
    opts = _print_options(merged)

    path = safe_upload_path(order.get("file_path") or "")
    if not path or not os.path.isfile(path):
        raise BadRequest("Order file is missing")
    with open(path, "rb") as f:
        metadata = analyze_model(f.read(), order.get("file_name") or path)
    quote = _quote(metadata, opts)

    changes = _order_fields(opts, metadata, quote)
    if "projectName" in data:
        changes["project_name"] = text(data, "projectName")
    if "notes" in data:
        changes["notes"] = text(data, "notes") or None
    updated = get_store().update("orders", order_id, changes)
    logger.info("Order %s edited by owner, new price %.2f", order_id, changes["price"])
    return jsonify({"ok": True, "order": serialize_order(updated or {**order, **changes})})


@bp.post("/<order_id>/review")
@require_auth
def review_order(order_id: str):
    order = load_order_for_user(order_id)
    if order.get("status") not in REVIEWABLE_STATUSES:
        raise BadRequest("Only finished or delivered orders can be reviewed")
    data = request_data()
    rating = as_int(data.get("rating"), "rating", 1, 5)
    review = {"rating": rating, "comment": text(data, "comment"), "created_at": now_iso()}
    updated = get_store().update("orders", order_id, {"review": review})
    return jsonify({"ok": True, "message": "Review saved", "order": serialize_order(updated or order)})


def _set_flags(order_id: str, changes: Dict[str, Any], message: str):
    load_order_for_user(order_id)
    updated = get_store().update("orders", order_id, changes)
    return jsonify({"ok": True, "message": message, "order": serialize_order(updated or {})})


@bp.post("/<order_id>/archive")
@require_auth
def archive_order(order_id: str):
    return _set_flags(order_id, {"is_archived": True}, "Order archived")


@bp.post("/<order_id>/restore")
@require_auth
def restore_order(order_id: str):
    return _set_flags(order_id, {"is_archived": False, "deleted_at": None}, "Order restored")


@bp.delete("/<order_id>")
@require_auth
def delete_order(order_id: str):
    return _set_flags(order_id, {"deleted_at": now_iso()}, "Order deleted")


@bp.post("/<order_id>/refund")
@require_auth
def request_refund(order_id: str):
    order = load_order_for_user(order_id)
    if order.get("payment_status") != "paid":
        raise BadRequest("Only paid orders can be refunded")
    if order.get("status") not in REFUNDABLE_STATUSES:
        raise BadRequest("Order is already being printed")

    data = request_data()
    reason = text(data, "reason")
    method = text(data, "method", "credit").lower()
    if not reason:
        raise BadRequest("Refund reason is required")
    if method not in REFUND_METHODS:
        raise BadRequest("Invalid refund method", allowed=list(REFUND_METHODS))
    bank_details: Optional[Any] = data.get("bankDetails")
    if method == "bank" and not bank_details:
        raise BadRequest("Bank details are required for bank transfer refunds")

    changes = {
        "payment_status": "refunding",
        "status": "on_hold",
        "refund_reason": reason,
        "refund_method": method,
        "refund_bank_details": bank_details if method == "bank" else None,
        "refund_amount": float(order.get("paid_amount") or 0),
        "refund_requested_at": now_iso(),
    }
    updated = get_store().update("orders", order_id, changes) or {**order, **changes}
    logger.info("Refund requested for order %s (%s)", order_id, method)

    user = get_store().get("users", order["user_id"]) or {}
    mailer = get_mailer()
    mailer.send_refund_request(user.get("email") or "", user.get("name") or "", updated)
    mailer.send_refund_request(mailer.admin_email, "Admin", updated)
    return jsonify({"ok": True, "message": "Refund requested", "order": serialize_order(updated)})

from __future__ import annotations

import logging
from collections import Counter
from datetime import date
from typing import Any, Dict

from flask import Blueprint, g, jsonify, request

from .. import conversations as threads
from ..credits import REFUND_BONUS_RATE, add_credits, adjust_credits, get_balance
from ..errors import BadRequest, Conflict, NotFound
from ..extensions import get_mailer, get_store
from ..orders import ORDER_STATUSES, ORDER_TYPES, reprice_order
from ..pricing import round_money
from ..security import hash_password, require_admin
from ..shipping import generate_tracking_code
from ..storage import Store, now_iso
from .orders import serialize_order
from . import as_float, as_int, public_user, request_data, require_fields, text, valid_email

logger = logging.getLogger(__name__)

bp = Blueprint("admin", __name__, url_prefix="/api/admin")

USER_ROLES = ("user", "admin")
USER_STATUSES = ("pending", "approved", "rejected", "suspended")
PROTECTED_USER_FIELDS = {"id", "created_at", "password_hash"}
EDITABLE_USER_FIELDS = {
    "name", "email", "phone", "address", "city", "zip_code", "country",
    "role", "status", "email_verified", "business_info",
}


def _order(order_id: str) -> Dict[str, Any]:
    order = get_store().get("orders", order_id)
    if not order:
        raise NotFound("Order not found")
    return order


def _notify_status(order: Dict[str, Any], message: str = "") -> None:
    user = get_store().get("users", order.get("user_id")) or {}
    if user.get("email"):
        get_mailer().send_order_status(user["email"], user.get("name") or "", order, message)


# -------------------------
# Orders
# -------------------------
@bp.get("/orders")
@require_admin
def list_orders():
    filters: Dict[str, Any] = {}
    order_type = (request.args.get("type") or "").strip().lower()
    if order_type:
        if order_type not in ORDER_TYPES:
            raise BadRequest("Invalid order type", allowed=list(ORDER_TYPES))
        filters["order_type"] = order_type
    status = (request.args.get("status") or "").strip()
    if status:
        filters["status"] = status
    rows = get_store().select("orders", filters or None, order_by="created_at", descending=True)
    if request.args.get("include_deleted") != "1":
        rows = [r for r in rows if not r.get("deleted_at")]
    return jsonify({"ok": True, "orders": [serialize_order(r) for r in rows], "count": len(rows)})


@bp.get("/orders/<order_id>")
@require_admin
def get_order(order_id: str):
    order = _order(order_id)
    user = public_user(get_store().get("users", order.get("user_id")))
    return jsonify({"ok": True, "order": serialize_order(order), "user": user})


@bp.patch("/orders/<order_id>/status")
@require_admin
def update_order_status(order_id: str):
    order = _order(order_id)
    data = request_data()
    status = text(data, "status")
    if status not in ORDER_STATUSES:
        raise BadRequest("Invalid status", allowed=list(ORDER_STATUSES))
    updated = get_store().update("orders", order_id, {"status": status}) or {**order, "status": status}
    logger.info("Order %s status %s -> %s by %s", order_id, order.get("status"), status, g.user.get("email"))
    if status != order.get("status"):
        _notify_status(updated, text(data, "message"))
    return jsonify({"ok": True, "message": "Order status updated", "order": serialize_order(updated)})


@bp.patch("/orders/<order_id>/pricing")
@require_admin
def update_order_pricing(order_id: str):
    order = _order(order_id)
    if order.get("payment_status") in ("paid", "refunding", "refunded"):
        raise BadRequest("Paid orders cannot be repriced")
    data = request_data()
    require_fields(data, ("materialWeight", "printTime"))
    weight_kg = as_float(data["materialWeight"], "materialWeight", minimum=0)
    minutes = as_float(data["printTime"], "printTime", minimum=0)

    quote = reprice_order(get_store(), order, weight_kg * 1000.0, minutes)
    changes = {
        "material_weight": round(weight_kg * 1000.0, 2),
        "print_time": int(round(minutes)),
        "price": quote["price"],
        "price_pending": False,
    }
    updated = get_store().update("orders", order_id, changes) or {**order, **changes}
    logger.info("Order %s repriced to %.2f PLN", order_id, quote["price"])
    return jsonify({
        "ok": True,
        "message": "Order pricing updated",
        "order": serialize_order(updated),
        "breakdown": quote["breakdown"],
    })


@bp.patch("/orders/<order_id>/tracking")
@require_admin
def update_order_tracking(order_id: str):
    order = _order(order_id)
    if order.get("shipping_method") in (None, "", "pickup"):
        raise BadRequest("Pickup orders have no tracking")
    data = request_data()
    code = text(data, "trackingCode") or generate_tracking_code(order.get("shipping_method"))
    updated = get_store().update("orders", order_id, {"tracking_code": code, "shipped_at": now_iso()})
    logger.info("Order %s tracking %s", order_id, code)
    _notify_status(updated or order, f"Numer przesyłki: {code}")
    return jsonify({"ok": True, "trackingCode": code, "order": serialize_order(updated or order)})


@bp.post("/orders/<order_id>/refund/complete")
@require_admin
def complete_refund(order_id: str):
    order = _order(order_id)
    if order.get("payment_status") != "refunding":
        raise BadRequest("Order has no pending refund")

    store = get_store()
    amount = float(order.get("refund_amount") or order.get("paid_amount") or 0)
    bonus = 0.0
    if order.get("refund_method") == "credit" and amount > 0:
        add_credits(store, order["user_id"], amount, "refund", f"Refund for order {order.get('order_number')}", order_id)
        bonus = round_money(amount * REFUND_BONUS_RATE)
        if bonus > 0:
            add_credits(store, order["user_id"], bonus, "refund_bonus", "Refund bonus 5%", order_id)

    changes = {"payment_status": "refunded", "status": "suspended", "refunded_at": now_iso()}
    updated = store.update("orders", order_id, changes) or {**order, **changes}
    logger.info("Refund for order %s completed (%s, %.2f PLN, bonus %.2f)", order_id, order.get("refund_method"), amount, bonus)
    _notify_status(updated, "Zwrot został zrealizowany.")
    return jsonify({"ok": True, "message": "Refund completed", "order": serialize_order(updated), "bonus": bonus})


# -------------------------
# Users
# -------------------------
@bp.get("/users")
@require_admin
def list_users():
    rows = get_store().select("users", order_by="created_at", descending=True)
    return jsonify({"ok": True, "users": [public_user(u) for u in rows], "count": len(rows)})


@bp.get("/users/<user_id>")
@require_admin
def get_user(user_id: str):
    store = get_store()
    user = store.get("users", user_id)
    if not user:
        raise NotFound("User not found")
    orders = store.select("orders", {"user_id": user_id}, order_by="created_at", descending=True)
    return jsonify({
        "ok": True,
        "user": public_user(user),
        "orders": orders,
        "stats": {
            "orderCount": len(orders),
            "totalSpent": round_money(sum(float(o.get("paid_amount") or 0) for o in orders)),
            "creditBalance": get_balance(store, user_id),
        },
    })


@bp.post("/users")
@require_admin
def create_user():
    data = request_data()
    require_fields(data, ("name", "email", "password"))
    email = text(data, "email").lower()
    if not valid_email(email):
        raise BadRequest("Invalid email address")
    if len(str(data.get("password"))) < 6:
        raise BadRequest("Password must be at least 6 characters")
    role = text(data, "role", "user")
    if role not in USER_ROLES:
        raise BadRequest("Invalid role", allowed=list(USER_ROLES))

    store = get_store()
    if store.find_one("users", {"email": email}):
        raise Conflict("User with this email already exists")
    user = store.insert(
        "users",
        {
            "name": text(data, "name"),
            "email": email,
            "password_hash": hash_password(str(data["password"])),
            "phone": text(data, "phone") or None,
            "role": role,
            "status": "approved",
            "email_verified": True,
        },
    )
    logger.info("Admin %s created user %s (%s)", g.user.get("email"), email, role)
    return jsonify({"ok": True, "message": "User created", "user": public_user(user)}), 201


@bp.patch("/users/<user_id>")
@require_admin
def update_user(user_id: str):
    store = get_store()
    user = store.get("users", user_id)
    if not user:
        raise NotFound("User not found")
    data = request_data()

    changes: Dict[str, Any] = {k: v for k, v in data.items() if k in EDITABLE_USER_FIELDS}
    if "role" in changes and changes["role"] not in USER_ROLES:
        raise BadRequest("Invalid role", allowed=list(USER_ROLES))
    if "status" in changes and changes["status"] not in USER_STATUSES:
        raise BadRequest("Invalid status", allowed=list(USER_STATUSES))
    if "email" in changes:
        email = str(changes["email"] or "").strip().lower()
        if not valid_email(email):
            raise BadRequest("Invalid email address")
        other = store.find_one("users", {"email": email})
        if other and other["id"] != user_id:
            raise Conflict("User with this email already exists")
        changes["email"] = email
    if text(data, "password"):
        if len(str(data["password"])) < 6:
            raise BadRequest("Password must be at least 6 characters")
        changes["password_hash"] = hash_password(str(data["password"]))
    if not changes:
        raise BadRequest("Nothing to update", protected=sorted(PROTECTED_USER_FIELDS))

    updated = store.update("users", user_id, changes)
    logger.info("Admin %s updated user %s: %s", g.user.get("email"), user_id, sorted(changes))
    return jsonify({"ok": True, "message": "User updated", "user": public_user(updated)})


@bp.delete("/users/<user_id>")
@require_admin
def delete_user(user_id: str):
    if user_id == g.user["userId"]:
        raise BadRequest("You cannot delete your own account")
    store = get_store()
    if not store.get("users", user_id):
        raise NotFound("User not found")
    store.delete_where("refresh_tokens", {"user_id": user_id})
    store.delete("users", user_id)
    logger.info("Admin %s deleted user %s", g.user.get("email"), user_id)
    return jsonify({"ok": True, "message": "User deleted"})


@bp.post("/users/<user_id>/credits")
@require_admin
def adjust_user_credits(user_id: str):
    store = get_store()
    if not store.get("users", user_id):
        raise NotFound("User not found")
    data = request_data()
    amount = as_float(data.get("amount"), "amount")
    balance = adjust_credits(store, user_id, amount, text(data, "description"))
    return jsonify({"ok": True, "balance": balance})


# -------------------------
# Businesses
# -------------------------
def _invoice(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": order["id"],
        "order_id": order["id"],
        "order_number": order.get("order_number") or order["id"][:8],
        "order_type": order.get("order_type") or "print",
        "amount": float(order.get("price") or 0),
        "paid_amount": float(order.get("paid_amount") or 0),
        "status": order.get("payment_status") or "unpaid",
        "invoice_required": bool(order.get("invoice_required")),
        "business_info": order.get("invoice_business_info"),
        "created_at": order.get("created_at"),
    }


@bp.get("/businesses")
@require_admin
def list_businesses():
    """Customers that saved company details, with their order totals."""
    store = get_store()
    out = []
    for user in store.select("users", order_by="created_at", descending=True):
        if not user.get("business_info"):
            continue
        orders = [o for o in store.select("orders", {"user_id": user["id"]}) if not o.get("deleted_at")]
        out.append({
            **public_user(user),
            "orderCount": len(orders),
            "totalSpent": round_money(sum(float(o.get("paid_amount") or 0) for o in orders)),
        })
    return jsonify({"ok": True, "businesses": out, "count": len(out)})


@bp.get("/businesses/<user_id>/invoices")
@require_admin
def list_business_invoices(user_id: str):
    store = get_store()
    if not store.get("users", user_id):
        raise NotFound("User not found")
    orders = store.select("orders", {"user_id": user_id}, order_by="created_at", descending=True)
    if request.args.get("invoiceOnly") in ("1", "true"):
        orders = [o for o in orders if o.get("invoice_required")]
    invoices = [_invoice(o) for o in orders]
    return jsonify({"ok": True, "invoices": invoices, "count": len(invoices)})


# -------------------------
# Conversations
# -------------------------
def _conversation(conversation_id: str) -> Dict[str, Any]:
    conversation = get_store().get("conversations", conversation_id)
    if not conversation:
        raise NotFound("Conversation not found")
    return conversation


def _admin_view(store: Store, conversation: Dict[str, Any]) -> Dict[str, Any]:
    out = threads.describe(store, conversation, "engineer")
    user = store.get("users", conversation.get("user_id")) or {}
    out["user"] = {"id": user.get("id"), "name": user.get("name"), "email": user.get("email")} if user else None
    return out


@bp.get("/conversations")
@require_admin
def list_conversations():
    store = get_store()
    filters: Dict[str, Any] = {}
    status = (request.args.get("status") or "").strip()
    if status:
        filters["status"] = status
    if request.args.get("userId"):
        filters["user_id"] = request.args["userId"]
    page = as_int(request.args.get("page") or 1, "page", 1)
    limit = as_int(request.args.get("limit") or 20, "limit", 1, 100)

    rows = [
        _admin_view(store, c)
        for c in store.select("conversations", filters or None, order_by="updated_at", descending=True)
    ]
    search = (request.args.get("search") or "").strip().lower()
    if search:
        rows = [
            c for c in rows
            if search in str((c["user"] or {}).get("name") or "").lower()
            or search in str((c["user"] or {}).get("email") or "").lower()
            or search in str(c.get("subject") or "").lower()
        ]
    total = len(rows)
    start = (page - 1) * limit
    return jsonify({
        "ok": True,
        "conversations": rows[start:start + limit],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    })


@bp.get("/conversations/<conversation_id>")
@require_admin
def get_conversation(conversation_id: str):
    store = get_store()
    conversation = _conversation(conversation_id)
    return jsonify({
        "ok": True,
        "conversation": _admin_view(store, conversation),
        "messages": threads.get_messages(store, conversation_id, limit=500),
    })


@bp.get("/conversations/<conversation_id>/messages")
@require_admin
def get_conversation_messages(conversation_id: str):
    _conversation(conversation_id)
    limit = as_int(request.args.get("limit") or 100, "limit", 1, 500)
    messages = threads.get_messages(get_store(), conversation_id, limit=limit)
    return jsonify({"ok": True, "messages": messages, "count": len(messages)})


@bp.post("/conversations/<conversation_id>/messages")
@require_admin
def reply_to_conversation(conversation_id: str):
    store = get_store()
    conversation = _conversation(conversation_id)
    data = request_data()
    message = threads.add_message(
        store,
        conversation,
        "engineer",
        text(data, "message"),
        sender_id=g.user["userId"],
        attachments=data.get("attachments"),
    )
    user = store.get("users", conversation.get("user_id")) or {}
    if user.get("email"):
        get_mailer().send_new_message(user["email"], user.get("name") or "", conversation, message)
    return jsonify({"ok": True, "message": message}), 201


@bp.patch("/conversations/<conversation_id>/status")
@require_admin
def update_conversation_status(conversation_id: str):
    _conversation(conversation_id)
    updated = threads.set_status(get_store(), conversation_id, text(request_data(), "status"))
    logger.info("Conversation %s set to %s by %s", conversation_id, updated.get("status"), g.user.get("email"))
    return jsonify({"ok": True, "conversation": updated})


@bp.patch("/conversations/<conversation_id>/read")
@require_admin
def mark_conversation_read(conversation_id: str):
    _conversation(conversation_id)
    marked = threads.mark_read(get_store(), conversation_id, "engineer")
    return jsonify({"ok": True, "marked": marked})


# -------------------------
# Dashboard
# -------------------------
@bp.get("/stats")
@require_admin
def stats():
    store = get_store()
    orders = [o for o in store.select("orders") if not o.get("deleted_at")]
    print_orders = [o for o in orders if (o.get("order_type") or "print") != "credits"]
    paid = [o for o in orders if o.get("payment_status") == "paid"]
    today = date.today().isoformat()
    upcoming = [
        a for a in store.select("appointments", {"status": "scheduled"})
        if str(a.get("date") or "") >= today
    ]
    return jsonify({
        "ok": True,
        "orders": {
            "total": len(print_orders),
            "byStatus": dict(Counter(str(o.get("status")) for o in print_orders)),
            "byPaymentStatus": dict(Counter(str(o.get("payment_status")) for o in orders)),
            "awaitingPricing": sum(1 for o in print_orders if o.get("price_pending")),
            "overpaid": sum(1 for o in orders if float(o.get("overpaid_amount") or 0) > 0),
        },
        "revenue": {
            "prints": round_money(sum(float(o.get("paid_amount") or 0) for o in paid if o.get("order_type") != "credits")),
            "credits": round_money(sum(float(o.get("paid_amount") or 0) for o in paid if o.get("order_type") == "credits")),
        },
        "users": len(store.select("users")),
        "pendingDesignRequests": len(store.select("design_requests", {"status": "pending"})),
        "upcomingAppointments": len(upcoming),
        "openConversations": len(store.select("conversations", {"status": "open"}))
        + len(store.select("conversations", {"status": "in_progress"})),
    })

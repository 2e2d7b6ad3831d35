from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, g, jsonify, request

from .. import conversations as threads
from ..errors import BadRequest, NotFound
from ..extensions import get_store
from ..security import require_auth
from . import as_int, request_data, text

bp = Blueprint("conversations", __name__, url_prefix="/api/conversations")


def _own_conversation(conversation_id: str) -> Dict[str, Any]:
    conversation = get_store().get("conversations", conversation_id)
    if not conversation or conversation.get("user_id") != g.user["userId"]:
        raise NotFound("Conversation not found")
    return conversation


@bp.get("")
@require_auth
def list_conversations():
    store = get_store()
    rows = store.select("conversations", {"user_id": g.user["userId"]}, order_by="updated_at", descending=True)
    items = [threads.describe(store, c, "user") for c in rows]
    return jsonify({"ok": True, "conversations": items, "count": len(items)})


@bp.get("/unread")
@require_auth
def unread():
    return jsonify({"ok": True, "unread_count": threads.total_unread(get_store(), g.user["userId"])})


@bp.post("/order/<order_id>")
@require_auth
def open_for_order(order_id: str):
    store = get_store()
    order = store.get("orders", order_id)
    if not order or order.get("user_id") != g.user["userId"] or order.get("deleted_at"):
        raise NotFound("Order not found")
    conversation, created = threads.get_or_create(
        store, g.user["userId"], order_id, text(request_data(), "subject")
    )
    body = {"ok": True, "conversation": threads.describe(store, conversation, "user")}
    return jsonify(body), (201 if created else 200)


@bp.get("/<conversation_id>")
@require_auth
def get_conversation(conversation_id: str):
    conversation = _own_conversation(conversation_id)
    return jsonify({"ok": True, "conversation": threads.describe(get_store(), conversation, "user")})


@bp.get("/<conversation_id>/messages")
@require_auth
def get_messages(conversation_id: str):
    """Reading the thread marks the engineer's replies as read."""
    _own_conversation(conversation_id)
    store = get_store()
    limit = as_int(request.args.get("limit") or 100, "limit", 1, 500)
    messages = threads.get_messages(store, conversation_id, limit=limit)
    threads.mark_read(store, conversation_id, "user")
    return jsonify({"ok": True, "messages": messages, "count": len(messages)})


@bp.post("/<conversation_id>/messages")
@require_auth
def send_message(conversation_id: str):
    conversation = _own_conversation(conversation_id)
    if conversation.get("status") == "closed":
        raise BadRequest("Conversation is closed")
    data = request_data()
    message = threads.add_message(
        get_store(),
        conversation,
        "user",
        text(data, "message"),
        sender_id=g.user["userId"],
        attachments=data.get("attachments"),
    )
    return jsonify({"ok": True, "message": message}), 201


@bp.post("/<conversation_id>/read")
@require_auth
def mark_read(conversation_id: str):
    _own_conversation(conversation_id)
    marked = threads.mark_read(get_store(), conversation_id, "user")
    return jsonify({"ok": True, "marked": marked})

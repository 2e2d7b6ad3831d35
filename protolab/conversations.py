"""Per-order support threads between a customer and the print engineers."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import BadRequest
from .storage import Store, now_iso

logger = logging.getLogger(__name__)

CONVERSATION_STATUSES = ("open", "in_progress", "resolved", "closed")
SENDER_TYPES = ("user", "engineer", "system")
DEFAULT_SUBJECT = "Support Request"
MAX_MESSAGE_LENGTH = 5000


def order_summary(store: Store, order_id: Optional[str]) -> Optional[Dict[str, Any]]:
    order = store.get("orders", order_id) if order_id else None
    if not order:
        return None
    return {
        "id": order["id"],
        "order_number": order.get("order_number"),
        "file_name": order.get("file_name"),
        "project_name": order.get("project_name"),
        "status": order.get("status"),
    }


def get_or_create(store: Store, user_id: str, order_id: str, subject: str = "") -> Tuple[Dict[str, Any], bool]:
    """Return ``(conversation, created)`` for the user's thread about an order."""
    existing = store.find_one("conversations", {"user_id": user_id, "order_id": order_id})
    if existing:
        return existing, False
    conversation = store.insert(
        "conversations",
        {
            "user_id": user_id,
            "order_id": order_id,
            "subject": subject or DEFAULT_SUBJECT,
            "status": "open",
        },
    )
    logger.info("Conversation %s opened for order %s", conversation["id"], order_id)
    return conversation, True


def get_messages(store: Store, conversation_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    return store.select(
        "conversation_messages",
        {"conversation_id": conversation_id},
        order_by="created_at",
        limit=limit,
    )


def last_message(store: Store, conversation_id: str) -> Optional[Dict[str, Any]]:
    rows = store.select(
        "conversation_messages",
        {"conversation_id": conversation_id},
        order_by="created_at",
        descending=True,
        limit=1,
    )
    return rows[0] if rows else None


def unread_count(store: Store, conversation_id: str, reader: str) -> int:
    """Unread messages from the other side; ``reader`` is ``"user"`` or ``"engineer"``."""
    rows = store.select("conversation_messages", {"conversation_id": conversation_id, "is_read": False})
    if reader == "user":
        return sum(1 for r in rows if r.get("sender_type") != "user")
    return sum(1 for r in rows if r.get("sender_type") == "user")


def mark_read(store: Store, conversation_id: str, reader: str) -> int:
    rows = store.select("conversation_messages", {"conversation_id": conversation_id, "is_read": False})
    marked = 0
    for r in rows:
        from_user = r.get("sender_type") == "user"
        if from_user == (reader == "user"):
            continue
        store.update("conversation_messages", r["id"], {"is_read": True})
        marked += 1
    return marked


def add_message(
    store: Store,
    conversation: Dict[str, Any],
    sender_type: str,
    message: str,
    sender_id: Optional[str] = None,
    attachments: Optional[List[Any]] = None,
) -> Dict[str, Any]:
    if sender_type not in SENDER_TYPES:
        raise ValueError(f"Unknown sender type: {sender_type}")
    body = (message or "").strip()
    if not body:
        raise BadRequest("Message is required")
    if len(body) > MAX_MESSAGE_LENGTH:
        raise BadRequest(f"Message is too long (max {MAX_MESSAGE_LENGTH} characters)")
    if attachments is not None and not isinstance(attachments, list):
        raise BadRequest("attachments must be a list")

    row = store.insert(
        "conversation_messages",
        {
            "conversation_id": conversation["id"],
            "sender_type": sender_type,
            "sender_id": sender_id,
            "message": body,
            "attachments": attachments or [],
            # read flag belongs to the recipient side
            "is_read": False,
        },
    )

    changes: Dict[str, Any] = {"last_message_at": row["created_at"]}
    if sender_type == "user" and conversation.get("status") == "open":
        changes["status"] = "in_progress"
    store.update("conversations", conversation["id"], changes)
    logger.info("Message %s (%s) added to conversation %s", row["id"], sender_type, conversation["id"])
    return row


def set_status(store: Store, conversation_id: str, status: str) -> Optional[Dict[str, Any]]:
    if status not in CONVERSATION_STATUSES:
        raise BadRequest("Invalid status value", allowed=list(CONVERSATION_STATUSES))
    changes: Dict[str, Any] = {"status": status}
    if status in ("resolved", "closed"):
        changes["closed_at"] = now_iso()
    return store.update("conversations", conversation_id, changes)


def describe(store: Store, conversation: Dict[str, Any], reader: str) -> Dict[str, Any]:
    out = dict(conversation)
    out["order"] = order_summary(store, conversation.get("order_id"))
    out["unread_count"] = unread_count(store, conversation["id"], reader)
    out["last_message"] = last_message(store, conversation["id"])
    return out


def total_unread(store: Store, user_id: str) -> int:
    return sum(
        unread_count(store, c["id"], "user") for c in store.select("conversations", {"user_id": user_id})
    )

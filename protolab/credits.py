from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .errors import BadRequest
from .pricing import round_money
from .storage import Store

logger = logging.getLogger(__name__)

CREDIT_PACKAGES: List[Dict[str, Any]] = [
    {"id": "pack_50", "amount": 50, "price": 50, "bonus": 0, "popular": False},
    {"id": "pack_100", "amount": 110, "price": 100, "bonus": 10, "popular": True},
    {"id": "pack_200", "amount": 230, "price": 200, "bonus": 30, "popular": False},
    {"id": "pack_500", "amount": 600, "price": 500, "bonus": 100, "popular": False},
]

TRANSACTION_TYPES = {"purchase", "refund_bonus", "order_payment", "admin_adjustment", "refund"}

REFUND_BONUS_RATE = 0.05


def get_package(package_id: str) -> Optional[Dict[str, Any]]:
    return next((p for p in CREDIT_PACKAGES if p["id"] == package_id), None)


def _balance_row(store: Store, user_id: str) -> Dict[str, Any]:
    row = store.find_one("credits", {"user_id": user_id})
    if row is None:
        row = store.insert("credits", {"user_id": user_id, "balance": 0.0})
    return row


def get_balance(store: Store, user_id: str) -> float:
    return round_money(float(_balance_row(store, user_id).get("balance") or 0))


def _record(store: Store, user_id: str, amount: float, tx_type: str, balance_after: float,
            description: str, order_id: Optional[str]) -> None:
    if tx_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown credit transaction type: {tx_type}")
    store.insert(
        "credits_transactions",
        {
            "user_id": user_id,
            "amount": round_money(amount),
            "type": tx_type,
            "description": description,
            "order_id": order_id,
            "balance_after": balance_after,
        },
    )


def add_credits(store: Store, user_id: str, amount: float, tx_type: str = "purchase",
                description: str = "", order_id: Optional[str] = None) -> float:
    if amount <= 0:
        raise BadRequest("Amount must be positive")
    new_balance = round_money(get_balance(store, user_id) + amount)
    store.upsert("credits", {"user_id": user_id, "balance": new_balance}, on_conflict="user_id")
    _record(store, user_id, amount, tx_type, new_balance, description, order_id)
    logger.info("Credits +%.2f for user %s (%s), balance %.2f", amount, user_id, tx_type, new_balance)
    return new_balance


def use_credits(store: Store, user_id: str, amount: float, description: str = "",
                order_id: Optional[str] = None) -> float:
    if amount <= 0:
        raise BadRequest("Amount must be positive")
    balance = get_balance(store, user_id)
    if balance + 1e-9 < amount:
        raise BadRequest("Insufficient credits", balance=balance, required=round_money(amount))
    new_balance = round_money(balance - amount)
    store.upsert("credits", {"user_id": user_id, "balance": new_balance}, on_conflict="user_id")
    _record(store, user_id, -amount, "order_payment", new_balance, description, order_id)
    logger.info("Credits -%.2f for user %s, balance %.2f", amount, user_id, new_balance)
    return new_balance


def adjust_credits(store: Store, user_id: str, amount: float, description: str = "") -> float:
    """Admin correction, either sign; balance never drops below zero."""
    if amount == 0:
        raise BadRequest("Amount must not be zero")
    balance = get_balance(store, user_id)
    new_balance = round_money(balance + amount)
    if new_balance < 0:
        raise BadRequest("Insufficient credits", balance=balance)
    store.upsert("credits", {"user_id": user_id, "balance": new_balance}, on_conflict="user_id")
    _record(store, user_id, amount, "admin_adjustment", new_balance, description or "Admin adjustment", None)
    logger.info("Credits adjusted by %.2f for user %s, balance %.2f", amount, user_id, new_balance)
    return new_balance


def get_transactions(store: Store, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    return store.select(
        "credits_transactions",
        {"user_id": user_id},
        order_by="created_at",
        descending=True,
        limit=limit,
    )


def apply_credit_purchase(store: Store, order: Dict[str, Any]) -> bool:
    """Add the credits bought with a completed ``order_type=credits`` order once."""
    if order.get("order_type") != "credits" or order.get("credits_applied"):
        return False
    amount = float(order.get("credit_amount") or 0)
    if amount <= 0:
        logger.error("Credits order %s has no credit_amount", order.get("id"))
        return False
    add_credits(
        store,
        order["user_id"],
        amount,
        "purchase",
        f"Store Credit: {amount:.2f} PLN",
        order_id=order["id"],
    )
    store.update("orders", order["id"], {"credits_applied": True})
    return True

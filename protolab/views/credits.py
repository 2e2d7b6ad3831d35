from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from ..credits import CREDIT_PACKAGES, get_balance, get_package, get_transactions
from ..errors import ApiError, BadRequest
from ..extensions import get_store
from ..security import require_auth
from ..shipping import generate_order_number
from .payments import PAY_METHODS, pay_methods_payload, start_payu_payment
from . import as_int, request_data, text

logger = logging.getLogger(__name__)

bp = Blueprint("credits", __name__, url_prefix="/api/credits")


@bp.get("/balance")
@require_auth
def balance():
    return jsonify({"ok": True, "balance": get_balance(get_store(), g.user["userId"])})


@bp.get("/packages")
def packages():
    return jsonify({"ok": True, "packages": CREDIT_PACKAGES})


@bp.get("/transactions")
@require_auth
def transactions():
    limit = as_int(request.args.get("limit") or 50, "limit", 1, 200)
    rows = get_transactions(get_store(), g.user["userId"], limit=limit)
    return jsonify({"ok": True, "transactions": rows, "count": len(rows)})


@bp.post("/purchase")
@require_auth
def purchase():
    """Credits are added by the PayU notification, not here."""
    data = request_data()
    package = get_package(text(data, "packageId"))
    if not package:
        raise BadRequest("Invalid package")
    method = text(data, "payMethod", "redirect").lower()
    if method not in PAY_METHODS:
        raise BadRequest("Invalid payment method", allowed=list(PAY_METHODS))
    blik_code = text(data, "blikCode")
    pay_methods_payload(method, blik_code)

    store = get_store()
    order = store.insert(
        "orders",
        {
            "user_id": g.user["userId"],
            "order_number": generate_order_number(),
            "order_type": "credits",
            "project_name": f"Store Credit {package['id']}",
            "credit_amount": float(package["amount"]),
            "price": float(package["price"]),
            "paid_amount": 0.0,
            "status": "submitted",
            "payment_status": "unpaid",
            "credits_applied": False,
            "is_archived": False,
            "deleted_at": None,
        },
    )
    logger.info("Credits purchase %s started by %s (order %s)", package["id"], g.user["email"], order["id"])
    try:
        result = start_payu_payment(order, method, blik_code)
    except ApiError:
        store.delete("orders", order["id"])
        logger.warning("Credits purchase order %s dropped, PayU payment was not created", order["id"])
        raise
    return jsonify(result)

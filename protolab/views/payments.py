from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, g, jsonify, request

from ..credits import use_credits
from ..errors import BadRequest, Conflict, Unauthorized
from ..extensions import get_mailer, get_payu, get_store
from ..orders import amount_due, apply_payment_update
from ..payu import is_valid_blik_code, verify_signature
from ..pricing import round_money
from ..security import require_auth
from .orders import load_order_for_user, serialize_order
from . import as_float, request_data, text

logger = logging.getLogger(__name__)

bp = Blueprint("payments", __name__, url_prefix="/api/payments")

PAY_METHODS = ("card", "blik", "redirect")


def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For") or ""
    return forwarded.split(",")[0].strip() or request.remote_addr or "127.0.0.1"


def pay_methods_payload(method: str, blik_code: str = "") -> Optional[Dict[str, Any]]:
    if method == "blik":
        if not is_valid_blik_code(blik_code):
            raise BadRequest("BLIK code must be 6 digits")
        return {"payMethod": {"type": "PBL", "value": "blik", "authorizationCode": blik_code}}
    if method == "card":
        return {"payMethod": {"type": "PBL", "value": "c"}}
    return None


def order_description(order: Dict[str, Any]) -> str:
    if order.get("order_type") == "credits":
        return f"Store Credit: {float(order.get('credit_amount') or 0):.2f} PLN"
    number = order.get("order_number") or order["id"]
    return f"ProtoLab 3D - zamówienie #{number}"


def start_payu_payment(order: Dict[str, Any], method: str, blik_code: str = "") -> Dict[str, Any]:
    """Create the PayU order for whatever is still due and remember its id."""
    store = get_store()
    due = amount_due(order)
    if due <= 0:
        raise BadRequest("Nothing to pay for this order")
    pay_methods = pay_methods_payload(method, blik_code)

    user = store.get("users", order["user_id"]) or {}
    description = order_description(order)
    result = get_payu().create_order(
        ext_order_id=order["id"],
        amount_pln=due,
        description=description,
        buyer={"email": user.get("email"), "name": user.get("name"), "phone": user.get("phone")},
        customer_ip=client_ip(),
        products=[{"name": description, "unitPrice": due, "quantity": 1}],
        pay_methods=pay_methods,
    )

    changes = {"payment_status": "pending", "payment_method": method}
    if result.payu_order_id:
        changes["payu_order_id"] = result.payu_order_id
    store.update("orders", order["id"], changes)
    logger.info("PayU payment started for order %s (%s, %.2f PLN)", order["id"], method, due)

    out = result.to_dict()
    out.update({"ok": True, "orderId": order["id"], "amount": due})
    return out


def notify_customer(order: Dict[str, Any], event: Optional[str]) -> None:
    if event not in ("paid", "failed"):
        return
    user = get_store().get("users", order.get("user_id")) or {}
    mailer = get_mailer()
    if event == "paid":
        mailer.send_payment_confirmation(user.get("email") or "", user.get("name") or "", order)
    else:
        mailer.send_payment_failed(user.get("email") or "", user.get("name") or "", order)


@bp.post("/payu/create")
@require_auth
def create_payu_payment():
    data = request_data()
    order_id = text(data, "orderId")
    if not order_id:
        raise BadRequest("orderId is required")
    order = load_order_for_user(order_id)
    if order.get("user_id") != g.user["userId"]:
        raise BadRequest("You can only pay for your own orders")
    if order.get("payment_status") in ("paid", "refunding", "refunded"):
        raise BadRequest("Order is already paid")
    if order.get("price_pending"):
        raise BadRequest("Order is waiting for pricing")

    method = text(data, "payMethod", "redirect").lower()
    if method not in PAY_METHODS:
        raise BadRequest("Invalid payment method", allowed=list(PAY_METHODS))
    return jsonify(start_payu_payment(order, method, text(data, "blikCode")))


@bp.post("/payu/notify")
def payu_notify():
    raw = request.get_data(cache=True)
    header = request.headers.get("OpenPayU-Signature")
    if not verify_signature(raw, header, current_app.config["PAYU_MD5_KEY"]):
        logger.warning("Rejected PayU notification with invalid signature from %s", client_ip())
        raise Unauthorized("Invalid signature")

    try:
        payload = json.loads(raw.decode("utf-8"))
    except ValueError:
        raise BadRequest("Invalid notification body")
    payu_order = payload.get("order") or {}
    ext_order_id = str(payu_order.get("extOrderId") or "")
    status = str(payu_order.get("status") or "")
    logger.info("PayU notification: order %s ext %s status %s", payu_order.get("orderId"), ext_order_id, status)

    store = get_store()
    order = store.get("orders", ext_order_id) if ext_order_id else None
    if not order:
        logger.warning("PayU notification for unknown order %r", ext_order_id)
        return "", 200

    updated, event = apply_payment_update(
        store,
        order,
        status,
        total_amount=payu_order.get("totalAmount"),
        payu_order_id=payu_order.get("orderId"),
    )
    notify_customer(updated, event)
    return "", 200


@bp.get("/<order_id>/status")
@require_auth
def payment_status(order_id: str):
    order = load_order_for_user(order_id)
    refreshed = False
    if request.args.get("refresh") in ("1", "true") and order.get("payu_order_id"):
        remote = get_payu().get_order(order["payu_order_id"])
        if remote.get("status"):
            order, event = apply_payment_update(
                get_store(),
                order,
                remote["status"],
                total_amount=remote.get("totalAmount"),
            )
            notify_customer(order, event)
            refreshed = True
    return jsonify({
        "ok": True,
        "orderId": order["id"],
        "status": order.get("status"),
        "paymentStatus": order.get("payment_status"),
        "paidAmount": float(order.get("paid_amount") or 0),
        "amountDue": amount_due(order),
        "refreshed": refreshed,
    })


@bp.post("/credits")
@require_auth
def pay_with_credits():
    data = request_data()
    order_id = text(data, "orderId")
    if not order_id:
        raise BadRequest("orderId is required")
    order = load_order_for_user(order_id)
    if order.get("user_id") != g.user["userId"]:
        raise BadRequest("You can only pay for your own orders")
    if order.get("order_type") == "credits":
        raise BadRequest("Credits cannot be bought with credits")
    if order.get("payment_status") in ("paid", "refunding", "refunded"):
        raise BadRequest("Order is already paid")
    if order.get("price_pending"):
        raise BadRequest("Order is waiting for pricing")
    if order.get("payment_status") == "pending" and order.get("payu_order_id"):
        raise Conflict("A PayU payment for this order is still in progress")

    due = amount_due(order)
    amount = as_float(data["amount"], "amount", minimum=0.01) if text(data, "amount") else due
    amount = round_money(min(amount, due))
    if amount <= 0:
        raise BadRequest("Nothing to pay for this order")

    store = get_store()
    balance = use_credits(store, g.user["userId"], amount, order_description(order), order_id=order["id"])

    paid_amount = round_money(float(order.get("paid_amount") or 0) + amount)
    changes: Dict[str, Any] = {"paid_amount": paid_amount}
    if paid_amount + 1e-9 >= float(order.get("price") or 0):
        changes["payment_status"] = "paid"
        changes["payment_method"] = "credits" if not order.get("payment_method") else order["payment_method"]
        if order.get("status") in ("submitted", "payment_failed", None):
            changes["status"] = "in_queue"
    updated = store.update("orders", order["id"], changes) or {**order, **changes}
    logger.info("Order %s paid %.2f PLN with credits", order["id"], amount)
    if changes.get("payment_status") == "paid":
        notify_customer(updated, "paid")

    return jsonify({
        "ok": True,
        "order": serialize_order(updated),
        "creditsUsed": amount,
        "balance": balance,
        "amountDue": amount_due(updated),
    })


@bp.get("/methods")
def pay_methods():
    data = get_payu().get_pay_methods(lang=(request.args.get("lang") or "pl"))
    return jsonify({"ok": True, **data})

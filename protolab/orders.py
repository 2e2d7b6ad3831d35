"""Order pricing and payment state shared by the order, payment and admin APIs."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from .credits import apply_credit_purchase
from .errors import BadRequest
from .model_analysis import estimate_print_job, validate_geometry
from .payu import from_minor_units, map_notification_status
from .pricing import (
    DEFAULT_LABOR_TIME_MINUTES,
    DEFAULT_MACHINE,
    MachineSpec,
    PricingError,
    PrintProfile,
    calculate_print_price,
    get_delivery_fee,
    get_material_density,
    normalize_color,
    normalize_material,
    order_total,
    print_profile,
    round_money,
)
from .storage import Store

logger = logging.getLogger(__name__)

ORDER_STATUSES = (
    "submitted",
    "in_queue",
    "printing",
    "finished",
    "delivered",
    "on_hold",
    "suspended",
    "payment_failed",
)
ORDER_TYPES = ("print", "design", "credits")
SHIPPING_METHODS = ("pickup", "inpost", "dpd", "courier")
SETTLED_PAYMENT_STATUSES = ("paid", "refunding", "refunded")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "labor_minutes": DEFAULT_LABOR_TIME_MINUTES,
    "service_fee": 0.0,
    "default_lead_time_days": 4,
}


def get_business_settings(store: Store) -> Dict[str, Any]:
    row = store.find_one("settings", {}) or {}
    out = dict(DEFAULT_SETTINGS)
    out.update({k: v for k, v in row.items() if v is not None})
    return out


def material_price_per_kg(store: Store, material: str, color: str) -> Optional[float]:
    """Admin-managed price for an active material, or None to use the price list."""
    mat = normalize_material(material)
    col = normalize_color(color)
    for row in store.select("materials", {"is_active": True}):
        if normalize_material(row.get("material_type") or "") != mat:
            continue
        if normalize_color(row.get("color") or "") != col:
            continue
        if row.get("price_per_kg") is not None:
            return float(row["price_per_kg"])
    return None


def default_printer(store: Store) -> Optional[Dict[str, Any]]:
    """The printer flagged as default, else the first online one."""
    marked = [p for p in store.select("printers", {"is_default": True}) if p.get("status") != "offline"]
    if marked:
        return marked[0]
    online = store.select("printers", {"status": "online"}, order_by="created_at")
    return online[0] if online else None


def machine_spec(printer: Optional[Dict[str, Any]]) -> MachineSpec:
    if not printer:
        return DEFAULT_MACHINE

    def value(key: str, fallback: float, allow_zero: bool = False) -> float:
        raw = printer.get(key)
        if raw in (None, ""):
            return fallback
        number = float(raw)
        return number if number > 0 or (allow_zero and number == 0) else fallback

    return MachineSpec(
        power_kw=value("power_watts", DEFAULT_MACHINE.power_kw * 1000) / 1000.0,
        cost_pln=value("cost_pln", DEFAULT_MACHINE.cost_pln),
        lifespan_hours=value("lifespan_hours", DEFAULT_MACHINE.lifespan_hours),
        maintenance_rate=value("maintenance_rate", DEFAULT_MACHINE.maintenance_rate, allow_zero=True),
    )


def profile_for(quality: Optional[str], purpose: Optional[str],
                layer_height: Optional[float] = None, infill: Optional[int] = None) -> PrintProfile:
    base = print_profile(quality, purpose)
    return PrintProfile(
        layer_height=layer_height or base.layer_height,
        speed=base.speed,
        infill=base.infill if infill is None else infill,
        pattern=base.pattern,
    )


def quote_model(
    store: Store,
    metadata: Dict[str, Any],
    material: str,
    color: str,
    profile: PrintProfile,
    quantity: int = 1,
    shipping_method: str = "pickup",
) -> Dict[str, Any]:
    """Validation, print estimate and price for an analysed model.

    ``price`` is None when the geometry cannot be measured; such orders are
    priced by an admin later.
    """
    validation = validate_geometry(metadata)
    settings = get_business_settings(store)
    try:
        delivery_fee = get_delivery_fee(shipping_method)
    except PricingError as e:
        raise BadRequest(str(e))

    result: Dict[str, Any] = {
        "validation": validation,
        "estimation": None,
        "breakdown": None,
        "deliveryFee": delivery_fee,
        "price": None,
    }
    if not validation["valid"]:
        return result

    estimation = estimate_print_job(metadata, profile, get_material_density(material))
    try:
        breakdown = calculate_print_price(
            material,
            color,
            estimation["material_weight_g"],
            estimation["print_time_minutes"] / 60.0,
            labor_minutes=float(settings["labor_minutes"]),
            price_per_kg=material_price_per_kg(store, material, color),
            machine=machine_spec(default_printer(store)),
        )
    except PricingError as e:
        raise BadRequest(str(e))

    result.update(
        estimation=estimation,
        breakdown=breakdown,
        price=order_total(
            breakdown["priceWithoutDelivery"],
            quantity,
            delivery_fee,
            float(settings["service_fee"]),
        ),
    )
    return result


def reprice_order(store: Store, order: Dict[str, Any], weight_grams: float, print_minutes: float) -> Dict[str, Any]:
    """Price an order from admin-measured weight and print time."""
    settings = get_business_settings(store)
    material = order.get("material") or ""
    color = order.get("color") or ""
    try:
        breakdown = calculate_print_price(
            material,
            color,
            weight_grams,
            print_minutes / 60.0,
            labor_minutes=float(settings["labor_minutes"]),
            price_per_kg=material_price_per_kg(store, material, color),
            machine=machine_spec(default_printer(store)),
        )
        delivery_fee = get_delivery_fee(order.get("shipping_method") or "pickup")
    except PricingError as e:
        raise BadRequest(str(e))
    price = order_total(
        breakdown["priceWithoutDelivery"],
        int(order.get("quantity") or 1),
        delivery_fee,
        float(settings["service_fee"]),
    )
    return {"breakdown": breakdown, "price": price}


def amount_due(order: Dict[str, Any]) -> float:
    return round_money(max(0.0, float(order.get("price") or 0) - float(order.get("paid_amount") or 0)))


def record_overpayment(
    store: Store,
    order: Dict[str, Any],
    payu_order_id: Optional[str],
    total_amount: Any,
) -> Dict[str, Any]:
    """Keep a PayU charge that arrived for an order settled some other way."""
    amount = from_minor_units(total_amount) if total_amount not in (None, "") else 0.0
    logger.error(
        "Overpayment on order %s: PayU %s completed %.2f PLN but order is already %s",
        order["id"],
        payu_order_id,
        amount,
        order.get("payment_status"),
    )
    changes = {
        "overpaid_amount": round_money(float(order.get("overpaid_amount") or 0) + amount),
        "overpaid_payu_order_id": payu_order_id,
    }
    return store.update("orders", order["id"], changes) or {**order, **changes}


def apply_payment_update(
    store: Store,
    order: Dict[str, Any],
    payu_status: str,
    total_amount: Any = None,
    payu_order_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], Optional[str]]:
    """Apply a PayU order status to a local order.

    Returns the (possibly updated) order and the event that happened:
    ``"paid"``, ``"failed"``, ``"pending"``, ``"overpaid"`` or None when
    nothing changed.
    """
    payment_status, new_status = map_notification_status(payu_status)
    current = order.get("payment_status")

    if current in SETTLED_PAYMENT_STATUSES:
        if payment_status != "paid":
            logger.info("Order %s already %s, ignoring PayU %s", order["id"], current, payu_status)
            return order, None
        paying_id = payu_order_id or order.get("payu_order_id")
        if paying_id and paying_id not in (order.get("payu_paid_order_id"), order.get("overpaid_payu_order_id")):
            return record_overpayment(store, order, paying_id, total_amount), "overpaid"
        apply_credit_purchase(store, order)
        logger.info("Order %s already %s, ignoring repeated PayU %s", order["id"], current, payu_status)
        return order, None

    changes: Dict[str, Any] = {"payment_status": payment_status}
    if payu_order_id:
        changes["payu_order_id"] = payu_order_id

    if payment_status == "paid":
        paid_now = from_minor_units(total_amount) if total_amount not in (None, "") else amount_due(order)
        changes["paid_amount"] = round_money(float(order.get("paid_amount") or 0) + paid_now)
        changes["payu_paid_order_id"] = payu_order_id or order.get("payu_order_id")
        if order.get("order_type") == "credits":
            changes["status"] = "completed"
        elif order.get("status") in (None, "submitted", "payment_failed", "on_hold"):
            changes["status"] = new_status
    elif payment_status == "failed":
        changes["status"] = new_status
    elif current == "pending" and not payu_order_id:
        return order, None

    updated = store.update("orders", order["id"], changes) or {**order, **changes}
    logger.info(
        "Order %s payment %s -> %s (PayU %s)",
        order["id"],
        current,
        payment_status,
        payu_status,
    )
    if payment_status == "paid":
        apply_credit_purchase(store, updated)
    return updated, payment_status

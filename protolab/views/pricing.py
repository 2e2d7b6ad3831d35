from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from ..errors import BadRequest
from ..extensions import get_store
from ..model_analysis import analyze_model
from ..orders import (
    default_printer,
    get_business_settings,
    machine_spec,
    material_price_per_kg,
    profile_for,
    quote_model,
)
from ..pricing import PricingError, calculate_print_price, get_delivery_fee, pricing_options
from ..uploads import MODEL_EXTS, read_upload
from . import as_float, as_int, request_data, require_fields, text

logger = logging.getLogger(__name__)

bp = Blueprint("pricing", __name__, url_prefix="/api/pricing")


@bp.get("/options")
def options():
    return jsonify({"ok": True, **pricing_options()})


@bp.post("/calculate")
def calculate():
    """Breakdown from a known weight (g) and print time (h)."""
    data = request_data()
    require_fields(data, ("materialType", "color", "materialWeightGrams", "printTimeHours"))
    store = get_store()
    settings = get_business_settings(store)
    try:
        delivery_fee = get_delivery_fee(text(data, "shippingMethod", "pickup").lower())
        breakdown = calculate_print_price(
            text(data, "materialType"),
            text(data, "color"),
            as_float(data["materialWeightGrams"], "materialWeightGrams", minimum=0),
            as_float(data["printTimeHours"], "printTimeHours", minimum=0),
            labor_minutes=as_float(data["laborTimeMinutes"], "laborTimeMinutes", minimum=0)
            if text(data, "laborTimeMinutes")
            else float(settings["labor_minutes"]),
            delivery_fee=delivery_fee,
            price_per_kg=material_price_per_kg(store, text(data, "materialType"), text(data, "color")),
            machine=machine_spec(default_printer(store)),
        )
    except PricingError as e:
        raise BadRequest(str(e))
    return jsonify({"ok": True, "breakdown": breakdown})


@bp.post("/estimate")
def estimate():
    """Analyse an uploaded model and quote it without creating an order."""
    data = request_data()
    require_fields(data, ("material", "color"))
    original, _ext, blob = read_upload(request.files.get("file"), MODEL_EXTS)
    quantity = as_int(data.get("quantity") or 1, "quantity", 1, 1000)
    profile = profile_for(text(data, "quality", "standard"), text(data, "purpose") or None)

    metadata = analyze_model(blob, original)
    quote = quote_model(
        get_store(),
        metadata,
        text(data, "material"),
        text(data, "color"),
        profile,
        quantity=quantity,
        shipping_method=text(data, "shippingMethod", "pickup").lower(),
    )
    logger.info("Estimate for %s: %s", original, quote["price"])
    return jsonify({
        "ok": True,
        "metadata": metadata,
        "parameters": {
            "layerHeight": profile.layer_height,
            "speed": profile.speed,
            "infill": profile.infill,
            "pattern": profile.pattern,
        },
        "validation": quote["validation"],
        "estimation": quote["estimation"],
        "breakdown": quote["breakdown"],
        "deliveryFee": quote["deliveryFee"],
        "price": quote["price"],
        "quantity": quantity,
    })

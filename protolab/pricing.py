"""Print price estimation.

Closed-form cost model used for every print order::

    material     = price_per_kg * grams / 1000
    energy       = hours * machine_kw * energy_price
    labor        = hourly_rate * labor_minutes / 60
    depreciation = machine_cost / lifespan_hours * hours
    maintenance  = depreciation * 3%
    internal     = sum of the above
    vat          = internal * 23%
    total        = internal + vat + delivery

All money values are rounded half-up to 0.01 PLN only when reported.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

MACHINE_POWER_KW = 0.27
ENERGY_PRICE_PLN = 0.914  # per kWh
HOURLY_LABOR_RATE_PLN = 31.4
DEFAULT_LABOR_TIME_MINUTES = 20
MACHINE_COST_PLN = 3483.39
MACHINE_LIFESPAN_HOURS = 5000
MAINTENANCE_MULTIPLIER = 0.03
VAT_RATE = 0.23


@dataclass(frozen=True)
class MachineSpec:
    """Running costs of the printer a job is priced on."""

    power_kw: float = MACHINE_POWER_KW
    cost_pln: float = MACHINE_COST_PLN
    lifespan_hours: float = MACHINE_LIFESPAN_HOURS
    maintenance_rate: float = MAINTENANCE_MULTIPLIER

    def to_dict(self) -> Dict[str, float]:
        return {
            "power_watts": round(self.power_kw * 1000, 1),
            "cost_pln": self.cost_pln,
            "lifespan_hours": self.lifespan_hours,
            "maintenance_rate": self.maintenance_rate,
        }


DEFAULT_MACHINE = MachineSpec()

# PLN per kg, "<type>_<Color>"
MATERIAL_PRICES: Dict[str, float] = {
    "PLA_White": 39.0,
    "PLA_Black": 39.0,
    "PLA_Red": 49.0,
    "PLA_Yellow": 49.0,
    "PLA_Blue": 49.0,
    "ABS_Silver": 50.0,
    "ABS_Transparent": 50.0,
    "ABS_Black": 50.0,
    "ABS_Grey": 50.0,
    "ABS_Red": 50.0,
    "ABS_White": 50.0,
    "ABS_Blue": 50.0,
    "ABS_Green": 50.0,
    "PETG_Black": 30.0,
    "PETG_White": 35.0,
    "PETG_Red": 39.0,
    "PETG_Green": 39.0,
    "PETG_Blue": 39.0,
    "PETG_Yellow": 39.0,
    "PETG_Pink": 39.0,
    "PETG_Orange": 39.0,
    "PETG_Silver": 39.0,
}

# g/cm3
MATERIAL_DENSITIES: Dict[str, float] = {
    "PLA": 1.24,
    "ABS": 1.04,
    "PETG": 1.27,
    "TPU": 1.21,
    "Resin": 1.1,
}

DELIVERY_FEES: Dict[str, float] = {
    "pickup": 0.0,
    "inpost": 12.0,
    "dpd": 25.0,
    "courier": 25.0,
}

DELIVERY_LABELS: Dict[str, str] = {
    "pickup": "Odbiór osobisty (Kraków)",
    "inpost": "Paczkomat InPost",
    "dpd": "Kurier DPD",
    "courier": "Kurier",
}


class PricingError(ValueError):
    pass


@dataclass(frozen=True)
class PrintProfile:
    layer_height: float  # mm
    speed: float  # mm/s
    infill: int  # percent
    pattern: str


QUALITY_PRESETS: Dict[str, PrintProfile] = {
    "draft": PrintProfile(layer_height=0.3, speed=80, infill=10, pattern="lines"),
    "standard": PrintProfile(layer_height=0.2, speed=60, infill=20, pattern="grid"),
    "high": PrintProfile(layer_height=0.1, speed=40, infill=30, pattern="grid"),
}

# Purpose overrides infill and pattern, quality keeps layer height and speed
PURPOSE_PRESETS: Dict[str, Dict[str, Any]] = {
    "prototype": {"infill": 10, "pattern": "lines"},
    "functional": {"infill": 40, "pattern": "grid"},
    "aesthetic": {"infill": 15, "pattern": "gyroid"},
}


def round_money(value: float) -> float:
    return float(Decimal(repr(float(value))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def normalize_material(material_type: str) -> str:
    raw = str(material_type or "").strip()
    for known in MATERIAL_DENSITIES:
        if raw.lower() == known.lower():
            return known
    return raw.upper()


def normalize_color(color: str) -> str:
    raw = str(color or "").strip()
    return raw[:1].upper() + raw[1:].lower() if raw else raw


def get_material_price(material_type: str, color: str) -> float:
    key = f"{normalize_material(material_type)}_{normalize_color(color)}"
    if key not in MATERIAL_PRICES:
        raise PricingError(f"Unknown material/color combination: {material_type} {color}")
    return MATERIAL_PRICES[key]


def get_material_density(material_type: str) -> float:
    return MATERIAL_DENSITIES.get(normalize_material(material_type), MATERIAL_DENSITIES["PLA"])


def available_colors() -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    for key in MATERIAL_PRICES:
        mat, col = key.split("_", 1)
        out.setdefault(mat, []).append(col)
    return out


def get_delivery_fee(shipping_method: str) -> float:
    method = str(shipping_method or "").strip().lower()
    if method not in DELIVERY_FEES:
        raise PricingError(f"Unknown shipping method: {shipping_method}")
    return DELIVERY_FEES[method]


def print_profile(quality: Optional[str] = None, purpose: Optional[str] = None) -> PrintProfile:
    base = QUALITY_PRESETS.get(str(quality or "standard").lower(), QUALITY_PRESETS["standard"])
    mods = PURPOSE_PRESETS.get(str(purpose or "").lower())
    if not mods:
        return base
    return PrintProfile(
        layer_height=base.layer_height,
        speed=base.speed,
        infill=int(mods["infill"]),
        pattern=str(mods["pattern"]),
    )


def calculate_print_price(
    material_type: str,
    color: str,
    weight_grams: float,
    print_time_hours: float,
    labor_minutes: float = DEFAULT_LABOR_TIME_MINUTES,
    delivery_fee: float = 0.0,
    price_per_kg: Optional[float] = None,
    machine: Optional[MachineSpec] = None,
) -> Dict[str, float]:
    """Cost breakdown for a single printed part (PLN)."""
    spec = machine or DEFAULT_MACHINE
    if weight_grams < 0 or print_time_hours < 0 or labor_minutes < 0 or delivery_fee < 0:
        raise PricingError("Pricing inputs must not be negative")

    per_kg = float(price_per_kg) if price_per_kg is not None else get_material_price(material_type, color)

    material = per_kg * (weight_grams / 1000.0)
    energy = print_time_hours * spec.power_kw * ENERGY_PRICE_PLN
    labor = HOURLY_LABOR_RATE_PLN * (labor_minutes / 60.0)
    depreciation = (spec.cost_pln / spec.lifespan_hours) * print_time_hours
    maintenance = depreciation * spec.maintenance_rate

    internal = material + energy + labor + depreciation + maintenance
    vat = internal * VAT_RATE
    without_delivery = internal + vat
    total = without_delivery + delivery_fee

    return {
        "materialCost": round_money(material),
        "energyCost": round_money(energy),
        "laborCost": round_money(labor),
        "depreciationCost": round_money(depreciation),
        "maintenanceCost": round_money(maintenance),
        "internalCost": round_money(internal),
        "vat": round_money(vat),
        "priceWithoutDelivery": round_money(without_delivery),
        "deliveryFee": round_money(delivery_fee),
        "totalPrice": round_money(total),
    }


def order_total(unit_price: float, quantity: int, delivery_fee: float, service_fee: float = 0.0) -> float:
    """Price of ``quantity`` copies; delivery and service fee are charged once."""
    return round_money(unit_price * max(1, int(quantity)) + delivery_fee + service_fee)


def pricing_options() -> Dict[str, Any]:
    return {
        "materials": available_colors(),
        "pricesPerKg": dict(MATERIAL_PRICES),
        "densities": dict(MATERIAL_DENSITIES),
        "qualities": {
            name: {
                "layerHeight": p.layer_height,
                "speed": p.speed,
                "infill": p.infill,
                "pattern": p.pattern,
            }
            for name, p in QUALITY_PRESETS.items()
        },
        "purposes": {name: dict(mods) for name, mods in PURPOSE_PRESETS.items()},
        "delivery": [
            {"id": key, "name": DELIVERY_LABELS[key], "price": fee}
            for key, fee in DELIVERY_FEES.items()
        ],
        "vatRate": VAT_RATE,
    }

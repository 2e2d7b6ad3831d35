from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Optional

_BASE36 = string.digits + string.ascii_uppercase

TRACKING_PREFIXES = {
    "inpost": "INP",
    "dpd": "DPD",
    "courier": "DPD",
}


def format_pln(value: float) -> str:
    """Polish formatting: 1 069,00 zł (space thousands, comma decimals)."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        v = 0.0
    s = f"{v:,.2f}"
    s = s.replace(",", "X").replace(".", ",").replace("X", " ")
    return f"{s} zł"


def to_base36(number: int) -> str:
    if number <= 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def _random_chars(n: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(n))


def generate_tracking_code(shipping_method: Optional[str]) -> str:
    """INP / DPD / SHP prefix + base-36 millisecond timestamp + 6 random chars."""
    prefix = TRACKING_PREFIXES.get(str(shipping_method or "").lower(), "SHP")
    return f"{prefix}{to_base36(int(time.time() * 1000))}{_random_chars(6)}"


def generate_order_number(now: Optional[datetime] = None) -> str:
    """PL-20240131-7KQ2"""
    now = now or datetime.now(timezone.utc)
    return f"PL-{now:%Y%m%d}-{_random_chars(4)}"

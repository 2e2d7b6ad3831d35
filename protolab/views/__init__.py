from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional

from flask import Flask, request

from ..errors import BadRequest

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PRIVATE_USER_FIELDS = {"password_hash"}


def register_blueprints(app: Flask) -> None:
    from . import (
        admin,
        appointments,
        auth,
        conversations,
        credits,
        design_requests,
        files,
        materials,
        orders,
        payments,
        pricing,
        printers,
        settings,
    )

    for module in (
        auth,
        orders,
        payments,
        credits,
        appointments,
        design_requests,
        conversations,
        materials,
        printers,
        settings,
        admin,
        pricing,
        files,
    ):
        app.register_blueprint(module.bp)


def request_data() -> Dict[str, Any]:
    """JSON body, or form fields for multipart requests."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict() if request.form else {}


def text(data: Dict[str, Any], key: str, default: str = "") -> str:
    return str(data.get(key) if data.get(key) is not None else default).strip()


def require_fields(data: Dict[str, Any], fields: Iterable[str]) -> None:
    missing = [f for f in fields if not text(data, f)]
    if missing:
        raise BadRequest("Missing required fields: " + ", ".join(missing), fields=missing)


def valid_email(value: Optional[str]) -> bool:
    return bool(EMAIL_RE.match(str(value or "").strip()))


def as_int(value: Any, name: str, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    try:
        out = int(str(value).strip())
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid {name}")
    if (minimum is not None and out < minimum) or (maximum is not None and out > maximum):
        raise BadRequest(f"Invalid {name}")
    return out


def as_float(value: Any, name: str, minimum: Optional[float] = None) -> float:
    try:
        out = float(str(value).strip().replace(",", "."))
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid {name}")
    if out != out or (minimum is not None and out < minimum):
        raise BadRequest(f"Invalid {name}")
    return out


def public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}

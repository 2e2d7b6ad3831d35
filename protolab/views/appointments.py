from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List

from flask import Blueprint, g, jsonify, request

from ..errors import BadRequest, Conflict, NotFound
from ..extensions import get_mailer, get_store
from ..security import is_admin, require_admin, require_auth
from ..storage import UniqueViolation
from . import request_data, require_fields, text, valid_email

logger = logging.getLogger(__name__)

bp = Blueprint("appointments", __name__, url_prefix="/api/appointments")

APPOINTMENT_STATUSES = ("scheduled", "completed", "cancelled", "no_show")
SLOT_KEYS = ("date", "time", "status")


def time_slots() -> List[str]:
    """09:00 - 17:30 every 30 minutes."""
    return [f"{h:02d}:{m:02d}" for h in range(9, 18) for m in (0, 30)]


def parse_day(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise BadRequest("Invalid date format (use YYYY-MM-DD)")


def booked_slots(day: str) -> List[str]:
    rows = get_store().select("appointments", {"date": day, "status": "scheduled"})
    return sorted({str(r.get("time")) for r in rows})


@bp.get("/availability")
def availability():
    day = (request.args.get("date") or "").strip()
    if not day:
        raise BadRequest("date is required")
    parsed = parse_day(day)
    booked = booked_slots(day)
    if parsed.weekday() >= 5 or parsed < date.today():
        available: List[str] = []
    else:
        available = [s for s in time_slots() if s not in booked]
    return jsonify({"ok": True, "date": day, "availableSlots": available, "bookedSlots": booked})


@bp.post("")
def book():
    data = request_data()
    require_fields(data, ("name", "email", "topic", "date", "time"))
    email = text(data, "email").lower()
    if not valid_email(email):
        raise BadRequest("Invalid email address")

    day = text(data, "date")
    slot = text(data, "time")
    parsed = parse_day(day)
    if parsed < date.today():
        raise BadRequest("Cannot book appointments in the past")
    if parsed.weekday() >= 5:
        raise BadRequest("Appointments are available Monday to Friday only")
    if slot not in time_slots():
        raise BadRequest("Invalid time slot", availableSlots=time_slots())

    store = get_store()
    user = store.find_one("users", {"email": email})
    try:
        appointment = store.insert_unique(
            "appointments",
            {
                "user_id": user["id"] if user else None,
                "name": text(data, "name"),
                "email": email,
                "phone": text(data, "phone") or None,
                "topic": text(data, "topic"),
                "message": text(data, "message") or None,
                "date": day,
                "time": slot,
                "status": "scheduled",
                "admin_notes": None,
                "meeting_link": None,
            },
            unique_keys=SLOT_KEYS,
        )
    except UniqueViolation:
        raise Conflict("This time slot is already booked")
    logger.info("Appointment %s booked for %s %s by %s", appointment["id"], day, slot, email)

    mailer = get_mailer()
    mailer.send_appointment_confirmation(appointment)
    mailer.send_appointment_admin(appointment)

    return jsonify({"ok": True, "message": "Appointment booked successfully", "appointment": appointment}), 201


@bp.get("")
@require_auth
def list_appointments():
    store = get_store()
    if is_admin():
        rows = store.select("appointments")
    else:
        by_user = store.select("appointments", {"user_id": g.user["userId"]})
        by_email = store.select("appointments", {"email": (g.user.get("email") or "").lower()})
        seen: Dict[str, Dict[str, Any]] = {r["id"]: r for r in by_user}
        for r in by_email:
            seen.setdefault(r["id"], r)
        rows = list(seen.values())
    rows.sort(key=lambda r: (str(r.get("date") or ""), str(r.get("time") or "")))
    return jsonify({"ok": True, "appointments": rows, "count": len(rows)})


@bp.put("/<appointment_id>")
@require_admin
def update_appointment(appointment_id: str):
    store = get_store()
    appointment = store.get("appointments", appointment_id)
    if not appointment:
        raise NotFound("Appointment not found")

    data = request_data()
    changes: Dict[str, Any] = {}
    if "status" in data:
        status = text(data, "status")
        if status not in APPOINTMENT_STATUSES:
            raise BadRequest("Invalid status", allowed=list(APPOINTMENT_STATUSES))
        changes["status"] = status
    if "admin_notes" in data:
        changes["admin_notes"] = text(data, "admin_notes") or None
    if "meeting_link" in data:
        changes["meeting_link"] = text(data, "meeting_link") or None
    if not changes:
        raise BadRequest("Nothing to update")

    updated = store.update("appointments", appointment_id, changes) or {**appointment, **changes}
    logger.info("Appointment %s updated: %s", appointment_id, sorted(changes))
    if changes.get("meeting_link") and changes["meeting_link"] != appointment.get("meeting_link"):
        get_mailer().send_meeting_link(updated)
    return jsonify({"ok": True, "message": "Appointment updated", "appointment": updated})


@bp.delete("/<appointment_id>")
@require_auth
def cancel_appointment(appointment_id: str):
    store = get_store()
    appointment = store.get("appointments", appointment_id)
    owner = appointment and (
        appointment.get("user_id") == g.user["userId"]
        or (appointment.get("email") or "") == (g.user.get("email") or "").lower()
    )
    if not appointment or not (owner or is_admin()):
        raise NotFound("Appointment not found")
    updated = store.update("appointments", appointment_id, {"status": "cancelled"})
    logger.info("Appointment %s cancelled", appointment_id)
    return jsonify({"ok": True, "message": "Appointment cancelled", "appointment": updated})

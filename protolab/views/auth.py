from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, g, jsonify, request

from ..errors import BadRequest, Conflict, Forbidden, NotFound, Unauthorized
from ..extensions import get_mailer, get_store
from ..security import (
    generate_token_pair,
    hash_password,
    make_signed_token,
    read_signed_token_or_400,
    refresh_token_expiry,
    require_auth,
    verify_password,
    verify_refresh_token,
)
from ..storage import Store
from . import public_user, request_data, require_fields, text, valid_email

logger = logging.getLogger(__name__)

bp = Blueprint("auth", __name__, url_prefix="/api/auth")

ACTIVE_ORDER_STATUSES = ("in_queue", "printing", "finished")

VERIFY_PURPOSE = "email-verify"
RESET_PURPOSE = "password-reset"
VERIFY_MAX_AGE = 24 * 3600
RESET_MAX_AGE = 3600

PROFILE_FIELDS = {
    "name": "name",
    "phone": "phone",
    "address": "address",
    "city": "city",
    "zipCode": "zip_code",
    "country": "country",
}

BUSINESS_FIELDS = ("company_name", "nip", "address", "city", "postal_code")


def issue_tokens(store: Store, user: Dict[str, Any]) -> Dict[str, str]:
    tokens = generate_token_pair(user)
    store.insert(
        "refresh_tokens",
        {"user_id": user["id"], "token": tokens["refreshToken"], "expires_at": refresh_token_expiry()},
    )
    return tokens


def _check_password(password: str) -> None:
    if len(password) < 6:
        raise BadRequest("Password must be at least 6 characters")


@bp.post("/register")
def register():
    data = request_data()
    require_fields(data, ("name", "email", "password"))
    name = text(data, "name")
    email = text(data, "email").lower()
    password = str(data.get("password") or "")

    if len(name) < 2:
        raise BadRequest("Name must be at least 2 characters")
    if not valid_email(email):
        raise BadRequest("Invalid email address")
    _check_password(password)

    store = get_store()
    if store.find_one("users", {"email": email}):
        raise Conflict("User with this email already exists")

    user = store.insert(
        "users",
        {
            "name": name,
            "email": email,
            "password_hash": hash_password(password),
            "role": "user",
            "status": "approved",
            "email_verified": False,
            **{col: text(data, key) or None for key, col in PROFILE_FIELDS.items() if key != "name"},
        },
    )
    logger.info("Registered user %s", email)

    token = make_signed_token(VERIFY_PURPOSE, {"uid": user["id"]})
    get_mailer().send_verification(email, name, token)

    return jsonify({
        "ok": True,
        "message": "Registration successful. Please check your email to verify your account.",
        "user": public_user(user),
    }), 201


@bp.post("/login")
def login():
    data = request_data()
    email = text(data, "email").lower()
    password = str(data.get("password") or "")
    if not email or not password:
        raise BadRequest("Email and password are required")

    store = get_store()
    user = store.find_one("users", {"email": email})
    if not user or not verify_password(password, user.get("password_hash")):
        logger.info("Failed login for %s", email)
        raise Unauthorized("Invalid email or password")
    if not user.get("email_verified"):
        raise Forbidden("Please verify your email before logging in", code="EMAIL_NOT_VERIFIED")
    if user.get("status") in ("rejected", "suspended"):
        raise Forbidden("Account is not active")

    tokens = issue_tokens(store, user)
    logger.info("User %s logged in", email)
    return jsonify({"ok": True, "message": "Login successful", "user": public_user(user), "tokens": tokens})


@bp.post("/refresh")
def refresh():
    data = request_data()
    token = text(data, "refreshToken")
    if not token:
        raise BadRequest("Refresh token is required")

    payload = verify_refresh_token(token)
    store = get_store()
    stored = store.find_one("refresh_tokens", {"token": token})
    if not stored:
        raise Unauthorized("Invalid refresh token")
    user = store.get("users", payload.get("userId"))
    if not user:
        store.delete("refresh_tokens", stored["id"])
        raise Unauthorized("Invalid refresh token")

    store.delete("refresh_tokens", stored["id"])
    tokens = issue_tokens(store, user)
    return jsonify({"ok": True, "tokens": tokens})


@bp.post("/logout")
def logout():
    data = request_data()
    token = text(data, "refreshToken")
    if token:
        get_store().delete_where("refresh_tokens", {"token": token})
    return jsonify({"ok": True, "message": "Logged out"})


@bp.get("/verify-email")
def verify_email():
    token = (request.args.get("token") or "").strip()
    if not token:
        raise BadRequest("Verification token is required")
    data = read_signed_token_or_400(VERIFY_PURPOSE, token, VERIFY_MAX_AGE)

    store = get_store()
    user = store.get("users", data.get("uid"))
    if not user:
        raise NotFound("User not found")
    if user.get("email_verified"):
        raise Conflict("Email already verified")

    user = store.update("users", user["id"], {"email_verified": True}) or user
    logger.info("Email verified for %s", user.get("email"))
    get_mailer().send_welcome(user["email"], user.get("name") or "")

    tokens = issue_tokens(store, user)
    return jsonify({"ok": True, "message": "Email verified", "user": public_user(user), "tokens": tokens})


@bp.post("/forgot-password")
def forgot_password():
    data = request_data()
    email = text(data, "email").lower()
    user = get_store().find_one("users", {"email": email}) if email else None
    if user:
        token = make_signed_token(RESET_PURPOSE, {"uid": user["id"], "h": (user.get("password_hash") or "")[-12:]})
        get_mailer().send_password_reset(email, user.get("name") or "", token)
    # Same answer whether or not the account exists
    return jsonify({"ok": True, "message": "If the account exists, a reset link has been sent."})


@bp.post("/reset-password")
def reset_password():
    data = request_data()
    token = text(data, "token")
    password = str(data.get("password") or "")
    if not token:
        raise BadRequest("Reset token is required")
    _check_password(password)
    payload = read_signed_token_or_400(RESET_PURPOSE, token, RESET_MAX_AGE)

    store = get_store()
    user = store.get("users", payload.get("uid"))
    # A link stops working once the password it was issued for has changed
    if not user or (user.get("password_hash") or "")[-12:] != payload.get("h"):
        raise BadRequest("Invalid link")
    store.update("users", user["id"], {"password_hash": hash_password(password)})
    store.delete_where("refresh_tokens", {"user_id": user["id"]})
    logger.info("Password reset for %s", user.get("email"))
    return jsonify({"ok": True, "message": "Password updated"})


@bp.get("/me")
@require_auth
def me():
    user = get_store().get("users", g.user["userId"])
    if not user:
        raise NotFound("User not found")
    return jsonify({"ok": True, "user": public_user(user)})


@bp.patch("/me")
@require_auth
def update_me():
    data = request_data()
    changes = {col: text(data, key) for key, col in PROFILE_FIELDS.items() if key in data}
    if "name" in changes and len(changes["name"]) < 2:
        raise BadRequest("Name must be at least 2 characters")
    if not changes:
        raise BadRequest("Nothing to update")
    user = get_store().update("users", g.user["userId"], changes)
    if not user:
        raise NotFound("User not found")
    return jsonify({"ok": True, "user": public_user(user)})


def normalize_nip(value: str) -> str:
    """Polish tax id: 10 digits, separators dropped."""
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) != 10 or len(value.replace("-", "").replace(" ", "")) != 10:
        raise BadRequest("NIP must be 10 digits")
    return digits


@bp.get("/me/business-info")
@require_auth
def get_business_info():
    user = get_store().get("users", g.user["userId"])
    if not user:
        raise NotFound("User not found")
    return jsonify({"ok": True, "businessInfo": user.get("business_info")})


@bp.put("/me/business-info")
@require_auth
def save_business_info():
    data = request_data()
    info = {key: text(data, key) or None for key in BUSINESS_FIELDS}
    if not info["company_name"] or not info["nip"]:
        raise BadRequest("Company name and NIP are required")
    info["nip"] = normalize_nip(info["nip"])
    user = get_store().update("users", g.user["userId"], {"business_info": info})
    if not user:
        raise NotFound("User not found")
    logger.info("Business info saved for %s", user.get("email"))
    return jsonify({"ok": True, "businessInfo": info})


@bp.delete("/me")
@require_auth
def delete_me():
    """Close the caller's account; orders stay for bookkeeping."""
    store = get_store()
    user = store.get("users", g.user["userId"])
    if not user:
        raise NotFound("User not found")
    if not verify_password(text(request_data(), "password"), user.get("password_hash")):
        raise Unauthorized("Invalid password")
    active = [
        o for o in store.select("orders", {"user_id": user["id"], "deleted_at": None})
        if o.get("payment_status") in ("pending", "refunding") or o.get("status") in ACTIVE_ORDER_STATUSES
    ]
    if active:
        raise Conflict("Account has orders in progress", orders=[o["id"] for o in active])

    store.delete_where("refresh_tokens", {"user_id": user["id"]})
    store.delete("users", user["id"])
    logger.info("User %s deleted their account", user["email"])
    return jsonify({"ok": True, "message": "Account deleted"})

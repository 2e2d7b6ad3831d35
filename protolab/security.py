from __future__ import annotations

import functools
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import BadRequest, Forbidden, Unauthorized

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


# -------------------------
# Passwords
# -------------------------
def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


# -------------------------
# JWT access / refresh tokens
# -------------------------
def _encode(payload: Dict[str, Any], secret: str, ttl_seconds: int, token_type: str) -> str:
    now = datetime.now(timezone.utc)
    claims = dict(payload)
    claims.update(
        {
            "type": token_type,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
            "jti": uuid.uuid4().hex,
        }
    )
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def _decode(token: str, secret: str, token_type: str) -> Dict[str, Any]:
    try:
        data = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")
    if data.get("type") != token_type:
        raise Unauthorized("Invalid token")
    return data


def token_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"userId": user["id"], "email": user.get("email"), "role": user.get("role") or "user"}


def generate_token_pair(user: Dict[str, Any]) -> Dict[str, str]:
    cfg = current_app.config
    payload = token_payload(user)
    return {
        "accessToken": _encode(payload, cfg["JWT_ACCESS_SECRET"], cfg["JWT_ACCESS_EXPIRES"], "access"),
        "refreshToken": _encode(payload, cfg["JWT_REFRESH_SECRET"], cfg["JWT_REFRESH_EXPIRES"], "refresh"),
    }


def verify_access_token(token: str) -> Dict[str, Any]:
    return _decode(token, current_app.config["JWT_ACCESS_SECRET"], "access")


def verify_refresh_token(token: str) -> Dict[str, Any]:
    return _decode(token, current_app.config["JWT_REFRESH_SECRET"], "refresh")


def refresh_token_expiry() -> str:
    ttl = current_app.config["JWT_REFRESH_EXPIRES"]
    return (datetime.now(timezone.utc) + timedelta(seconds=ttl)).isoformat()


# -------------------------
# Signed links (e-mail verification, password reset, downloads)
# -------------------------
def _serializer(purpose: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=f"{purpose}-v1")


def make_signed_token(purpose: str, payload: Dict[str, Any]) -> str:
    return _serializer(purpose).dumps(payload)


def read_signed_token(purpose: str, token: str, max_age: int) -> Dict[str, Any]:
    """Raises ``SignatureExpired`` / ``BadSignature`` like itsdangerous does."""
    data = _serializer(purpose).loads(token, max_age=max_age)
    if not isinstance(data, dict):
        raise BadSignature("Unexpected payload")
    return data


def read_signed_token_or_400(purpose: str, token: str, max_age: int) -> Dict[str, Any]:
    try:
        return read_signed_token(purpose, token, max_age)
    except SignatureExpired:
        raise BadRequest("Link expired")
    except BadSignature:
        raise BadRequest("Invalid link")


# -------------------------
# Request guards
# -------------------------
def bearer_token() -> str:
    header = request.headers.get("Authorization") or ""
    if not header.lower().startswith("bearer "):
        return ""
    return header[7:].strip()


def optional_user() -> Optional[Dict[str, Any]]:
    token = bearer_token()
    if not token:
        return None
    try:
        return verify_access_token(token)
    except Unauthorized:
        return None


def require_auth(view):
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        token = bearer_token()
        if not token:
            raise Unauthorized("Authentication required")
        g.user = verify_access_token(token)
        return view(*args, **kwargs)

    return wrapper


def require_admin(view):
    @functools.wraps(view)
    @require_auth
    def wrapper(*args, **kwargs):
        if g.user.get("role") != "admin":
            logger.warning("Admin route %s denied for %s", request.path, g.user.get("email"))
            raise Forbidden("Admin access required")
        return view(*args, **kwargs)

    return wrapper


def is_admin() -> bool:
    user = getattr(g, "user", None) or {}
    return user.get("role") == "admin"

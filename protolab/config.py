from __future__ import annotations

import os
import re
from typing import Any, Dict, Optional

BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# PayU public sandbox POS (documented test credentials, never valid in production)
PAYU_SANDBOX_DEFAULTS = {
    "PAYU_CLIENT_ID": "501885",
    "PAYU_CLIENT_SECRET": "81927c33ee2b36ee897bef24ef90a446",
    "PAYU_POS_ID": "501885",
    "PAYU_MD5_KEY": "93e0d9536f9d4bb396c47163c3a1692e",
}

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def load_dotenv(path: Optional[str] = None) -> None:
    """Seed os.environ from a KEY=VALUE file; variables already set win."""
    env_path = path or os.path.join(BASE_DIR, ".env")
    if not os.path.isfile(env_path):
        return
    with open(env_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            k = k.strip()
            if k.startswith("export "):
                k = k[len("export "):].strip()
            if not k:
                continue
            if k not in os.environ:
                os.environ[k] = clean_env_value(v)


def clean_env_value(value: Optional[str], default: str = "") -> str:
    """Strip whitespace, stray CR/LF and one level of surrounding quotes."""
    if value is None:
        return default
    v = str(value).replace("\r", "").replace("\n", "").strip()
    if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
        v = v[1:-1].strip()
    return v or default


def env(name: str, default: str = "") -> str:
    return clean_env_value(os.environ.get(name), default)


def parse_duration(value: Any, default: int = 900) -> int:
    """'15m' -> 900, '7d' -> 604800, plain numbers are seconds."""
    if isinstance(value, (int, float)):
        return int(value)
    m = _DURATION_RE.match(str(value or ""))
    if not m:
        return default
    return int(m.group(1)) * _DURATION_UNITS[m.group(2)]


def load_settings() -> Dict[str, Any]:
    secret = env("SECRET_KEY", "dev-secret-change-me")
    frontend_url = env("FRONTEND_URL", "http://localhost:8080").rstrip("/")
    api_url = env("API_URL", "http://localhost:5050").rstrip("/")
    payu_env = env("PAYU_ENV", "sandbox").lower()

    settings: Dict[str, Any] = {
        "SECRET_KEY": secret,
        "JWT_ACCESS_SECRET": env("JWT_ACCESS_SECRET", secret + "-access"),
        "JWT_REFRESH_SECRET": env("JWT_REFRESH_SECRET", secret + "-refresh"),
        "JWT_ACCESS_EXPIRES": parse_duration(env("JWT_ACCESS_EXPIRES_IN", "15m"), 900),
        "JWT_REFRESH_EXPIRES": parse_duration(env("JWT_REFRESH_EXPIRES_IN", "7d"), 604800),
        "DATA_BACKEND": env("DATA_BACKEND", "json").lower(),
        "DATA_DIR": env("DATA_DIR", os.path.join(BASE_DIR, "data")),
        "SUPABASE_URL": env("SUPABASE_URL") or env("VITE_SUPABASE_URL"),
        "SUPABASE_SERVICE_ROLE_KEY": env("SUPABASE_SERVICE_ROLE_KEY"),
        "UPLOAD_DIR": env("UPLOAD_DIR", os.path.join(BASE_DIR, "uploads")),
        "MAX_UPLOAD_MB": int(env("MAX_UPLOAD_MB", "50")),
        "DOWNLOAD_TTL_SECONDS": int(env("DOWNLOAD_TTL_SECONDS", "86400")),
        "PAYU_ENV": payu_env,
        "PAYU_NOTIFY_URL": env("PAYU_NOTIFY_URL", api_url + "/api/payments/payu/notify"),
        "PAYU_CONTINUE_URL": env("PAYU_CONTINUE_URL", frontend_url + "/payment-success"),
        "RESEND_API_KEY": env("RESEND_API_KEY"),
        "FROM_EMAIL": env("FROM_EMAIL", "noreply@protolab.info"),
        "ADMIN_EMAIL": env("ADMIN_EMAIL", "admin@protolab.info"),
        "FRONTEND_URL": frontend_url,
        "CORS_ORIGIN": env("CORS_ORIGIN", "*"),
        "LOG_LEVEL": env("LOG_LEVEL", "INFO").upper(),
    }

    for key, sandbox_value in PAYU_SANDBOX_DEFAULTS.items():
        value = env(key)
        if not value and payu_env != "production":
            value = sandbox_value
        settings[key] = value

    return settings

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .config import load_dotenv, load_settings
from .emails import Mailer
from .errors import ApiError
from .extensions import MAILER_KEY, PAYU_KEY, STORE_KEY
from .payu import PayUClient
from .pricing import MATERIAL_PRICES
from .security import hash_password
from .storage import create_store
from .views import register_blueprints

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)


# -------------------------
# App factory
# -------------------------
def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.update(load_settings())
    if overrides:
        app.config.update(overrides)
    app.secret_key = app.config["SECRET_KEY"]
    app.config["MAX_CONTENT_LENGTH"] = (int(app.config["MAX_UPLOAD_MB"]) + 10) * 1024 * 1024
    app.json.sort_keys = False

    configure_logging(app.config["LOG_LEVEL"])
    os.makedirs(app.config["UPLOAD_DIR"], exist_ok=True)

    app.extensions[STORE_KEY] = app.config.get("STORE") or create_store(app.config)
    app.extensions[PAYU_KEY] = app.config.get("PAYU_CLIENT") or PayUClient.from_config(app.config)
    app.extensions[MAILER_KEY] = app.config.get("MAILER") or Mailer.from_config(app.config)

    register_blueprints(app)
    register_error_handlers(app)
    register_cli(app)

    # -------------------------
    # CORS + cache headers
    # -------------------------
    @app.before_request
    def answer_preflight():
        if request.method == "OPTIONS" and request.path.startswith("/api/"):
            return jsonify({}), 200
        return None

    @app.after_request
    def add_api_headers(resp):
        if request.path.startswith("/api/"):
            origin = app.config["CORS_ORIGIN"]
            resp.headers["Access-Control-Allow-Origin"] = origin
            if origin != "*":
                resp.headers["Vary"] = "Origin"
            resp.headers["Access-Control-Allow-Credentials"] = "true"
            resp.headers["Access-Control-Allow-Methods"] = "GET,OPTIONS,PATCH,DELETE,POST,PUT"
            resp.headers["Access-Control-Allow-Headers"] = (
                "X-CSRF-Token, X-Requested-With, Accept, Accept-Version, Content-Length, "
                "Content-MD5, Content-Type, Date, X-Api-Version, Authorization"
            )
            resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
            resp.headers["Pragma"] = "no-cache"
            resp.headers["Expires"] = "0"
        return resp

    @app.get("/api/health")
    def health():
        return jsonify({"ok": True, "status": "ok", "payuEnv": app.config["PAYU_ENV"]})

    logger.info("ProtoLab API ready (backend=%s, payu=%s)", app.config["DATA_BACKEND"], app.config["PAYU_ENV"])
    return app


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(err: ApiError):
        if err.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, err.message)
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(HTTPException)
    def handle_http_error(err: HTTPException):
        if not request.path.startswith("/api/"):
            return err
        return jsonify({"ok": False, "error": err.description or err.name}), err.code

    @app.errorhandler(Exception)
    def handle_unexpected(err: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"ok": False, "error": "Internal server error"}), 500


# -------------------------
# CLI
# -------------------------
def register_cli(app: Flask) -> None:
    @app.cli.command("create-admin")
    @click.option("--email", prompt=True)
    @click.option("--name", default="Admin")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    def create_admin(email: str, name: str, password: str) -> None:
        """Create an admin account, or promote an existing user."""
        store = app.extensions[STORE_KEY]
        email = email.strip().lower()
        user = store.find_one("users", {"email": email})
        if user:
            store.update("users", user["id"], {"role": "admin", "email_verified": True, "status": "approved"})
            click.echo(f"Promoted {email} to admin")
            return
        store.insert(
            "users",
            {
                "name": name,
                "email": email,
                "password_hash": hash_password(password),
                "role": "admin",
                "status": "approved",
                "email_verified": True,
            },
        )
        click.echo(f"Created admin {email}")

    @app.cli.command("seed-materials")
    def seed_materials() -> None:
        """Load the default filament price list into the materials table."""
        store = app.extensions[STORE_KEY]
        added = 0
        for key, price in MATERIAL_PRICES.items():
            material_type, color = key.split("_", 1)
            if store.find_one("materials", {"material_type": material_type, "color": color}):
                continue
            store.insert(
                "materials",
                {
                    "name": f"{material_type} {color}",
                    "material_type": material_type,
                    "color": color,
                    "price_per_kg": price,
                    "available": True,
                    "is_active": True,
                    "lead_time_days": None,
                },
            )
            added += 1
        click.echo(f"Added {added} materials")

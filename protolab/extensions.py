from __future__ import annotations

from flask import current_app

from .emails import Mailer
from .payu import PayUClient
from .storage import Store

STORE_KEY = "protolab.store"
PAYU_KEY = "protolab.payu"
MAILER_KEY = "protolab.mailer"


def get_store() -> Store:
    return current_app.extensions[STORE_KEY]


def get_payu() -> PayUClient:
    return current_app.extensions[PAYU_KEY]


def get_mailer() -> Mailer:
    return current_app.extensions[MAILER_KEY]

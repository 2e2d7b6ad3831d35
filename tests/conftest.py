from __future__ import annotations

import hashlib
import json
import struct
from typing import Any, Dict, List, Optional

import pytest

from protolab import create_app
from protolab.emails import Mailer
from protolab.extensions import MAILER_KEY, PAYU_KEY, STORE_KEY
from protolab.payu import PayUClient
from protolab.security import generate_token_pair, hash_password

SECOND_KEY = "test-second-key"

CUBE_VERTICES = [
    (0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0),
    (0, 0, 1), (1, 0, 1), (1, 1, 1), (0, 1, 1),
]
CUBE_FACES = [
    (0, 3, 2), (0, 2, 1),
    (4, 5, 6), (4, 6, 7),
    (0, 1, 5), (0, 5, 4),
    (3, 7, 6), (3, 6, 2),
    (0, 4, 7), (0, 7, 3),
    (1, 2, 6), (1, 6, 5),
]


def cube_triangles(size: float = 10.0):
    pts = [tuple(c * size for c in v) for v in CUBE_VERTICES]
    return [(pts[a], pts[b], pts[c]) for a, b, c in CUBE_FACES]


def binary_stl(triangles, header: bytes = b"binary cube") -> bytes:
    out = bytearray(header.ljust(80, b"\0")[:80])
    out += struct.pack("<I", len(triangles))
    for tri in triangles:
        out += struct.pack("<3f", 0.0, 0.0, 0.0)
        for v in tri:
            out += struct.pack("<3f", *v)
        out += struct.pack("<H", 0)
    return bytes(out)


def ascii_stl(triangles) -> bytes:
    lines = ["solid cube"]
    for tri in triangles:
        lines.append("  facet normal 0 0 0")
        lines.append("    outer loop")
        for v in tri:
            lines.append("      vertex {:.6f} {:.6f} {:.6f}".format(*v))
        lines.append("    endloop")
        lines.append("  endfacet")
    lines.append("endsolid cube")
    return ("\n".join(lines) + "\n").encode("utf-8")


# -------------------------
# Outbound HTTP fakes
# -------------------------
class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: str = "",
                 headers: Optional[Dict[str, str]] = None) -> None:
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        if json_data is not None:
            self.text = json.dumps(json_data)
            self.headers.setdefault("Content-Type", "application/json")
        else:
            self.text = text
        self.content = self.text.encode("utf-8")

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Queues canned responses per (method, path suffix) and records calls."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.routes: Dict[tuple, List[FakeResponse]] = {}

    def add(self, method: str, suffix: str, response: FakeResponse) -> None:
        self.routes.setdefault((method.upper(), suffix), []).append(response)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method.upper(), "url": url, **kwargs})
        for (m, suffix), queue in self.routes.items():
            if m == method.upper() and url.endswith(suffix) and queue:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        raise AssertionError(f"Unexpected request {method} {url}")

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("POST", url, **kwargs)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self.request("GET", url, **kwargs)


def token_response(expires_in: int = 43199) -> FakeResponse:
    return FakeResponse(200, {"access_token": "tok-1", "token_type": "bearer", "expires_in": expires_in})


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        super().__init__(api_key="", from_email="noreply@protolab.info",
                         admin_email="admin@protolab.info", frontend_url="http://localhost:8080")
        self.sent: List[Dict[str, str]] = []

    def send(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        self.sent.append({"to": to, "subject": subject, "html": html})
        return {"success": True, "id": f"msg-{len(self.sent)}"}


def sign(body: bytes, key: str = SECOND_KEY, algorithm: str = "MD5") -> str:
    digest = hashlib.md5(body + key.encode()).hexdigest() if algorithm == "MD5" \
        else hashlib.sha256(body + key.encode()).hexdigest()
    return f"sender=checkout;signature={digest};algorithm={algorithm};content=DOCUMENT"


# -------------------------
# Fixtures
# -------------------------
@pytest.fixture
def payu_session():
    return FakeSession()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(tmp_path, payu_session, mailer):
    app = create_app(
        {
            "TESTING": True,
            "DATA_BACKEND": "json",
            "DATA_DIR": str(tmp_path / "data"),
            "UPLOAD_DIR": str(tmp_path / "uploads"),
            "SECRET_KEY": "test-secret",
            "JWT_ACCESS_SECRET": "test-access",
            "JWT_REFRESH_SECRET": "test-refresh",
            "PAYU_MD5_KEY": SECOND_KEY,
            "PAYU_NOTIFY_URL": "http://api.test/api/payments/payu/notify",
            "PAYU_CONTINUE_URL": "http://front.test/payment-success",
            "RESEND_API_KEY": "",
            "PAYU_ENV": "sandbox",
            "CORS_ORIGIN": "*",
            "MAILER": mailer,
        }
    )
    app.extensions[PAYU_KEY] = PayUClient(
        base_url="https://secure.snd.payu.com",
        client_id="501885",
        client_secret="secret",
        pos_id="501885",
        second_key=SECOND_KEY,
        notify_url=app.config["PAYU_NOTIFY_URL"],
        continue_url=app.config["PAYU_CONTINUE_URL"],
        session=payu_session,
    )
    assert app.extensions[MAILER_KEY] is mailer
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions[STORE_KEY]


@pytest.fixture
def make_user(store):
    def _make(email: str = "jan@example.com", role: str = "user", password: str = "secret123",
              verified: bool = True, name: str = "Jan Kowalski") -> Dict[str, Any]:
        return store.insert(
            "users",
            {
                "name": name,
                "email": email,
                "password_hash": hash_password(password),
                "role": role,
                "status": "approved",
                "email_verified": verified,
            },
        )

    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(user: Dict[str, Any]) -> Dict[str, str]:
        with app.app_context():
            tokens = generate_token_pair(user)
        return {"Authorization": f"Bearer {tokens['accessToken']}"}

    return _headers


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@protolab.info", role="admin", name="Admin")


@pytest.fixture
def make_order(store):
    def _make(user: Dict[str, Any], **fields: Any) -> Dict[str, Any]:
        row = {
            "user_id": user["id"],
            "order_number": "PL-20250101-TEST",
            "order_type": "print",
            "file_name": "cube.stl",
            "file_path": None,
            "material": "PLA",
            "color": "White",
            "quantity": 1,
            "shipping_method": "pickup",
            "price": 50.0,
            "paid_amount": 0.0,
            "status": "submitted",
            "payment_status": "unpaid",
            "is_archived": False,
            "deleted_at": None,
        }
        row.update(fields)
        return store.insert("orders", row)

    return _make

import os

import pytest

from conftest import FakeResponse, FakeSession
from protolab.config import clean_env_value, load_dotenv, load_settings, parse_duration
from protolab.emails import RESEND_URL, Mailer
from protolab.shipping import format_pln, generate_order_number, generate_tracking_code, to_base36


@pytest.mark.parametrize(
    "raw,expected",
    [("15m", 900), ("7d", 604800), ("2h", 7200), ("45", 45), (30, 30), ("soon", 900)],
)
def test_parse_duration(raw, expected):
    assert parse_duration(raw) == expected


def test_clean_env_value():
    assert clean_env_value(' "abc" \r\n') == "abc"
    assert clean_env_value(None, "x") == "x"
    assert clean_env_value("''", "fallback") == "fallback"


def test_dotenv_does_not_override_environment(tmp_path, monkeypatch):
    path = tmp_path / ".env"
    path.write_text("# comment\nexport PROTOLAB_A='one'\nPROTOLAB_B=two\n", encoding="utf-8")
    monkeypatch.delenv("PROTOLAB_A", raising=False)
    monkeypatch.setenv("PROTOLAB_B", "kept")
    load_dotenv(str(path))
    assert os.environ["PROTOLAB_A"] == "one"
    assert os.environ["PROTOLAB_B"] == "kept"
    os.environ.pop("PROTOLAB_A", None)


def test_sandbox_credentials_only_outside_production(monkeypatch):
    for key in ("PAYU_CLIENT_ID", "PAYU_CLIENT_SECRET", "PAYU_POS_ID", "PAYU_MD5_KEY"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("PAYU_ENV", "sandbox")
    assert load_settings()["PAYU_POS_ID"] == "501885"
    monkeypatch.setenv("PAYU_ENV", "production")
    settings = load_settings()
    assert settings["PAYU_POS_ID"] == ""
    assert settings["PAYU_ENV"] == "production"


def test_jwt_lifetimes_from_environment(monkeypatch):
    monkeypatch.setenv("JWT_ACCESS_EXPIRES_IN", "5m")
    monkeypatch.setenv("JWT_REFRESH_EXPIRES_IN", "1d")
    settings = load_settings()
    assert settings["JWT_ACCESS_EXPIRES"] == 300
    assert settings["JWT_REFRESH_EXPIRES"] == 86400


# -------------------------
# Shipping helpers
# -------------------------
def test_format_pln():
    assert format_pln(1234.5) == "1 234,50 zł"
    assert format_pln(0) == "0,00 zł"


def test_codes():
    assert to_base36(35) == "Z"
    assert to_base36(36) == "10"
    assert generate_tracking_code("dpd").startswith("DPD")
    assert generate_tracking_code(None).startswith("SHP")
    number = generate_order_number()
    assert number.startswith("PL-") and len(number) == len("PL-20250101-ABCD")


# -------------------------
# Resend mailer
# -------------------------
def test_mailer_is_disabled_without_key():
    session = FakeSession()
    mailer = Mailer("", "noreply@protolab.info", "admin@protolab.info", "http://front", session=session)
    assert mailer.send("jan@example.com", "Hi", "<p>x</p>")["success"] is False
    assert session.calls == []


def test_mailer_posts_to_resend():
    session = FakeSession()
    session.add("POST", RESEND_URL, FakeResponse(200, {"id": "msg-1"}))
    mailer = Mailer("re_key", "noreply@protolab.info", "admin@protolab.info", "http://front/", session=session)

    result = mailer.send_verification("jan@example.com", "Jan <b>", "tok123")
    assert result == {"success": True, "id": "msg-1"}
    call = session.calls[0]
    assert call["headers"]["Authorization"] == "Bearer re_key"
    assert call["json"]["to"] == ["jan@example.com"]
    assert call["json"]["from"] == "ProtoLab 3D Poland <noreply@protolab.info>"
    html = call["json"]["html"]
    assert "http://front/verify-email?token=tok123" in html
    assert "Jan &lt;b&gt;" in html


def test_mailer_failures_are_not_raised():
    session = FakeSession()
    session.add("POST", RESEND_URL, FakeResponse(422, {"message": "invalid from"}))
    mailer = Mailer("re_key", "noreply@protolab.info", "admin@protolab.info", "http://front", session=session)
    assert mailer.send("jan@example.com", "Hi", "<p>x</p>") == {"success": False, "error": "resend 422"}

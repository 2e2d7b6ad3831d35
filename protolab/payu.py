"""PayU REST client (OAuth client credentials + Orders API) and notification helpers."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import ApiError

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://secure.snd.payu.com"
PRODUCTION_URL = "https://secure.payu.com"

TOKEN_PATH = "/pl/standard/user/oauth/authorize"
ORDERS_PATH = "/api/v2_1/orders"
PAYMETHODS_PATH = "/api/v2_1/paymethods"

TOKEN_SAFETY_MARGIN = 60  # seconds

ACCEPTED_STATUS_CODES = {
    "SUCCESS",
    "WARNING_CONTINUE_REDIRECT",
    "WARNING_CONTINUE_3DS",
    "WARNING_CONTINUE_CVV",
}

BLIK_CODE_RE = re.compile(r"^\d{6}$")
_RELATIVE_ATTR_RE = re.compile(r"""(\b(?:href|src|action)\s*=\s*["'])/(?!/)""", re.IGNORECASE)
_RELATIVE_CSS_RE = re.compile(r"""(url\(\s*["']?)/(?!/)""", re.IGNORECASE)


class PayUError(ApiError):
    status = 502


@dataclass(frozen=True)
class PayUOrderResult:
    payu_order_id: Optional[str]
    status_code: str
    redirect_uri: Optional[str] = None
    html_content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payuOrderId": self.payu_order_id,
            "statusCode": self.status_code,
            "redirectUri": self.redirect_uri,
            "htmlContent": self.html_content,
        }


def base_url_for(env: str) -> str:
    return PRODUCTION_URL if str(env or "").lower() == "production" else SANDBOX_URL


def to_minor_units(amount_pln: Any) -> str:
    """12.345 PLN -> '1235' (grosz, half-up)."""
    grosz = (Decimal(str(amount_pln)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return str(int(grosz))


def from_minor_units(amount: Any) -> float:
    return float(Decimal(str(amount or 0)) / 100)


def split_name(full_name: str) -> Tuple[str, str]:
    parts = str(full_name or "").strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def is_valid_blik_code(code: Any) -> bool:
    return bool(BLIK_CODE_RE.match(str(code or "").strip()))


def absolutize_html(html: str, base_url: str) -> str:
    base = base_url.rstrip("/")
    html = _RELATIVE_ATTR_RE.sub(lambda m: f"{m.group(1)}{base}/", html)
    return _RELATIVE_CSS_RE.sub(lambda m: f"{m.group(1)}{base}/", html)


# -------------------------
# Notifications
# -------------------------
def parse_signature_header(header: Optional[str]) -> Dict[str, str]:
    """'sender=checkout;signature=abc;algorithm=MD5;content=DOCUMENT' -> dict"""
    out: Dict[str, str] = {}
    for part in str(header or "").split(";"):
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        k = k.strip().lower()
        if k:
            out[k] = v.strip()
    return out


def expected_signature(body: bytes, second_key: str, algorithm: str = "MD5") -> str:
    algo = str(algorithm or "MD5").upper().replace("-", "")
    payload = body + second_key.encode("utf-8")
    if algo == "MD5":
        return hashlib.md5(payload).hexdigest()
    if algo == "SHA256":
        return hashlib.sha256(payload).hexdigest()
    raise ValueError(f"Unsupported signature algorithm: {algorithm}")


def verify_signature(body: bytes, header: Optional[str], second_key: str) -> bool:
    fields = parse_signature_header(header)
    signature = fields.get("signature", "").lower()
    if not signature or not second_key:
        return False
    try:
        expected = expected_signature(body, second_key, fields.get("algorithm") or "MD5")
    except ValueError:
        logger.warning("PayU notification with unsupported algorithm %r", fields.get("algorithm"))
        return False
    return hmac.compare_digest(signature, expected)


def map_notification_status(payu_status: str) -> Tuple[str, Optional[str]]:
    """PayU order status -> (payment_status, order status or None to keep it)."""
    status = str(payu_status or "").upper()
    if status == "COMPLETED":
        return "paid", "in_queue"
    if status == "CANCELED":
        return "failed", "payment_failed"
    return "pending", None


# -------------------------
# Client
# -------------------------
class PayUClient:
    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        pos_id: str,
        second_key: str,
        notify_url: str = "",
        continue_url: str = "",
        timeout: int = 20,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.pos_id = pos_id
        self.second_key = second_key
        self.notify_url = notify_url
        self.continue_url = continue_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PayUClient":
        return cls(
            base_url=base_url_for(config.get("PAYU_ENV", "sandbox")),
            client_id=config.get("PAYU_CLIENT_ID", ""),
            client_secret=config.get("PAYU_CLIENT_SECRET", ""),
            pos_id=config.get("PAYU_POS_ID", ""),
            second_key=config.get("PAYU_MD5_KEY", ""),
            notify_url=config.get("PAYU_NOTIFY_URL", ""),
            continue_url=config.get("PAYU_CONTINUE_URL", ""),
        )

    def get_access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at:
            return self._token
        try:
            r = self.session.post(
                self.base_url + TOKEN_PATH,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("PayU authentication request failed: %s", e)
            raise PayUError("Failed to authenticate with PayU")
        if r.status_code != 200:
            logger.error("PayU authentication failed: %s %s", r.status_code, r.text[:500])
            raise PayUError("Failed to authenticate with PayU")
        try:
            data = r.json()
            token = str(data["access_token"])
        except (ValueError, KeyError, TypeError):
            logger.error("PayU authentication returned no access token: %s", r.text[:500])
            raise PayUError("Failed to authenticate with PayU")
        self._token = token
        self._token_expires_at = time.time() + int(data.get("expires_in") or 0) - TOKEN_SAFETY_MARGIN
        logger.info("PayU access token refreshed (expires in %ss)", data.get("expires_in"))
        return self._token

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }

    def build_order_payload(
        self,
        ext_order_id: str,
        amount_pln: float,
        description: str,
        buyer: Dict[str, Any],
        customer_ip: str,
        products: Optional[List[Dict[str, Any]]] = None,
        pay_methods: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        first, last = split_name(buyer.get("name") or "")
        items = products or [{"name": description, "unitPrice": amount_pln, "quantity": 1}]
        payload: Dict[str, Any] = {
            "customerIp": customer_ip or "127.0.0.1",
            "merchantPosId": self.pos_id,
            "description": description,
            "currencyCode": "PLN",
            "totalAmount": to_minor_units(amount_pln),
            "extOrderId": ext_order_id,
            "products": [
                {
                    "name": str(p["name"])[:255],
                    "unitPrice": to_minor_units(p["unitPrice"]),
                    "quantity": str(int(p.get("quantity") or 1)),
                }
                for p in items
            ],
            "buyer": {
                "email": buyer.get("email") or "",
                "firstName": first,
                "lastName": last,
                "phone": buyer.get("phone") or "",
                "language": buyer.get("language") or "pl",
            },
        }
        if self.notify_url:
            payload["notifyUrl"] = self.notify_url
        if self.continue_url:
            payload["continueUrl"] = f"{self.continue_url}?orderId={ext_order_id}"
        if pay_methods:
            payload["payMethods"] = pay_methods
        return payload

    def create_order(self, **kwargs: Any) -> PayUOrderResult:
        payload = self.build_order_payload(**kwargs)
        try:
            r = self.session.post(
                self.base_url + ORDERS_PATH,
                data=json.dumps(payload),
                headers=self._headers(),
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            logger.error("PayU order request failed: %s", e)
            raise PayUError("Payment gateway unavailable")
        return self._order_result(r, payload["extOrderId"])

    def _order_result(self, r: requests.Response, ext_order_id: str) -> PayUOrderResult:
        # PayU answers 302 with a Location header when it wants a plain redirect
        if r.status_code in (301, 302, 303):
            location = r.headers.get("Location") or ""
            if not location:
                raise PayUError("PayU redirect without location")
            logger.info("PayU order for %s created (redirect)", ext_order_id)
            return PayUOrderResult(payu_order_id=None, status_code="SUCCESS", redirect_uri=location)

        content_type = (r.headers.get("Content-Type") or "").lower()
        if r.status_code == 200 and "text/html" in content_type:
            logger.info("PayU order for %s created (html payment page)", ext_order_id)
            return PayUOrderResult(
                payu_order_id=None,
                status_code="SUCCESS",
                html_content=absolutize_html(r.text, self.base_url),
            )

        try:
            data = r.json()
        except ValueError:
            logger.error("PayU order creation failed: %s %s", r.status_code, r.text[:500])
            raise PayUError(f"PayU order creation failed ({r.status_code})")

        status_code = str((data.get("status") or {}).get("statusCode") or "")
        if r.status_code >= 400 or status_code not in ACCEPTED_STATUS_CODES:
            logger.error("PayU order creation failed: %s %s", r.status_code, data)
            raise PayUError(
                f"PayU order creation failed: {status_code or r.status_code}",
                details=(data.get("status") or {}).get("statusDesc"),
            )

        logger.info("PayU order %s created for %s (%s)", data.get("orderId"), ext_order_id, status_code)
        return PayUOrderResult(
            payu_order_id=data.get("orderId"),
            status_code=status_code,
            redirect_uri=data.get("redirectUri"),
        )

    def get_order(self, payu_order_id: str) -> Dict[str, Any]:
        r = self._request("GET", f"{ORDERS_PATH}/{payu_order_id}")
        orders = r.get("orders") or []
        return orders[0] if orders else {}

    def cancel_order(self, payu_order_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"{ORDERS_PATH}/{payu_order_id}")

    def get_pay_methods(self, lang: str = "pl") -> Dict[str, Any]:
        return self._request("GET", PAYMETHODS_PATH, params={"lang": lang})

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            r = self.session.request(
                method,
                self.base_url + path,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            logger.error("PayU %s %s failed: %s", method, path, e)
            raise PayUError("Payment gateway unavailable")
        if r.status_code >= 400:
            logger.error("PayU %s %s returned %s %s", method, path, r.status_code, r.text[:500])
            raise PayUError(f"PayU request failed ({r.status_code})")
        return r.json() if r.content else {}

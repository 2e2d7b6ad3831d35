"""Transactional e-mail through the Resend REST API.

Sending is best effort: failures are logged and reported in the return
value, never raised to the request handler.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import requests
from markupsafe import Markup

from .shipping import format_pln

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
SENDER_NAME = "ProtoLab 3D Poland"

ORDER_STATUS_LABELS = {
    "submitted": "Złożone",
    "in_queue": "W kolejce",
    "printing": "W trakcie druku",
    "finished": "Wydrukowane",
    "delivered": "Dostarczone",
    "on_hold": "Wstrzymane",
    "suspended": "Zawieszone",
    "payment_failed": "Płatność nieudana",
}

_LAYOUT = Markup(
    """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background: #667eea; color: white; padding: 24px; text-align: center; border-radius: 10px 10px 0 0;">
      <h1 style="margin: 0;">{title}</h1>
    </div>
    <div style="background: #f9f9f9; padding: 24px; border-radius: 0 0 10px 10px;">
      {body}
    </div>
    <p style="text-align: center; color: #888; font-size: 12px;">&copy; {year} ProtoLab 3D Poland</p>
  </div>
</body>
</html>"""
)

_BUTTON = Markup(
    '<p style="text-align: center;"><a href="{href}" '
    'style="display: inline-block; background: #667eea; color: white; padding: 12px 24px; '
    'text-decoration: none; border-radius: 5px;">{label}</a></p>'
)


def _layout(title: str, body: Markup) -> str:
    return str(_LAYOUT.format(title=title, body=body, year=datetime.now().year))


def _button(href: str, label: str) -> Markup:
    return _BUTTON.format(href=href, label=label)


def _rows(pairs) -> Markup:
    out = Markup("")
    for label, value in pairs:
        if value in (None, ""):
            continue
        out += Markup("<p><strong>{}:</strong> {}</p>").format(label, value)
    return out


class Mailer:
    def __init__(
        self,
        api_key: str,
        from_email: str,
        admin_email: str,
        frontend_url: str,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.admin_email = admin_email
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Mailer":
        return cls(
            api_key=config.get("RESEND_API_KEY", ""),
            from_email=config.get("FROM_EMAIL", "noreply@protolab.info"),
            admin_email=config.get("ADMIN_EMAIL", ""),
            frontend_url=config.get("FRONTEND_URL", ""),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        if not to:
            return {"success": False, "error": "missing recipient"}
        if not self.enabled:
            logger.info("E-mail disabled (no RESEND_API_KEY): %r to %s", subject, to)
            return {"success": False, "error": "email disabled"}
        try:
            r = self.session.post(
                RESEND_URL,
                json={
                    "from": f"{SENDER_NAME} <{self.from_email}>",
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("E-mail %r to %s failed: %s", subject, to, e)
            return {"success": False, "error": str(e)}
        if r.status_code >= 400:
            logger.error("E-mail %r to %s rejected: %s %s", subject, to, r.status_code, r.text[:300])
            return {"success": False, "error": f"resend {r.status_code}"}
        message_id = (r.json() or {}).get("id") if r.content else None
        logger.info("E-mail %r sent to %s (%s)", subject, to, message_id)
        return {"success": True, "id": message_id}

    # -------------------------
    # Account
    # -------------------------
    def send_verification(self, email: str, name: str, token: str) -> Dict[str, Any]:
        link = f"{self.frontend_url}/verify-email?token={token}"
        body = Markup("<h2>Witaj {}!</h2><p>Dziękujemy za rejestrację. Potwierdź swój adres e-mail:</p>").format(name)
        body += _button(link, "Zweryfikuj e-mail")
        body += Markup("<p>Link jest ważny przez 24 godziny.</p>")
        return self.send(email, "Zweryfikuj swój adres email - ProtoLab 3D", _layout("Weryfikacja e-mail", body))

    def send_password_reset(self, email: str, name: str, token: str) -> Dict[str, Any]:
        link = f"{self.frontend_url}/reset-password?token={token}"
        body = Markup("<h2>Witaj {}!</h2><p>Otrzymaliśmy prośbę o zresetowanie hasła.</p>").format(name)
        body += _button(link, "Ustaw nowe hasło")
        body += Markup("<p>Link jest ważny przez 1 godzinę. Jeśli to nie Ty, zignoruj tę wiadomość.</p>")
        return self.send(email, "Resetowanie hasła - ProtoLab 3D", _layout("Reset hasła", body))

    def send_welcome(self, email: str, name: str) -> Dict[str, Any]:
        body = Markup("<h2>Witaj {}!</h2><p>Twoje konto jest aktywne. Możesz już zamawiać wydruki 3D.</p>").format(name)
        body += _button(f"{self.frontend_url}/new-print", "Nowy wydruk")
        return self.send(email, "Witamy w ProtoLab 3D Poland!", _layout("Witamy!", body))

    # -------------------------
    # Orders and payments
    # -------------------------
    def send_order_received(self, email: str, name: str, order: Dict[str, Any]) -> Dict[str, Any]:
        number = order.get("order_number") or order.get("id")
        body = Markup("<h2>Witaj {}!</h2><p>Otrzymaliśmy Twoje zamówienie.</p>").format(name)
        body += _rows(
            [
                ("Zamówienie", f"#{number}"),
                ("Plik", order.get("file_name")),
                ("Materiał", f"{order.get('material') or ''} {order.get('color') or ''}".strip()),
                ("Ilość", order.get("quantity")),
                ("Cena", format_pln(order.get("price") or 0)),
            ]
        )
        body += _button(f"{self.frontend_url}/orders/{order.get('id')}", "Zobacz zamówienie")
        return self.send(email, f"Zamówienie #{number} przyjęte - ProtoLab 3D", _layout("Nowe zamówienie", body))

    def send_order_status(self, email: str, name: str, order: Dict[str, Any], message: str = "") -> Dict[str, Any]:
        number = order.get("order_number") or order.get("id")
        status = str(order.get("status") or "")
        label = ORDER_STATUS_LABELS.get(status, status)
        body = Markup("<h2>Witaj {}!</h2><p>Status Twojego zamówienia został zaktualizowany.</p>").format(name)
        body += _rows([("Zamówienie", f"#{number}"), ("Status", label), ("Numer przesyłki", order.get("tracking_code"))])
        if message:
            body += Markup("<p>{}</p>").format(message)
        body += _button(f"{self.frontend_url}/orders/{order.get('id')}", "Zobacz szczegóły")
        return self.send(email, f"Aktualizacja zamówienia #{number} - {label}", _layout("Aktualizacja zamówienia", body))

    def send_payment_confirmation(self, email: str, name: str, order: Dict[str, Any]) -> Dict[str, Any]:
        number = order.get("order_number") or order.get("id")
        body = Markup("<h2>Witaj {}!</h2><p>Płatność została zaksięgowana. Dziękujemy!</p>").format(name)
        body += _rows([("Zamówienie", f"#{number}"), ("Kwota", format_pln(order.get("paid_amount") or 0))])
        return self.send(email, f"Potwierdzenie płatności - Zamówienie #{number}", _layout("Płatność przyjęta", body))

    def send_payment_failed(self, email: str, name: str, order: Dict[str, Any]) -> Dict[str, Any]:
        number = order.get("order_number") or order.get("id")
        body = Markup("<h2>Witaj {}!</h2><p>Niestety płatność nie powiodła się. Możesz spróbować ponownie.</p>").format(name)
        body += _button(f"{self.frontend_url}/payment/{order.get('id')}", "Zapłać ponownie")
        return self.send(email, f"Płatność nieudana - Zamówienie #{number}", _layout("Płatność nieudana", body))

    def send_refund_request(self, email: str, name: str, order: Dict[str, Any]) -> Dict[str, Any]:
        number = order.get("order_number") or order.get("id")
        body = Markup("<h2>Witaj {}!</h2><p>Przyjęliśmy wniosek o zwrot. Rozpatrzymy go w ciągu 14 dni.</p>").format(name)
        body += _rows(
            [
                ("Zamówienie", f"#{number}"),
                ("Kwota", format_pln(order.get("refund_amount") or 0)),
                ("Metoda", order.get("refund_method")),
                ("Powód", order.get("refund_reason")),
            ]
        )
        return self.send(email, f"Wniosek o zwrot - Zamówienie #{number}", _layout("Wniosek o zwrot", body))

    # -------------------------
    # Appointments
    # -------------------------
    def _appointment_rows(self, appt: Dict[str, Any]) -> Markup:
        return _rows(
            [
                ("Temat", appt.get("topic")),
                ("Data", appt.get("date")),
                ("Godzina", appt.get("time")),
                ("Telefon", appt.get("phone")),
                ("Wiadomość", appt.get("message")),
            ]
        )

    def send_appointment_confirmation(self, appt: Dict[str, Any]) -> Dict[str, Any]:
        body = Markup("<h2>Witaj {}!</h2><p>Twoja konsultacja została zarezerwowana.</p>").format(appt.get("name"))
        body += self._appointment_rows(appt)
        return self.send(appt.get("email") or "", "Potwierdzenie konsultacji - ProtoLab 3D", _layout("Konsultacja", body))

    def send_appointment_admin(self, appt: Dict[str, Any]) -> Dict[str, Any]:
        body = Markup("<h2>Nowa konsultacja</h2>") + _rows([("Klient", appt.get("name")), ("E-mail", appt.get("email"))])
        body += self._appointment_rows(appt)
        return self.send(self.admin_email, f"Nowa konsultacja: {appt.get('date')} {appt.get('time')}", _layout("Konsultacja", body))

    def send_meeting_link(self, appt: Dict[str, Any]) -> Dict[str, Any]:
        link = str(appt.get("meeting_link") or "")
        body = Markup("<h2>Witaj {}!</h2><p>Link do spotkania online:</p>").format(appt.get("name"))
        body += _button(link, "Dołącz do spotkania")
        body += self._appointment_rows(appt)
        return self.send(appt.get("email") or "", "Link do konsultacji - ProtoLab 3D", _layout("Konsultacja online", body))

    # -------------------------
    # Design requests
    # -------------------------
    def send_design_request_confirmation(self, req: Dict[str, Any]) -> Dict[str, Any]:
        body = Markup("<h2>Witaj {}!</h2><p>Otrzymaliśmy Twoje zlecenie projektowe. Odezwiemy się z wyceną.</p>").format(req.get("name"))
        body += Markup("<blockquote>{}</blockquote>").format(req.get("project_description"))
        return self.send(req.get("email") or "", "Zlecenie projektowe przyjęte - ProtoLab 3D", _layout("Projekt 3D", body))

    def send_design_request_admin(self, req: Dict[str, Any]) -> Dict[str, Any]:
        files = req.get("reference_files") or []
        body = Markup("<h2>Nowe zlecenie projektowe</h2>")
        body += _rows(
            [
                ("Klient", req.get("name")),
                ("E-mail", req.get("email")),
                ("Telefon", req.get("phone")),
                ("Pliki", ", ".join(str(f.get("name")) for f in files) if files else None),
            ]
        )
        body += Markup("<blockquote>{}</blockquote>").format(req.get("project_description"))
        return self.send(self.admin_email, f"Nowe zlecenie projektowe: {req.get('name') or ''}", _layout("Projekt 3D", body))

    # -------------------------
    # Conversations
    # -------------------------
    def send_new_message(self, email: str, name: str, conversation: Dict[str, Any],
                         message: Dict[str, Any]) -> Dict[str, Any]:
        subject = conversation.get("subject") or "Wiadomość"
        body = Markup("<h2>Witaj {}!</h2><p>Nasz inżynier odpowiedział w wątku <strong>{}</strong>:</p>").format(
            name, subject
        )
        body += Markup("<blockquote>{}</blockquote>").format(message.get("message"))
        body += _button(f"{self.frontend_url}/conversations/{conversation.get('id')}", "Odpowiedz")
        return self.send(email, f"Nowa wiadomość: {subject} - ProtoLab 3D", _layout("Nowa wiadomość", body))

from __future__ import annotations

import html
import logging
import smtplib
from email.message import EmailMessage

from member_intranet import config
from member_intranet.exceptions import TransientGatewayError

logger = logging.getLogger(__name__)


def render_email_html(title: str, body_html: str) -> str:
    """Wrap an already-escaped body fragment in the shared mail layout."""
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        "<body style=\"font-family:Arial,Helvetica,sans-serif;color:#1f2933;\">"
        f"<h2 style=\"margin:0 0 16px 0;\">{html.escape(title)}</h2>"
        f"<div style=\"line-height:1.5;\">{body_html}</div>"
        f"<p style=\"margin-top:24px;font-size:12px;color:#7b8794;\">{html.escape(config.ORGANIZATION_NAME)}</p>"
        "</body></html>"
    )


def text_to_html(text: str) -> str:
    return html.escape(text or "").replace("\r\n", "\n").replace("\n", "<br>")


class SmtpEmailGateway:
    def __init__(self, smtp_config: dict | None = None, sender: str | None = None):
        self.smtp_config = dict(smtp_config or config.SMTP_CONFIG)
        self.sender = sender or config.MAIL_FROM

    def send_email(self, to: str, subject: str, html_body: str) -> bool:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = to
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")

        try:
            with smtplib.SMTP(
                self.smtp_config["host"],
                int(self.smtp_config["port"]),
                timeout=int(self.smtp_config.get("timeout") or 10),
            ) as smtp:
                if self.smtp_config.get("use_tls"):
                    smtp.starttls()
                if self.smtp_config.get("user"):
                    smtp.login(self.smtp_config["user"], self.smtp_config.get("password") or "")
                refused = smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientGatewayError(f"SMTP delivery to {to} failed: {str(exc)[:400]}") from exc
        return not refused


_GATEWAY: SmtpEmailGateway | None = None


def get_email_gateway() -> SmtpEmailGateway:
    global _GATEWAY
    if _GATEWAY is None:
        _GATEWAY = SmtpEmailGateway()
    return _GATEWAY


def send_return_confirmation(gateway, email: str | None, display_name: str, item_name: str, quantity: int, condition: str) -> bool:
    """Tell the borrower their return was checked in. Never raises."""
    if not email:
        return False
    condition_label = "functional" if condition == "functional" else "damaged"
    body = text_to_html(
        f"Hello {display_name},\n\n"
        f"your return of {quantity} x {item_name} has been confirmed.\n"
        f"Recorded condition: {condition_label}.\n\n"
        "Thank you!"
    )
    try:
        sent = bool(gateway.send_email(email, f"Return confirmed: {item_name}", render_email_html("Return confirmed", body)))
    except Exception:
        logger.exception("Return confirmation mail failed", extra={"event": "return_mail_failed", "context": {"to": email}})
        return False
    if not sent:
        logger.warning("Return confirmation mail was refused", extra={"event": "return_mail_refused", "context": {"to": email}})
    return sent

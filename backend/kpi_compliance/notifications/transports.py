import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Dict, Optional

import requests

from kpi_compliance.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html: str
    text: str
    from_name: str = ""
    from_email: str = ""

    @property
    def sender(self) -> str:
        return formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email


class ConsoleTransport:
    """Logs messages instead of sending them (local development)."""

    name = "console"

    def send(self, message: OutgoingEmail) -> str:
        message_id = make_msgid(domain="console.local")
        logger.info("Email (console) to=%s subject=%s id=%s", message.to, message.subject, message_id)
        return message_id


class SmtpTransport:
    name = "smtp"

    def __init__(self, host: str, port: int, user: str = "", password: str = "", timeout: int = 20):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    def _build(self, message: OutgoingEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = message.sender
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
        return msg

    def send(self, message: OutgoingEmail) -> str:
        msg = self._build(message)
        context = ssl.create_default_context()
        if self.port == 465:
            client = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        else:
            client = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with client:
            if self.port != 465 and self.user:
                client.starttls(context=context)
            if self.user:
                client.login(self.user, self.password)
            client.send_message(msg)
        return str(msg["Message-ID"])


class HttpRelayTransport:
    """POSTs messages as JSON to an HTTP mail relay."""

    name = "http"

    def __init__(self, url: str, token: str = "", timeout: int = 20):
        if not url:
            raise ValueError("Mail relay not configured. Set MAIL_RELAY_URL.")
        self.url = url
        self.token = token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def send(self, message: OutgoingEmail) -> str:
        payload = {
            "from": message.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        resp = requests.post(self.url, headers=self._headers(), json=payload, timeout=self.timeout)
        if resp.status_code >= 300:
            raise RuntimeError(f"Mail relay send failed: {resp.status_code} {resp.text}")
        try:
            data = resp.json()
        except ValueError:
            # accepted without a JSON body (202, plain text)
            data = None
        relay_id = data.get("id") if isinstance(data, dict) else None
        return str(relay_id or make_msgid(domain="relay"))


def transport_from_settings(kind: Optional[str] = None):
    kind = (kind or Settings.MAIL_TRANSPORT).strip().lower()
    if kind == "console":
        return ConsoleTransport()
    if kind == "smtp":
        return SmtpTransport(Settings.SMTP_HOST, Settings.SMTP_PORT, Settings.SMTP_USER, Settings.SMTP_PASS)
    if kind == "http":
        return HttpRelayTransport(Settings.MAIL_RELAY_URL, Settings.MAIL_RELAY_TOKEN)
    raise ValueError(f"Unknown MAIL_TRANSPORT: {kind}. Expected console, smtp or http")

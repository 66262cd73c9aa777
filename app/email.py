from __future__ import annotations

import logging
import smtplib
import uuid
from email.message import EmailMessage
from typing import Any

import httpx

from app.config import Settings


logger = logging.getLogger("forge.email")

POSTMARK_URL = "https://api.postmarkapp.com/email"


class EmailProviderError(RuntimeError):
    pass


def _addresses(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(addr).strip() for addr in value if addr and str(addr).strip()]


def build_message(config: dict, default_from: str = "") -> dict:
    """Normalize a sendEmail action config into a provider-neutral message."""
    to_list = _addresses(config.get("to"))
    if not to_list:
        raise EmailProviderError("Missing recipients")
    subject = config.get("subject")
    if not subject:
        raise EmailProviderError("Missing subject")
    body_text = config.get("body_text") or config.get("body") or ""
    return {
        "from_email": config.get("from_email") or default_from,
        "from_name": config.get("from_name"),
        "to": to_list,
        "cc": _addresses(config.get("cc")),
        "bcc": _addresses(config.get("bcc")),
        "reply_to": config.get("reply_to"),
        "subject": str(subject),
        "body_text": str(body_text),
        "body_html": config.get("body_html"),
    }


class EmailProvider:
    def send(self, message: dict) -> dict:
        raise NotImplementedError


class LogEmailProvider(EmailProvider):
    """Keeps messages in memory and logs them; the dev and test provider."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, message: dict) -> dict:
        message_id = str(uuid.uuid4())
        self.sent.append({**message, "id": message_id})
        logger.info("email_logged id=%s to=%s subject=%s", message_id, ",".join(message["to"]), message["subject"])
        return {"id": message_id}


class PostmarkProvider(EmailProvider):
    def __init__(self, api_token: str, timeout: float = 30.0, transport: httpx.BaseTransport | None = None) -> None:
        self._api_token = api_token
        self._timeout = timeout
        self._transport = transport

    def send(self, message: dict) -> dict:
        if not self._api_token:
            raise EmailProviderError("Missing POSTMARK_API_TOKEN")
        from_email = message.get("from_email")
        if not from_email:
            raise EmailProviderError("Missing from_email")
        from_name = message.get("from_name")
        sender = f"{from_name} <{from_email}>" if from_name else from_email
        payload = {
            "From": sender,
            "To": ",".join(message.get("to") or []),
            "Cc": ",".join(message.get("cc") or []),
            "Bcc": ",".join(message.get("bcc") or []),
            "Subject": message.get("subject"),
            "HtmlBody": message.get("body_html"),
            "TextBody": message.get("body_text"),
            "ReplyTo": message.get("reply_to"),
        }
        headers = {"X-Postmark-Server-Token": self._api_token}
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            resp = client.post(POSTMARK_URL, json=payload, headers=headers)
        if resp.status_code >= 400:
            raise EmailProviderError(f"Postmark error: {resp.status_code} {resp.text}")
        return resp.json()


class SmtpProvider(EmailProvider):
    def __init__(self, host: str, port: int = 587, username: str = "", password: str = "", security: str = "starttls", timeout: float = 30.0) -> None:
        self.host = host.strip()
        self.port = int(port or 587)
        self.username = username.strip()
        self.password = password
        self.security = (security or "starttls").strip().lower()
        self.timeout = timeout

    def send(self, message: dict) -> dict:
        from_email = message.get("from_email")
        from_name = message.get("from_name")
        if not self.host:
            raise EmailProviderError("Missing SMTP host")
        if not from_email:
            raise EmailProviderError("Missing from_email")
        if self.security not in {"none", "starttls", "ssl"}:
            raise EmailProviderError("Invalid SMTP security mode")

        to_list = message.get("to") or []
        cc_list = message.get("cc") or []
        recipients = [*to_list, *cc_list, *(message.get("bcc") or [])]

        sender = f"{from_name} <{from_email}>" if from_name else from_email
        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = ", ".join(to_list)
        if cc_list:
            msg["Cc"] = ", ".join(cc_list)
        if message.get("reply_to"):
            msg["Reply-To"] = message.get("reply_to")
        msg["Subject"] = message.get("subject") or ""
        msg.set_content(message.get("body_text") or "")
        if message.get("body_html"):
            msg.add_alternative(message.get("body_html"), subtype="html")

        if self.security == "ssl":
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as server:
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg, to_addrs=recipients)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.security == "starttls":
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg, to_addrs=recipients)
        return {"id": str(uuid.uuid4())}


class EmailSender:
    """Workflow collaborator for ``sendEmail`` actions."""

    def __init__(self, provider: EmailProvider, default_from: str = "") -> None:
        self.provider = provider
        self.default_from = default_from

    def execute(self, action_type: str, config: dict, record: dict) -> dict:
        message = build_message(config, self.default_from)
        result = self.provider.send(message)
        logger.info("email_sent record=%s to=%s", record.get("id"), ",".join(message["to"]))
        return {"message_id": result.get("id") or result.get("MessageID"), "to": message["to"]}


def get_provider(settings: Settings) -> EmailProvider:
    if settings.email_provider == "smtp":
        return SmtpProvider(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_username,
            settings.smtp_password,
            timeout=settings.collaborator_timeout,
        )
    if settings.email_provider == "postmark":
        return PostmarkProvider(settings.postmark_api_token, timeout=settings.collaborator_timeout)
    if settings.email_provider == "log":
        return LogEmailProvider()
    raise EmailProviderError(f"Unknown provider: {settings.email_provider}")

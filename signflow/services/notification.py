from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import parseaddr
from pathlib import Path
from typing import Any, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from signflow.core.config import Settings, settings as default_settings
from signflow.core.errors import DeliveryFailure

logger = logging.getLogger("signflow.notification")


@dataclass
class EmailConfig:
    host: str
    port: int
    username: str | None
    password: str | None
    sender: str
    starttls: bool


@dataclass
class SendGridConfig:
    api_key: str
    sender: str | None


class NotificationService:
    """
    Outbound notification collaborator.

    ``notify`` delivers one message to one recipient. Without a configured
    e-mail channel the message is only logged; the outbox row is the in-app copy.
    Failures raise DeliveryFailure; callers in the engine never let it escape.
    """

    def __init__(
        self,
        email_config: Optional[EmailConfig] = None,
        sendgrid_config: Optional[SendGridConfig] = None,
        email_backend: str = "smtp",
        public_base_url: str | None = None,
        template_root: Path | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.email_config = email_config
        self.sendgrid_config = sendgrid_config
        normalized_backend = (email_backend or "smtp").strip().lower()
        self.email_backend = normalized_backend if normalized_backend in {"smtp", "sendgrid"} else "smtp"
        if self.sendgrid_config and not self.email_config:
            self.email_backend = "sendgrid"
        self.public_base_url = public_base_url
        self.timeout_seconds = timeout_seconds
        self.template_root = template_root or Path(__file__).resolve().parent.parent / "templates"
        self.template_env = Environment(
            loader=FileSystemLoader(self.template_root),
            autoescape=select_autoescape(["html", "xml"]),
        )

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "NotificationService":
        config = config or default_settings
        email_config = None
        if config.smtp_host and config.smtp_sender:
            email_config = EmailConfig(
                host=config.smtp_host,
                port=int(config.smtp_port),
                username=config.smtp_username,
                password=config.smtp_password,
                sender=config.smtp_sender,
                starttls=bool(config.smtp_starttls),
            )
        sendgrid_config = None
        if config.sendgrid_api_key:
            sendgrid_config = SendGridConfig(api_key=config.sendgrid_api_key, sender=config.smtp_sender)
        return cls(
            email_config=email_config,
            sendgrid_config=sendgrid_config,
            email_backend=config.email_backend,
            public_base_url=config.resolved_public_app_url(),
            timeout_seconds=config.network_timeout_seconds,
        )

    def _email_sender_available(self) -> bool:
        if self.email_backend == "sendgrid":
            return self.sendgrid_config is not None
        return self.email_config is not None

    def _build_request_link(self, metadata: dict[str, Any]) -> str | None:
        request_id = metadata.get("request_id")
        if not request_id or not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/sign/{request_id}"

    def _render_template(self, template_name: str, context: dict) -> str:
        template = self.template_env.get_template(template_name)
        return template.render(**context)

    def notify(
        self,
        recipient: str,
        notification_type: str,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        metadata = metadata or {}
        if not recipient or "@" not in recipient:
            raise DeliveryFailure(f"Recipient {recipient!r} is not deliverable")

        if not self._email_sender_available():
            logger.info("[in-app] %s -> %s: %s", notification_type, recipient, title)
            return True

        action_link = self._build_request_link(metadata)
        html_body = self._render_template(
            "notification.html",
            {
                "title": title,
                "message": message,
                "notification_type": notification_type,
                "action_link": action_link,
            },
        )
        text_lines = [title, "", message]
        if action_link:
            text_lines.extend(["", action_link])
        try:
            self._send_email(to=recipient, subject=title, html_body=html_body, text_body="\n".join(text_lines))
        except (OSError, smtplib.SMTPException, httpx.HTTPError, RuntimeError) as exc:
            raise DeliveryFailure(f"Failed to deliver {notification_type} to {recipient}: {exc}") from exc
        return True

    def _send_email(self, *, to: str, subject: str, html_body: str, text_body: str | None = None) -> None:
        if self.email_backend == "sendgrid":
            self._send_email_via_sendgrid(to=to, subject=subject, html_body=html_body, text_body=text_body)
            return

        if not self.email_config:
            raise RuntimeError("Email sender not configured")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.email_config.sender
        message["To"] = to
        message.set_content(text_body or "", subtype="plain", charset="utf-8")
        message.add_alternative(html_body, subtype="html", charset="utf-8")

        with smtplib.SMTP(self.email_config.host, self.email_config.port, timeout=self.timeout_seconds) as smtp:
            if self.email_config.starttls:
                smtp.starttls()
            if self.email_config.username and self.email_config.password:
                smtp.login(self.email_config.username, self.email_config.password)
            smtp.send_message(message)

    def _send_email_via_sendgrid(self, *, to: str, subject: str, html_body: str, text_body: str | None) -> None:
        if not self.sendgrid_config:
            raise RuntimeError("SendGrid sender not configured")

        sender = self.sendgrid_config.sender or (self.email_config.sender if self.email_config else None)
        if not sender:
            raise RuntimeError("SendGrid sender address missing")
        name, email = parseaddr(sender)
        if not email:
            raise RuntimeError("SendGrid sender address invalid")

        contents: list[dict[str, str]] = []
        if text_body:
            contents.append({"type": "text/plain", "value": text_body})
        contents.append({"type": "text/html", "value": html_body})

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": email},
            "subject": subject,
            "content": contents,
        }
        if name:
            payload["from"]["name"] = name

        response = httpx.post(
            "https://api.sendgrid.com/v3/mail/send",
            headers={
                "Authorization": f"Bearer {self.sendgrid_config.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()

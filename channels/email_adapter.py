"""
Email Sender: SMTP delivery for rendered notifications.

Provides:
- SMTP send (plain text + HTML alternative) in a worker thread
- Suppression list fed by hard bounces and complaints
- SMTP reply-code classification: 4xx transient, 5xx permanent

Without an smtp_host the sender runs in dry-run mode: sends are logged
and reported as delivered.
"""
from __future__ import annotations

import asyncio
import html
import re
import smtplib
import uuid
import structlog
from email.message import EmailMessage
from typing import Any, Optional

from channels.base import ChannelError, ChannelSender, InvalidRecipientError, SendResult
from config.settings import ChannelConfig
from models.schemas import ChannelType

logger = structlog.get_logger()

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SMTP_TIMEOUT_RATIO = 0.8


class EmailSender(ChannelSender):
    channel_type = ChannelType.EMAIL

    def __init__(self, config: Optional[ChannelConfig] = None):
        super().__init__(config)
        self._suppressed: set[str] = set()
        self.smtp_host: str = self.credential("smtp_host")
        self.smtp_port: int = int(self.credential("smtp_port", 587))
        self.smtp_user: str = self.credential("smtp_user")
        self.smtp_password: str = self.credential("smtp_password")
        self.use_tls: bool = bool(self.credential("use_tls", True))
        self.from_email: str = self.credential("from_email", "no-reply@localhost")
        self.from_name: str = self.credential("from_name", "")
        self.domain: str = self.from_email.split("@")[-1]
        # Per-operation socket timeout, capped under the dispatch deadline
        self.smtp_timeout: float = min(
            float(self.credential("smtp_timeout", self.config.send_timeout_seconds)),
            self.config.send_timeout_seconds * SMTP_TIMEOUT_RATIO,
        )

    @property
    def dry_run(self) -> bool:
        return not self.smtp_host

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(
        self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any],
    ) -> SendResult:
        address = recipient.strip().lower()
        if not _EMAIL_RE.match(address):
            raise InvalidRecipientError(recipient, self.channel_type.value, "malformed address")
        if self.is_suppressed(address):
            return SendResult.permanent(f"suppressed: {address}")

        message_id = f"<{uuid.uuid4().hex}@{self.domain}>"
        msg = self._build_message(address, subject or "", body, message_id)

        if self.dry_run:
            logger.info("email_sent_dry_run", to=address, subject=subject, message_id=message_id)
            return SendResult.ok(message_id)

        try:
            await asyncio.to_thread(self._smtp_send, msg)
        except smtplib.SMTPRecipientsRefused as e:
            codes = [code for code, _ in e.recipients.values()]
            if any(code >= 500 for code in codes):
                self.handle_bounce({"email": address, "type": "permanent"})
                return SendResult.permanent(f"recipient refused: {codes}")
            return SendResult.transient(f"recipient deferred: {codes}")
        except smtplib.SMTPResponseException as e:
            if e.smtp_code >= 500:
                return SendResult.permanent(f"smtp {e.smtp_code}: {e.smtp_error!r}")
            return SendResult.transient(f"smtp {e.smtp_code}: {e.smtp_error!r}")
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelError(f"smtp transport error: {e}", self.channel_type.value, retryable=True) from e

        logger.info("email_sent", to=address, subject=subject, message_id=message_id)
        return SendResult.ok(message_id)

    def _build_message(self, to: str, subject: str, body: str, message_id: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = message_id
        msg.set_content(body)
        msg.add_alternative(_plain_to_html(body), subtype="html")
        return msg

    def _smtp_send(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.smtp_timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)

    # ── Suppression ───────────────────────────────────────────

    def is_suppressed(self, email: str) -> bool:
        return email.lower() in self._suppressed

    def handle_bounce(self, data: dict[str, Any]) -> dict[str, Any]:
        email = data.get("email", "").lower()
        bounce_type = data.get("type", "transient")
        if bounce_type == "permanent":
            self._suppressed.add(email)
            logger.warning("permanent_bounce_suppressed", email=email)
        else:
            logger.info("transient_bounce", email=email)
        return {"status": "processed", "email": email, "type": bounce_type}

    def handle_complaint(self, data: dict[str, Any]) -> dict[str, Any]:
        email = data.get("email", "").lower()
        self._suppressed.add(email)
        logger.warning("spam_complaint_suppressed", email=email)
        return {"status": "suppressed", "email": email}

    async def health_check(self) -> dict[str, Any]:
        health = await super().health_check()
        health["dry_run"] = self.dry_run
        health["suppressed_addresses"] = len(self._suppressed)
        return health


def _plain_to_html(text: str) -> str:
    paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
    return "".join(
        "<p>" + html.escape(p).replace("\n", "<br>") + "</p>" for p in paragraphs
    )

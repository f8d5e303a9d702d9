"""
SMS Sender: text messages through an HTTP SMS gateway.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Truncation to the configured max segment count
- Opt-out list (numbers that replied STOP)
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx

from channels.base import InvalidRecipientError, SendResult
from channels.http_gateway import HttpGatewaySender
from config.settings import ChannelConfig
from models.schemas import ChannelType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended characters cost two septets
_GSM7_EXTENDED = set("^{}[]~|\\€")

_E164 = re.compile(r"^\+?[1-9]\d{6,14}$")


def is_gsm7(text: str) -> bool:
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def segment_count(text: str) -> int:
    """GSM-7: 160 single / 153 per part. Unicode: 70 single / 67 per part."""
    if not text:
        return 0
    if is_gsm7(text):
        units = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        return 1 if units <= 160 else (units + 152) // 153
    return 1 if len(text) <= 70 else (len(text) + 66) // 67


def truncate_to_segments(text: str, max_segments: int) -> str:
    if segment_count(text) <= max_segments:
        return text
    per_part = 153 if is_gsm7(text) else 67
    return text[: per_part * max_segments - 3] + "..."


# ══════════════════════════════════════════════════════════════
#  SMS SENDER
# ══════════════════════════════════════════════════════════════

class SmsSender(HttpGatewaySender):
    channel_type = ChannelType.SMS
    endpoint = "/messages"

    def __init__(self, config: Optional[ChannelConfig] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, client)
        self.sender_id: str = self.credential("sender_id")
        self.max_segments: int = int(self.credential("max_segments", 3))
        self._opt_out_list: set[str] = set()

    def validate_recipient(self, recipient: str) -> str:
        number = re.sub(r"[\s\-()]", "", recipient)
        if not _E164.match(number):
            raise InvalidRecipientError(recipient, self.channel_type.value, "not an E.164 number")
        return number

    def build_payload(self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any]) -> dict[str, Any]:
        text = truncate_to_segments(body, self.max_segments)
        return {
            "to": recipient,
            "from": self.sender_id,
            "text": text,
            "segments": segment_count(text),
        }

    async def _do_send(
        self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any],
    ) -> SendResult:
        if _digits(recipient) in self._opt_out_list:
            return SendResult.permanent("opted_out")
        return await super()._do_send(recipient, subject, body, metadata)

    # ── Opt-out ───────────────────────────────────────────────

    def handle_keyword(self, phone: str, body: str) -> Optional[str]:
        """Process STOP/START replies. Returns "opt_out", "opt_in" or None."""
        keyword = body.strip().upper()
        if keyword in ("STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT", "BAJA"):
            self._opt_out_list.add(_digits(phone))
            logger.info("sms_opt_out", phone=phone)
            return "opt_out"
        if keyword in ("START", "YES", "UNSTOP", "SUBSCRIBE", "ALTA"):
            self._opt_out_list.discard(_digits(phone))
            logger.info("sms_opt_in", phone=phone)
            return "opt_in"
        return None

    def is_opted_out(self, phone: str) -> bool:
        return _digits(phone) in self._opt_out_list


def _digits(phone: str) -> str:
    return re.sub(r"[^\d]", "", phone)

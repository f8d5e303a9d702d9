"""
Push Sender: mobile/web push through an HTTP gateway.

Recipient is the device token resolved by the user directory.
"""
from __future__ import annotations

from typing import Any, Optional

from channels.base import InvalidRecipientError
from channels.http_gateway import HttpGatewaySender
from models.schemas import ChannelType

MAX_TITLE = 65
MAX_BODY = 240


class PushSender(HttpGatewaySender):
    channel_type = ChannelType.PUSH
    endpoint = "/push"

    def validate_recipient(self, recipient: str) -> str:
        token = recipient.strip()
        if len(token) < 8 or any(c.isspace() for c in token):
            raise InvalidRecipientError(recipient, self.channel_type.value, "malformed device token")
        return token

    def build_payload(self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any]) -> dict[str, Any]:
        return {
            "token": recipient,
            "title": _clip(subject or "", MAX_TITLE),
            "body": _clip(body, MAX_BODY),
            "data": {k: str(v) for k, v in metadata.items()},
        }


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."

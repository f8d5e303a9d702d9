"""Channel senders for all supported notification channels."""
from typing import Optional

from channels.base import (
    ChannelSender,
    ChannelRegistry,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    InvalidRecipientError,
    SendResult,
    SendStatus,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
)
from channels.email_adapter import EmailSender
from channels.http_gateway import HttpGatewaySender
from channels.in_app_adapter import InAppSender
from channels.push_adapter import PushSender
from channels.sms_adapter import SmsSender
from config.settings import ChannelConfig
from models.schemas import ChannelType

SENDER_CLASSES = {
    ChannelType.EMAIL: EmailSender,
    ChannelType.PUSH: PushSender,
    ChannelType.IN_APP: InAppSender,
    ChannelType.SMS: SmsSender,
}


def build_registry(channels: dict[str, ChannelConfig], only_enabled: bool = True) -> ChannelRegistry:
    """One sender per configured channel."""
    registry = ChannelRegistry()
    for name, cfg in channels.items():
        channel: Optional[ChannelType] = ChannelType(name) if name in ChannelType._value2member_map_ else None
        if channel is None or (only_enabled and not cfg.enabled):
            continue
        registry.register(SENDER_CLASSES[channel](cfg))
    return registry


__all__ = [
    "ChannelSender", "ChannelRegistry", "ChannelError",
    "RateLimitedError", "CircuitOpenError", "InvalidRecipientError",
    "SendResult", "SendStatus",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "EmailSender", "HttpGatewaySender", "InAppSender", "PushSender", "SmsSender",
    "SENDER_CLASSES", "build_registry",
]

"""
Channel Senders: base infrastructure shared by every delivery transport.

Provides:
- ChannelError: structured transport error hierarchy
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open trial call
- ChannelMetrics: per-channel send/fail/latency tracking
- SendResult: what a transport reports back for one send
- ChannelSender: abstract base wrapping every send with rate limiting,
  circuit breaking and metrics
- ChannelRegistry: sender lookup, initialization, health checks

Senders never retry internally: a failed send becomes a transient or
permanent SendResult and the notification queue owns the retry policy.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from config.settings import ChannelConfig
from models.schemas import ChannelType, DeliveryOutcome

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


class InvalidRecipientError(ChannelError):
    def __init__(self, recipient: str, channel: str = "", detail: str = ""):
        self.recipient = recipient
        super().__init__(f"Invalid recipient {recipient!r}: {detail}".rstrip(": "), channel, retryable=False)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold consecutive transient failures) →
    half_open (after recovery_timeout) → closed on success, open on failure.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0, name: str = ""):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", channel=self.name, failures=self._failure_count)

    def reset(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Per-channel counters and latency."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.delivered: int = 0
        self.transient_failures: int = 0
        self.permanent_failures: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record(self, result: SendResult):
        if result.status == SendStatus.DELIVERED:
            self.delivered += 1
        elif result.status == SendStatus.TRANSIENT:
            self.transient_failures += 1
        else:
            self.permanent_failures += 1
        if result.error:
            self._errors = (self._errors + [result.error])[-10:]
        if result.latency_ms > 0:
            self._latencies = (self._latencies + [result.latency_ms])[-500:]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        failed = self.transient_failures + self.permanent_failures
        total = self.delivered + failed
        return failed / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "delivered": self.delivered,
            "transient_failures": self.transient_failures,
            "permanent_failures": self.permanent_failures,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  SEND RESULT
# ══════════════════════════════════════════════════════════════

class SendStatus(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class SendResult(BaseModel):
    status: SendStatus
    error: str = ""
    provider_message_id: str = ""
    latency_ms: float = 0.0

    @classmethod
    def ok(cls, provider_message_id: str = "") -> SendResult:
        return cls(status=SendStatus.DELIVERED, provider_message_id=provider_message_id)

    @classmethod
    def transient(cls, error: str) -> SendResult:
        return cls(status=SendStatus.TRANSIENT, error=error)

    @classmethod
    def permanent(cls, error: str) -> SendResult:
        return cls(status=SendStatus.PERMANENT, error=error)

    def to_outcome(self) -> DeliveryOutcome:
        if self.status == SendStatus.DELIVERED:
            return DeliveryOutcome.delivered()
        if self.status == SendStatus.TRANSIENT:
            return DeliveryOutcome.transient(self.error)
        return DeliveryOutcome.permanent(self.error)


# ══════════════════════════════════════════════════════════════
#  CHANNEL SENDER - Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelSender(abc.ABC):
    """
    Base class for all delivery transports.

    Subclasses implement _do_send(); they return a SendResult or raise
    ChannelError (retryable → transient, otherwise permanent). Any other
    exception propagates to the dispatch worker, which treats it as a
    transient failure.
    """

    channel_type: ChannelType

    def __init__(self, config: Optional[ChannelConfig] = None):
        self.config = config or ChannelConfig()
        self._initialized = False
        self._breaker = CircuitBreaker(name=self.channel_type.value)
        self._rate_limiter: Optional[TokenBucketRateLimiter] = (
            TokenBucketRateLimiter(rate=self.config.rate_per_second, burst=self.config.burst)
            if self.config.rate_per_second > 0 else None
        )
        self.metrics = ChannelMetrics(self.channel_type)

    @property
    def credentials(self) -> dict[str, Any]:
        return self.config.credentials or {}

    def credential(self, key: str, default: Any = "") -> Any:
        """A credential value; unresolved ${VAR} placeholders count as unset."""
        value = self.credentials.get(key, default)
        if isinstance(value, str) and (not value or value.startswith("${")):
            return default
        return value

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(
        self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any],
    ) -> SendResult:
        ...

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        pass

    # ── Public send ───────────────────────────────────────────

    async def send(
        self,
        recipient: str,
        subject: Optional[str],
        body: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SendResult:
        metadata = metadata or {}
        channel = self.channel_type.value

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=5.0):
            return self._finish(SendResult.transient(str(RateLimitedError(channel))), 0.0)
        if self._breaker.is_open:
            return self._finish(SendResult.transient(str(CircuitOpenError(channel))), 0.0)

        start = time.monotonic()
        try:
            result = await self._do_send(recipient, subject, body, metadata)
        except ChannelError as e:
            result = SendResult.transient(str(e)) if e.retryable else SendResult.permanent(str(e))
        except Exception:
            self._breaker.record_failure()
            raise

        if result.status == SendStatus.TRANSIENT:
            self._breaker.record_failure()
        else:
            self._breaker.record_success()
        return self._finish(result, (time.monotonic() - start) * 1000)

    def _finish(self, result: SendResult, latency_ms: float) -> SendResult:
        result.latency_ms = round(latency_ms, 1)
        self.metrics.record(result)
        if result.status != SendStatus.DELIVERED:
            logger.warning("channel_send_failed",
                           channel=self.channel_type.value,
                           status=result.status.value,
                           error=result.error)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self.metrics.to_dict(),
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._senders: dict[ChannelType, ChannelSender] = {}

    def register(self, sender: ChannelSender):
        self._senders[sender.channel_type] = sender

    def get(self, channel_type: ChannelType) -> Optional[ChannelSender]:
        return self._senders.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._senders.keys())

    def get_healthy_channels(self) -> list[ChannelType]:
        return [ch for ch, s in self._senders.items() if not s._breaker.is_open]

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await s.health_check() for ch, s in self._senders.items()}

    async def initialize_all(self):
        for ch, sender in list(self._senders.items()):
            try:
                await sender.initialize()
            except Exception as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))
                del self._senders[ch]

    async def shutdown_all(self):
        for ch, sender in self._senders.items():
            try:
                await sender.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))

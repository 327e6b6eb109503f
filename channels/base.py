"""
Outbound channel infrastructure shared by every message sender.

Provides:
- ChannelError / DeliveryError: structured error hierarchy (transient vs permanent)
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- SenderMetrics: per-sender send/fail/latency tracking
- MessageSender: abstract base for anything that delivers OutboundMessages
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Optional

from models.schemas import OutboundMessage

logger = structlog.get_logger()

# HTTP statuses worth retrying: timeouts, throttling, server-side failures
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_transient_status(status_code: Optional[int]) -> bool:
    """Network failures (no status) and 408/429/5xx are transient; other 4xx are not."""
    if status_code is None:
        return True
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class DeliveryError(ChannelError):
    """A message could not be delivered. `transient` failures may succeed on retry."""

    def __init__(
        self, message: str, status_code: Optional[int] = None,
        transient: Optional[bool] = None, channel: str = "whatsapp",
    ):
        self.status_code = status_code
        self.transient = is_transient_status(status_code) if transient is None else transient
        super().__init__(message, channel, retryable=self.transient)


class RateLimitedError(DeliveryError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", status_code=429,
                         transient=True, channel=channel)


class CircuitOpenError(DeliveryError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", transient=True, channel=channel)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 20.0, burst: int = 40):
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
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).

    Only transient delivery failures should be recorded; a rejected payload
    says nothing about the health of the remote API.
    """

    def __init__(self, name: str = "", failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", breaker=self.name, failures=self._failure_count)

    def record_success(self):
        if self._state != "closed":
            logger.info("circuit_closed", breaker=self.name)
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  SENDER METRICS
# ══════════════════════════════════════════════════════════════

class SenderMetrics:
    """Tracks per-sender send, failure, and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.templates_sent: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0, template: bool = False):
        self.messages_sent += 1
        if template:
            self.templates_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        total = self.messages_sent + self.messages_failed
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "templates": self.templates_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.messages_failed / total, 4) if total else 0.0,
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE SENDER: Abstract Base
# ══════════════════════════════════════════════════════════════

class MessageSender(abc.ABC):
    """
    Delivers rendered OutboundMessages. `send` returns the channel's message
    id or raises DeliveryError.
    """

    channel: str = ""

    @abc.abstractmethod
    async def send(self, message: OutboundMessage) -> str:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel}

    async def shutdown(self) -> None:
        pass

"""
Outbound transports — base infrastructure shared by every delivery channel.

Provides:
- ChannelError / TransportError: structured send failures with a retryable flag
- CircuitBreaker: failure-counting breaker with half-open probe
- Transport: abstract base wrapping every provider send with the breaker

Transports never retry a send on their own beyond the HTTP-level retry of the
provider client; a failed send is recorded by the dispatcher and not re-sent.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Optional

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


class TransportError(ChannelError):
    """The provider rejected or failed the send."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False,
                 status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, channel, retryable)


class CircuitOpenError(TransportError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()


# ══════════════════════════════════════════════════════════════
#  TRANSPORT — Abstract Base
# ══════════════════════════════════════════════════════════════

class Transport(abc.ABC):
    """
    Base class for outbound transports.

    Subclasses implement _do_send and return the provider message id. The base
    class guards every send with the circuit breaker and normalises unexpected
    exceptions into TransportError.
    """

    channel: str = "email"

    def __init__(self, breaker: Optional[CircuitBreaker] = None):
        self._breaker = breaker or CircuitBreaker()

    def supports(self, channel: str) -> bool:
        return getattr(channel, "value", channel) == self.channel

    @abc.abstractmethod
    async def _do_send(self, from_address: str, to: str, subject: str, html: str,
                       correlation_id: str, custom_args: dict[str, Any]) -> str:
        ...

    async def send(self, from_address: str, to: str, subject: str, html: str,
                   correlation_id: str, custom_args: Optional[dict[str, Any]] = None) -> str:
        """Send one message and return the provider message id. Raises TransportError."""
        if self._breaker.is_open:
            raise CircuitOpenError(self.channel)

        start = time.monotonic()
        try:
            provider_id = await self._do_send(from_address, to, subject, html,
                                              correlation_id, custom_args or {})
        except TransportError:
            self._breaker.record_failure()
            raise
        except Exception as e:
            self._breaker.record_failure()
            raise TransportError(str(e) or type(e).__name__, self.channel, retryable=True) from e

        self._breaker.record_success()
        logger.info("transport_send_ok",
                    channel=self.channel,
                    correlation_id=correlation_id,
                    provider_message_id=provider_id,
                    latency_ms=round((time.monotonic() - start) * 1000, 1))
        return provider_id

    async def close(self) -> None:
        pass

"""Outbound transports and the suppression list."""
from channels.base import (
    ChannelError,
    TransportError,
    CircuitOpenError,
    CircuitBreaker,
    Transport,
)
from channels.email_transport import SendGridTransport, html_to_plain
from channels.suppression import SuppressionService, normalize_address

__all__ = [
    "ChannelError", "TransportError", "CircuitOpenError", "CircuitBreaker",
    "Transport", "SendGridTransport", "html_to_plain",
    "SuppressionService", "normalize_address",
]

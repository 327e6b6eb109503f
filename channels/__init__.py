"""Outbound message senders and the WhatsApp channel."""
from channels.base import (
    ChannelError,
    DeliveryError,
    MessageSender,
    TokenBucketRateLimiter,
    CircuitBreaker,
    SenderMetrics,
)
from channels.whatsapp_adapter import WhatsAppCloudSender, parse_webhook, verify_webhook
from channels.simulator import SimulatedSender

__all__ = [
    "ChannelError", "DeliveryError", "MessageSender",
    "TokenBucketRateLimiter", "CircuitBreaker", "SenderMetrics",
    "WhatsAppCloudSender", "parse_webhook", "verify_webhook",
    "SimulatedSender",
]

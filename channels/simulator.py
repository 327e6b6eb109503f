"""
SimulatedSender — records outbound messages instead of calling WhatsApp.

Used by test sessions in `simulate` mode and by unit tests. Nothing leaves
the process; every message gets a fake `sim.` id and is kept per
conversation so a test UI (or a test) can replay what the bot "said".
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

from channels.base import DeliveryError, MessageSender
from models.schemas import OutboundKind, OutboundMessage

logger = structlog.get_logger()


def describe(message: OutboundMessage) -> str:
    """Plain-text rendering of an outbound message for test transcripts."""
    if message.requires_template:
        return f"[Template: {message.template_name}]"
    if message.kind == OutboundKind.BUTTONS:
        labels = ", ".join(b.title for b in message.buttons)
        return f"{message.text}\n\n[Buttons: {labels}]"
    if message.kind == OutboundKind.LIST:
        rows = [row.title for section in message.list_sections for row in section.rows]
        return f"{message.text}\n\n[List: {', '.join(rows)}]"
    if message.kind == OutboundKind.FLOW:
        return f"{message.text}\n\n[Flow: {message.flow.get('flow_id', '')}]"
    return message.text


class SimulatedSender(MessageSender):

    channel = "simulator"

    def __init__(self):
        self.sent: list[OutboundMessage] = []
        self._failures: list[DeliveryError] = []

    def fail_next(self, error: Optional[DeliveryError] = None) -> None:
        """Make the next send raise `error` (a permanent DeliveryError by default)."""
        self._failures.append(error or DeliveryError("simulated failure", status_code=400))

    async def send(self, message: OutboundMessage) -> str:
        if self._failures:
            raise self._failures.pop(0)
        self.sent.append(message)
        message_id = f"sim.{uuid.uuid4().hex[:20]}"
        logger.debug("simulated_message_sent", conversation_id=message.conversation_id,
                     kind=message.kind.value, message_id=message_id)
        return message_id

    def messages_for(self, conversation_id: str) -> list[OutboundMessage]:
        return [m for m in self.sent if m.conversation_id == conversation_id]

    def transcript(self, conversation_id: str) -> list[str]:
        return [describe(m) for m in self.messages_for(conversation_id)]

    def clear(self) -> None:
        self.sent.clear()

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel, "sent": len(self.sent)}

"""
Outbound Action Dispatcher — the engine's only door to the outside world.

  send(conversation_id, message)   → channel message id, or DeliveryError
  call_external(config, variables) → ActionResult, or ExternalCallError
  dispatch_all(messages)           → one DeliveryReceipt per message, in order

The orchestrator calls dispatch_all only after the context has been
persisted. A failed delivery is recorded on its receipt and logged; it never
rolls the context back, and later messages of the same event are still
attempted in their original order.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from backend.connector import ActionResult, RestActionExecutor
from channels.base import DeliveryError, MessageSender
from models.schemas import ActionNodeData, DeliveryReceipt, OutboundMessage

logger = structlog.get_logger()


class OutboundDispatcher:

    def __init__(self, sender: MessageSender, executor: Optional[RestActionExecutor] = None):
        self.sender = sender
        self.executor = executor or RestActionExecutor()

    async def send(
        self, conversation_id: str, message: OutboundMessage,
        sender: Optional[MessageSender] = None,
    ) -> str:
        if message.conversation_id != conversation_id:
            message = message.model_copy(update={"conversation_id": conversation_id})
        return await (sender or self.sender).send(message)

    async def call_external(self, config: ActionNodeData, variables: dict[str, Any]) -> ActionResult:
        return await self.executor.call_external(config, variables)

    async def dispatch_all(
        self, messages: list[OutboundMessage], sender: Optional[MessageSender] = None,
    ) -> list[DeliveryReceipt]:
        receipts: list[DeliveryReceipt] = []
        for message in messages:
            try:
                message_id = await self.send(message.conversation_id, message, sender=sender)
            except DeliveryError as e:
                logger.error("message_delivery_failed",
                             conversation_id=message.conversation_id,
                             context_id=message.context_id, node_id=message.node_id,
                             status_code=e.status_code, transient=e.transient, error=str(e))
                receipts.append(DeliveryReceipt(
                    outbound_id=message.id, delivered=False,
                    error=str(e), transient=e.transient,
                ))
                continue
            logger.info("message_dispatched", conversation_id=message.conversation_id,
                        node_id=message.node_id, kind=message.kind.value,
                        template=message.requires_template, message_id=message_id)
            receipts.append(DeliveryReceipt(outbound_id=message.id, message_id=message_id))
        return receipts

    async def close(self) -> None:
        await self.executor.close()
        await self.sender.shutdown()

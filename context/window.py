"""
WhatsApp 24-hour customer service window.

Free-form messages are only allowed while the window opened by the
customer's most recent message is still open; outside it the business may
only send a pre-approved template. The window state lives on the
Conversation record (`last_customer_message_at`, `is_window_open`).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from database.store_base import BaseContextStore
from models.schemas import Conversation

logger = structlog.get_logger()


class WindowTracker:

    def __init__(self, store: BaseContextStore, window_hours: int = 24):
        self._store = store
        self.window = timedelta(hours=window_hours)

    async def record_customer_message(
        self, conversation_id: str, at: Optional[datetime] = None,
        phone_number: str = "", contact_name: str = "",
    ) -> Conversation:
        """Open (or extend) the window from a customer-initiated message."""
        at = at or datetime.now(timezone.utc)
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id, phone_number=phone_number)
        if phone_number and not conversation.phone_number:
            conversation.phone_number = phone_number
        if contact_name:
            conversation.contact_name = contact_name
        # Out-of-order webhook deliveries never move the window backwards
        last = conversation.last_customer_message_at
        if last is None or at > last:
            conversation.last_customer_message_at = at
        conversation.is_window_open = self.is_within_window(conversation, at)
        return await self._store.save_conversation(conversation)

    def is_within_window(self, conversation: Optional[Conversation], now: Optional[datetime] = None) -> bool:
        if conversation is None or conversation.last_customer_message_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - conversation.last_customer_message_at < self.window

    def remaining_seconds(self, conversation: Optional[Conversation], now: Optional[datetime] = None) -> float:
        if not self.is_within_window(conversation, now):
            return 0.0
        now = now or datetime.now(timezone.utc)
        remaining = self.window - (now - conversation.last_customer_message_at)
        return max(0.0, remaining.total_seconds())

    async def check(self, conversation_id: str, now: Optional[datetime] = None) -> bool:
        """Evaluate the stored conversation's window, refreshing its cached flag."""
        conversation = await self._store.get_conversation(conversation_id)
        is_open = self.is_within_window(conversation, now)
        if conversation is not None and conversation.is_window_open != is_open:
            conversation.is_window_open = is_open
            await self._store.save_conversation(conversation)
            logger.info("conversation_window_changed",
                        conversation_id=conversation_id, is_open=is_open)
        return is_open

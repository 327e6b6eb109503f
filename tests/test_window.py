"""Tests for the 24-hour customer service window."""
from datetime import timedelta

import pytest

from context.window import WindowTracker


@pytest.fixture
def tracker(store):
    return WindowTracker(store, window_hours=24)


class TestWindowTracker:
    @pytest.mark.asyncio
    async def test_customer_message_opens_window(self, tracker, store, clock):
        conversation = await tracker.record_customer_message(
            "conv-1", at=clock(), phone_number="15550001111", contact_name="Ana")

        assert conversation.is_window_open
        assert conversation.contact_name == "Ana"
        assert (await store.find_conversation_by_phone("15550001111")).id == "conv-1"
        assert tracker.remaining_seconds(conversation, clock()) == 24 * 3600

    @pytest.mark.asyncio
    async def test_window_closes_after_24_hours(self, tracker, clock):
        conversation = await tracker.record_customer_message("conv-1", at=clock())

        assert tracker.is_within_window(conversation, clock() + timedelta(hours=23, minutes=59))
        assert not tracker.is_within_window(conversation, clock() + timedelta(hours=24))
        assert tracker.remaining_seconds(conversation, clock() + timedelta(hours=30)) == 0.0

    @pytest.mark.asyncio
    async def test_late_delivery_never_moves_window_back(self, tracker, clock):
        await tracker.record_customer_message("conv-1", at=clock())
        conversation = await tracker.record_customer_message("conv-1", at=clock() - timedelta(hours=5))
        assert conversation.last_customer_message_at == clock()

    @pytest.mark.asyncio
    async def test_check_refreshes_cached_flag(self, tracker, store, clock):
        await tracker.record_customer_message("conv-1", at=clock())

        assert not await tracker.check("conv-1", clock() + timedelta(days=2))
        assert not (await store.get_conversation("conv-1")).is_window_open

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_closed(self, tracker):
        assert not await tracker.check("ghost")
        assert tracker.remaining_seconds(None) == 0.0

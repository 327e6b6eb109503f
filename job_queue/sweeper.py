"""
ContextSweeper — background task that expires abandoned contexts.

A context waiting for input (or for a WhatsApp Flow response) carries an
`expires_at`; once that passes the sweeper closes it as `expired` with
reason `session_timeout`. Each context is expired under its own
conversation lock, one at a time, so live traffic is never blocked behind
a whole batch.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from context.locks import ConversationLocks
from core.errors import ConflictError, StoreError
from database.store_base import BaseContextStore

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContextSweeper:

    def __init__(
        self,
        store: BaseContextStore,
        locks: Optional[ConversationLocks] = None,
        interval_seconds: int = 60,
        batch_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.locks = locks or ConversationLocks()
        self.interval = interval_seconds
        self.batch_size = batch_size
        self._clock = clock or _utcnow
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        """One sweep. Returns how many contexts were expired."""
        now = self._clock()
        expired = 0
        for context in await self.store.list_stale(now, limit=self.batch_size):
            async with self.locks.hold(context.conversation_id):
                # Re-checked inside the store: an event may have revived it meanwhile
                if await self.store.expire_context(context.id, now):
                    expired += 1
                    logger.info("context_expired", context_id=context.id,
                                conversation_id=context.conversation_id,
                                node_id=context.current_node_id)
        if expired:
            logger.info("sweep_completed", expired=expired)
        return expired

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("context_sweeper_started", interval=self.interval, batch_size=self.batch_size)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except (StoreError, ConflictError) as e:
                logger.error("sweeper_error", error=str(e))
            await asyncio.sleep(self.interval)

"""
FileContextStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    chatbots.json
    whatsapp_flows.json
    conversations.json
    contexts.json

Features:
  - Survives process restarts (unlike InMemoryContextStore)
  - No external dependencies (no database server)
  - Each collection is written to a temp file and renamed into place, so a
    crash never leaves a half-written collection behind
  - Writes are immediate by default; set flush_interval_s > 0 to batch them
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryContextStore
from models.schemas import (
    Chatbot, ConversationContext, Conversation, WhatsAppFlow, TERMINAL_STATUSES,
    ContextStatus,
)

logger = structlog.get_logger()

_COLLECTIONS = ["chatbots", "whatsapp_flows", "conversations", "contexts"]


class FileContextStore(InMemoryContextStore):
    """
    Extends InMemoryContextStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            self._set_collection(collection, data if isinstance(data, dict) else {})
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: dict[str, Any]):
        """Restore a collection from loaded JSON data and rebuild its indexes."""
        if collection == "chatbots":
            self._chatbots = data
        elif collection == "whatsapp_flows":
            self._whatsapp_flows = data
        elif collection == "conversations":
            self._conversations = data
            self._phone_index = {
                c["phone_number"]: cid for cid, c in data.items() if c.get("phone_number")
            }
        elif collection == "contexts":
            self._contexts = data
            self._active_index.clear()
            self._latest_index.clear()
            for ctx_id, ctx in sorted(data.items(), key=lambda kv: kv[1].get("created_at", "")):
                conv_id = ctx["conversation_id"]
                self._latest_index[conv_id] = ctx_id
                if ContextStatus(ctx["status"]) not in TERMINAL_STATUSES:
                    self._active_index[conv_id] = ctx_id

    def _get_collection_data(self, collection: str) -> dict[str, Any]:
        mapping = {
            "chatbots": self._chatbots,
            "whatsapp_flows": self._whatsapp_flows,
            "conversations": self._conversations,
            "contexts": self._contexts,
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(
                    self._deferred_flush()
                )

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        self._dirty.clear()
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def save_chatbot(self, chatbot: Chatbot) -> Chatbot:
        result = await super().save_chatbot(chatbot)
        self._mark_dirty("chatbots")
        return result

    async def save_whatsapp_flow(self, flow: WhatsAppFlow) -> WhatsAppFlow:
        result = await super().save_whatsapp_flow(flow)
        self._mark_dirty("whatsapp_flows")
        return result

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        result = await super().save_conversation(conversation)
        self._mark_dirty("conversations")
        return result

    async def create_context(
        self, conversation_id: str, chatbot_id: str, start_node_id: str,
        **fields: Any,
    ) -> ConversationContext:
        result = await super().create_context(conversation_id, chatbot_id, start_node_id, **fields)
        self._mark_dirty("contexts")
        return result

    async def save(self, context: ConversationContext) -> ConversationContext:
        result = await super().save(context)
        self._mark_dirty("contexts")
        return result

"""
Tests for all context store backends.

Covers:
  - The shared store contract, run against InMemoryContextStore,
    FileContextStore (JSON files) and SqlContextStore (via SQLite)
  - FileContextStore persistence across restarts
  - Store factory
  - Session URL translation and cross-DB model portability
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import edge, make_chatbot, node
from core.errors import ConflictError, ConflictErrorKind
from models.schemas import (
    ClosedBy, CompletionReason, ContextStatus, Conversation, NodeOutput, NodeType,
    TestMetadata, WhatsAppFlow,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "file", "sql"])
async def backend(request, tmp_path):
    if request.param == "memory":
        from database.store_memory import InMemoryContextStore
        yield InMemoryContextStore()
    elif request.param == "file":
        from database.store_file import FileContextStore
        yield FileContextStore(data_dir=str(tmp_path / "data"))
    else:
        from database.session import close_db, init_db
        from database.store import SqlContextStore
        await close_db()
        store = SqlContextStore(f"sqlite:///{tmp_path / 'flowpilot.db'}")
        await init_db()
        yield store
        await close_db()


@pytest_asyncio.fixture
async def seeded(backend):
    """Backend holding one active chatbot and two conversations."""
    await backend.save_chatbot(make_chatbot(
        [node("start", "start"), node("ask", "question", content="Name?", variable="name")],
        [edge("start", "ask")],
    ))
    await backend.save_conversation(Conversation(id="conv-1", phone_number="15550001111"))
    await backend.save_conversation(Conversation(id="conv-2", phone_number="15550002222"))
    return backend


# ──────────────────────────────────────────────────────────────
#  Store contract
# ──────────────────────────────────────────────────────────────

class TestContextStoreContract:

    @pytest.mark.asyncio
    async def test_create_and_load_active(self, seeded):
        created = await seeded.create_context("conv-1", "bot-1", "start", expires_at=NOW)

        loaded = await seeded.load_active("conv-1")

        assert loaded.id == created.id
        assert loaded.status == ContextStatus.RUNNING
        assert loaded.current_node_id == "start"
        assert loaded.expires_at == NOW
        assert (await seeded.latest_context("conv-1")).id == created.id

    @pytest.mark.asyncio
    async def test_one_live_context_per_conversation(self, seeded):
        first = await seeded.create_context("conv-1", "bot-1", "start")

        with pytest.raises(ConflictError) as exc:
            await seeded.create_context("conv-1", "bot-1", "start")

        assert exc.value.kind == ConflictErrorKind.CONCURRENT_CONTEXT
        assert exc.value.context_id == first.id
        # Other conversations are unaffected
        await seeded.create_context("conv-2", "bot-1", "start")

    @pytest.mark.asyncio
    async def test_save_bumps_revision_and_rejects_stale_copy(self, seeded):
        created = await seeded.create_context("conv-1", "bot-1", "start")
        copy_a = await seeded.get_context(created.id)
        copy_b = await seeded.get_context(created.id)

        copy_a.variables["name"] = "Ana"
        saved = await seeded.save(copy_a)
        assert saved.revision == 1

        copy_b.variables["name"] = "Bo"
        with pytest.raises(ConflictError) as exc:
            await seeded.save(copy_b)
        assert exc.value.kind == ConflictErrorKind.STALE_WRITE
        assert copy_b.revision == 0
        assert (await seeded.get_context(created.id)).variables == {"name": "Ana"}

    @pytest.mark.asyncio
    async def test_round_trips_execution_state(self, seeded):
        context = await seeded.create_context(
            "conv-1", "bot-1", "start", is_test_session=True,
            test_metadata=TestMetadata(notes="qa"),
        )
        context.variables = {"order": {"id": 7, "items": ["a", "b"]}}
        context.node_history = ["start", "ask"]
        context.node_outputs["ask"] = NodeOutput(
            node_id="ask", node_type=NodeType.QUESTION, user_response="Ana", executed_at=NOW)
        context.remember_event("wamid.1")
        context.status = ContextStatus.WAITING_INPUT
        await seeded.save(context)

        loaded = await seeded.get_context(context.id)

        assert loaded.variables == {"order": {"id": 7, "items": ["a", "b"]}}
        assert loaded.node_history == ["start", "ask"]
        assert loaded.node_outputs["ask"].user_response == "Ana"
        assert loaded.has_processed("wamid.1")
        assert loaded.is_test_session
        assert loaded.test_metadata.notes == "qa"

    @pytest.mark.asyncio
    async def test_terminal_context_frees_conversation(self, seeded):
        context = await seeded.create_context("conv-1", "bot-1", "start")
        context.close(ContextStatus.COMPLETED, CompletionReason.FLOW_COMPLETED.value, now=NOW)
        await seeded.save(context)

        assert await seeded.load_active("conv-1") is None
        latest = await seeded.latest_context("conv-1")
        assert latest.id == context.id
        assert latest.closed_by == ClosedBy.ENGINE
        assert latest.completed_at == NOW
        await seeded.create_context("conv-1", "bot-1", "start")

    @pytest.mark.asyncio
    async def test_mark_completed_and_failed(self, seeded):
        done = await seeded.create_context("conv-1", "bot-1", "start")
        broken = await seeded.create_context("conv-2", "bot-1", "start")

        done = await seeded.mark_completed(done, CompletionReason.FORCE_COMPLETED.value,
                                           ClosedBy.OPERATOR, now=NOW)
        broken = await seeded.mark_failed(broken, CompletionReason.DEAD_END.value, now=NOW)

        assert (await seeded.get_context(done.id)).status == ContextStatus.COMPLETED
        assert (await seeded.get_context(done.id)).closed_by == ClosedBy.OPERATOR
        failed = await seeded.get_context(broken.id)
        assert failed.status == ContextStatus.FAILED
        assert failed.completion_reason == "dead_end"
        assert await seeded.load_active("conv-2") is None

    @pytest.mark.asyncio
    async def test_stale_contexts_expired(self, seeded):
        stale = await seeded.create_context("conv-1", "bot-1", "ask", expires_at=NOW - timedelta(minutes=1))
        fresh = await seeded.create_context("conv-2", "bot-1", "ask", expires_at=NOW + timedelta(hours=1))

        assert [c.id for c in await seeded.list_stale(NOW)] == [stale.id]
        assert await seeded.expire_context(stale.id, NOW)
        assert not await seeded.expire_context(stale.id, NOW)
        assert not await seeded.expire_context(fresh.id, NOW)

        expired = await seeded.get_context(stale.id)
        assert expired.status == ContextStatus.EXPIRED
        assert expired.completion_reason == CompletionReason.SESSION_TIMEOUT.value
        assert expired.closed_by == ClosedBy.SWEEPER
        assert await seeded.load_active("conv-1") is None

    @pytest.mark.asyncio
    async def test_expire_stale_batch(self, seeded):
        await seeded.create_context("conv-1", "bot-1", "ask", expires_at=NOW - timedelta(minutes=5))
        await seeded.create_context("conv-2", "bot-1", "ask", expires_at=NOW - timedelta(minutes=1))

        assert await seeded.expire_stale(NOW) == 2
        assert await seeded.list_active() == []

    @pytest.mark.asyncio
    async def test_list_contexts_filters(self, seeded):
        live = await seeded.create_context("conv-1", "bot-1", "start")
        await seeded.create_context("conv-2", "bot-1", "start", is_test_session=True)

        assert [c.id for c in await seeded.list_contexts()] == [live.id]
        assert len(await seeded.list_contexts(include_test_sessions=True)) == 2
        assert len(await seeded.list_contexts(only_test_sessions=True)) == 1
        assert await seeded.list_contexts(status=ContextStatus.COMPLETED) == []
        assert len(await seeded.list_contexts(conversation_id="conv-1")) == 1

    @pytest.mark.asyncio
    async def test_find_by_node_output(self, seeded):
        for conversation_id, status_code in (("conv-1", 200), ("conv-2", 404)):
            context = await seeded.create_context(conversation_id, "bot-1", "api")
            context.node_outputs["api"] = NodeOutput(
                node_id="api", node_type=NodeType.ACTION, success=status_code == 200,
                status_code=status_code, data={"tier": "gold", "score": status_code},
            )
            await seeded.save(context)

        found = await seeded.find_by_node_output("api", data={"tier": "gold"}, success=True)

        assert [c.conversation_id for c in found] == ["conv-1"]
        assert len(await seeded.find_by_node_output("api", data={"tier": "gold"})) == 2
        assert await seeded.find_by_node_output("other") == []

    @pytest.mark.asyncio
    async def test_chatbot_versions_and_active_selection(self, seeded):
        chatbot = await seeded.get_chatbot("bot-1")
        assert chatbot.version == 1
        assert chatbot.nodes[1].data.variable == "name"

        await seeded.save_chatbot(chatbot)
        assert (await seeded.get_chatbot("bot-1")).version == 2
        assert (await seeded.find_active_chatbot()).id == "bot-1"

    @pytest.mark.asyncio
    async def test_whatsapp_flow_lookup_by_either_id(self, seeded):
        flow = await seeded.save_whatsapp_flow(
            WhatsAppFlow(whatsapp_flow_id="meta-1", name="Signup", flow_json={"v": 1}))

        assert (await seeded.get_whatsapp_flow(flow.id)).name == "Signup"
        assert (await seeded.get_whatsapp_flow("meta-1")).id == flow.id
        assert await seeded.get_whatsapp_flow("nope") is None

    @pytest.mark.asyncio
    async def test_conversation_by_phone(self, seeded):
        conversation = await seeded.find_conversation_by_phone("15550002222")
        assert conversation.id == "conv-2"
        assert await seeded.find_conversation_by_phone("19999999999") is None


# ──────────────────────────────────────────────────────────────
#  FileContextStore
# ──────────────────────────────────────────────────────────────

class TestFileContextStore:

    @pytest.mark.asyncio
    async def test_persistence_round_trip(self, tmp_path):
        from database.store_file import FileContextStore
        data_dir = str(tmp_path / "data")
        store = FileContextStore(data_dir=data_dir)
        await store.save_conversation(Conversation(id="conv-1", phone_number="15550001111"))
        context = await store.create_context("conv-1", "bot-1", "start")
        context.variables["name"] = "Ana"
        await store.save(context)

        reopened = FileContextStore(data_dir=data_dir)

        loaded = await reopened.load_active("conv-1")
        assert loaded.variables == {"name": "Ana"}
        assert loaded.revision == 1
        assert (await reopened.find_conversation_by_phone("15550001111")).id == "conv-1"

    @pytest.mark.asyncio
    async def test_batched_writes_flushed_on_close(self, tmp_path):
        from database.store_file import FileContextStore
        data_dir = str(tmp_path / "data")
        store = FileContextStore(data_dir=data_dir, flush_interval_s=60)
        await store.save_conversation(Conversation(id="conv-1", phone_number="15550001111"))

        assert await FileContextStore(data_dir=data_dir).get_conversation("conv-1") is None
        await store.close()

        assert (await FileContextStore(data_dir=data_dir).get_conversation("conv-1")).id == "conv-1"

    @pytest.mark.asyncio
    async def test_indexes_rebuilt_for_terminal_contexts(self, tmp_path):
        from database.store_file import FileContextStore
        data_dir = str(tmp_path / "data")
        store = FileContextStore(data_dir=data_dir)
        context = await store.create_context("conv-1", "bot-1", "start")
        context.close(ContextStatus.STOPPED, CompletionReason.USER_STOPPED.value, ClosedBy.OPERATOR)
        await store.save(context)

        reopened = FileContextStore(data_dir=data_dir)

        assert await reopened.load_active("conv-1") is None
        assert (await reopened.latest_context("conv-1")).closed_by == ClosedBy.OPERATOR

    @pytest.mark.asyncio
    async def test_corrupt_file_handled(self, tmp_path):
        from database.store_file import FileContextStore
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "contexts.json").write_text("{not json")

        store = FileContextStore(data_dir=str(data_dir))

        assert await store.list_active() == []


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_create_memory_store(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryContextStore
        store = create_store({"store_backend": "memory"})
        assert isinstance(store, InMemoryContextStore)

    def test_create_file_store(self, tmp_path):
        from database.store_factory import create_store
        from database.store_file import FileContextStore
        store = create_store({"store_backend": "file", "store_file_dir": str(tmp_path)})
        assert isinstance(store, FileContextStore)

    def test_create_from_dataclass(self):
        from config.settings import DatabaseConfig
        from database.store_factory import create_store
        from database.store_memory import InMemoryContextStore
        assert isinstance(create_store(DatabaseConfig()), InMemoryContextStore)

    @pytest.mark.asyncio
    async def test_create_sql_store(self, tmp_path):
        from database.session import close_db, get_engine
        from database.store_factory import create_store
        from database.store import SqlContextStore
        await close_db()
        store = create_store({"store_backend": "sql", "url": f"sqlite:///{tmp_path / 'f.db'}"})
        assert isinstance(store, SqlContextStore)
        assert get_engine().url.database.endswith("f.db")
        await close_db()

    def test_dict_keys_override_defaults_and_unknown_keys_ignored(self, tmp_path):
        from database.store_factory import create_store
        from database.store_file import FileContextStore
        store = create_store({"store_backend": "file", "store_file_dir": str(tmp_path),
                              "unknown_key": "ignored"})
        assert isinstance(store, FileContextStore)
        assert store._data_dir == tmp_path

    def test_unknown_backend_rejected(self):
        from config.settings import DatabaseConfig
        from database.store_factory import create_store, get_store
        with pytest.raises(ValueError, match="redis"):
            create_store(DatabaseConfig(store_backend="redis"))
        # Nothing was cached, so the default still resolves
        from database.store_memory import InMemoryContextStore
        assert isinstance(get_store(), InMemoryContextStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        s2 = get_store()
        assert s1 is s2


# ──────────────────────────────────────────────────────────────
#  Database Session: URL Translation
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("mysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("mysql+pymysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("sqlite:///./test.db", "sqlite+aiosqlite:///./test.db"),
        ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ])
    def test_async_driver_selected(self, url, expected):
        from database.session import _to_async_url
        assert _to_async_url(url) == expected


# ──────────────────────────────────────────────────────────────
#  Cross-DB Models Portability
# ──────────────────────────────────────────────────────────────

class TestModelsPortability:
    """Verify models use portable JSON type instead of JSONB."""

    @pytest.mark.parametrize("table,column", [
        ("chatbots", "nodes"),
        ("whatsapp_flows", "flow_json"),
        ("conversation_contexts", "variables"),
        ("conversation_contexts", "node_outputs"),
    ])
    def test_json_columns(self, table, column):
        from sqlalchemy import JSON
        from database.models import Base
        assert isinstance(Base.metadata.tables[table].columns[column].type, JSON)

    def test_no_jsonb_anywhere(self):
        """Ensure JSONB (PostgreSQL-specific) is not used in any model."""
        from database.models import Base
        for table in Base.metadata.tables.values():
            for col in table.columns:
                col_type_name = type(col.type).__name__
                assert col_type_name != "JSONB", (
                    f"Column {table.name}.{col.name} uses JSONB — "
                    f"use JSON for cross-DB compatibility"
                )

    def test_live_context_uniqueness_column(self):
        from database.models import ContextRow
        assert ContextRow.__table__.columns["active_key"].unique

    def test_all_tables_defined(self):
        from database.models import Base
        expected = {"chatbots", "whatsapp_flows", "conversations",
                    "conversation_contexts", "context_node_outputs"}
        assert set(Base.metadata.tables.keys()) == expected


# ──────────────────────────────────────────────────────────────
#  Config: Database Settings
# ──────────────────────────────────────────────────────────────

class TestDatabaseConfig:
    def test_defaults(self):
        from config.settings import DatabaseConfig
        cfg = DatabaseConfig()
        assert cfg.store_backend == "memory"
        assert "sqlite" in cfg.url
        assert cfg.store_file_dir == "./data"

    def test_yaml_overrides_and_env_substitution(self, tmp_path, monkeypatch):
        from config.settings import load_settings
        monkeypatch.setattr("config.settings._settings", None)
        monkeypatch.setenv("FLOWPILOT_TEST_TOKEN", "secret")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "engine:\n  max_steps_per_event: 7\n  unknown_key: 1\n"
            "whatsapp:\n  access_token: ${FLOWPILOT_TEST_TOKEN}\n"
            "database:\n  store_backend: file\n"
        )

        settings = load_settings(str(path))

        assert settings.engine.max_steps_per_event == 7
        assert settings.engine.session_timeout_minutes == 1440
        assert settings.whatsapp.access_token == "secret"
        assert settings.database.store_backend == "file"

"""
Tests for session lifecycle: creation, backend selection and idle eviction.
"""

import asyncio
import pytest
from datetime import timedelta

from conftest import ScriptedAgent, add_once, make_item
from application.session.session_manager import SessionManager, load_agent_factory, no_agents
from domain.context.memory.durable_context_store import DurableContextStore
from domain.context.memory.in_memory_context_store import InMemoryContextStore
from domain.models.context_item import utc_now


def build_agents():
    return [ScriptedAgent("echo", add_once("echoed"), consumes=["user_input"])]


class TestAgentFactory:
    """Resolving agent factories from dotted paths."""

    def test_missing_path_means_no_agents(self):
        assert load_agent_factory(None) is no_agents
        assert no_agents() == []

    def test_resolves_module_callable(self):
        factory = load_agent_factory("test_session_manager:build_agents")

        assert [agent.id for agent in factory()] == ["echo"]

    @pytest.mark.parametrize("path", ["no_colon", ":missing_module", "module_only:"])
    def test_malformed_path_is_rejected(self, path):
        with pytest.raises(ValueError):
            load_agent_factory(path)


class TestSessionLifecycle:
    """Creating, reusing and closing sessions."""

    @pytest.mark.asyncio
    async def test_create_session_with_memory_store(self, test_settings):
        manager = SessionManager(settings=test_settings, agent_factory=build_agents)

        session = await manager.create_session("abc")

        assert session.session_id == "abc"
        assert session.store_backend == "memory"
        assert isinstance(session.store, InMemoryContextStore)
        assert [agent.id for agent in session.orchestrator.agents] == ["echo"]
        assert session.orchestrator.max_iterations == 5

    @pytest.mark.asyncio
    async def test_same_id_returns_live_session(self, test_settings):
        manager = SessionManager(settings=test_settings)

        first = await manager.create_session("abc")
        second = await manager.create_session("abc")

        assert first is second
        assert len(manager.sessions) == 1

    @pytest.mark.asyncio
    async def test_generated_session_ids_are_unique(self, test_settings):
        manager = SessionManager(settings=test_settings)

        first = await manager.create_session()
        second = await manager.create_session()

        assert first.session_id != second.session_id

    @pytest.mark.asyncio
    async def test_sessions_have_separate_agents_and_stores(self, test_settings):
        manager = SessionManager(settings=test_settings, agent_factory=build_agents)
        first = await manager.create_session("one")
        second = await manager.create_session("two")

        await first.orchestrator.process([make_item("user_input", "hi")])

        assert first.store.has("echoed")
        assert not second.store.has("user_input")
        assert first.orchestrator.agents[0] is not second.orchestrator.agents[0]

    @pytest.mark.asyncio
    async def test_close_session(self, test_settings):
        manager = SessionManager(settings=test_settings)
        await manager.create_session("abc")

        assert await manager.close_session("abc") is True
        assert manager.get_session("abc") is None
        assert await manager.close_session("abc") is False

    @pytest.mark.asyncio
    async def test_session_info(self, test_settings):
        manager = SessionManager(settings=test_settings, agent_factory=build_agents)
        session = await manager.create_session("abc")
        await session.store.add(make_item("b", 1))
        await session.store.add(make_item("a", 2))
        await session.store.create_snapshot("s1")

        info = session.get_info()

        assert info["context_keys"] == ["a", "b"]
        assert info["snapshot_ids"] == ["s1"]
        assert info["agents"] == ["echo"]
        assert manager.list_sessions() == [info]


class TestStoreBackends:
    """Durable stores and the in-memory fallback."""

    @pytest.mark.asyncio
    async def test_sql_backend_uses_durable_store(self, test_settings):
        settings = test_settings.model_copy(update={"store_backend": "sql"})
        manager = SessionManager(settings=settings)

        session = await manager.create_session("durable")
        try:
            assert session.store_backend == "sql"
            assert isinstance(session.store, DurableContextStore)
            await session.store.add(make_item("a", 1))
        finally:
            await manager.shutdown()

        # A new manager on the same database sees the persisted item
        again = SessionManager(settings=settings)
        try:
            restored = await again.create_session("durable")
            assert restored.store.get("a").value == 1
        finally:
            await again.shutdown()

    @pytest.mark.asyncio
    async def test_unreachable_database_falls_back_to_memory(self, test_settings, tmp_path):
        settings = test_settings.model_copy(update={
            "store_backend": "sql",
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'context.db'}",
        })
        manager = SessionManager(settings=settings)

        session = await manager.create_session("fallback")
        try:
            assert session.store_backend == "memory"
            assert isinstance(session.store, InMemoryContextStore)
        finally:
            await manager.shutdown()


class TestEviction:
    """Idle session eviction."""

    @pytest.mark.asyncio
    async def test_idle_sessions_are_evicted(self, test_settings):
        manager = SessionManager(settings=test_settings)
        await manager.create_session("idle")
        await manager.create_session("busy")
        manager.sessions["idle"].last_activity = utc_now() - timedelta(seconds=120)

        evicted = await manager.evict_idle()

        assert evicted == ["idle"]
        assert list(manager.sessions) == ["busy"]

    @pytest.mark.asyncio
    async def test_get_session_refreshes_activity(self, test_settings):
        manager = SessionManager(settings=test_settings)
        session = await manager.create_session("abc")
        session.last_activity = utc_now() - timedelta(seconds=120)

        manager.get_session("abc")

        assert await manager.evict_idle() == []

    @pytest.mark.asyncio
    async def test_session_mid_run_is_not_evicted(self, test_settings):
        started = asyncio.Event()
        release = asyncio.Event()

        async def wait_for_release(agent, context):
            started.set()
            await release.wait()
            return []

        manager = SessionManager(
            settings=test_settings,
            agent_factory=lambda: [ScriptedAgent("slow", wait_for_release)],
        )
        session = await manager.create_session("running")
        run = asyncio.create_task(session.orchestrator.process([]))
        await started.wait()
        session.last_activity = utc_now() - timedelta(seconds=120)

        try:
            assert session.orchestrator.is_running
            assert await manager.evict_idle() == []
            assert manager.get_session("running") is session
        finally:
            release.set()
            await run

        assert not session.orchestrator.is_running

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, test_settings):
        manager = SessionManager(settings=test_settings)
        await manager.create_session("a")
        await manager.create_session("b")

        await manager.shutdown()

        assert manager.sessions == {}

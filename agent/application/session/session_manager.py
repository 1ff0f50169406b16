from typing import Callable, Dict, Iterable, List, Optional, Any
from datetime import datetime, timedelta
from importlib import import_module
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
import asyncio
import uuid
import structlog

from domain.context.context_store import ContextStore
from domain.context.errors import StoreConnectionError
from domain.context.memory.durable_context_store import DurableContextStore
from domain.context.memory.in_memory_context_store import InMemoryContextStore
from domain.models.context_item import utc_now
from domain.orchestration.agents.base_agent import BaseAgent
from domain.orchestration.core.orchestrator import Orchestrator
from infrastructure.config.settings import Settings, get_settings
from infrastructure.observability.logging import agent_logger
from infrastructure.persistence.database import create_engine_for_url

logger = structlog.get_logger(__name__)

AgentFactory = Callable[[], Iterable[BaseAgent]]


def no_agents() -> List[BaseAgent]:
    return []


def load_agent_factory(path: Optional[str]) -> AgentFactory:
    """Resolve a ``module:callable`` path to an agent factory"""

    if not path:
        return no_agents

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Agent factory must look like 'package.module:callable', got {path!r}")

    factory = getattr(import_module(module_name), attribute)
    if not callable(factory):
        raise ValueError(f"Agent factory {path} is not callable")
    return factory


class Session:
    """One logical session: an orchestrator and the store it owns"""

    def __init__(self, session_id: str, orchestrator: Orchestrator, store_backend: str):
        self.session_id = session_id
        self.orchestrator = orchestrator
        self.store_backend = store_backend
        self.created_at = utc_now()
        self.last_activity = self.created_at

    @property
    def store(self) -> ContextStore:
        return self.orchestrator.store

    def touch(self):
        self.last_activity = utc_now()

    def get_info(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "store_backend": self.store_backend,
            "context_keys": sorted(self.store.get_all_keys()),
            "snapshot_ids": sorted(self.store.get_snapshot_ids()),
            "agents": [agent.id for agent in self.orchestrator.agents],
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }


class SessionManager:
    """Creates, tracks and evicts sessions.

    Handed to request handlers explicitly; there is no module-level
    session map.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        agent_factory: Optional[AgentFactory] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.agent_factory = agent_factory or no_agents
        self.sessions: Dict[str, Session] = {}
        self._engine = engine
        self._owns_engine = engine is None
        self._lock = asyncio.Lock()

    async def create_session(self, session_id: Optional[str] = None) -> Session:
        """Create a session, or return the live one with the same id"""

        session_id = session_id or str(uuid.uuid4())

        async with self._lock:
            existing = self.sessions.get(session_id)
            if existing is not None:
                existing.touch()
                return existing

            store, backend = await self._create_store(session_id)
            orchestrator = Orchestrator(
                store=store,
                max_iterations=self.settings.max_iterations,
                agent_timeout=self.settings.agent_timeout_seconds,
                concurrent_agents=self.settings.concurrent_agents,
            )
            for agent in self.agent_factory():
                orchestrator.register_agent(agent)

            session = Session(session_id, orchestrator, backend)
            self.sessions[session_id] = session

        agent_logger.log_context_update(session_id, "session_created", {"store_backend": backend})
        return session

    async def _create_store(self, session_id: str):
        """Durable store when configured, in-memory when not or when unreachable"""

        if not self.settings.uses_durable_store:
            return InMemoryContextStore(), "memory"

        try:
            if self._engine is None:
                self._engine = create_engine_for_url(
                    self.settings.database_url, echo=self.settings.database_echo
                )
            store = DurableContextStore(
                session_id,
                engine=self._engine,
                history_load_limit=self.settings.history_load_limit,
            )
            await store.connect()
            return store, "sql"
        except (StoreConnectionError, SQLAlchemyError) as e:
            logger.error(
                "Durable store unavailable, falling back to in-memory store",
                session_id=session_id,
                error=str(e),
            )
            return InMemoryContextStore(), "memory"

    def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session and refresh its activity time"""

        session = self.sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    async def close_session(self, session_id: str) -> bool:
        """Close a session and release its store"""

        async with self._lock:
            session = self.sessions.pop(session_id, None)

        if session is None:
            return False

        await session.store.close()
        agent_logger.log_context_update(session_id, "session_closed")
        return True

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [session.get_info() for session in self.sessions.values()]

    async def evict_idle(self, now: Optional[datetime] = None) -> List[str]:
        """Close sessions idle for longer than the configured TTL, skipping ones mid-run"""

        now = now or utc_now()
        ttl = timedelta(seconds=self.settings.session_ttl_seconds)
        stale = [
            session_id
            for session_id, session in list(self.sessions.items())
            if now - session.last_activity > ttl and not session.orchestrator.is_running
        ]

        for session_id in stale:
            logger.warning("Evicting idle session", session_id=session_id)
            await self.close_session(session_id)

        return stale

    async def sweep_forever(self):
        """Periodically evict idle sessions"""
        while True:
            try:
                await self.evict_idle()
            except Exception as e:
                logger.error("Session sweep error", error=str(e))

            await asyncio.sleep(self.settings.session_sweep_interval_seconds)

    async def shutdown(self):
        """Close every session and the shared engine"""

        for session_id in list(self.sessions.keys()):
            await self.close_session(session_id)

        if self._owns_engine and self._engine is not None:
            await self._engine.dispose()
            self._engine = None

        logger.info("Session manager shut down")

"""
Shared pytest fixtures for context orchestrator tests.
"""

import pytest
import pytest_asyncio
from typing import Any, Iterable, List, Optional

from domain.context.memory.durable_context_store import DurableContextStore
from domain.context.memory.in_memory_context_store import InMemoryContextStore
from domain.models.context_item import ContextItem, create_context_item
from domain.orchestration.agents.base_agent import BaseAgent
from infrastructure.config.settings import Settings
from infrastructure.observability.logging import metrics


# ============================================
# Helpers
# ============================================

def make_item(key: str, value: Any = None, confidence: float = 1.0, source: str = "user",
              **kwargs) -> ContextItem:
    return create_context_item(key, value, source, confidence=confidence, **kwargs)


class ScriptedAgent(BaseAgent):
    """Agent that returns operations computed by a callback and counts its calls"""

    def __init__(self, agent_id: str, respond, consumes: Iterable[str] = (),
                 produces: Iterable[str] = ()):
        super().__init__(agent_id, agent_id.title(), consumes_context=consumes,
                         produces_context=produces)
        self.respond = respond
        self.calls = 0
        self.seen_keys: List[set] = []

    async def process(self, context):
        self.calls += 1
        self.seen_keys.append(context.get_all_keys())
        return await self.respond(self, context)


def add_once(key: str, value: Any = True, confidence: float = 0.9):
    """Respond with an add for ``key`` until it is live, then nothing"""

    async def respond(agent: BaseAgent, context):
        if context.has(key):
            return []
        return [agent.create_add_operation(key, value, confidence)]

    return respond


def returns(operations: Optional[list] = None):
    async def respond(agent, context):
        return list(operations or [])

    return respond


# ============================================
# Fixtures
# ============================================

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def memory_store():
    return InMemoryContextStore()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'context.db'}"


@pytest_asyncio.fixture
async def durable_store(database_url):
    store = DurableContextStore("session-1", database_url=database_url)
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def test_settings(database_url):
    return Settings(
        _env_file=None,
        environment="test",
        log_format="console",
        store_backend="memory",
        database_url=database_url,
        max_iterations=5,
        session_ttl_seconds=60,
    )

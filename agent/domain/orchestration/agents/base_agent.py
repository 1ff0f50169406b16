from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
import structlog

from domain.context.context_store import ContextView, has_required_context
from domain.models.context_item import (
    AddOperation,
    ContextItem,
    ContextOperation,
    DeleteOperation,
    SnapshotOperation,
    UpdateOperation,
    utc_now,
)

logger = structlog.get_logger(__name__)


class AgentCapabilities(BaseModel):
    """Declared context keys an agent reads and writes, plus its skills"""
    model_config = ConfigDict(frozen=True)

    consumes: FrozenSet[str] = Field(default_factory=frozenset)
    produces: FrozenSet[str] = Field(default_factory=frozenset)
    skills: Tuple[str, ...] = ()


class BaseAgent(ABC):
    """Base class for agents driven by the orchestrator.

    Agents are stateless with respect to the context pool: they read a
    ``ContextView`` and return operations, never mutating the store directly.
    """

    def __init__(
        self,
        agent_id: str,
        name: str,
        description: str = "",
        consumes_context: Iterable[str] = (),
        produces_context: Iterable[str] = (),
        capabilities: Iterable[str] = (),
    ):
        self.id = agent_id
        self.name = name
        self.description = description
        self.consumes_context: List[str] = list(dict.fromkeys(consumes_context))
        self.produces_context: List[str] = list(dict.fromkeys(produces_context))
        self.capabilities: List[str] = list(capabilities)
        self.created_at = utc_now()
        self.last_active: Optional[datetime] = None
        self.log = logger.bind(agent_id=agent_id)

    @abstractmethod
    async def process(self, context: ContextView) -> List[ContextOperation]:
        """Inspect the context and return the operations to apply"""
        pass

    @property
    def descriptor(self) -> AgentCapabilities:
        return AgentCapabilities(
            consumes=frozenset(self.consumes_context),
            produces=frozenset(self.produces_context),
            skills=tuple(self.capabilities),
        )

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_active = utc_now()

    def has_required_context(self, context: ContextView, keys: Optional[Iterable[str]] = None) -> bool:
        """True when all given keys (default: every consumed key) are live"""
        return has_required_context(context, self.consumes_context if keys is None else keys)

    def create_add_operation(
        self,
        key: str,
        value: Any,
        confidence: float,
        reasoning: Optional[str] = None,
        parent_context_keys: Optional[List[str]] = None,
    ) -> AddOperation:
        return AddOperation(item=ContextItem(
            key=key,
            value=value,
            confidence=confidence,
            source=self.id,
            timestamp=utc_now(),
            reasoning=reasoning,
            parent_context_keys=parent_context_keys,
        ))

    def create_update_operation(
        self,
        key: str,
        value: Any,
        confidence: Optional[float] = None,
        reasoning: Optional[str] = None,
        parent_context_keys: Optional[List[str]] = None,
    ) -> UpdateOperation:
        return UpdateOperation(
            key=key,
            value=value,
            confidence=confidence,
            reasoning=reasoning,
            parent_context_keys=parent_context_keys,
        )

    def create_delete_operation(self, key: str) -> DeleteOperation:
        return DeleteOperation(key=key)

    def create_snapshot_operation(self, snapshot_id: str) -> SnapshotOperation:
        return SnapshotOperation(snapshot_id=snapshot_id)

    def get_info(self) -> Dict[str, Any]:
        """Get agent information"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "capabilities": list(self.capabilities),
            "consumes_context": list(self.consumes_context),
            "produces_context": list(self.produces_context),
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat() if self.last_active else None,
        }


AgentHandler = Callable[[ContextView], Awaitable[List[ContextOperation]]]


class FunctionAgent(BaseAgent):
    """Agent whose ``process`` is a plain coroutine function"""

    def __init__(self, agent_id: str, handler: AgentHandler, name: Optional[str] = None, **kwargs):
        super().__init__(agent_id, name or agent_id, **kwargs)
        self._handler = handler

    async def process(self, context: ContextView) -> List[ContextOperation]:
        return await self._handler(context)

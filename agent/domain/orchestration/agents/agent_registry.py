from typing import Dict, List, Any, Iterable, Optional, Set
import structlog

from .base_agent import BaseAgent
from ..errors import AgentNotFoundError, DuplicateAgentError

logger = structlog.get_logger(__name__)


class AgentRegistry:
    """Registry of agents keyed by id, indexed by the context keys they consume"""

    def __init__(self, agents: Optional[Iterable[BaseAgent]] = None):
        self.agents: Dict[str, BaseAgent] = {}
        self.consumers: Dict[str, List[str]] = {}
        # Agents with no consumed keys run on every iteration
        self.unconditional: List[str] = []
        for agent in agents or ():
            self.register(agent)

    def register(self, agent: BaseAgent):
        """Register a new agent; ids must be unique"""

        if agent.id in self.agents:
            raise DuplicateAgentError(agent.id)

        self.agents[agent.id] = agent

        consumes = agent.descriptor.consumes
        if not consumes:
            self.unconditional.append(agent.id)
        for key in consumes:
            self.consumers.setdefault(key, []).append(agent.id)

        logger.info("Registered agent", agent_id=agent.id, agent_name=agent.name)

    def unregister(self, agent_id: str) -> BaseAgent:
        """Remove an agent and its index entries"""

        agent = self.agents.pop(agent_id, None)
        if agent is None:
            raise AgentNotFoundError(agent_id)

        if agent_id in self.unconditional:
            self.unconditional.remove(agent_id)
        for key in list(self.consumers):
            if agent_id in self.consumers[key]:
                self.consumers[key].remove(agent_id)
            if not self.consumers[key]:
                del self.consumers[key]

        return agent

    def get(self, agent_id: str) -> Optional[BaseAgent]:
        return self.agents.get(agent_id)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self.agents

    def __len__(self) -> int:
        return len(self.agents)

    def list_agents(self) -> List[BaseAgent]:
        """All agents in registration order"""
        return list(self.agents.values())

    def consumers_of(self, key: str) -> List[BaseAgent]:
        return [self.agents[agent_id] for agent_id in self.consumers.get(key, [])]

    def eligible_for(self, live_keys: Iterable[str]) -> List[BaseAgent]:
        """Agents consuming any live key, plus unconditional ones, in registration order"""

        selected: Set[str] = set(self.unconditional)
        for key in live_keys:
            selected.update(self.consumers.get(key, ()))

        return [agent for agent_id, agent in self.agents.items() if agent_id in selected]

    def describe(self) -> List[Dict[str, Any]]:
        """JSON-ready summaries of every registered agent"""
        return [agent.get_info() for agent in self.agents.values()]

from typing import List


class OrchestratorError(Exception):
    """Base class for orchestration configuration failures"""


class DuplicateAgentError(OrchestratorError):
    """Raised when an agent id is registered twice"""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent with ID {agent_id} already registered")
        self.agent_id = agent_id


class AgentNotFoundError(OrchestratorError):
    """Raised when looking up an agent id that is not registered"""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent with ID {agent_id} is not registered")
        self.agent_id = agent_id


class PartialOperationError(Exception):
    """Raised when a multi-item operation fails after applying some of its items"""

    def __init__(self, applied_keys: List[str], cause: Exception):
        super().__init__(f"Applied {len(applied_keys)} item(s) before failing: {cause}")
        self.applied_keys = applied_keys
        self.cause = cause

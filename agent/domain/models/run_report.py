from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from .context_item import utc_now


class RunOutcome(str, Enum):
    """How a scheduling run terminated"""
    CONVERGED = "converged"
    NO_ELIGIBLE_AGENTS = "no_eligible_agents"
    ITERATION_LIMIT = "iteration_limit"


class AgentRunStatus(str, Enum):
    """Result of a single agent invocation"""
    PRODUCED = "produced"
    NO_OPERATIONS = "no_operations"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class AgentRunRecord(BaseModel):
    """One agent's contribution to one iteration"""
    agent_id: str
    status: AgentRunStatus
    operations_returned: int = 0
    operations_applied: int = 0
    operations_failed: int = 0
    affected_keys: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    @property
    def made_progress(self) -> bool:
        # A partially applied merge counts as failed but still changed the store
        return self.operations_applied > 0 or bool(self.affected_keys)


class IterationReport(BaseModel):
    """Summary of one pass over the eligible agents"""
    index: int = Field(description="1-based iteration number")
    eligible_agents: List[str] = Field(default_factory=list)
    agent_runs: List[AgentRunRecord] = Field(default_factory=list)

    @property
    def made_progress(self) -> bool:
        return any(run.made_progress for run in self.agent_runs)

    @property
    def changed_keys(self) -> List[str]:
        keys: Dict[str, None] = {}
        for run in self.agent_runs:
            for key in run.affected_keys:
                keys[key] = None
        return list(keys)


class RunReport(BaseModel):
    """Outcome of a full ``Orchestrator.process`` call"""
    outcome: RunOutcome
    iterations: List[IterationReport] = Field(default_factory=list)
    max_iterations: int
    seeded_keys: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def iteration_count(self) -> int:
        return len(self.iterations)

    @property
    def hit_iteration_limit(self) -> bool:
        return self.outcome == RunOutcome.ITERATION_LIMIT

    def get_summary(self) -> Dict[str, Any]:
        """Get a compact, JSON-ready summary of the run"""
        return {
            "outcome": self.outcome.value,
            "iterations": self.iteration_count,
            "max_iterations": self.max_iterations,
            "changed_keys": [key for it in self.iterations for key in it.changed_keys],
            "failed_agents": sorted({
                run.agent_id
                for it in self.iterations
                for run in it.agent_runs
                if run.status in (AgentRunStatus.FAILED, AgentRunStatus.TIMED_OUT)
            }),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

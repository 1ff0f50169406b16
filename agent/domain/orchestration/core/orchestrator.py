from typing import TypedDict, Annotated, List, Dict, Any, Iterable, Optional, Set, Tuple, Literal
from langgraph.graph import StateGraph, END
from pydantic import TypeAdapter
import asyncio
import operator
import time
import uuid
import structlog

from domain.context.context_store import ContextStore, ContextView
from domain.context.memory.in_memory_context_store import InMemoryContextStore
from domain.models.context_item import (
    AddOperation,
    ContextItem,
    ContextOperation,
    DeleteOperation,
    MergeOperation,
    SnapshotOperation,
    UpdateOperation,
    utc_now,
)
from domain.models.run_report import (
    AgentRunRecord,
    AgentRunStatus,
    IterationReport,
    RunOutcome,
    RunReport,
)
from domain.orchestration.agents.agent_registry import AgentRegistry
from domain.orchestration.agents.base_agent import BaseAgent
from domain.orchestration.errors import PartialOperationError
from infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10

_operation_adapter = TypeAdapter(ContextOperation)


class SchedulerState(TypedDict):
    """State for the scheduling graph"""
    initial_items: List[ContextItem]
    iteration: int
    eligible: List[str]
    made_progress: bool
    iterations: Annotated[List[IterationReport], operator.add]
    outcome: Optional[RunOutcome]


class Orchestrator:
    """Drives registered agents to a bounded fixpoint over one context store.

    Each iteration selects every agent whose consumed keys intersect the
    live key set (agents with no consumed keys are always eligible), runs
    them, and applies their operations. The loop ends when an iteration
    applies nothing, when no agent is eligible, or after ``max_iterations``.

    In sequential mode agents run in registration order and each sees the
    operations applied by the agents before it. In concurrent mode all
    agents of an iteration run together against one frozen view and their
    operations are applied afterwards, in registration order. Two agents
    writing the same key in one iteration resolve last-writer-wins.
    """

    def __init__(
        self,
        store: Optional[ContextStore] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        agent_timeout: Optional[float] = None,
        concurrent_agents: bool = False,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self.store = store if store is not None else InMemoryContextStore()
        self.registry = AgentRegistry()
        self.max_iterations = max_iterations
        self.agent_timeout = agent_timeout
        self.concurrent_agents = concurrent_agents
        self.last_report: Optional[RunReport] = None
        self._in_flight: Set[str] = set()
        self._run_lock = asyncio.Lock()
        self.workflow = self._create_workflow()

    def register_agent(self, agent: BaseAgent) -> None:
        """Register an agent; a duplicate id raises DuplicateAgentError"""
        self.registry.register(agent)

    @property
    def agents(self) -> List[BaseAgent]:
        return self.registry.list_agents()

    @property
    def is_running(self) -> bool:
        """True while a process call holds the run lock"""
        return self._run_lock.locked()

    def get_context_store(self) -> ContextStore:
        return self.store

    def _create_workflow(self):
        """Create the scheduling graph: seed -> (select -> run)* -> finish"""

        workflow = StateGraph(SchedulerState)

        workflow.add_node("seed", self.seed_node)
        workflow.add_node("select_agents", self.select_agents_node)
        workflow.add_node("run_agents", self.run_agents_node)
        workflow.add_node("finish", self.finish_node)

        workflow.set_entry_point("seed")
        workflow.add_edge("seed", "select_agents")

        workflow.add_conditional_edges(
            "select_agents",
            self.route_after_selection,
            {
                "run": "run_agents",
                "finish": "finish",
            }
        )

        workflow.add_conditional_edges(
            "run_agents",
            self.route_after_iteration,
            {
                "continue": "select_agents",
                "finish": "finish",
            }
        )

        workflow.add_edge("finish", END)

        return workflow.compile()

    async def process(self, initial_items: Iterable[ContextItem]) -> ContextStore:
        """Seed the store and run agents until fixpoint or the iteration bound"""

        items = list(initial_items)

        async with self._run_lock:
            self._in_flight.clear()
            report = RunReport(
                outcome=RunOutcome.CONVERGED,
                max_iterations=self.max_iterations,
                seeded_keys=[item.key for item in items],
            )

            with structlog.contextvars.bound_contextvars(run_id=uuid.uuid4().hex):
                logger.info("Starting context processing", initial_items=len(items),
                            agents=len(self.registry))

                final_state = await self.workflow.ainvoke(
                    {
                        "initial_items": items,
                        "iteration": 0,
                        "eligible": [],
                        "made_progress": True,
                        "iterations": [],
                        "outcome": None,
                    },
                    config={"recursion_limit": 2 * self.max_iterations + 5},
                )

                report.iterations = final_state["iterations"]
                report.outcome = final_state["outcome"]
                report.finished_at = utc_now()
                self.last_report = report

                if report.outcome == RunOutcome.ITERATION_LIMIT:
                    logger.warning("Reached maximum iterations, processing halted",
                                   iterations=report.iteration_count)
                else:
                    logger.info("Processing complete", outcome=report.outcome.value,
                                iterations=report.iteration_count)

                metrics.set_gauge("store.live_keys", len(self.store.get_all_keys()))

        return self.store

    async def seed_node(self, state: SchedulerState) -> Dict[str, Any]:
        """Merge the caller's initial items into the store"""
        await self.store.merge(state["initial_items"])
        return {"iteration": 0}

    async def select_agents_node(self, state: SchedulerState) -> Dict[str, Any]:
        """Compute the eligible set for the next iteration"""

        eligible = [agent.id for agent in self.get_eligible_agents()]
        update: Dict[str, Any] = {"eligible": eligible}

        if not eligible:
            update["made_progress"] = False
            update["outcome"] = RunOutcome.NO_ELIGIBLE_AGENTS

        return update

    async def run_agents_node(self, state: SchedulerState) -> Dict[str, Any]:
        """Run every eligible agent once and apply their operations"""

        iteration = state["iteration"] + 1
        agents = [self.registry.get(agent_id) for agent_id in state["eligible"]]
        report = IterationReport(index=iteration, eligible_agents=list(state["eligible"]))

        if self.concurrent_agents:
            view = ContextView.frozen(self.store)
            results = await asyncio.gather(*(self._invoke_agent(agent, view) for agent in agents))
            for agent, (operations, record) in zip(agents, results):
                await self._apply_operations(operations, agent.id, record)
                report.agent_runs.append(record)
        else:
            for agent in agents:
                operations, record = await self._invoke_agent(agent, ContextView(self.store))
                await self._apply_operations(operations, agent.id, record)
                report.agent_runs.append(record)

        agent_logger.log_iteration(
            iteration=iteration,
            eligible_agents=report.eligible_agents,
            made_progress=report.made_progress,
            changed_keys=report.changed_keys,
        )

        return {
            "iteration": iteration,
            "made_progress": report.made_progress,
            "iterations": [report],
        }

    async def finish_node(self, state: SchedulerState) -> Dict[str, Any]:
        """Classify how the run ended"""

        if state.get("outcome") is not None:
            return {"outcome": state["outcome"]}
        if state["made_progress"]:
            return {"outcome": RunOutcome.ITERATION_LIMIT}
        return {"outcome": RunOutcome.CONVERGED}

    def route_after_selection(self, state: SchedulerState) -> Literal["run", "finish"]:
        return "run" if state["eligible"] else "finish"

    def route_after_iteration(self, state: SchedulerState) -> Literal["continue", "finish"]:
        if state["made_progress"] and state["iteration"] < self.max_iterations:
            return "continue"
        return "finish"

    def get_eligible_agents(self) -> List[BaseAgent]:
        """Agents whose consumed keys intersect the live keys, minus in-flight ones"""

        return [
            agent for agent in self.registry.eligible_for(self.store.get_all_keys())
            if agent.id not in self._in_flight
        ]

    async def _invoke_agent(
        self, agent: BaseAgent, view: ContextView
    ) -> Tuple[List[Any], AgentRunRecord]:
        """Run one agent, isolating its failures"""

        self._in_flight.add(agent.id)
        started = time.perf_counter()
        operations: List[Any] = []

        try:
            logger.debug("Processing agent", agent_id=agent.id, agent_name=agent.name)

            if self.agent_timeout is not None:
                result = await asyncio.wait_for(agent.process(view), timeout=self.agent_timeout)
            else:
                result = await agent.process(view)

            operations = list(result or [])
            status = AgentRunStatus.PRODUCED if operations else AgentRunStatus.NO_OPERATIONS
            error = None
        except asyncio.TimeoutError:
            status = AgentRunStatus.TIMED_OUT
            error = f"Agent exceeded {self.agent_timeout}s deadline"
            logger.error("Agent timed out", agent_id=agent.id, timeout=self.agent_timeout)
            metrics.increment_counter("agents.failed", tags={"agent_id": agent.id})
        except Exception as e:
            status = AgentRunStatus.FAILED
            error = str(e)
            logger.exception("Error processing agent", agent_id=agent.id)
            metrics.increment_counter("agents.failed", tags={"agent_id": agent.id})
        finally:
            self._in_flight.discard(agent.id)
            agent.update_activity()

        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_latency("agent.process", duration_ms, tags={"agent_id": agent.id})

        agent_logger.log_agent_event(
            event_type=status.value,
            agent_id=agent.id,
            data={"operations": len(operations)},
            duration_ms=round(duration_ms, 3),
        )

        return operations, AgentRunRecord(
            agent_id=agent.id,
            status=status,
            operations_returned=len(operations),
            error=error,
            duration_ms=duration_ms,
        )

    async def _apply_operations(
        self, operations: List[Any], agent_id: str, record: AgentRunRecord
    ) -> None:
        """Apply operations in order; each failure is logged and skipped"""

        affected: Dict[str, None] = {}

        for raw in operations:
            op_type = _operation_type(raw)
            try:
                operation = raw if isinstance(raw, _OPERATION_CLASSES) else _operation_adapter.validate_python(raw)
                keys = await self.apply_operation(operation)
            except Exception as e:
                record.operations_failed += 1
                # Items a merge applied before failing still changed the store
                if isinstance(e, PartialOperationError):
                    for key in e.applied_keys:
                        affected[key] = None
                agent_logger.log_operation(agent_id, op_type, _operation_keys(raw),
                                           success=False, error=str(e))
                metrics.increment_counter("operations.failed", tags={"agent_id": agent_id})
                continue

            record.operations_applied += 1
            for key in keys:
                affected[key] = None
            agent_logger.log_operation(agent_id, op_type, keys)
            metrics.increment_counter("operations.applied", tags={"agent_id": agent_id})

        record.affected_keys = list(affected)

    async def apply_operation(self, operation: ContextOperation) -> List[str]:
        """Apply a single operation to the store and return the keys it touched

        A merge that fails part way raises PartialOperationError carrying the keys
        it had already applied; those items are not rolled back.
        """

        if isinstance(operation, AddOperation):
            await self.store.add(operation.item)
            return [operation.item.key]

        if isinstance(operation, UpdateOperation):
            await self.store.update(
                operation.key,
                operation.value,
                operation.confidence,
                source=operation.source,
                reasoning=operation.reasoning,
                parent_context_keys=operation.parent_context_keys,
            )
            return [operation.key]

        if isinstance(operation, DeleteOperation):
            await self.store.delete(operation.key)
            return [operation.key]

        if isinstance(operation, MergeOperation):
            applied: List[str] = []
            for item in operation.items:
                try:
                    await self.store.merge([item])
                except Exception as e:
                    if not applied:
                        raise
                    raise PartialOperationError(applied, e) from e
                applied.append(item.key)
            return applied

        if isinstance(operation, SnapshotOperation):
            await self.store.create_snapshot(operation.snapshot_id)
            return []

        raise TypeError(f"Unsupported operation: {type(operation).__name__}")


_OPERATION_CLASSES = (AddOperation, UpdateOperation, DeleteOperation, MergeOperation, SnapshotOperation)


def _operation_type(raw: Any) -> str:
    value = raw.get("type") if isinstance(raw, dict) else getattr(raw, "type", None)
    return getattr(value, "value", value) or type(raw).__name__


def _operation_keys(raw: Any) -> List[str]:
    if isinstance(raw, AddOperation):
        return [raw.item.key]
    if isinstance(raw, MergeOperation):
        return [item.key for item in raw.items]
    key = raw.get("key") if isinstance(raw, dict) else getattr(raw, "key", None)
    return [key] if isinstance(key, str) else []

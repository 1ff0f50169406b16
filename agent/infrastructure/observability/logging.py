import structlog
import logging
import sys
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "context-orchestrator",
    environment: str = "development",
    version: str = "unknown",
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment,
        version=version,
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Session and run ids bound by the session manager / orchestrator
    context = structlog.contextvars.get_contextvars()
    for name in ("session_id", "run_id"):
        if name not in event_dict and context.get(name):
            event_dict[name] = context[name]

    return event_dict


class AgentLogger:
    """Specialized logger for scheduling events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(
        self,
        event_type: str,
        agent_id: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log agent lifecycle events (invoked, produced, failed)"""

        self.logger.info(
            "agent_event",
            event_type=event_type,
            agent_id=agent_id,
            data=data or {},
            **kwargs
        )

    def log_operation(
        self,
        agent_id: str,
        operation_type: str,
        keys: List[str],
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log the application of one operation to the store"""

        if success:
            self.logger.debug(
                "operation_applied",
                agent_id=agent_id,
                operation_type=operation_type,
                keys=keys,
            )
        else:
            self.logger.error(
                "operation_failed",
                agent_id=agent_id,
                operation_type=operation_type,
                keys=keys,
                error=error,
            )

    def log_iteration(
        self,
        iteration: int,
        eligible_agents: List[str],
        made_progress: bool,
        changed_keys: Optional[List[str]] = None
    ):
        """Log the end of a scheduling iteration"""

        self.logger.debug(
            "iteration_completed",
            iteration=iteration,
            eligible_agents=eligible_agents,
            made_progress=made_progress,
            changed_keys=changed_keys or [],
        )

    def log_context_update(
        self,
        session_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log session-level context changes"""

        self.logger.info(
            "context_update",
            session_id=session_id,
            action=action,
            details=details or {}
        )


# Global logger instance
agent_logger = AgentLogger("orchestration")


class MetricsCollector:
    """In-process scheduler metrics; every sample is also emitted as a debug log line.

    Counters keep a per-tag breakdown (``agent_id=nlp``) next to their total.
    """

    def __init__(self):
        self.latencies: Dict[str, Dict[str, float]] = {}
        self.counters: Dict[str, int] = {}
        self.tagged_counters: Dict[str, Dict[str, int]] = {}
        self.gauges: Dict[str, float] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        stats = self.latencies.setdefault(
            operation, {"count": 0, "sum": 0.0, "min": duration_ms, "max": duration_ms}
        )
        stats["count"] += 1
        stats["sum"] += duration_ms
        stats["min"] = min(stats["min"], duration_ms)
        stats["max"] = max(stats["max"], duration_ms)

        self._emit("latency", operation, duration_ms, tags)

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter and its per-tag breakdown"""

        self.counters[name] = self.counters.get(name, 0) + value

        if tags:
            by_tag = self.tagged_counters.setdefault(name, {})
            for tag_key, tag_value in tags.items():
                label = f"{tag_key}={tag_value}"
                by_tag[label] = by_tag.get(label, 0) + value

        self._emit("counter", name, value, tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        self._emit("gauge", name, value, tags)

    def counter_by_tag(self, name: str) -> Dict[str, int]:
        return dict(self.tagged_counters.get(name, {}))

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Flat summary: ``latency.<operation>`` stats, then counters and gauges"""

        summary: Dict[str, Any] = {
            f"latency.{operation}": {
                "count": stats["count"],
                "avg": stats["sum"] / stats["count"],
                "min": stats["min"],
                "max": stats["max"],
            }
            for operation, stats in self.latencies.items()
        }
        summary.update(self.counters)
        summary.update(self.gauges)
        return summary

    def reset(self):
        self.latencies.clear()
        self.counters.clear()
        self.tagged_counters.clear()
        self.gauges.clear()

    def _emit(self, metric_type: str, name: str, value: float, tags: Optional[Dict[str, str]]):
        agent_logger.logger.debug(
            "metric",
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
        )


# Global metrics collector
metrics = MetricsCollector()

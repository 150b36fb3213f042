"""
Structured logging and in-process metrics.

Logging goes through structlog on top of the stdlib root logger, so third
party libraries (httpx) end up in the same stream. Per-connection context
(``connection_id``, ``request_type``) is bound with structlog contextvars by
the server and merged into every line logged while a request is served.
"""

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    service_name: str = "llm-workspace"
) -> None:
    """Configure structlog with a JSON or console renderer on stderr"""

    # stdout stays free for CLI output
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        version=os.getenv("SERVICE_VERSION", "unknown"),
        pid=os.getpid(),
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Ensure every entry has a timestamp and, inside a request, its connection"""

    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    connection_id = structlog.contextvars.get_contextvars().get("connection_id")
    if connection_id and "connection_id" not in event_dict:
        event_dict["connection_id"] = connection_id

    return event_dict


class AgentLogger:
    """Event-style logging for tool calls, loop transitions and store changes"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_tool_execution(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        result_length: Optional[int] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        # Content arguments can be whole files; log their size only
        logged_arguments = {
            key: f"<{len(value)} chars>" if isinstance(value, str) and len(value) > 200 else value
            for key, value in arguments.items()
        }
        log = self.logger.info if success else self.logger.warning
        log(
            "tool_execution",
            tool_name=tool_name,
            arguments=logged_arguments,
            result_length=result_length,
            duration_ms=round(duration_ms, 1) if duration_ms is not None else None,
            success=success,
            error=error
        )

    def log_state_transition(
        self,
        from_state: str,
        to_state: str,
        turn: int,
        condition: Optional[str] = None
    ):
        self.logger.debug(
            "state_transition",
            from_state=from_state,
            to_state=to_state,
            turn=turn,
            condition=condition
        )

    def log_knowledge_update(self, action: str, details: Optional[Dict[str, Any]] = None):
        self.logger.info("knowledge_update", action=action, **(details or {}))


agent_logger = AgentLogger("llm_workspace.agent")


class LatencyStats:
    """Running count, total, min and max of one operation's latency"""

    def __init__(self):
        self.count = 0
        self.total_ms = 0.0
        self.min_ms: Optional[float] = None
        self.max_ms = 0.0

    def add(self, duration_ms: float):
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg": self.total_ms / self.count if self.count else 0.0,
            "min": self.min_ms or 0.0,
            "max": self.max_ms,
        }


class MetricsCollector:
    """In-process latencies and counters, summarised at shutdown.

    Tagged latencies and counter increments are also kept per tag, e.g.
    ``requests[type=stats]`` or ``latency.tool[tool=read_file]``.
    """

    def __init__(self):
        self.latencies: Dict[str, LatencyStats] = {}
        self.counters: Dict[str, int] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        for key in _tagged_keys(operation, tags):
            self.latencies.setdefault(key, LatencyStats()).add(duration_ms)
        agent_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        for key in _tagged_keys(name, tags):
            self.counters[key] = self.counters.get(key, 0) + value

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            f"latency.{operation}": stats.summary()
            for operation, stats in self.latencies.items()
        }
        summary.update(self.counters)
        return summary

    def reset(self):
        self.latencies.clear()
        self.counters.clear()


def _tagged_keys(name: str, tags: Optional[Dict[str, str]]) -> List[str]:
    return [name] + [f"{name}[{key}={tag}]" for key, tag in (tags or {}).items()]


metrics = MetricsCollector()

"""Structured logging with a per-message trace id.

Every inbound message gets a trace id stored in a ContextVar, so log lines
emitted anywhere below the pipeline (stores, router, executors) can be tied
back to the message that caused them.
"""

import json
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


class StructuredLogger:
    """Structured logger with JSON payloads and trace id support."""

    def __init__(self, component: str):
        """Initialize structured logger for a component.

        Args:
            component: Name of the component (e.g., "fsm.lock", "fsm.routing")
        """
        self.component = component

    def _format_structured_log(
        self, level: str, message: str, **kwargs: Any
    ) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "component": self.component,
            "message": message,
            "trace_id": trace_id_var.get(),
        }
        if kwargs:
            log_entry["data"] = kwargs
        return log_entry

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        structured_data = self._format_structured_log(level, message, **kwargs)
        logger.opt(depth=2).log(
            level, f"[{self.component}] {message} | {json.dumps(structured_data, default=str)}"
        )

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, **kwargs)

    def log_transition(
        self,
        user_id: str,
        from_state: str,
        to_state: str,
        trigger: str,
        success: bool = True,
        error: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """Log a router state transition.

        Args:
            user_id: User identifier
            from_state: Source state
            to_state: Target state
            trigger: What triggered the transition
            success: Whether transition succeeded
            error: Error message if transition failed
            **kwargs: Additional context (kind, provider_message_id, ...)
        """
        self.info(
            f"State transition: {from_state} -> {to_state}",
            user_id=user_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            success=success,
            error=error,
            **kwargs,
        )


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Set the trace id for the current context, generating one if needed."""
    if trace_id is None:
        trace_id = uuid.uuid4().hex[:12]
    trace_id_var.set(trace_id)
    return trace_id


def get_structured_logger(component: str) -> StructuredLogger:
    """Factory function to create a structured logger for a component."""
    return StructuredLogger(component)

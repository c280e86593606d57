"""
Structured logging for the campaign engine.

JSON logs for production, readable lines for dev.
Every line of a pass carries the conversation id (campaign:chat).

Usage:
    from campaign_engine.logger import logger

    logger.set_conversation("camp_1:5511999999999@c.us")
    logger.info("Node executed", node_id="3", node_type="agentic")
    logger.metric("pass_duration_ms", 42.0, steps=3)
"""

import logging
import json
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from campaign_engine.settings import settings


# Context-local storage so parallel passes in the threadpool don't mix ids
_conversation_id_var: ContextVar[Optional[str]] = ContextVar('conversation_id', default=None)
_extra_context_var: ContextVar[Optional[Dict[str, Any]]] = ContextVar('extra_context', default=None)


class StructuredLogger:
    """
    Structured logger with JSON output and conversation tracing.

    Features:
    - JSON format for production (LOG_FORMAT=json)
    - Readable format for development (default)
    - conversation_id attached to every record
    - metric() and event() for audit and analytics
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

        if not self.logger.handlers:
            self._setup_logger()

    def _setup_logger(self) -> None:
        """Configure the logger from settings and environment"""
        level_name = settings.get_nested("logging.level", "INFO")
        level = getattr(logging, level_name.upper(), logging.INFO)
        self.logger.setLevel(level)

        handler = logging.StreamHandler()
        handler.setLevel(level)

        log_format = os.environ.get("LOG_FORMAT", "readable")

        if log_format == "json":
            formatter = logging.Formatter("%(message)s")
        else:
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - %(message)s",
                datefmt="%H:%M:%S"
            )

        handler.setFormatter(formatter)
        self.logger.addHandler(handler)

        self.logger.propagate = False

    @property
    def conversation_id(self) -> Optional[str]:
        """Context-local conversation_id"""
        return _conversation_id_var.get()

    def set_conversation(self, conv_id: str) -> None:
        """Set conversation_id (context-local)"""
        _conversation_id_var.set(conv_id)

    def clear_conversation(self) -> None:
        """Clear conversation_id"""
        _conversation_id_var.set(None)

    @property
    def _extra_context(self) -> Dict[str, Any]:
        """Context-local extra fields"""
        ctx = _extra_context_var.get()
        if ctx is None:
            ctx = {}
            _extra_context_var.set(ctx)
        return ctx

    def set_context(self, **kwargs: Any) -> None:
        """Set extra context (context-local)"""
        ctx = dict(self._extra_context)
        ctx.update(kwargs)
        _extra_context_var.set(ctx)

    def clear_context(self) -> None:
        """Clear extra context"""
        _extra_context_var.set({})

    def _format_structured(self, level: str, message: str, **kwargs: Any) -> Dict[str, Any]:
        """Build a structured record"""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "logger": self.name,
            "message": message,
        }

        if self.conversation_id:
            log_entry["conversation_id"] = self.conversation_id

        if self._extra_context:
            log_entry.update(self._extra_context)

        if kwargs:
            log_entry.update(kwargs)

        return log_entry

    def _should_use_json(self) -> bool:
        """Whether JSON output is enabled"""
        return os.environ.get("LOG_FORMAT", "readable") == "json"

    def _log(self, level: str, message: str, log_method, **kwargs: Any) -> None:
        """Shared logging path"""
        if self._should_use_json():
            structured = self._format_structured(level, message, **kwargs)
            log_method(json.dumps(structured, ensure_ascii=False, default=str))
        else:
            if kwargs:
                extras = ", ".join(f"{k}={v}" for k, v in kwargs.items())
                full_message = f"{message} [{extras}]"
            else:
                full_message = message

            if self.conversation_id:
                full_message = f"[{self.conversation_id}] {full_message}"

            log_method(full_message)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message"""
        self._log("DEBUG", message, self.logger.debug, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message"""
        self._log("INFO", message, self.logger.info, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message"""
        self._log("WARNING", message, self.logger.warning, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message"""
        self._log("ERROR", message, self.logger.error, **kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        """Log critical message"""
        self._log("CRITICAL", message, self.logger.critical, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log exception with traceback"""
        if self._should_use_json():
            import traceback
            kwargs["traceback"] = traceback.format_exc()
            structured = self._format_structured("ERROR", message, **kwargs)
            self.logger.error(json.dumps(structured, ensure_ascii=False, default=str))
        else:
            if kwargs:
                extras = ", ".join(f"{k}={v}" for k, v in kwargs.items())
                full_message = f"{message} [{extras}]"
            else:
                full_message = message

            if self.conversation_id:
                full_message = f"[{self.conversation_id}] {full_message}"

            self.logger.exception(full_message)

    def metric(self, name: str, value: Any, **kwargs: Any) -> None:
        """
        Structured metric.

        Args:
            name: Metric name (e.g. "pass_duration_ms", "llm_retries")
            value: Metric value
            **kwargs: Extra dimensions (campaign_id, node_type, etc.)

        Example:
            logger.metric("pass_duration_ms", 12.5, steps=4)
        """
        self._log("METRIC", name, self.logger.info, value=value, **kwargs)

    def event(self, event_type: str, **kwargs: Any) -> None:
        """
        Log an audit event.

        Args:
            event_type: Event type (e.g. "node_executed", "campaign_handoff")
            **kwargs: Event data

        Example:
            logger.event("node_executed", node_id="4", outcome="continue")
        """
        self._log("EVENT", event_type, self.logger.info, **kwargs)


# Singleton logger
logger = StructuredLogger("campaign_engine")


# =============================================================================
# Engine logging helpers
# =============================================================================

def log_graph_config_error(
    campaign_id: str,
    node_id: Optional[str],
    reason: str,
    **kwargs: Any
) -> None:
    """
    Log a graph configuration defect (dead-end, missing handle, cycle cap).

    Args:
        campaign_id: Campaign ID
        node_id: Node where the pass halted
        reason: Short machine-readable reason
    """
    logger.error(
        "Graph configuration error",
        campaign_id=campaign_id,
        node_id=node_id,
        reason=reason,
        **kwargs,
    )


def log_routing_failure(
    session_name: str,
    reason: str,
    campaign_ids: Optional[List[str]] = None
) -> None:
    """
    Log an inbound message that could not be routed to a campaign.

    Args:
        session_name: WhatsApp session name
        reason: "not_found" or "ambiguous"
        campaign_ids: Candidate campaigns (ambiguous case)
    """
    logger.warning(
        "Inbound message unroutable",
        session_name=session_name,
        reason=reason,
        campaign_ids=campaign_ids or [],
    )


# =============================================================================
# Test utilities
# =============================================================================

def create_test_logger(name: str = "test") -> StructuredLogger:
    """Create an isolated logger for tests"""
    return StructuredLogger(f"campaign_engine.{name}")

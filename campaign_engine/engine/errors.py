"""
Error taxonomy of the campaign engine.

- RoutingError: no or ambiguous campaign for a session. Operator-facing,
  not retryable without a configuration change.
- DuplicateEvent: idempotency rejection. Silent no-op.
- GraphConfigError: dead-end, missing handle, cycle cap exceeded. Logged,
  the conversation stays at its last good node.
- ProviderError / ProviderTransientError: LLM or transport failure. Transient
  ones are retried with backoff before they surface here.
- ValidationError: malformed inbound payload. Dropped with an ack.
"""

from typing import List, Optional


class EngineError(Exception):
    """Base class for engine errors."""


class RoutingError(EngineError):
    """A session has no active campaign, or more than one."""

    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    CONFLICT = "conflict"

    def __init__(
        self,
        reason: str,
        session_name: str,
        campaign_ids: Optional[List[str]] = None,
        message: Optional[str] = None,
    ):
        self.reason = reason
        self.session_name = session_name
        self.campaign_ids = list(campaign_ids or [])
        super().__init__(
            message or f"Routing failed for session '{session_name}': {reason}"
        )


class DuplicateEvent(EngineError):
    """The (session, provider message id) pair was already admitted."""

    REASON = "duplicate_event"

    def __init__(self, session_name: str, provider_message_id: str):
        self.reason = self.REASON
        self.session_name = session_name
        self.provider_message_id = provider_message_id
        super().__init__(f"Duplicate event {provider_message_id} on {session_name}")


class GraphConfigError(EngineError):
    """The campaign graph cannot be executed from the current position."""

    DEAD_END = "dead_end"
    CYCLE_CAP = "cycle_cap_exceeded"
    MISSING_NODE = "missing_node"
    NO_ENTRY = "no_entry_node"
    INVALID_TARGET = "invalid_handoff_target"
    INVALID_GRAPH = "invalid_graph"

    def __init__(
        self,
        reason: str,
        campaign_id: Optional[str] = None,
        node_id: Optional[str] = None,
        detail: str = "",
        issues: Optional[List[str]] = None,
    ):
        self.reason = reason
        self.campaign_id = campaign_id
        self.node_id = node_id
        self.detail = detail
        self.issues = list(issues or [])
        text = f"{reason} at node {node_id}" if node_id else reason
        if detail:
            text = f"{text}: {detail}"
        super().__init__(text)


class ProviderError(EngineError):
    """A collaborator (LLM, transport) rejected or failed a call."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}")


class ProviderTransientError(ProviderError):
    """Timeout, connection error, 429 or 5xx after retries were exhausted."""


class ValidationError(EngineError):
    """Malformed inbound payload or invalid input."""

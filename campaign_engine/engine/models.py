"""
Campaign engine data models.

Node types form a closed set (NodeType); each type carries its own typed
config record parsed from the persisted node `data`. Conversation state,
inbound messages and outbound actions are plain dataclasses with
to_dict/from_dict for persistence.
"""

import copy
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING, Union

if TYPE_CHECKING:
    from campaign_engine.engine.graph import CampaignGraph


# =============================================================================
# Enums
# =============================================================================

class NodeType(Enum):
    """Closed set of node types."""
    TRIGGER = "trigger"
    BROADCAST = "broadcast"
    AGENTIC = "agentic"
    LOGIC = "logic"
    QUALIFICATION = "qualification"
    HANDOFF = "handoff"
    CLOSING = "closing"

    @classmethod
    def parse(cls, raw: str) -> "NodeType":
        """Parse a persisted type string, accepting editor aliases."""
        alias = NODE_TYPE_ALIASES.get(raw)
        if alias is not None:
            return alias
        return cls(raw)


NODE_TYPE_ALIASES: Dict[str, NodeType] = {
    "leadEntry": NodeType.TRIGGER,
    "lead_entry": NodeType.TRIGGER,
    "agent": NodeType.AGENTIC,
}


class CampaignStatus(Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ConversationPhase(Enum):
    """Position of a (campaign, chat) pair in the campaign lifecycle."""
    AWAITING_ENTRY = "awaiting_entry"   # no position yet (first contact or handoff seed)
    AT_NODE = "at_node"                 # resumed at current_node_id on next inbound
    TERMINAL = "terminal"               # reached closing/handoff


class StepKind(Enum):
    """What the interpreter does after one node execution."""
    AWAIT = "await"
    CONTINUE = "continue"
    TERMINATE = "terminate"
    DEAD_END = "dead_end"


class ActionType(Enum):
    SEND_TEXT = "send_text"
    SET_PRESENCE = "set_presence"
    ESCALATE = "escalate"
    HANDOFF = "handoff"
    STATUS_CHANGE = "status_change"


class LeadSource:
    """Origin of a lead, checked against trigger allowedSources."""
    INBOUND = "inbound"
    AD_CLICK = "ad_click"
    HANDOFF = "handoff"
    IMPORTED = "imported"


class Handle:
    """Well-known edge source handles."""
    TRUE = "true"
    FALSE = "false"
    QUALIFIED = "qualified"
    FALLBACK = "fallback"
    ERROR = "error"
    ELSE = "else"

    @staticmethod
    def output(index: int) -> str:
        return f"output-{index}"


class Presence:
    """WhatsApp chat presence values."""
    ONLINE = "online"
    OFFLINE = "offline"
    TYPING = "typing"
    RECORDING = "recording"
    PAUSED = "paused"

    VALUES = frozenset({ONLINE, OFFLINE, TYPING, RECORDING, PAUSED})


FINAL_STATUS_HANDOFF = "handoff"
FINAL_STATUS_MANUAL = "manual_intervention"
DEFAULT_BROADCAST_MESSAGE = "Olá!"
DEFAULT_QUALIFICATION_SLOTS = ["budget", "authority", "need", "timeline"]


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _as_optional_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    return int(value)


# =============================================================================
# Node configs
# =============================================================================

@dataclass(frozen=True)
class TriggerConfig:
    """Entry point. allowed_sources=None accepts every origin."""
    allowed_sources: Optional[List[str]] = None

    @property
    def specialized(self) -> bool:
        return self.allowed_sources is not None

    def accepts(self, source: str) -> bool:
        if self.allowed_sources is None:
            return True
        return source in self.allowed_sources

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "TriggerConfig":
        allowed = data.get("allowedSources")
        if allowed is not None and not isinstance(allowed, list):
            allowed = [allowed]
        return cls(allowed_sources=[str(s) for s in allowed] if allowed is not None else None)


@dataclass(frozen=True)
class BroadcastConfig:
    message_template: str = DEFAULT_BROADCAST_MESSAGE
    spintax_enabled: bool = True

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "BroadcastConfig":
        template = (
            data.get("messageTemplate")
            or data.get("message")
            or data.get("template")
            or DEFAULT_BROADCAST_MESSAGE
        )
        return cls(
            message_template=str(template),
            spintax_enabled=_as_bool(data.get("spintaxEnabled"), True),
        )


@dataclass(frozen=True)
class AgenticConfig:
    """
    LLM step.

    A node with variable_name is a classifier by default: it stores the output
    and continues without replying. Without variable_name it replies to the
    lead and waits for the next message.
    """
    system_prompt: str = ""
    variable_name: Optional[str] = None
    model: Optional[str] = None
    send_reply: bool = True
    await_reply: bool = True

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "AgenticConfig":
        variable_name = data.get("variableName") or data.get("variable_name") or None
        send_reply = _as_bool(data.get("sendReply"), variable_name is None)
        return cls(
            system_prompt=str(
                data.get("systemPrompt") or data.get("instruction_override") or ""
            ),
            variable_name=variable_name,
            model=data.get("model") or None,
            send_reply=send_reply,
            await_reply=_as_bool(data.get("awaitReply"), send_reply),
        )


@dataclass(frozen=True)
class Condition:
    variable: str
    operator: str = "=="
    value: Any = None

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            variable=str(data.get("variable") or ""),
            operator=str(data.get("operator") or "=="),
            value=data.get("value"),
        )


@dataclass(frozen=True)
class LogicConfig:
    """
    Branch on stored variables.

    Single mode routes via "true"/"false" handles; multi mode via
    "output-<i>" for the first matching condition and "output-<n>"/"else"
    when none matches.
    """
    conditions: List[Condition] = field(default_factory=list)
    multi: bool = False

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "LogicConfig":
        raw_conditions = data.get("conditions")
        if isinstance(raw_conditions, list):
            return cls(
                conditions=[Condition.from_data(c) for c in raw_conditions if isinstance(c, dict)],
                multi=True,
            )
        operator = data.get("operator")
        legacy = data.get("condition")
        if not operator:
            operator = legacy if legacy and legacy != "variable_matches" else "=="
        return cls(
            conditions=[Condition(
                variable=str(data.get("variable") or ""),
                operator=str(operator),
                value=data.get("value"),
            )],
            multi=False,
        )


@dataclass(frozen=True)
class QualificationConfig:
    slots: List[str] = field(default_factory=lambda: list(DEFAULT_QUALIFICATION_SLOTS))
    critical_slots: Optional[List[str]] = None
    max_turns: Optional[int] = None
    reprompt_message: Optional[str] = None
    extractors: Dict[str, str] = field(default_factory=dict)

    @property
    def required_slots(self) -> List[str]:
        return list(self.critical_slots) if self.critical_slots else list(self.slots)

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "QualificationConfig":
        slots = data.get("slots") or list(DEFAULT_QUALIFICATION_SLOTS)
        critical = data.get("criticalSlots")
        extractors = data.get("extractors") or {}
        if not isinstance(extractors, dict):
            raise ValueError("extractors must be an object")
        return cls(
            slots=[str(s) for s in slots],
            critical_slots=[str(s) for s in critical] if critical else None,
            max_turns=_as_optional_int(data.get("maxTurns")),
            reprompt_message=data.get("repromptMessage") or None,
            extractors={str(k): str(v) for k, v in extractors.items()},
        )


@dataclass(frozen=True)
class HandoffConfig:
    TARGET_CAMPAIGN = "campaign"
    TARGET_HUMAN = "human"

    target: str = "campaign"
    target_campaign_id: Optional[str] = None
    reason: str = ""

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "HandoffConfig":
        return cls(
            target=str(data.get("target") or cls.TARGET_CAMPAIGN),
            target_campaign_id=data.get("targetCampaignId") or None,
            reason=str(data.get("reason") or ""),
        )


@dataclass(frozen=True)
class ClosingConfig:
    final_status: str = "completed"
    clear_variables: bool = False

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "ClosingConfig":
        return cls(
            final_status=str(data.get("finalStatus") or "completed"),
            clear_variables=_as_bool(data.get("clearVariables"), False),
        )


NodeConfig = Union[
    TriggerConfig,
    BroadcastConfig,
    AgenticConfig,
    LogicConfig,
    QualificationConfig,
    HandoffConfig,
    ClosingConfig,
]

CONFIG_TYPES: Dict[NodeType, Any] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.BROADCAST: BroadcastConfig,
    NodeType.AGENTIC: AgenticConfig,
    NodeType.LOGIC: LogicConfig,
    NodeType.QUALIFICATION: QualificationConfig,
    NodeType.HANDOFF: HandoffConfig,
    NodeType.CLOSING: ClosingConfig,
}


# =============================================================================
# Graph elements
# =============================================================================

@dataclass(frozen=True)
class Node:
    """
    Graph node.

    `data` is the persisted config exactly as authored; `config` is its typed
    view. `raw_type` and `presentation` (position, style, ...) are kept only
    to write the node back unchanged.
    """
    id: str
    type: NodeType
    config: NodeConfig
    data: Dict[str, Any] = field(default_factory=dict)
    raw_type: Optional[str] = None
    presentation: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Node":
        raw_type = str(raw.get("type") or "")
        node_type = NodeType.parse(raw_type)
        data = dict(raw.get("data") or {})
        presentation = {
            k: v for k, v in raw.items() if k not in ("id", "type", "data")
        }
        return cls(
            id=str(raw["id"]),
            type=node_type,
            config=CONFIG_TYPES[node_type].from_data(data),
            data=data,
            raw_type=raw_type,
            presentation=presentation,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.presentation)
        result.update({
            "id": self.id,
            "type": self.raw_type or self.type.value,
            "data": dict(self.data),
        })
        return result


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    presentation: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Edge":
        handle = raw.get("sourceHandle")
        presentation = {
            k: v for k, v in raw.items()
            if k not in ("id", "source", "target", "sourceHandle")
        }
        return cls(
            id=str(raw["id"]),
            source=str(raw["source"]),
            target=str(raw["target"]),
            source_handle=str(handle) if handle not in (None, "") else None,
            presentation=presentation,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.presentation)
        result.update({"id": self.id, "source": self.source, "target": self.target})
        if self.source_handle is not None:
            result["sourceHandle"] = self.source_handle
        return result


# =============================================================================
# Campaign
# =============================================================================

@dataclass
class Campaign:
    id: str
    name: str
    session_name: str
    status: CampaignStatus = CampaignStatus.DRAFT
    graph: Optional["CampaignGraph"] = None
    graph_version: int = 0
    reentry_after_close: bool = True
    agent_instructions: str = ""
    model: Optional[str] = None
    company_id: Optional[str] = None
    paused_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status == CampaignStatus.ACTIVE

    def to_dict(self, include_graph: bool = True) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "sessionName": self.session_name,
            "status": self.status.value,
            "graphVersion": self.graph_version,
            "reentryAfterClose": self.reentry_after_close,
            "agentInstructions": self.agent_instructions,
            "model": self.model,
            "companyId": self.company_id,
            "pausedAt": self.paused_at,
        }
        if include_graph:
            result["graph"] = self.graph.to_dict() if self.graph is not None else None
        return result


# =============================================================================
# Conversation state
# =============================================================================

@dataclass
class PadVector:
    """Pleasure-Arousal-Dominance estimate, each axis in [0, 1]."""
    pleasure: float = 0.5
    arousal: float = 0.5
    dominance: float = 0.5

    def clamped(self) -> "PadVector":
        return PadVector(
            pleasure=min(1.0, max(0.0, self.pleasure)),
            arousal=min(1.0, max(0.0, self.arousal)),
            dominance=min(1.0, max(0.0, self.dominance)),
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "pleasure": round(self.pleasure, 4),
            "arousal": round(self.arousal, 4),
            "dominance": round(self.dominance, 4),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PadVector":
        data = data or {}
        return cls(
            pleasure=float(data.get("pleasure", 0.5)),
            arousal=float(data.get("arousal", 0.5)),
            dominance=float(data.get("dominance", 0.5)),
        ).clamped()


@dataclass
class ConversationState:
    """
    Execution position and accumulated data of one chat under one campaign.

    Attributes:
        campaign_id: Owning campaign
        chat_id: WhatsApp chat id
        session_name: Session the chat arrives on
        phase: AWAITING_ENTRY / AT_NODE / TERMINAL
        current_node_id: Node to execute on the next inbound (AT_NODE)
        variables: Node outputs (agent classification, extracted slots, ...)
        qualification_slots: slot -> filled
        pad: Emotional estimate
        node_turns: Re-prompt counters per node
        final_status: Set by closing/handoff
        lead_source: Origin checked by trigger nodes
        history: Recent turns [{"role": "user"|"model", "text": ...}]
        graph_version: Graph version the position refers to
        last_activity_at: Unix time of the last pass
    """
    campaign_id: str
    chat_id: str
    session_name: str = ""
    phase: ConversationPhase = ConversationPhase.AWAITING_ENTRY
    current_node_id: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)
    qualification_slots: Dict[str, bool] = field(default_factory=dict)
    pad: PadVector = field(default_factory=PadVector)
    node_turns: Dict[str, int] = field(default_factory=dict)
    final_status: Optional[str] = None
    lead_source: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)
    graph_version: int = 0
    last_activity_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return f"{self.campaign_id}:{self.chat_id}"

    @property
    def is_terminal(self) -> bool:
        return self.phase == ConversationPhase.TERMINAL

    @property
    def is_human_owned(self) -> bool:
        return self.is_terminal and self.final_status == FINAL_STATUS_MANUAL

    def copy(self) -> "ConversationState":
        return copy.deepcopy(self)

    def reset_for_reentry(self) -> None:
        """Start over as a fresh conversation; PAD and history are kept."""
        self.phase = ConversationPhase.AWAITING_ENTRY
        self.current_node_id = None
        self.variables = {}
        self.qualification_slots = {}
        self.node_turns = {}
        self.final_status = None

    def append_history(self, role: str, text: str, limit: int) -> None:
        if not text:
            return
        self.history.append({"role": role, "text": text})
        if len(self.history) > limit:
            del self.history[:-limit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "chat_id": self.chat_id,
            "session_name": self.session_name,
            "phase": self.phase.value,
            "current_node_id": self.current_node_id,
            "variables": dict(self.variables),
            "qualification_slots": dict(self.qualification_slots),
            "pad": self.pad.to_dict(),
            "node_turns": dict(self.node_turns),
            "final_status": self.final_status,
            "lead_source": self.lead_source,
            "history": list(self.history),
            "graph_version": self.graph_version,
            "last_activity_at": self.last_activity_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        return cls(
            campaign_id=data["campaign_id"],
            chat_id=data["chat_id"],
            session_name=data.get("session_name", ""),
            phase=ConversationPhase(data.get("phase", ConversationPhase.AWAITING_ENTRY.value)),
            current_node_id=data.get("current_node_id"),
            variables={str(k): str(v) for k, v in (data.get("variables") or {}).items()},
            qualification_slots=dict(data.get("qualification_slots") or {}),
            pad=PadVector.from_dict(data.get("pad")),
            node_turns={str(k): int(v) for k, v in (data.get("node_turns") or {}).items()},
            final_status=data.get("final_status"),
            lead_source=data.get("lead_source"),
            history=list(data.get("history") or []),
            graph_version=int(data.get("graph_version", 0)),
            last_activity_at=float(data.get("last_activity_at", time.time())),
        )


# =============================================================================
# Inbound / outbound
# =============================================================================

@dataclass(frozen=True)
class InboundMessage:
    """Canonical inbound chat message, consumed once per pass."""
    session_name: str
    chat_id: str
    body: str
    provider_message_id: str
    from_me: bool = False
    referral: Optional[Dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)
    event: str = "message"
    push_name: Optional[str] = None

    @property
    def source(self) -> str:
        return LeadSource.AD_CLICK if self.referral else LeadSource.INBOUND


@dataclass(frozen=True)
class OutboundAction:
    type: ActionType
    session_name: str
    chat_id: str
    text: Optional[str] = None
    presence: Optional[str] = None
    reason: Optional[str] = None
    target_campaign_id: Optional[str] = None
    final_status: Optional[str] = None
    node_id: Optional[str] = None

    @classmethod
    def send_text(cls, session_name: str, chat_id: str, text: str, node_id: Optional[str] = None) -> "OutboundAction":
        return cls(ActionType.SEND_TEXT, session_name, chat_id, text=text, node_id=node_id)

    @classmethod
    def set_presence(cls, session_name: str, chat_id: str, presence: str) -> "OutboundAction":
        return cls(ActionType.SET_PRESENCE, session_name, chat_id, presence=presence)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": self.type.value,
            "sessionName": self.session_name,
            "chatId": self.chat_id,
        }
        for key, value in (
            ("text", self.text),
            ("presence", self.presence),
            ("reason", self.reason),
            ("targetCampaignId", self.target_campaign_id),
            ("finalStatus", self.final_status),
            ("nodeId", self.node_id),
        ):
            if value is not None:
                result[key] = value
        return result


# =============================================================================
# Node execution outcome
# =============================================================================

@dataclass
class NodeOutcome:
    """
    Result of one node execution: the step kind plus a state delta.

    Executors never mutate ConversationState; the interpreter applies
    variables/slots/pad/turns from here.
    """
    kind: StepKind
    next_node_id: Optional[str] = None
    handle: Optional[str] = None
    actions: List[OutboundAction] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)
    slots: Dict[str, bool] = field(default_factory=dict)
    pad: Optional[PadVector] = None
    turns: Optional[int] = None
    final_status: Optional[str] = None
    clear_variables: bool = False
    handoff_campaign_id: Optional[str] = None
    reason: Optional[str] = None
    alert: bool = False

    @classmethod
    def await_(cls, next_node_id: str, **kwargs: Any) -> "NodeOutcome":
        return cls(kind=StepKind.AWAIT, next_node_id=next_node_id, **kwargs)

    @classmethod
    def continue_(cls, next_node_id: str, **kwargs: Any) -> "NodeOutcome":
        return cls(kind=StepKind.CONTINUE, next_node_id=next_node_id, **kwargs)

    @classmethod
    def terminate(cls, final_status: str, **kwargs: Any) -> "NodeOutcome":
        return cls(kind=StepKind.TERMINATE, final_status=final_status, **kwargs)

    @classmethod
    def dead_end(cls, reason: str, **kwargs: Any) -> "NodeOutcome":
        return cls(kind=StepKind.DEAD_END, reason=reason, **kwargs)

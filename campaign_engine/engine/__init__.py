"""
Campaign Conversation Orchestration Engine.

Executes visually authored campaign graphs against inbound WhatsApp
messages:

- Event normalization and at-most-once admission
- Session -> campaign routing (one active campaign per session)
- Per-chat graph interpretation with typed node executors
- PAD emotional state tracking injected into agent prompts
- Ordered outbound dispatch to the transport and the dashboard

Usage:
    from campaign_engine.engine import build_engine, CampaignGraph, Campaign

    engine = build_engine(llm=GeminiClient(), transport=WahaClient())
    engine.campaigns.save(Campaign(id="c1", name="Promo", session_name="default"))
    engine.campaigns.publish_graph("c1", CampaignGraph.from_dict(graph_json))
    engine.router.activate("c1")

    result = engine.handle_webhook("waha", body)
    print(result.status)
"""

from campaign_engine.engine.errors import (
    EngineError,
    RoutingError,
    DuplicateEvent,
    GraphConfigError,
    ProviderError,
    ProviderTransientError,
    ValidationError,
)
from campaign_engine.engine.models import (
    # Enums
    NodeType,
    CampaignStatus,
    ConversationPhase,
    StepKind,
    ActionType,
    # Models
    Campaign,
    ConversationState,
    PadVector,
    InboundMessage,
    OutboundAction,
    NodeOutcome,
)
from campaign_engine.engine.graph import CampaignGraph, GraphIssue
from campaign_engine.engine.emotional_state import EmotionalStateEstimator
from campaign_engine.engine.executors import NodeExecutor, ExecutionContext
from campaign_engine.engine.interpreter import GraphInterpreter, PassOutcome, PassResult
from campaign_engine.engine.normalizer import EventKind, WebhookEvent, normalize
from campaign_engine.engine.idempotency import IdempotencyGuard
from campaign_engine.engine.store import CampaignStore, ConversationStateStore, ChatBindingStore
from campaign_engine.engine.router import SessionRouter, RouteResult, RouteStatus
from campaign_engine.engine.dispatcher import OutboundDispatcher
from campaign_engine.engine.orchestrator import CampaignEngine, WebhookResult, WebhookStatus, build_engine

__all__ = [
    # Errors
    "EngineError",
    "RoutingError",
    "DuplicateEvent",
    "GraphConfigError",
    "ProviderError",
    "ProviderTransientError",
    "ValidationError",
    # Enums
    "NodeType",
    "CampaignStatus",
    "ConversationPhase",
    "StepKind",
    "ActionType",
    # Models
    "Campaign",
    "ConversationState",
    "PadVector",
    "InboundMessage",
    "OutboundAction",
    "NodeOutcome",
    # Graph
    "CampaignGraph",
    "GraphIssue",
    # Components
    "EmotionalStateEstimator",
    "NodeExecutor",
    "ExecutionContext",
    "GraphInterpreter",
    "PassOutcome",
    "PassResult",
    "EventKind",
    "WebhookEvent",
    "normalize",
    "IdempotencyGuard",
    "CampaignStore",
    "ConversationStateStore",
    "ChatBindingStore",
    "SessionRouter",
    "RouteResult",
    "RouteStatus",
    "OutboundDispatcher",
    # Pipeline
    "CampaignEngine",
    "WebhookResult",
    "WebhookStatus",
    "build_engine",
]

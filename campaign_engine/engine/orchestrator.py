"""
CampaignEngine - the inbound webhook pipeline.

    normalize -> admit -> lock(session, chat) -> route -> pass -> persist
              -> handoff rebind -> notify

Every outcome a provider should not redeliver is returned as a status
(accepted, duplicate, ignored, invalid, unroutable, held). Only unexpected
exceptions propagate, after the idempotency key has been released so the
redelivery is processed.
"""

import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from campaign_engine.engine.emotional_state import EmotionalStateEstimator
from campaign_engine.engine.errors import DuplicateEvent, RoutingError, ValidationError
from campaign_engine.engine.executors import NodeExecutor
from campaign_engine.engine.idempotency import IdempotencyGuard
from campaign_engine.engine.interpreter import GraphInterpreter, PassResult
from campaign_engine.engine.models import (
    Campaign,
    ConversationState,
    InboundMessage,
    LeadSource,
)
from campaign_engine.engine.normalizer import EventKind, normalize
from campaign_engine.engine.router import SessionRouter
from campaign_engine.engine.store import CampaignStore, ChatBindingStore, ConversationStateStore
from campaign_engine.engine.dispatcher import OutboundDispatcher
from campaign_engine.feature_flags import flags
from campaign_engine.logger import logger
from campaign_engine.realtime import (
    CONFIG_ERROR,
    LEAD_PRESENCE,
    LEAD_UPDATED,
    NODE_ERROR,
    SESSION_STATUS,
    RealtimeNotifier,
)
from campaign_engine.session_lock import ChatLockManager
from campaign_engine.settings import settings


class WebhookStatus:
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID = "invalid"
    UNROUTABLE = "unroutable"
    HELD = "held"


@dataclass
class WebhookResult:
    status: str
    reason: Optional[str] = None
    campaign_id: Optional[str] = None
    chat_id: Optional[str] = None
    outcome: Optional[str] = None
    actions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"status": self.status}
        for key, value in (
            ("reason", self.reason),
            ("campaignId", self.campaign_id),
            ("chatId", self.chat_id),
            ("outcome", self.outcome),
        ):
            if value is not None:
                result[key] = value
        if self.actions:
            result["actions"] = self.actions
        return result


ErrorKey = Tuple[str, str, Optional[str]]


class CampaignEngine:
    """
    Wires the engine components together.

    Usage:
        engine = build_engine(llm=GeminiClient(), transport=WahaClient())
        result = engine.handle_webhook("waha", body)
    """

    def __init__(
        self,
        campaigns: CampaignStore,
        states: ConversationStateStore,
        bindings: ChatBindingStore,
        guard: IdempotencyGuard,
        router: SessionRouter,
        interpreter: GraphInterpreter,
        dispatcher: OutboundDispatcher,
        notifier: RealtimeNotifier,
        locks: ChatLockManager,
        config_error_alert_threshold: Optional[int] = None,
        config_error_window_seconds: Optional[float] = None,
    ):
        self.campaigns = campaigns
        self.states = states
        self.bindings = bindings
        self.guard = guard
        self.router = router
        self.interpreter = interpreter
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.locks = locks
        self.config_error_alert_threshold = (
            config_error_alert_threshold or settings.engine.config_error_alert_threshold
        )
        self.config_error_window_seconds = (
            config_error_window_seconds
            if config_error_window_seconds is not None
            else settings.engine.config_error_window_seconds
        )
        # key -> (count, last seen)
        self._error_counts: Dict[ErrorKey, Tuple[int, float]] = {}
        self._error_lock = threading.Lock()

    # =========================================================================
    # Inbound
    # =========================================================================

    def handle_webhook(self, provider: str, body: Any) -> WebhookResult:
        try:
            event = normalize(provider, body)
        except ValidationError as e:
            logger.warning("Invalid webhook payload", provider=provider, error=str(e))
            return WebhookResult(WebhookStatus.INVALID, reason=str(e))

        if event.kind == EventKind.PRESENCE:
            self.notifier.emit(LEAD_PRESENCE, {"sessionName": event.session_name, **event.data})
            return WebhookResult(WebhookStatus.IGNORED, reason="presence forwarded")
        if event.kind == EventKind.SESSION_STATUS:
            self.notifier.emit(SESSION_STATUS, {"sessionName": event.session_name, **event.data})
            return WebhookResult(WebhookStatus.IGNORED, reason="session status forwarded")
        if event.kind != EventKind.MESSAGE:
            logger.debug("Webhook event ignored", provider=provider, webhook_event=event.event)
            return WebhookResult(WebhookStatus.IGNORED, reason=f"event {event.event or 'unknown'}")

        inbound = event.inbound
        if inbound.from_me:
            return WebhookResult(WebhookStatus.IGNORED, reason="from_me", chat_id=inbound.chat_id)

        return self.handle_message(inbound)

    def handle_message(self, inbound: InboundMessage) -> WebhookResult:
        """Admit, lock and process one canonical inbound message."""
        try:
            self.guard.claim(inbound.session_name, inbound.provider_message_id)
        except DuplicateEvent as e:
            return WebhookResult(WebhookStatus.DUPLICATE, reason=e.reason, chat_id=inbound.chat_id)

        try:
            with self.locks.lock(inbound.session_name, inbound.chat_id):
                return self._process(inbound)
        except Exception:
            logger.exception(
                "Unexpected failure processing message",
                session_name=inbound.session_name,
                chat_id=inbound.chat_id,
                message_id=inbound.provider_message_id,
            )
            self.guard.forget(inbound.session_name, inbound.provider_message_id)
            raise

    # =========================================================================
    # Pass
    # =========================================================================

    def _process(self, inbound: InboundMessage) -> WebhookResult:
        try:
            campaign = self.router.route(inbound.session_name, inbound.chat_id)
        except RoutingError as e:
            if e.reason == RoutingError.AMBIGUOUS:
                self._alert_config_error(None, inbound.session_name, e.reason, campaign_ids=e.campaign_ids)
            return WebhookResult(WebhookStatus.UNROUTABLE, reason=e.reason, chat_id=inbound.chat_id)

        if self.router.is_held(campaign, inbound.session_name, inbound.chat_id):
            logger.info("Campaign paused, message held", campaign_id=campaign.id, chat_id=inbound.chat_id)
            return WebhookResult(WebhookStatus.HELD, campaign_id=campaign.id, chat_id=inbound.chat_id)

        state = self.states.load(campaign.id, inbound.chat_id)
        first_contact = state is None
        if state is None:
            state = ConversationState(
                campaign_id=campaign.id,
                chat_id=inbound.chat_id,
                session_name=inbound.session_name,
            )

        result = self.interpreter.run_pass(
            campaign,
            state,
            inbound,
            dispatch=self.dispatcher.dispatch,
            campaign_lookup=self.router.campaign,
        )

        if result.changed:
            self.states.save(result.state)
            if first_contact:
                self.bindings.bind(inbound.session_name, inbound.chat_id, campaign.id)
            if result.handoff_campaign_id:
                self._apply_handoff(campaign, result.state, result.handoff_campaign_id)
            self._emit_lead_updated(campaign, result.state)

        self._track_errors(campaign, inbound, result)

        return WebhookResult(
            WebhookStatus.ACCEPTED,
            campaign_id=campaign.id,
            chat_id=inbound.chat_id,
            outcome=result.outcome.value,
            reason=result.error.reason if result.error else None,
            actions=[a.to_dict() for a in result.actions],
        )

    def _apply_handoff(self, source: Campaign, state: ConversationState, target_id: str) -> None:
        """Rebind the chat and seed an entry state under the target campaign."""
        seed = ConversationState(
            campaign_id=target_id,
            chat_id=state.chat_id,
            session_name=state.session_name,
            variables=dict(state.variables),
            pad=copy.deepcopy(state.pad),
            history=list(state.history),
            lead_source=LeadSource.HANDOFF,
        )
        self.states.save(seed)
        self.bindings.bind(state.session_name, state.chat_id, target_id, via_handoff=True)
        logger.event(
            "campaign_handoff",
            from_campaign_id=source.id,
            to_campaign_id=target_id,
            chat_id=state.chat_id,
            carried_variables=sorted(seed.variables),
        )

    # =========================================================================
    # Notifications
    # =========================================================================

    def _emit_lead_updated(self, campaign: Campaign, state: ConversationState) -> None:
        self.notifier.emit(LEAD_UPDATED, {
            "campaignId": campaign.id,
            "sessionName": state.session_name,
            "chatId": state.chat_id,
            "phase": state.phase.value,
            "currentNodeId": state.current_node_id,
            "finalStatus": state.final_status,
            "variables": dict(state.variables),
            "qualificationSlots": dict(state.qualification_slots),
            "pad": state.pad.to_dict(),
        })

    def _track_errors(self, campaign: Campaign, inbound: InboundMessage, result: PassResult) -> None:
        if result.node_error:
            self.notifier.emit(NODE_ERROR, {
                "campaignId": campaign.id,
                "campaignName": campaign.name,
                "sessionName": inbound.session_name,
                "chatId": inbound.chat_id,
                "nodeId": result.error.node_id if result.error else None,
                "reason": result.error.reason if result.error else None,
                "timestamp": time.time(),
            })

        now = time.time()
        with self._error_lock:
            self._expire_error_counts(now)
            if result.error is None:
                for key in [k for k in self._error_counts if k[:2] == (campaign.id, inbound.chat_id)]:
                    del self._error_counts[key]
                return
            key = (campaign.id, inbound.chat_id, result.error.node_id)
            count = self._error_counts.get(key, (0, now))[0] + 1
            if count >= self.config_error_alert_threshold:
                self._error_counts.pop(key, None)
            else:
                self._error_counts[key] = (count, now)

        if count >= self.config_error_alert_threshold:
            self._alert_config_error(
                campaign,
                inbound.session_name,
                result.error.reason,
                node_id=result.error.node_id,
                occurrences=count,
            )

    def _expire_error_counts(self, now: float) -> None:
        """Drop counters of chats that stopped failing. Caller holds _error_lock."""
        cutoff = now - self.config_error_window_seconds
        for key in [k for k, (_, seen) in self._error_counts.items() if seen < cutoff]:
            del self._error_counts[key]

    def _alert_config_error(
        self,
        campaign: Optional[Campaign],
        session_name: str,
        reason: str,
        **extra: Any,
    ) -> None:
        if not flags.config_error_alerts:
            return
        payload = {
            "campaignId": campaign.id if campaign else None,
            "campaignName": campaign.name if campaign else None,
            "sessionName": session_name,
            "reason": reason,
            "timestamp": time.time(),
        }
        for key, value in extra.items():
            payload[_camel(key)] = value
        self.notifier.emit(CONFIG_ERROR, payload)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def build_engine(
    db_path: Optional[str] = None,
    llm: Any = None,
    transport: Any = None,
    notifier: Optional[RealtimeNotifier] = None,
    lock_dir: Optional[str] = None,
) -> CampaignEngine:
    """Engine wired on a single SQLite file."""
    db_path = db_path or settings.storage.db_path
    notifier = notifier or RealtimeNotifier()
    campaigns = CampaignStore(db_path)
    bindings = ChatBindingStore(db_path)
    estimator = EmotionalStateEstimator()
    return CampaignEngine(
        campaigns=campaigns,
        states=ConversationStateStore(db_path),
        bindings=bindings,
        guard=IdempotencyGuard(db_path),
        router=SessionRouter(campaigns, bindings),
        interpreter=GraphInterpreter(NodeExecutor(llm=llm, estimator=estimator), estimator=estimator),
        dispatcher=OutboundDispatcher(transport, notifier),
        notifier=notifier,
        locks=ChatLockManager(lock_dir),
    )

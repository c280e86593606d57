"""
Outbound Dispatcher.

Turns OutboundActions into transport calls and real-time notifications, in
the order they were produced. Transport failures surface as ProviderError to
the interpreter, which applies the node's fallback policy.
"""

from typing import Any, Optional

from campaign_engine.engine.errors import ProviderError
from campaign_engine.engine.models import ActionType, OutboundAction, Presence
from campaign_engine.feature_flags import flags
from campaign_engine.logger import logger
from campaign_engine.realtime import (
    LEAD_HANDOFF,
    LEAD_STATUS_CHANGED,
    LEAD_TRANSFERRED,
    MESSAGE_SENT,
    RealtimeNotifier,
)


class OutboundDispatcher:
    """
    Usage:
        dispatcher = OutboundDispatcher(WahaClient(), notifier)
        dispatcher.dispatch(OutboundAction.send_text("default", "5511@c.us", "Olá!"))
    """

    def __init__(self, transport: Any, notifier: Optional[RealtimeNotifier] = None):
        self.transport = transport
        self.notifier = notifier or RealtimeNotifier()

    def dispatch(self, action: OutboundAction) -> None:
        if action.type == ActionType.SEND_TEXT:
            self._send_text(action)
        elif action.type == ActionType.SET_PRESENCE:
            self.transport.set_presence(action.session_name, action.chat_id, action.presence)
        elif action.type == ActionType.ESCALATE:
            self.notifier.emit(LEAD_HANDOFF, {
                "sessionName": action.session_name,
                "chatId": action.chat_id,
                "reason": action.reason,
                "nodeId": action.node_id,
            })
        elif action.type == ActionType.HANDOFF:
            self.notifier.emit(LEAD_TRANSFERRED, {
                "sessionName": action.session_name,
                "chatId": action.chat_id,
                "targetCampaignId": action.target_campaign_id,
                "reason": action.reason,
            })
        elif action.type == ActionType.STATUS_CHANGE:
            self.notifier.emit(LEAD_STATUS_CHANGED, {
                "sessionName": action.session_name,
                "chatId": action.chat_id,
                "finalStatus": action.final_status,
            })
        else:
            raise ValueError(f"Unsupported action type: {action.type}")

        logger.debug("Action dispatched", type=action.type.value, node_id=action.node_id)

    def _send_text(self, action: OutboundAction) -> None:
        typing = flags.typing_presence
        if typing:
            self._presence(action, Presence.TYPING)

        self.transport.send_text(action.session_name, action.chat_id, action.text)

        if typing:
            self._presence(action, Presence.PAUSED)

        self.notifier.emit(MESSAGE_SENT, {
            "sessionName": action.session_name,
            "chatId": action.chat_id,
            "text": action.text,
            "nodeId": action.node_id,
        })

    def _presence(self, action: OutboundAction, presence: str) -> None:
        try:
            self.transport.set_presence(action.session_name, action.chat_id, presence)
        except ProviderError as e:
            logger.warning("Presence update failed", presence=presence, error=str(e))

"""
Tests for the outbound dispatcher.
"""

from unittest.mock import call

import pytest

from campaign_engine.engine.dispatcher import OutboundDispatcher
from campaign_engine.engine.errors import ProviderError
from campaign_engine.engine.models import ActionType, OutboundAction
from campaign_engine.realtime import (
    LEAD_HANDOFF,
    LEAD_STATUS_CHANGED,
    LEAD_TRANSFERRED,
    MESSAGE_SENT,
    RealtimeNotifier,
)

CHAT = "5511999990000@c.us"


@pytest.fixture
def notifier():
    return RealtimeNotifier()


@pytest.fixture
def dispatcher(mock_transport, notifier):
    return OutboundDispatcher(mock_transport, notifier)


class TestSendText:

    def test_typing_around_send(self, dispatcher, mock_transport, feature_flags_override):
        """Typing, send, paused, in that order."""
        with feature_flags_override(typing_presence=True):
            dispatcher.dispatch(OutboundAction.send_text("default", CHAT, "Olá!"))
        assert mock_transport.method_calls == [
            call.set_presence("default", CHAT, "typing"),
            call.send_text("default", CHAT, "Olá!"),
            call.set_presence("default", CHAT, "paused"),
        ]

    def test_without_typing(self, dispatcher, mock_transport, feature_flags_override):
        """The typing flag can be turned off."""
        with feature_flags_override(typing_presence=False):
            dispatcher.dispatch(OutboundAction.send_text("default", CHAT, "Olá!"))
        mock_transport.set_presence.assert_not_called()
        mock_transport.send_text.assert_called_once_with("default", CHAT, "Olá!")

    def test_presence_failure_is_not_fatal(self, dispatcher, mock_transport, feature_flags_override):
        """A failed typing indicator never blocks the message."""
        mock_transport.set_presence.side_effect = ProviderError("waha", "boom")
        with feature_flags_override(typing_presence=True):
            dispatcher.dispatch(OutboundAction.send_text("default", CHAT, "Olá!"))
        mock_transport.send_text.assert_called_once()

    def test_send_failure_propagates(self, dispatcher, mock_transport, notifier):
        """Transport errors reach the caller and nothing is announced."""
        mock_transport.send_text.side_effect = ProviderError("waha", "session stopped", 422)
        with pytest.raises(ProviderError):
            dispatcher.dispatch(OutboundAction.send_text("default", CHAT, "Olá!"))
        assert notifier.get_history(MESSAGE_SENT) == []

    def test_message_sent_event(self, dispatcher, notifier):
        """Sent messages are announced to the dashboard."""
        dispatcher.dispatch(OutboundAction.send_text("default", CHAT, "Olá!", node_id="2"))
        event = notifier.get_history(MESSAGE_SENT)[0]
        assert event.payload == {"sessionName": "default", "chatId": CHAT, "text": "Olá!", "nodeId": "2"}


class TestNotifications:

    def test_escalate(self, dispatcher, notifier, mock_transport):
        """Human handoff notifies the operators only."""
        dispatcher.dispatch(OutboundAction(ActionType.ESCALATE, "default", CHAT, reason="pediu humano"))
        assert notifier.get_history(LEAD_HANDOFF)[0].payload["reason"] == "pediu humano"
        mock_transport.send_text.assert_not_called()

    def test_handoff(self, dispatcher, notifier):
        """Campaign handoff announces the target."""
        dispatcher.dispatch(OutboundAction(ActionType.HANDOFF, "default", CHAT, target_campaign_id="c2"))
        assert notifier.get_history(LEAD_TRANSFERRED)[0].payload["targetCampaignId"] == "c2"

    def test_status_change(self, dispatcher, notifier):
        """Closing announces the final status."""
        dispatcher.dispatch(OutboundAction(ActionType.STATUS_CHANGE, "default", CHAT, final_status="won"))
        assert notifier.get_history(LEAD_STATUS_CHANGED)[0].payload["finalStatus"] == "won"

    def test_set_presence(self, dispatcher, mock_transport):
        """Explicit presence actions go to the transport."""
        dispatcher.dispatch(OutboundAction.set_presence("default", CHAT, "online"))
        mock_transport.set_presence.assert_called_once_with("default", CHAT, "online")

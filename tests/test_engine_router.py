"""
Tests for session -> campaign routing.
"""

from unittest.mock import patch

import pytest

from builders import scenario_a_payload
from campaign_engine.engine.errors import RoutingError, ValidationError
from campaign_engine.engine.graph import CampaignGraph
from campaign_engine.engine.models import Campaign, CampaignStatus
from campaign_engine.engine.router import RouteStatus, SessionRouter
from campaign_engine.engine.store import CampaignStore, ChatBindingStore


@pytest.fixture
def campaigns(db_path):
    store = CampaignStore(db_path)
    for campaign_id, session_name in (("c1", "default"), ("c2", "default"), ("c3", "vendas")):
        store.save(Campaign(id=campaign_id, name=campaign_id, session_name=session_name))
        store.publish_graph(campaign_id, CampaignGraph.from_dict(scenario_a_payload()))
    return store


@pytest.fixture
def bindings(db_path):
    return ChatBindingStore(db_path)


@pytest.fixture
def router(campaigns, bindings):
    return SessionRouter(campaigns, bindings, index_ttl_seconds=300)


class TestResolve:

    def test_no_active_campaign(self, router):
        """Drafts are not routable."""
        result = router.resolve("default")
        assert result.status == RouteStatus.NOT_FOUND
        assert result.campaign_id is None

    def test_single_active(self, router):
        """One active campaign resolves."""
        router.activate("c1")
        result = router.resolve("default")
        assert result.found
        assert result.campaign_id == "c1"

    def test_unknown_session(self, router):
        """Sessions without campaigns are not found."""
        router.activate("c1")
        assert router.resolve("suporte").status == RouteStatus.NOT_FOUND

    def test_empty_session_rejected(self, router):
        """A session name is mandatory."""
        with pytest.raises(ValidationError):
            router.resolve("")

    def test_ambiguous_when_store_bypassed(self, router, campaigns):
        """Two active rows (legacy data) are reported, never guessed."""
        conn = campaigns._connect()
        try:
            conn.execute("UPDATE campaigns SET status='active' WHERE session_name='default'")
        finally:
            conn.close()
        router.invalidate()
        result = router.resolve("default")
        assert result.status == RouteStatus.AMBIGUOUS
        assert result.campaign_ids == ["c1", "c2"]
        with pytest.raises(RoutingError) as exc_info:
            router.require("default")
        assert exc_info.value.reason == RoutingError.AMBIGUOUS


class TestIndexInvalidation:

    def test_pause_is_seen_immediately(self, router):
        """Status changes through the router drop the cached index."""
        router.activate("c1")
        assert router.resolve("default").found
        router.pause("c1")
        assert router.resolve("default").status == RouteStatus.NOT_FOUND

    def test_conflict_keeps_previous_active(self, router):
        """A rejected activation leaves routing unchanged."""
        router.activate("c1")
        with pytest.raises(RoutingError):
            router.activate("c2")
        assert router.require("default") == "c1"

    def test_external_change_waits_for_ttl(self, campaigns, bindings):
        """Changes made around the router appear after the TTL."""
        router = SessionRouter(campaigns, bindings, index_ttl_seconds=0)
        assert not router.resolve("default").found
        campaigns.set_status("c1", CampaignStatus.ACTIVE)
        assert router.resolve("default").campaign_id == "c1"


class TestRoute:

    def test_binding_wins(self, router, bindings):
        """A chat bound to a campaign stays with it."""
        router.activate("c1")
        bindings.bind("default", "a@c.us", "c2")
        router.campaigns.set_status("c2", CampaignStatus.PAUSED)
        campaign = router.route("default", "a@c.us")
        assert campaign.id == "c2"
        assert campaign.status == CampaignStatus.PAUSED

    def test_archived_binding_ignored(self, router, bindings):
        """Bindings to archived campaigns fall back to the active one."""
        router.activate("c1")
        bindings.bind("default", "a@c.us", "c2")
        router.archive("c2")
        assert router.route("default", "a@c.us").id == "c1"

    def test_unbound_chat_uses_active(self, router):
        """New chats go to the session's active campaign with its graph."""
        router.activate("c1")
        campaign = router.route("default", "new@c.us")
        assert campaign.id == "c1"
        assert campaign.graph is not None

    def test_not_found_raises(self, router):
        """No binding and no active campaign."""
        with pytest.raises(RoutingError) as exc_info:
            router.route("default", "a@c.us")
        assert exc_info.value.reason == RoutingError.NOT_FOUND
        assert exc_info.value.session_name == "default"


class TestHold:

    def test_active_campaign_not_held(self, router):
        router.activate("c1")
        assert router.is_held(router.campaign("c1"), "default", "a@c.us") is False

    def test_paused_first_contact_binding_held(self, router, bindings):
        """Pausing a campaign holds the chats it acquired itself."""
        bindings.bind("default", "a@c.us", "c2")
        router.pause("c2")
        assert router.is_held(router.campaign("c2"), "default", "a@c.us") is True

    def test_handoff_into_paused_target_runs(self, router, bindings):
        """A chat handed over after the target was paused runs under it."""
        router.activate("c1")
        router.pause("c2")
        bindings.bind("default", "a@c.us", "c2", via_handoff=True)
        assert router.is_held(router.campaign("c2"), "default", "a@c.us") is False

    def test_pause_after_handoff_holds(self, router, bindings):
        """An operator pausing the target later holds the chat again."""
        bindings.bind("default", "a@c.us", "c2", via_handoff=True)
        binding = bindings.get_binding("default", "a@c.us")
        with patch("campaign_engine.engine.store.time.time", return_value=binding.bound_at + 60):
            router.pause("c2")
        assert router.is_held(router.campaign("c2"), "default", "a@c.us") is True

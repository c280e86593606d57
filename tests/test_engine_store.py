"""
Tests for the SQLite stores: campaigns, graph versions, conversation state
and chat bindings.
"""

import pytest

from builders import graph_payload, new_state, node, scenario_a_payload, scenario_b_payload
from campaign_engine.engine.errors import GraphConfigError, RoutingError
from campaign_engine.engine.graph import CampaignGraph
from campaign_engine.engine.models import Campaign, CampaignStatus, ConversationPhase, PadVector
from campaign_engine.engine.store import CampaignStore, ChatBindingStore, ConversationStateStore


@pytest.fixture
def campaigns(db_path):
    return CampaignStore(db_path)


def _create(store, campaign_id, session_name="default", payload=None):
    store.save(Campaign(id=campaign_id, name=campaign_id, session_name=session_name))
    if payload is not None:
        store.publish_graph(campaign_id, CampaignGraph.from_dict(payload))
    return store.get(campaign_id)


class TestCampaignStore:

    def test_new_campaign_is_draft(self, campaigns):
        """Saved campaigns start as drafts without graph."""
        campaign = _create(campaigns, "c1")
        assert campaign.status == CampaignStatus.DRAFT
        assert campaign.graph is None
        assert campaign.graph_version == 0

    def test_save_keeps_status(self, campaigns):
        """Metadata updates never touch status."""
        _create(campaigns, "c1", payload=scenario_a_payload())
        campaigns.set_status("c1", CampaignStatus.ACTIVE)
        updated = campaigns.save(Campaign(id="c1", name="Renamed", session_name="default"))
        assert updated.name == "Renamed"
        assert updated.status == CampaignStatus.ACTIVE
        assert updated.graph_version == 1

    def test_publish_increments_version(self, campaigns):
        """Each publish is a new immutable version."""
        _create(campaigns, "c1", payload=scenario_a_payload())
        version = campaigns.publish_graph("c1", CampaignGraph.from_dict(scenario_b_payload()))
        assert version == 2
        assert campaigns.get("c1").graph.get_node("2").type.value == "qualification"
        assert campaigns.load_graph("c1", 1).get_node("2").type.value == "broadcast"

    def test_graph_survives_new_store(self, campaigns, db_path):
        """Graphs are read back from the database."""
        payload = scenario_a_payload()
        _create(campaigns, "c1", payload=payload)
        assert CampaignStore(db_path).get("c1").graph.to_dict() == payload

    def test_invalid_graph_rejected(self, campaigns):
        """Structural errors block publishing."""
        _create(campaigns, "c1")
        with pytest.raises(GraphConfigError) as exc_info:
            campaigns.publish_graph("c1", CampaignGraph.from_dict(graph_payload([node("1", "closing")], [])))
        assert exc_info.value.reason == GraphConfigError.INVALID_GRAPH
        assert exc_info.value.issues
        assert campaigns.get("c1").graph_version == 0

    def test_publish_unknown_campaign(self, campaigns):
        """Publishing needs an existing campaign."""
        with pytest.raises(KeyError):
            campaigns.publish_graph("ghost", CampaignGraph.from_dict(scenario_a_payload()))

    def test_activation_needs_graph(self, campaigns):
        """A draft without graph cannot go live."""
        _create(campaigns, "c1")
        with pytest.raises(GraphConfigError):
            campaigns.set_status("c1", CampaignStatus.ACTIVE)

    def test_second_active_campaign_conflicts(self, campaigns):
        """At most one active campaign per session."""
        _create(campaigns, "c1", payload=scenario_a_payload())
        _create(campaigns, "c2", payload=scenario_a_payload())
        campaigns.set_status("c1", CampaignStatus.ACTIVE)
        with pytest.raises(RoutingError) as exc_info:
            campaigns.set_status("c2", CampaignStatus.ACTIVE)
        assert exc_info.value.reason == RoutingError.CONFLICT
        assert exc_info.value.campaign_ids == ["c1"]
        assert campaigns.get("c2").status == CampaignStatus.DRAFT

    def test_other_session_does_not_conflict(self, campaigns):
        """Sessions are independent."""
        _create(campaigns, "c1", payload=scenario_a_payload())
        _create(campaigns, "c2", session_name="vendas", payload=scenario_a_payload())
        campaigns.set_status("c1", CampaignStatus.ACTIVE)
        campaigns.set_status("c2", CampaignStatus.ACTIVE)
        assert campaigns.active_index() == {"default": ["c1"], "vendas": ["c2"]}

    def test_pause_records_time(self, campaigns):
        """paused_at is set on pause and cleared on activation."""
        _create(campaigns, "c1", payload=scenario_a_payload())
        assert campaigns.set_status("c1", CampaignStatus.PAUSED).paused_at is not None
        assert campaigns.set_status("c1", CampaignStatus.ACTIVE).paused_at is None

    def test_set_status_unknown(self, campaigns):
        """Unknown campaigns return None."""
        assert campaigns.set_status("ghost", CampaignStatus.PAUSED) is None

    def test_list_campaigns_filters(self, campaigns):
        """Filter by session and status."""
        _create(campaigns, "c1", payload=scenario_a_payload())
        _create(campaigns, "c2")
        campaigns.set_status("c1", CampaignStatus.ACTIVE)
        assert [c.id for c in campaigns.list_campaigns("default")] == ["c1", "c2"]
        assert [c.id for c in campaigns.list_campaigns(status=CampaignStatus.DRAFT)] == ["c2"]


class TestConversationStateStore:

    def test_round_trip(self, db_path):
        """Saved state loads back equal."""
        store = ConversationStateStore(db_path)
        state = new_state()
        state.phase = ConversationPhase.AT_NODE
        state.current_node_id = "3"
        state.variables = {"intent": "TECH", "name": "Zé"}
        state.pad = PadVector(0.2, 0.9, 0.5)
        state.node_turns = {"2": 3}
        state.history = [{"role": "user", "text": "oi"}]
        store.save(state)
        assert store.load(state.campaign_id, state.chat_id) == state

    def test_missing(self, db_path):
        """Unknown pairs load as None."""
        assert ConversationStateStore(db_path).load("c1", "x@c.us") is None

    def test_upsert_and_delete(self, db_path):
        """Saving twice overwrites, delete removes."""
        store = ConversationStateStore(db_path)
        state = new_state()
        store.save(state)
        state.final_status = "won"
        store.save(state)
        assert store.load(state.campaign_id, state.chat_id).final_status == "won"
        store.delete(state.campaign_id, state.chat_id)
        assert store.load(state.campaign_id, state.chat_id) is None


class TestChatBindingStore:

    def test_bind_rebind_unbind(self, db_path):
        """A chat belongs to one campaign at a time."""
        bindings = ChatBindingStore(db_path)
        assert bindings.get("default", "a@c.us") is None
        bindings.bind("default", "a@c.us", "c1")
        bindings.bind("default", "a@c.us", "c2")
        assert bindings.get("default", "a@c.us") == "c2"
        assert bindings.get("vendas", "a@c.us") is None
        bindings.unbind("default", "a@c.us")
        assert bindings.get("default", "a@c.us") is None

    def test_handoff_flag_follows_latest_bind(self, db_path):
        """Rebinding records whether the chat arrived by handoff."""
        bindings = ChatBindingStore(db_path)
        bindings.bind("default", "a@c.us", "c1")
        assert bindings.get_binding("default", "a@c.us").via_handoff is False
        bindings.bind("default", "a@c.us", "c2", via_handoff=True)
        binding = bindings.get_binding("default", "a@c.us")
        assert binding.campaign_id == "c2"
        assert binding.via_handoff is True
        assert binding.bound_at > 0

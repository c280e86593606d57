"""
Session Router.

Maps an inbound session name to the single active campaign bound to it. The
index (session -> active campaign ids) is rebuilt from the store on demand,
expires after router.index_ttl_seconds and is invalidated by every status
change made through the router.

Usage:
    router = SessionRouter(campaign_store, binding_store)
    result = router.resolve("default")
    if result.found:
        campaign = router.campaign(result.campaign_id)
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from campaign_engine.engine.errors import RoutingError, ValidationError
from campaign_engine.engine.models import Campaign, CampaignStatus
from campaign_engine.engine.store import CampaignStore, ChatBindingStore
from campaign_engine.logger import log_routing_failure, logger
from campaign_engine.settings import settings


class RouteStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class RouteResult:
    status: RouteStatus
    session_name: str
    campaign_ids: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.status == RouteStatus.FOUND

    @property
    def campaign_id(self) -> Optional[str]:
        return self.campaign_ids[0] if self.found else None


class SessionRouter:
    """Session -> campaign resolution plus the status transitions that affect it."""

    _UNROUTABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.ARCHIVED)

    def __init__(
        self,
        campaigns: CampaignStore,
        bindings: Optional[ChatBindingStore] = None,
        index_ttl_seconds: Optional[float] = None,
    ):
        self.campaigns = campaigns
        self.bindings = bindings
        self.index_ttl_seconds = (
            index_ttl_seconds if index_ttl_seconds is not None else settings.router.index_ttl_seconds
        )
        self._index: Optional[Dict[str, List[str]]] = None
        self._index_built_at = 0.0
        self._lock = threading.Lock()

    # ----------------------------------------------------------------- index

    def invalidate(self) -> None:
        with self._lock:
            self._index = None

    def _active_index(self) -> Dict[str, List[str]]:
        with self._lock:
            expired = time.time() - self._index_built_at > self.index_ttl_seconds
            if self._index is None or expired:
                self._index = self.campaigns.active_index()
                self._index_built_at = time.time()
                logger.debug("Router index rebuilt", sessions=len(self._index))
            return self._index

    # ------------------------------------------------------------ resolution

    def resolve(self, session_name: str) -> RouteResult:
        """Active campaign(s) for a session. No side effects besides the index cache."""
        if not session_name:
            raise ValidationError("session name is required")
        campaign_ids = list(self._active_index().get(session_name, []))
        if not campaign_ids:
            return RouteResult(RouteStatus.NOT_FOUND, session_name)
        if len(campaign_ids) > 1:
            return RouteResult(RouteStatus.AMBIGUOUS, session_name, campaign_ids)
        return RouteResult(RouteStatus.FOUND, session_name, campaign_ids)

    def require(self, session_name: str) -> str:
        """
        Id of the single active campaign.

        Raises:
            RoutingError: NOT_FOUND or AMBIGUOUS
        """
        result = self.resolve(session_name)
        if not result.found:
            log_routing_failure(session_name, result.status.value, result.campaign_ids)
            raise RoutingError(result.status.value, session_name, campaign_ids=result.campaign_ids)
        return result.campaign_id

    def route(self, session_name: str, chat_id: str) -> Campaign:
        """
        Campaign that owns the chat: its binding when usable, else the
        session's active campaign. A paused bound campaign is still returned;
        the caller holds the message.

        Raises:
            RoutingError: NOT_FOUND or AMBIGUOUS
        """
        if self.bindings is not None:
            bound_id = self.bindings.get(session_name, chat_id)
            if bound_id:
                campaign = self.campaigns.get(bound_id)
                if campaign is not None and campaign.status not in self._UNROUTABLE_STATUSES:
                    return campaign
                logger.info(
                    "Ignoring stale chat binding",
                    session_name=session_name,
                    campaign_id=bound_id,
                    status=campaign.status.value if campaign else None,
                )

        campaign_id = self.require(session_name)
        campaign = self.campaigns.get(campaign_id)
        if campaign is None:
            self.invalidate()
            raise RoutingError(RoutingError.NOT_FOUND, session_name)
        return campaign

    def is_held(self, campaign: Campaign, session_name: str, chat_id: str) -> bool:
        """
        Whether messages for the chat wait instead of running.

        A paused campaign holds its chats, except chats handed to it by
        another campaign after it was paused: a handoff target on the same
        session cannot be active next to its source.
        """
        if campaign.status != CampaignStatus.PAUSED:
            return False
        binding = self.bindings.get_binding(session_name, chat_id) if self.bindings is not None else None
        if binding is None or not binding.via_handoff or binding.campaign_id != campaign.id:
            return True
        return campaign.paused_at is not None and campaign.paused_at > binding.bound_at

    def campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self.campaigns.get(campaign_id)

    # ---------------------------------------------------------- transitions

    def set_status(self, campaign_id: str, status: CampaignStatus) -> Optional[Campaign]:
        """
        Change a campaign's status and invalidate the index.

        Raises:
            RoutingError: CONFLICT when activating next to another active campaign
        """
        try:
            campaign = self.campaigns.set_status(campaign_id, status)
        finally:
            self.invalidate()
        return campaign

    def activate(self, campaign_id: str) -> Optional[Campaign]:
        return self.set_status(campaign_id, CampaignStatus.ACTIVE)

    def pause(self, campaign_id: str) -> Optional[Campaign]:
        return self.set_status(campaign_id, CampaignStatus.PAUSED)

    def archive(self, campaign_id: str) -> Optional[Campaign]:
        return self.set_status(campaign_id, CampaignStatus.ARCHIVED)

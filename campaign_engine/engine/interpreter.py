"""
Graph Interpreter.

Runs one pass over a campaign graph for one inbound message:

    AWAITING_ENTRY --entry trigger--> AT_NODE(n) --await--> AT_NODE(m)
                                          |
                                          +--terminate--> TERMINAL

The pass works on a copy of the conversation state. Await and terminate
commit the copy; a dead-end or the step cap discard it, so the conversation
stays exactly where it was before the message arrived.

Usage:
    interpreter = GraphInterpreter(NodeExecutor(llm=client))
    result = interpreter.run_pass(campaign, state, inbound, dispatch=dispatcher.dispatch)
    if result.changed:
        store.save(result.state)
"""

import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from campaign_engine.engine.emotional_state import EmotionalStateEstimator
from campaign_engine.engine.errors import GraphConfigError, ProviderError
from campaign_engine.engine.executors import ExecutionContext, NodeExecutor
from campaign_engine.engine.models import (
    ActionType,
    Campaign,
    ConversationPhase,
    ConversationState,
    InboundMessage,
    LeadSource,
    Node,
    NodeOutcome,
    OutboundAction,
    StepKind,
)
from campaign_engine.feature_flags import flags
from campaign_engine.logger import log_graph_config_error, logger
from campaign_engine.settings import settings

Dispatch = Callable[[OutboundAction], None]


class PassOutcome(Enum):
    AWAIT = "await"
    TERMINATE = "terminate"
    DEAD_END = "dead_end"
    CYCLE_CAP = "cycle_cap"
    REJECTED = "rejected"       # no trigger accepts the lead origin
    SKIPPED = "skipped"         # terminal conversation, no re-entry


@dataclass
class PassResult:
    """
    Result of one interpreter pass.

    Attributes:
        outcome: How the pass ended
        state: State to persist (the untouched input when changed is False)
        actions: Actions produced and dispatched, in order
        steps: Node executions performed
        changed: Whether state must be persisted
        error: GraphConfigError for dead-ends and the step cap
        handoff_campaign_id: Target of a campaign handoff
        node_error: A provider failure had no error branch
    """
    outcome: PassOutcome
    state: ConversationState
    actions: List[OutboundAction] = field(default_factory=list)
    steps: int = 0
    changed: bool = False
    error: Optional[GraphConfigError] = None
    handoff_campaign_id: Optional[str] = None
    node_error: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


class GraphInterpreter:
    """
    Executes campaign graphs node by node.

    Attributes:
        executor: NodeExecutor with the per-type handlers
        estimator: PAD estimator applied to inbound text
        max_steps: Node executions allowed per pass
        history_limit: Turns kept in ConversationState.history
    """

    def __init__(
        self,
        executor: NodeExecutor,
        estimator: Optional[EmotionalStateEstimator] = None,
        max_steps: Optional[int] = None,
        history_limit: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.executor = executor
        self.estimator = estimator or executor.estimator
        self.max_steps = max_steps or settings.engine.max_steps
        self.history_limit = history_limit or settings.engine.history_limit
        self.rng = rng or random.Random()

    def run_pass(
        self,
        campaign: Campaign,
        state: ConversationState,
        inbound: Optional[InboundMessage] = None,
        dispatch: Optional[Dispatch] = None,
        campaign_lookup: Optional[Callable[[str], Optional[Campaign]]] = None,
    ) -> PassResult:
        """
        Run one pass for `state` under `campaign`.

        Args:
            campaign: Campaign owning the conversation (graph must be loaded)
            state: Persisted state; never mutated
            inbound: Message that triggered the pass
            dispatch: Called with each action right after its node runs
            campaign_lookup: Resolves handoff targets by id

        Returns:
            PassResult
        """
        start = time.time()
        logger.set_conversation(state.key)
        try:
            result = self._run(campaign, state, inbound, dispatch, campaign_lookup)
            logger.metric(
                "pass_duration_ms",
                round((time.time() - start) * 1000, 1),
                campaign_id=campaign.id,
                steps=result.steps,
            )
            logger.event(
                "pass_finished",
                campaign_id=campaign.id,
                outcome=result.outcome.value,
                steps=result.steps,
                actions=len(result.actions),
                node_id=result.state.current_node_id,
            )
            return result
        finally:
            logger.clear_conversation()

    # =========================================================================
    # Pass
    # =========================================================================

    def _run(
        self,
        campaign: Campaign,
        state: ConversationState,
        inbound: Optional[InboundMessage],
        dispatch: Optional[Dispatch],
        campaign_lookup: Optional[Callable[[str], Optional[Campaign]]],
    ) -> PassResult:
        graph = campaign.graph
        if graph is None:
            error = GraphConfigError(
                GraphConfigError.MISSING_NODE, campaign.id, detail="campaign has no published graph",
            )
            return self._fail(campaign, state, error, PassOutcome.DEAD_END, 0, [])

        working = state.copy()

        if working.is_terminal:
            if working.is_human_owned or not campaign.reentry_after_close:
                logger.info(
                    "Conversation closed, inbound accepted without execution",
                    final_status=working.final_status,
                )
                return PassResult(PassOutcome.SKIPPED, state)
            logger.info("Conversation re-entering campaign", previous_status=working.final_status)
            working.reset_for_reentry()
            working.lead_source = None

        if inbound is not None:
            self._absorb_inbound(working, inbound)

        if working.phase == ConversationPhase.AWAITING_ENTRY:
            if not working.lead_source:
                working.lead_source = inbound.source if inbound is not None else LeadSource.INBOUND
            entry = graph.entry_node(working.lead_source)
            if entry is None:
                logger.warning(
                    "No trigger accepts lead source, conversation not created",
                    campaign_id=campaign.id,
                    source=working.lead_source,
                )
                return PassResult(PassOutcome.REJECTED, state)
            node_id = entry.id
            working.graph_version = campaign.graph_version
        else:
            node_id = working.current_node_id

        actions: List[OutboundAction] = []
        node_inbound = inbound
        steps = 0

        while True:
            if steps >= self.max_steps:
                error = GraphConfigError(
                    GraphConfigError.CYCLE_CAP,
                    campaign.id,
                    node_id,
                    detail=f"cycle detected, more than {self.max_steps} steps",
                )
                return self._fail(campaign, state, error, PassOutcome.CYCLE_CAP, steps, actions)

            node = graph.get_node(node_id)
            if node is None:
                error = GraphConfigError(
                    GraphConfigError.MISSING_NODE, campaign.id, node_id, detail="node not in graph",
                )
                return self._fail(campaign, state, error, PassOutcome.DEAD_END, steps, actions)

            steps += 1
            ctx = ExecutionContext(
                campaign=campaign,
                graph=graph,
                state=working,
                inbound=node_inbound,
                campaign_lookup=campaign_lookup,
                rng=self.rng,
            )
            node_inbound = None

            outcome = self.executor.execute(node, ctx)
            outcome = self._dispatch(node, graph, outcome, working, actions, dispatch)

            logger.event(
                "node_executed",
                node_id=node.id,
                node_type=node.type.value,
                kind=outcome.kind.value,
                handle=outcome.handle,
                next_node_id=outcome.next_node_id,
            )

            if outcome.kind == StepKind.DEAD_END:
                error = GraphConfigError(
                    outcome.reason or GraphConfigError.DEAD_END,
                    campaign.id,
                    node.id,
                    detail=f"no edge for handle {outcome.handle!r}" if outcome.handle else "",
                )
                return self._fail(
                    campaign, state, error, PassOutcome.DEAD_END, steps, actions, node_error=outcome.alert,
                )

            self._apply(working, node, outcome)

            if outcome.kind == StepKind.CONTINUE:
                node_id = outcome.next_node_id
                continue

            if outcome.kind == StepKind.AWAIT:
                working.phase = ConversationPhase.AT_NODE
                working.current_node_id = outcome.next_node_id
                return self._finish(working, PassOutcome.AWAIT, steps, actions)

            working.phase = ConversationPhase.TERMINAL
            working.current_node_id = node.id
            working.final_status = outcome.final_status
            if outcome.clear_variables:
                working.variables = {}
            return self._finish(
                working, PassOutcome.TERMINATE, steps, actions,
                handoff_campaign_id=outcome.handoff_campaign_id,
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _absorb_inbound(self, working: ConversationState, inbound: InboundMessage) -> None:
        if inbound.session_name:
            working.session_name = inbound.session_name
        working.variables["last_message"] = inbound.body
        if inbound.push_name and "name" not in working.variables:
            working.variables["name"] = inbound.push_name
        working.append_history("user", inbound.body, self.history_limit)
        if flags.emotional_state and flags.sentiment_heuristics:
            working.pad = self.estimator.observe_text(working.pad, inbound.body)

    def _dispatch(
        self,
        node: Node,
        graph,
        outcome: NodeOutcome,
        working: ConversationState,
        actions: List[OutboundAction],
        dispatch: Optional[Dispatch],
    ) -> NodeOutcome:
        """Send the node's actions in order; a provider failure replaces the outcome."""
        for action in outcome.actions:
            try:
                if dispatch is not None:
                    dispatch(action)
            except ProviderError as exc:
                return self.executor.provider_failure(node, graph, exc)
            actions.append(action)
            if action.type == ActionType.SEND_TEXT:
                working.append_history("model", action.text, self.history_limit)
        return outcome

    @staticmethod
    def _apply(working: ConversationState, node: Node, outcome: NodeOutcome) -> None:
        working.variables.update(outcome.variables)
        working.qualification_slots.update(outcome.slots)
        if outcome.pad is not None:
            working.pad = outcome.pad
        if outcome.turns is not None:
            if outcome.turns:
                working.node_turns[node.id] = outcome.turns
            else:
                working.node_turns.pop(node.id, None)

    @staticmethod
    def _finish(
        working: ConversationState,
        outcome: PassOutcome,
        steps: int,
        actions: List[OutboundAction],
        handoff_campaign_id: Optional[str] = None,
    ) -> PassResult:
        working.last_activity_at = time.time()
        return PassResult(
            outcome=outcome,
            state=working,
            actions=actions,
            steps=steps,
            changed=True,
            handoff_campaign_id=handoff_campaign_id,
        )

    @staticmethod
    def _fail(
        campaign: Campaign,
        state: ConversationState,
        error: GraphConfigError,
        outcome: PassOutcome,
        steps: int,
        actions: List[OutboundAction],
        node_error: bool = False,
    ) -> PassResult:
        log_graph_config_error(
            campaign.id,
            error.node_id,
            error.reason,
            detail=error.detail,
            steps=steps,
            dispatched=len(actions),
        )
        return PassResult(
            outcome=outcome,
            state=state,
            actions=actions,
            steps=steps,
            changed=False,
            error=error,
            node_error=node_error,
        )

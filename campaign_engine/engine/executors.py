"""
Node executors.

One handler per NodeType. A handler reads (node config, conversation state,
latest inbound) and returns a NodeOutcome: the step kind, the state delta and
the outbound actions. Handlers never mutate the state and never raise for
node-level failures; those become dead-ends or error-branch transitions.

Usage:
    executor = NodeExecutor(llm=gemini_client)
    outcome = executor.execute(node, ctx)
"""

import json
import random
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from campaign_engine.engine.conditions import select_handle
from campaign_engine.engine.emotional_state import EmotionalStateEstimator
from campaign_engine.engine.errors import GraphConfigError, ProviderError
from campaign_engine.engine.graph import CampaignGraph
from campaign_engine.engine.models import (
    ActionType,
    Campaign,
    CampaignStatus,
    ConversationState,
    FINAL_STATUS_HANDOFF,
    FINAL_STATUS_MANUAL,
    Handle,
    HandoffConfig,
    InboundMessage,
    LeadSource,
    Node,
    NodeOutcome,
    NodeType,
    OutboundAction,
)
from campaign_engine.engine.spintax import render
from campaign_engine.feature_flags import flags
from campaign_engine.logger import logger

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```\s*$")

UNFILLED_VALUES = {"", "unknown", "desconhecido", "none", "null"}


@dataclass
class ExecutionContext:
    """
    Everything a handler may read during one node execution.

    `inbound` is set only on the first execution of a pass; later nodes in
    the same pass work on accumulated variables.
    """
    campaign: Campaign
    graph: CampaignGraph
    state: ConversationState
    inbound: Optional[InboundMessage] = None
    campaign_lookup: Optional[Callable[[str], Optional[Campaign]]] = None
    rng: random.Random = field(default_factory=random.Random)

    @property
    def session_name(self) -> str:
        if self.inbound is not None:
            return self.inbound.session_name
        return self.state.session_name

    @property
    def chat_id(self) -> str:
        return self.state.chat_id


@dataclass
class AgentOutput:
    reply: str
    value: str
    sentiment: Optional[float] = None


def parse_agent_output(text: str, variable_name: Optional[str] = None) -> AgentOutput:
    """
    Coerce raw LLM text into (reply, stored value, sentiment).

    JSON objects may carry "response"/"messages", a classification under the
    variable name, "intent" or "value", and "sentiment_score". Anything else
    is taken verbatim.
    """
    raw = (text or "").strip()
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", raw)).strip()

    try:
        parsed = json.loads(cleaned)
    except ValueError:
        parsed = None

    if not isinstance(parsed, dict):
        return AgentOutput(reply=cleaned, value=cleaned)

    messages = parsed.get("messages")
    reply = parsed.get("response") or (messages[0] if isinstance(messages, list) and messages else "")
    value = None
    for key in (variable_name, "intent", "value", "classification"):
        if key and parsed.get(key) not in (None, ""):
            value = parsed[key]
            break
    if value is None:
        value = reply or cleaned

    sentiment = parsed.get("sentiment_score")
    try:
        sentiment = float(sentiment) if sentiment is not None else None
    except (TypeError, ValueError):
        sentiment = None

    return AgentOutput(reply=str(reply or "").strip(), value=str(value).strip(), sentiment=sentiment)


def build_agent_prompt(campaign: Campaign, system_prompt: str, emotional_instruction: str) -> str:
    """Agent DNA, then emotional context, then the node directive."""
    sections = []
    if campaign.agent_instructions:
        sections.append(campaign.agent_instructions.strip())
    if emotional_instruction:
        sections.append(emotional_instruction)
    if system_prompt:
        sections.append(f"<node_directive>\n{system_prompt.strip()}\n</node_directive>")
    return "\n\n".join(sections)


def is_slot_filled(value: Any) -> bool:
    return value is not None and str(value).strip().lower() not in UNFILLED_VALUES


def _truthy(value: Any) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes", "sim")


class NodeExecutor:
    """
    Dispatches a node to the handler of its type.

    Attributes:
        llm: Client exposing generate_content(model, system_prompt, history)
        estimator: PAD estimator used by agentic nodes
    """

    def __init__(self, llm: Any = None, estimator: Optional[EmotionalStateEstimator] = None):
        self.llm = llm
        self.estimator = estimator or EmotionalStateEstimator()
        self._handlers: Dict[NodeType, Callable[[Node, ExecutionContext], NodeOutcome]] = {
            node_type: getattr(self, name) for node_type, name in HANDLERS.items()
        }

    def execute(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        return self._handlers[node.type](node, ctx)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _advance(self, node: Node, ctx: ExecutionContext, outcome_factory, **kwargs) -> NodeOutcome:
        """Follow the default successor or dead-end when there is none."""
        edge = ctx.graph.successor(node.id)
        if edge is None:
            return NodeOutcome.dead_end(
                GraphConfigError.DEAD_END,
                actions=kwargs.pop("actions", []),
                **kwargs,
            )
        return outcome_factory(edge.target, **kwargs)

    def provider_failure(self, node: Node, graph: CampaignGraph, exc: ProviderError) -> NodeOutcome:
        """Route to the node's error edge, else dead-end with an operator alert."""
        edge = graph.resolve_edge(node.id, Handle.ERROR)
        logger.warning(
            "Provider failure in node",
            node_id=node.id,
            node_type=node.type.value,
            provider=exc.provider,
            error_branch=edge.id if edge else None,
        )
        if edge is not None:
            return NodeOutcome.continue_(edge.target, handle=Handle.ERROR, reason="provider_error")
        return NodeOutcome.dead_end("provider_error", alert=True)

    # =========================================================================
    # Handlers
    # =========================================================================

    def _execute_trigger(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        source = ctx.state.lead_source or (ctx.inbound.source if ctx.inbound else LeadSource.INBOUND)
        if not node.config.accepts(source):
            logger.warning(
                "Lead entry rejected by trigger source filter",
                node_id=node.id,
                source=source,
                allowed=node.config.allowed_sources,
            )
            return NodeOutcome.dead_end("source_rejected")
        return self._advance(node, ctx, NodeOutcome.continue_)

    def _execute_broadcast(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.config
        text = render(
            config.message_template,
            ctx.state.variables,
            rng=ctx.rng,
            spintax=config.spintax_enabled and flags.spintax,
        )
        actions = [OutboundAction.send_text(ctx.session_name, ctx.chat_id, text, node_id=node.id)]
        return self._advance(node, ctx, NodeOutcome.await_, actions=actions)

    def _execute_agentic(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.config
        if self.llm is None:
            logger.error("Agentic node without LLM client", node_id=node.id)
            return NodeOutcome.dead_end("llm_unavailable", alert=True)

        instruction = self.estimator.instruction(ctx.state.pad) if flags.emotional_state else ""
        system_prompt = build_agent_prompt(ctx.campaign, config.system_prompt, instruction)

        try:
            response = self.llm.generate_content(
                config.model or ctx.campaign.model,
                system_prompt,
                list(ctx.state.history),
            )
        except ProviderError as exc:
            return self.provider_failure(node, ctx.graph, exc)

        output = parse_agent_output(response.text, config.variable_name)

        variables = {}
        if config.variable_name:
            variables[config.variable_name] = output.value

        pad = None
        if output.sentiment is not None and flags.emotional_state:
            pad = self.estimator.observe_sentiment(ctx.state.pad, output.sentiment)

        actions = []
        if config.send_reply and output.reply:
            actions.append(OutboundAction.send_text(ctx.session_name, ctx.chat_id, output.reply, node_id=node.id))

        logger.info(
            "Agent output stored",
            node_id=node.id,
            variable=config.variable_name,
            value=output.value[:80],
            replied=bool(actions),
        )

        factory = NodeOutcome.await_ if config.await_reply else NodeOutcome.continue_
        return self._advance(node, ctx, factory, actions=actions, variables=variables, pad=pad)

    def _execute_logic(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.config
        handle = select_handle(config, ctx.state.variables)
        edge = ctx.graph.resolve_edge(node.id, handle)
        if edge is None and config.multi and handle == Handle.output(len(config.conditions)):
            edge = ctx.graph.resolve_edge(node.id, Handle.ELSE)

        logger.debug("Logic branch selected", node_id=node.id, handle=handle, edge_id=edge.id if edge else None)
        if edge is None:
            return NodeOutcome.dead_end(GraphConfigError.DEAD_END, handle=handle)
        return NodeOutcome.continue_(edge.target, handle=handle)

    def _execute_qualification(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.config

        extracted: Dict[str, str] = {}
        if ctx.inbound is not None and ctx.inbound.body:
            for slot, pattern in config.extractors.items():
                try:
                    match = re.search(pattern, ctx.inbound.body, re.IGNORECASE)
                except re.error:
                    logger.warning("Invalid slot extractor", node_id=node.id, slot=slot)
                    continue
                if match:
                    value = match.group(1) if match.groups() else match.group(0)
                    extracted[slot] = value.strip()

        merged = dict(ctx.state.variables)
        merged.update(extracted)
        slots = {slot: is_slot_filled(merged.get(slot)) for slot in config.slots}
        for slot in config.required_slots:
            slots.setdefault(slot, is_slot_filled(merged.get(slot)))

        ready = all(slots[s] for s in config.required_slots) or _truthy(merged.get("ready_to_close", ""))
        if ready:
            edge = ctx.graph.resolve_edge(node.id, Handle.QUALIFIED) or ctx.graph.successor(node.id)
            if edge is None:
                return NodeOutcome.dead_end(GraphConfigError.DEAD_END, handle=Handle.QUALIFIED)
            return NodeOutcome.continue_(
                edge.target, handle=Handle.QUALIFIED, variables=extracted, slots=slots, turns=0,
            )

        turns = ctx.state.node_turns.get(node.id, 0)
        if ctx.inbound is not None:
            turns += 1

        if config.max_turns is not None and turns >= config.max_turns:
            edge = ctx.graph.resolve_edge(node.id, Handle.FALLBACK)
            logger.info(
                "Qualification max turns reached",
                node_id=node.id,
                turns=turns,
                fallback=edge.id if edge else None,
            )
            if edge is None:
                return NodeOutcome.dead_end("qualification_exhausted", handle=Handle.FALLBACK)
            return NodeOutcome.continue_(
                edge.target, handle=Handle.FALLBACK, variables=extracted, slots=slots, turns=0,
            )

        actions = []
        if config.reprompt_message:
            missing = [s for s in config.required_slots if not slots.get(s)]
            text = render(
                config.reprompt_message,
                {**merged, "missing_slots": ", ".join(missing)},
                rng=ctx.rng,
                spintax=flags.spintax,
            )
            actions.append(OutboundAction.send_text(ctx.session_name, ctx.chat_id, text, node_id=node.id))

        return NodeOutcome.await_(
            node.id, actions=actions, variables=extracted, slots=slots, turns=turns,
        )

    def _execute_handoff(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.config

        if config.target == HandoffConfig.TARGET_HUMAN:
            action = OutboundAction(
                ActionType.ESCALATE, ctx.session_name, ctx.chat_id,
                reason=config.reason or "handoff", node_id=node.id,
            )
            return NodeOutcome.terminate(FINAL_STATUS_MANUAL, actions=[action])

        if config.target != HandoffConfig.TARGET_CAMPAIGN or not config.target_campaign_id:
            return NodeOutcome.dead_end(GraphConfigError.INVALID_TARGET)

        target_id = config.target_campaign_id
        target = ctx.campaign_lookup(target_id) if ctx.campaign_lookup else None
        if (
            target is None
            or target.id == ctx.campaign.id
            or target.status in (CampaignStatus.ARCHIVED, CampaignStatus.DRAFT)
        ):
            logger.warning(
                "Handoff target unusable",
                node_id=node.id,
                target_campaign_id=target_id,
                target_status=target.status.value if target else None,
            )
            return NodeOutcome.dead_end(GraphConfigError.INVALID_TARGET)

        action = OutboundAction(
            ActionType.HANDOFF, ctx.session_name, ctx.chat_id,
            reason=config.reason or None, target_campaign_id=target_id, node_id=node.id,
        )
        return NodeOutcome.terminate(
            FINAL_STATUS_HANDOFF, actions=[action], handoff_campaign_id=target_id,
        )

    def _execute_closing(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.config
        action = OutboundAction(
            ActionType.STATUS_CHANGE, ctx.session_name, ctx.chat_id,
            final_status=config.final_status, node_id=node.id,
        )
        return NodeOutcome.terminate(
            config.final_status, actions=[action], clear_variables=config.clear_variables,
        )


HANDLERS: Dict[NodeType, str] = {
    NodeType.TRIGGER: "_execute_trigger",
    NodeType.BROADCAST: "_execute_broadcast",
    NodeType.AGENTIC: "_execute_agentic",
    NodeType.LOGIC: "_execute_logic",
    NodeType.QUALIFICATION: "_execute_qualification",
    NodeType.HANDOFF: "_execute_handoff",
    NodeType.CLOSING: "_execute_closing",
}


def _check_handlers() -> None:
    missing = [t.value for t in NodeType if t not in HANDLERS]
    unbound = [name for name in HANDLERS.values() if not callable(getattr(NodeExecutor, name, None))]
    if missing or unbound:
        raise RuntimeError(f"Incomplete executor table: missing={missing} unbound={unbound}")


_check_handlers()

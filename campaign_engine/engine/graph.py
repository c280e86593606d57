"""
Campaign graph: arena of nodes plus adjacency grouped by (source, handle).

Persisted format (editor output):
    {"nodes": [{"id", "type", "position", "data"}],
     "edges": [{"id", "source", "sourceHandle"?, "target", "type"}]}

Only node `data` and the topology are load-bearing; presentation fields
(position, edge type, style) are carried through untouched.

Usage:
    graph = CampaignGraph.from_dict(payload)
    issues = graph.validate()
    edge = graph.resolve_edge("4", "true")
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from campaign_engine.engine.errors import GraphConfigError
from campaign_engine.engine.models import Edge, Handle, Node, NodeType
from campaign_engine.logger import logger

AdjacencyKey = Tuple[str, Optional[str]]


@dataclass(frozen=True)
class GraphIssue:
    """Validation finding. Errors reject a publish, warnings are logged."""
    severity: str
    code: str
    message: str
    node_id: Optional[str] = None

    ERROR = "error"
    WARNING = "warning"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "code": self.code,
            "message": self.message,
            "nodeId": self.node_id,
        }


class CampaignGraph:
    """
    Read-only campaign graph.

    Nodes are indexed by id; edges are grouped by (source_node_id, handle)
    and sorted by edge id inside each group, so duplicate handles resolve to
    the lexically first edge.
    """

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]):
        self._nodes: "OrderedDict[str, Node]" = OrderedDict()
        for node in nodes:
            if node.id in self._nodes:
                raise GraphConfigError(
                    GraphConfigError.INVALID_GRAPH,
                    node_id=node.id,
                    detail="duplicate node id",
                )
            self._nodes[node.id] = node

        self._edges: List[Edge] = list(edges)
        self._adjacency: Dict[AdjacencyKey, List[Edge]] = {}
        for edge in self._edges:
            self._adjacency.setdefault((edge.source, edge.source_handle), []).append(edge)
        for group in self._adjacency.values():
            group.sort(key=lambda e: e.id)

    # ---------------------------------------------------------------- parsing

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, Any]]) -> "CampaignGraph":
        """Parse the persisted format. Any malformed part raises GraphConfigError."""
        payload = payload or {}
        if not isinstance(payload, dict):
            raise GraphConfigError(GraphConfigError.INVALID_GRAPH, detail="graph must be an object")
        raw_nodes = payload.get("nodes") or []
        raw_edges = payload.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise GraphConfigError(GraphConfigError.INVALID_GRAPH, detail="nodes and edges must be lists")

        nodes = []
        for raw in raw_nodes:
            if not isinstance(raw, dict):
                raise GraphConfigError(GraphConfigError.INVALID_GRAPH, detail="invalid node: not an object")
            try:
                nodes.append(Node.from_dict(raw))
            except (KeyError, ValueError, TypeError, AttributeError) as exc:
                raise GraphConfigError(
                    GraphConfigError.INVALID_GRAPH,
                    node_id=str(raw.get("id")),
                    detail=f"invalid node: {exc}",
                ) from exc
        edges = []
        for raw in raw_edges:
            if not isinstance(raw, dict):
                raise GraphConfigError(GraphConfigError.INVALID_GRAPH, detail="invalid edge: not an object")
            try:
                edges.append(Edge.from_dict(raw))
            except (KeyError, TypeError, AttributeError) as exc:
                raise GraphConfigError(
                    GraphConfigError.INVALID_GRAPH,
                    detail=f"invalid edge: {exc}",
                ) from exc
        return cls(nodes, edges)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [edge.to_dict() for edge in self._edges],
        }

    def topology(self) -> Dict[str, Any]:
        """Semantic content only: node types/configs and edge wiring."""
        return {
            "nodes": sorted(
                (node.id, node.type.value, repr(node.config)) for node in self._nodes.values()
            ),
            "edges": sorted(
                (edge.id, edge.source, edge.source_handle or "", edge.target)
                for edge in self._edges
            ),
        }

    # ----------------------------------------------------------------- access

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges)

    def get_node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def outgoing(self, node_id: str) -> List[Edge]:
        return sorted(
            (edge for edge in self._edges if edge.source == node_id),
            key=lambda e: e.id,
        )

    def triggers(self) -> List[Node]:
        return [n for n in self._nodes.values() if n.type == NodeType.TRIGGER]

    # ------------------------------------------------------------- resolution

    def resolve_edge(self, node_id: str, handle: Optional[str]) -> Optional[Edge]:
        """
        Edge leaving node_id through handle, or None (dead-end).

        Duplicate (source, handle) edges are an authoring error: the first by
        edge id wins and a warning is logged.
        """
        group = self._adjacency.get((node_id, handle))
        if not group:
            return None
        if len(group) > 1:
            logger.warning(
                "Duplicate edges for handle, using first",
                node_id=node_id,
                handle=handle,
                edge_ids=[e.id for e in group],
            )
        return group[0]

    def successor(self, node_id: str) -> Optional[Edge]:
        """
        Default successor of a single-output node.

        Prefers the unlabelled edge; otherwise any outgoing edge that is not a
        reserved branch handle (editors often tag default outputs).
        """
        edge = self.resolve_edge(node_id, None)
        if edge is not None:
            return edge
        reserved = {Handle.ERROR, Handle.FALLBACK}
        candidates = [e for e in self.outgoing(node_id) if e.source_handle not in reserved]
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.warning(
                "Multiple default edges, using first",
                node_id=node_id,
                edge_ids=[e.id for e in candidates],
            )
        return candidates[0]

    def entry_node(self, source: str) -> Optional[Node]:
        """
        Trigger that accepts a lead of the given origin.

        Triggers with allowedSources that list the origin win; otherwise the
        first trigger without allowedSources. None when every trigger rejects.
        """
        triggers = self.triggers()
        for node in triggers:
            if node.config.specialized and node.config.accepts(source):
                return node
        for node in triggers:
            if not node.config.specialized:
                return node
        return None

    # ------------------------------------------------------------- validation

    def validate(self) -> List[GraphIssue]:
        """Check structure and the reachability invariants."""
        issues: List[GraphIssue] = []

        if not self.triggers():
            issues.append(GraphIssue(GraphIssue.ERROR, "no_trigger", "graph has no trigger node"))

        for edge in self._edges:
            for end in (edge.source, edge.target):
                if end not in self._nodes:
                    issues.append(GraphIssue(
                        GraphIssue.ERROR,
                        "dangling_edge",
                        f"edge {edge.id} references unknown node {end}",
                    ))

        for (source, handle), group in self._adjacency.items():
            if len(group) > 1:
                issues.append(GraphIssue(
                    GraphIssue.WARNING,
                    "duplicate_handle",
                    f"{len(group)} edges share handle {handle!r}; {group[0].id} wins",
                    node_id=source,
                ))

        reachable = self._reachable_from_triggers()
        for node in self._nodes.values():
            if node.id not in reachable:
                issues.append(GraphIssue(
                    GraphIssue.WARNING, "unreachable", "node is not reachable from any trigger",
                    node_id=node.id,
                ))
            if node.type != NodeType.CLOSING and not self.outgoing(node.id):
                if node.type == NodeType.HANDOFF:
                    continue
                issues.append(GraphIssue(
                    GraphIssue.WARNING, "no_outgoing_edge", "non-closing node has no outgoing edge",
                    node_id=node.id,
                ))
            issues.extend(self._check_handles(node))

        return issues

    def errors(self) -> List[GraphIssue]:
        return [i for i in self.validate() if i.severity == GraphIssue.ERROR]

    def _reachable_from_triggers(self) -> set:
        seen = set()
        stack = [n.id for n in self.triggers()]
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            stack.extend(e.target for e in self._edges if e.source == node_id)
        return seen

    def _check_handles(self, node: Node) -> List[GraphIssue]:
        issues = []
        config = node.config
        if node.type == NodeType.LOGIC:
            if config.multi:
                expected = [Handle.output(i) for i in range(len(config.conditions))]
            else:
                expected = [Handle.TRUE, Handle.FALSE]
            for handle in expected:
                if self.resolve_edge(node.id, handle) is None:
                    issues.append(GraphIssue(
                        GraphIssue.WARNING, "missing_handle",
                        f"branch {handle!r} has no edge and will dead-end",
                        node_id=node.id,
                    ))
            for condition in config.conditions:
                if not condition.variable:
                    issues.append(GraphIssue(
                        GraphIssue.WARNING, "empty_variable",
                        "condition has no variable and is always false",
                        node_id=node.id,
                    ))
        elif node.type == NodeType.HANDOFF:
            if config.target == "campaign" and not config.target_campaign_id:
                issues.append(GraphIssue(
                    GraphIssue.WARNING, "missing_target",
                    "campaign handoff without targetCampaignId",
                    node_id=node.id,
                ))
        elif node.type == NodeType.QUALIFICATION:
            if config.max_turns is not None and self.resolve_edge(node.id, Handle.FALLBACK) is None:
                issues.append(GraphIssue(
                    GraphIssue.WARNING, "missing_handle",
                    "maxTurns set but no 'fallback' edge; exhaustion will dead-end",
                    node_id=node.id,
                ))
        return issues

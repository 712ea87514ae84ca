"""
Cause Graph Assembler

Turns an investigation dossier into a node/edge graph for visualization:

    operator ──performed──► transaction ──transaction──► discrepancy
    operator ──performed──► adjustment  ──adjustment───► discrepancy
                            cause       ──cause────────► discrepancy

Node ids: "discrepancy", "operator-{id}", "tx-{id}", "adj-{id}", "cause-{i}".
Construction is deterministic for a given dossier.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from investigation_builder import InvestigationDossier


DISCREPANCY_NODE_ID = "discrepancy"
CAUSE_LABEL_LENGTH = 50


class NodeType:
    DISCREPANCY = "discrepancy"
    OPERATOR = "operator"
    TRANSACTION = "transaction"
    ADJUSTMENT = "adjustment"
    CAUSE = "cause"


class EdgeType:
    TRANSACTION = "transaction"
    ADJUSTMENT = "adjustment"
    PERFORMED = "performed"
    CAUSE = "cause"


@dataclass
class GraphNode:
    id: str
    type: str
    label: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "label": self.label, "data": self.data}


@dataclass
class GraphEdge:
    source: str
    target: str
    type: str
    confidence: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"from": self.source, "to": self.target, "type": self.type}
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data


@dataclass
class CauseGraph:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def node(self, node_id: str) -> Optional[GraphNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def edges_from(self, node_id: str) -> List[GraphEdge]:
        return [e for e in self.edges if e.source == node_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


def operator_node_id(operator_id: str) -> str:
    return f"operator-{operator_id}"


def _cause_label(description: str) -> str:
    if len(description) > CAUSE_LABEL_LENGTH:
        return description[:CAUSE_LABEL_LENGTH] + "..."
    return description


def build_cause_graph(dossier: InvestigationDossier) -> CauseGraph:
    """
    Build the cause graph for one dossier.

    Operators that the directory could not resolve still get a node (flagged
    unresolved) so every performed edge has both ends.
    """
    graph = CauseGraph()
    discrepancy = dossier.discrepancy

    graph.nodes.append(GraphNode(
        id=DISCREPANCY_NODE_ID,
        type=NodeType.DISCREPANCY,
        label=str(discrepancy["type"]),
        data={
            "id": discrepancy.get("id"),
            "sku": discrepancy["sku"],
            "location": discrepancy["location_code"],
            "variance": discrepancy["variance"],
            "severity": discrepancy.get("severity"),
        },
    ))

    # Operators
    for profile in dossier.involved_operators:
        graph.nodes.append(GraphNode(
            id=operator_node_id(profile.id),
            type=NodeType.OPERATOR,
            label=profile.display_name or profile.id,
            data={**profile.to_dict(), "resolved": True},
        ))
    for operator_id in dossier.unresolved_operator_ids:
        graph.nodes.append(GraphNode(
            id=operator_node_id(operator_id),
            type=NodeType.OPERATOR,
            label=operator_id,
            data={"id": operator_id, "resolved": False},
        ))

    # Transactions
    for index, tx in enumerate(dossier.related_transactions):
        node_id = f"tx-{tx.id if tx.id is not None else index}"
        graph.nodes.append(GraphNode(
            id=node_id,
            type=NodeType.TRANSACTION,
            label=f"{tx.transaction_type}: {tx.quantity:g}",
            data=tx.to_dict(),
        ))
        graph.edges.append(GraphEdge(source=node_id, target=DISCREPANCY_NODE_ID, type=EdgeType.TRANSACTION))
        if tx.user_id:
            graph.edges.append(GraphEdge(
                source=operator_node_id(tx.user_id), target=node_id, type=EdgeType.PERFORMED
            ))

    # Adjustments
    for index, adj in enumerate(dossier.related_adjustments):
        node_id = f"adj-{adj.id if adj.id is not None else index}"
        graph.nodes.append(GraphNode(
            id=node_id,
            type=NodeType.ADJUSTMENT,
            label=f"Adj: {adj.adjustment_qty:g}",
            data=adj.to_dict(),
        ))
        graph.edges.append(GraphEdge(source=node_id, target=DISCREPANCY_NODE_ID, type=EdgeType.ADJUSTMENT))
        if adj.user_id:
            graph.edges.append(GraphEdge(
                source=operator_node_id(adj.user_id), target=node_id, type=EdgeType.PERFORMED
            ))

    # Causes
    for index, cause in enumerate(dossier.possible_causes):
        node_id = f"cause-{index}"
        graph.nodes.append(GraphNode(
            id=node_id,
            type=NodeType.CAUSE,
            label=_cause_label(cause.description),
            data=cause.to_dict(),
        ))
        graph.edges.append(GraphEdge(
            source=node_id,
            target=DISCREPANCY_NODE_ID,
            type=EdgeType.CAUSE,
            confidence=cause.confidence.value,
        ))

    return graph

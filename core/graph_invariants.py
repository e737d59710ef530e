"""
DAGSTORE GRAPH INVARIANTS - Independent Consistency Checks

The Dag maintains its invariants incrementally. This module re-derives them
from scratch, reading the raw indices, so tests and debugging sessions can
confirm that no sequence of operations ever broke them.

Invariants Checked:
1. Index consistency: a node id is in the node map iff it keys both the
   forward and backward index
2. Mirror consistency: to in forward[frm] iff frm in backward[to]
3. Acyclicity: the forward index has no cycle (rustworkx, not the Dag's DFS)
4. Edge endpoints: every edge joins two existing nodes

Design Philosophy:
- These are MATHEMATICAL constraints, not business rules
- Violations are errors, not warnings
- Checks are O(V+E) using rustworkx primitives
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import rustworkx as rx

logger = logging.getLogger("dagstore.invariants")


# =============================================================================
# INVARIANT RESULTS
# =============================================================================

class InvariantSeverity(Enum):
    """Severity levels for invariant violations."""
    ERROR = "error"      # The Dag is corrupt
    WARNING = "warning"  # Should be investigated


@dataclass
class InvariantViolation:
    """A specific invariant violation."""
    invariant: str
    severity: InvariantSeverity
    message: str
    nodes_involved: List[Any] = field(default_factory=list)
    edges_involved: List[Tuple[Any, Any]] = field(default_factory=list)


@dataclass
class InvariantReport:
    """Complete invariant validation report."""
    valid: bool
    violations: List[InvariantViolation]
    metrics: Dict[str, Any]

    @property
    def errors(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.ERROR]

    @property
    def warnings(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.WARNING]


# =============================================================================
# RUSTWORKX PROJECTION
# =============================================================================

def to_rustworkx(dag) -> Tuple[rx.PyDiGraph, Dict[int, Any]]:
    """
    Project the forward index onto a rustworkx PyDiGraph.

    Node weights are the Dag's node ids. Edges whose endpoints are not
    nodes are skipped (validate_edge_endpoints reports those).

    Returns:
        (graph, index -> node_id map)
    """
    graph = rx.PyDiGraph()
    node_map: Dict[Any, int] = {}
    inv_map: Dict[int, Any] = {}

    for node_id in sorted(dag._nodes):
        idx = graph.add_node(node_id)
        node_map[node_id] = idx
        inv_map[idx] = node_id

    edge_tuples = []
    for from_id, children in dag._edges.items():
        for to_id in children:
            if from_id in node_map and to_id in node_map:
                edge_tuples.append((node_map[from_id], node_map[to_id], None))
    graph.add_edges_from(edge_tuples)

    return graph, inv_map


# =============================================================================
# DAG INVARIANTS
# =============================================================================

class DagInvariants:
    """
    Invariant validators over a Dag's raw indices.

    All methods are static and return (is_valid, violation or None).
    """

    @staticmethod
    def validate_index_consistency(dag) -> Tuple[bool, Optional[InvariantViolation]]:
        """Invariant 1: node map, forward keys and backward keys agree."""
        nodes = set(dag._nodes)
        forward = set(dag._edges)
        backward = set(dag._back_edges)

        if nodes == forward == backward:
            return True, None

        mismatched = (nodes ^ forward) | (nodes ^ backward)
        return False, InvariantViolation(
            invariant="index_consistency",
            severity=InvariantSeverity.ERROR,
            message=f"{len(mismatched)} node ids missing from at least one index",
            nodes_involved=sorted(mismatched, key=repr),
        )

    @staticmethod
    def validate_mirror_consistency(dag) -> Tuple[bool, Optional[InvariantViolation]]:
        """Invariant 2: the backward index mirrors the forward index exactly."""
        forward_pairs = {
            (from_id, to_id)
            for from_id, children in dag._edges.items()
            for to_id in children
        }
        backward_pairs = {
            (from_id, to_id)
            for to_id, parents in dag._back_edges.items()
            for from_id in parents
        }

        if forward_pairs == backward_pairs:
            return True, None

        diff = sorted(forward_pairs ^ backward_pairs, key=repr)
        return False, InvariantViolation(
            invariant="mirror_consistency",
            severity=InvariantSeverity.ERROR,
            message=f"{len(diff)} edges present in only one of the forward/backward indices",
            edges_involved=diff,
        )

    @staticmethod
    def validate_edge_endpoints(dag) -> Tuple[bool, Optional[InvariantViolation]]:
        """Invariant 4: every edge joins two nodes."""
        dangling = [
            (from_id, to_id)
            for from_id, children in dag._edges.items()
            for to_id in children
            if from_id not in dag._nodes or to_id not in dag._nodes
        ]
        if not dangling:
            return True, None

        return False, InvariantViolation(
            invariant="edge_endpoints",
            severity=InvariantSeverity.ERROR,
            message=f"{len(dangling)} edges reference missing nodes",
            edges_involved=dangling,
        )

    @staticmethod
    def validate_acyclicity(dag) -> Tuple[bool, Optional[InvariantViolation]]:
        """
        Invariant 3: the forward index is acyclic.

        Uses rustworkx's is_directed_acyclic_graph for the O(V+E) check, then
        strongly connected components to name the nodes of a cycle.
        """
        graph, inv_map = to_rustworkx(dag)
        if rx.is_directed_acyclic_graph(graph):
            return True, None

        return False, InvariantViolation(
            invariant="dag_acyclicity",
            severity=InvariantSeverity.ERROR,
            message="Cycle detected in forward index",
            nodes_involved=DagInvariants._find_cycle_nodes(graph, inv_map),
        )

    @staticmethod
    def _find_cycle_nodes(graph: rx.PyDiGraph, inv_map: Dict[int, Any]) -> List[Any]:
        """Node ids of the first cycle found (for error reporting)."""
        for component in rx.strongly_connected_components(graph):
            if len(component) > 1:
                return sorted((inv_map[idx] for idx in component), key=repr)
        for idx in graph.node_indices():
            if graph.has_edge(idx, idx):
                return [inv_map[idx]]
        return []


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def get_dag_metrics(dag) -> Dict[str, Any]:
    """
    Structural metrics for a Dag.

    Longest path is only computed when the Dag is actually acyclic.
    """
    graph, _ = to_rustworkx(dag)
    indices = list(graph.node_indices())

    metrics: Dict[str, Any] = {
        "node_count": graph.num_nodes(),
        "edge_count": graph.num_edges(),
        "root_count": sum(1 for idx in indices if graph.in_degree(idx) == 0),
        "leaf_count": sum(1 for idx in indices if graph.out_degree(idx) == 0),
        "max_in_degree": max((graph.in_degree(idx) for idx in indices), default=0),
        "max_out_degree": max((graph.out_degree(idx) for idx in indices), default=0),
        "longest_path": None,
    }
    if rx.is_directed_acyclic_graph(graph):
        metrics["longest_path"] = rx.dag_longest_path_length(graph)
    return metrics


def validate_dag(dag) -> InvariantReport:
    """
    Run every invariant check against a Dag.

    Returns:
        InvariantReport; `valid` is False when any ERROR was found
    """
    checks = (
        DagInvariants.validate_index_consistency,
        DagInvariants.validate_mirror_consistency,
        DagInvariants.validate_edge_endpoints,
        DagInvariants.validate_acyclicity,
    )

    violations: List[InvariantViolation] = []
    for check in checks:
        ok, violation = check(dag)
        if not ok:
            logger.warning(f"Invariant violated: {violation.invariant}: {violation.message}")
            violations.append(violation)

    valid = not any(v.severity == InvariantSeverity.ERROR for v in violations)
    return InvariantReport(valid=valid, violations=violations, metrics=get_dag_metrics(dag))


def is_valid_dag(dag) -> bool:
    """Quick yes/no over all invariants."""
    return validate_dag(dag).valid

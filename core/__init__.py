"""
DAGSTORE CORE - Central exports for the acyclic graph container.

This module provides access to:
- Dag, the container (dual forward/backward index, cycle-checked inserts)
- The error hierarchy (DagError, NodeNotFoundError, HasCycleError)
- Iterator adapters and write-through handles
- Independent invariant validation (rustworkx-backed)
"""

from core.dag import (
    Dag,
    DagError,
    NodeNotFoundError,
    HasCycleError,
    GraphInvariantError,
)
from core.iters import (
    ChildrenIter,
    ChildrenIterMut,
    ParentsIter,
    NodesIter,
    NodesIterMut,
    EdgesIter,
    EdgesIterMut,
    NodeRef,
    EdgeRef,
)
from core.graph_invariants import (
    DagInvariants,
    InvariantReport,
    InvariantSeverity,
    InvariantViolation,
    validate_dag,
    is_valid_dag,
    get_dag_metrics,
    to_rustworkx,
)

__version__ = "0.1.0"

__all__ = [
    # Container
    "Dag",
    # Errors
    "DagError",
    "NodeNotFoundError",
    "HasCycleError",
    "GraphInvariantError",
    # Iteration
    "ChildrenIter",
    "ChildrenIterMut",
    "ParentsIter",
    "NodesIter",
    "NodesIterMut",
    "EdgesIter",
    "EdgesIterMut",
    "NodeRef",
    "EdgeRef",
    # Validation
    "DagInvariants",
    "InvariantReport",
    "InvariantSeverity",
    "InvariantViolation",
    "validate_dag",
    "is_valid_dag",
    "get_dag_metrics",
    "to_rustworkx",
]

"""
DAGSTORE CONTAINER - The Acyclic Graph Store

A generic in-memory container for a directed graph that can never hold a
cycle. It is a data structure, not an algorithms library: beyond the cycle
check needed on insertion, it only exposes children, parents, roots and
leaves.

Architecture (Dual Index):
  _nodes:      Dict[NodeId, NodeData]               node payloads
  _edges:      Dict[NodeId, Dict[NodeId, EdgeData]] forward index, owns edge payloads
  _back_edges: Dict[NodeId, Set[NodeId]]            backward mirror, ids only

Invariants (hold after every public call):
1. A node id is in _nodes iff it is a key of both _edges and _back_edges.
2. `to in _edges[frm]` iff `frm in _back_edges[to]`.
3. The forward index is acyclic.
4. Both endpoints of every edge are nodes.

Edge insertion is speculative: the edge is written, a DFS looks for a path
back to the source, and on a hit the write is undone before HasCycleError
is raised. A failed insert leaves the Dag exactly as it was.

Usage:
    dag = Dag()
    dag.insert_node(2, None)
    dag.insert_node(3, None)
    dag.insert_node(4, None)
    dag.insert_edge(2, 3, "a")
    dag.insert_edge(2, 4, "b")

    [node_id for node_id, _ in dag.roots()]   # [2]
    [node_id for node_id, _ in dag.leaves()]  # [3, 4]

Thread Safety:
    NOT thread-safe. Use external locking if needed for concurrent access.
"""
from typing import Dict, Generic, Iterator, List, Optional, Set, Tuple, TypeVar

from core.iters import (
    ChildrenIter,
    ChildrenIterMut,
    EdgeRef,
    EdgesIter,
    EdgesIterMut,
    NodeRef,
    NodesIter,
    NodesIterMut,
    ParentsIter,
)
from infrastructure.event_bus import DagEvent, EventBus, EventType, make_event

NodeId = TypeVar("NodeId")
NodeData = TypeVar("NodeData")
EdgeData = TypeVar("EdgeData")


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class DagError(Exception):
    """Base exception for Dag operations."""
    pass


class NodeNotFoundError(DagError):
    """Raised when an operation references a node id that is not in the Dag."""
    def __init__(self, node_id):
        self.node_id = node_id
        super().__init__(f"Node not found in Dag: {node_id!r}")


class HasCycleError(DagError):
    """
    Raised when inserting an edge would create a cycle.

    The rejected payload is handed back intact on `edge_data`.
    """
    def __init__(self, from_id, to_id, edge_data):
        self.from_id = from_id
        self.to_id = to_id
        self.edge_data = edge_data
        super().__init__(f"Cannot insert edge {from_id!r} -> {to_id!r}: would create a cycle")


class GraphInvariantError(DagError):
    """Raised when the internal indices disagree. Indicates a bug, not bad input."""
    pass


# =============================================================================
# DAG (The Container)
# =============================================================================

class Dag(Generic[NodeId, NodeData, EdgeData]):
    """
    Directed acyclic graph with payloads on nodes and edges.

    Node ids must be hashable and totally ordered; every iteration surface
    yields in ascending id order. Payloads are opaque and never inspected.

    Optionally publishes a DagEvent to `event_bus` after every successful
    mutation, and EDGE_REJECTED when an edge is rolled back.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._nodes: Dict[NodeId, NodeData] = {}
        self._edges: Dict[NodeId, Dict[NodeId, EdgeData]] = {}
        self._back_edges: Dict[NodeId, Set[NodeId]] = {}
        self._edge_count = 0

        # Bumped by every structural mutation; live iterators compare against it
        self._version = 0

        self._event_bus = event_bus

    def __repr__(self) -> str:
        return f"<Dag nodes={len(self._nodes)} edges={self._edge_count}>"

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[NodeId]:
        return (node_id for node_id, _ in self.nodes())

    def copy(self) -> "Dag[NodeId, NodeData, EdgeData]":
        """
        Structural copy. Indices are duplicated, payload objects are shared.

        The copy is not attached to any event bus.
        """
        other = type(self)()
        other._nodes = dict(self._nodes)
        other._edges = {node_id: dict(children) for node_id, children in self._edges.items()}
        other._back_edges = {node_id: set(parents) for node_id, parents in self._back_edges.items()}
        other._edge_count = self._edge_count
        return other

    __copy__ = copy

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _publish(self, event_type: EventType, **payload) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(make_event(event_type, **payload))

    def _publish_committed(self, events: List[DagEvent]) -> None:
        """Publish events gathered during a multi-step mutation, once it is complete."""
        if self._event_bus is not None and events:
            self._event_bus.publish_many(events)

    def _require_nodes(self, from_id: NodeId, to_id: NodeId) -> None:
        if from_id not in self._nodes:
            raise NodeNotFoundError(from_id)
        if to_id not in self._nodes:
            raise NodeNotFoundError(to_id)

    def _in_cycle(self, node_id: NodeId) -> bool:
        """
        Iterative DFS from `node_id` over the forward index.

        The graph was acyclic before the pending edge went in, so any cycle
        must pass through that edge and therefore lead back to `node_id`.
        """
        visited = {node_id}
        stack = [node_id]

        while stack:
            top = stack.pop()
            for child_id in self._edges[top]:
                if child_id == node_id:
                    return True
                if child_id not in visited:
                    visited.add(child_id)
                    stack.append(child_id)

        return False

    def _pop_edge(self, from_id: NodeId, to_id: NodeId) -> Tuple[bool, Optional[EdgeData]]:
        """Detach an edge from both indices. Returns (existed, payload)."""
        children = self._edges[from_id]
        existed = to_id in children
        data = children.pop(to_id, None)
        self._back_edges[to_id].discard(from_id)
        if existed:
            self._edge_count -= 1
            self._version += 1
        return existed, data

    # =========================================================================
    # NODE OPERATIONS
    # =========================================================================

    def contains_node(self, node_id: NodeId) -> bool:
        """Check if `node_id` is in the Dag."""
        return node_id in self._nodes

    def insert_node(self, node_id: NodeId, node_data: NodeData) -> Optional[NodeData]:
        """
        Insert or overwrite a node.

        Edges of an existing node are left untouched.

        Returns:
            The previous payload when `node_id` was already present, else None
        """
        existed = node_id in self._nodes
        if node_id not in self._edges:
            self._edges[node_id] = {}
        if node_id not in self._back_edges:
            self._back_edges[node_id] = set()

        previous = self._nodes.get(node_id)
        self._nodes[node_id] = node_data
        self._version += 1

        self._publish(
            EventType.NODE_UPDATED if existed else EventType.NODE_INSERTED,
            node_id=node_id,
        )
        return previous

    def remove_node(self, node_id: NodeId) -> Tuple[Optional[NodeData], List[EdgeData]]:
        """
        Remove a node and every edge touching it.

        Returns:
            (node payload, detached edge payloads). Outgoing edges come first,
            then incoming ones, each group in id order. An absent node gives
            (None, []) and changes nothing.
        """
        if node_id not in self._nodes:
            return None, []

        edge_datas: List[EdgeData] = []
        # handlers run only after all three indices agree again
        pending: List[DagEvent] = []

        for child_id in sorted(self._edges[node_id]):
            existed, data = self._pop_edge(node_id, child_id)
            if not existed:
                raise GraphInvariantError(
                    f"Child {child_id!r} listed for {node_id!r} but edge is missing"
                )
            edge_datas.append(data)
            pending.append(make_event(EventType.EDGE_REMOVED, from_id=node_id, to_id=child_id))

        for parent_id in sorted(self._back_edges[node_id]):
            existed, data = self._pop_edge(parent_id, node_id)
            if not existed:
                raise GraphInvariantError(
                    f"Parent {parent_id!r} mirrored for {node_id!r} but no forward edge exists"
                )
            edge_datas.append(data)
            pending.append(make_event(EventType.EDGE_REMOVED, from_id=parent_id, to_id=node_id))

        node_data = self._nodes.pop(node_id)
        del self._edges[node_id]
        del self._back_edges[node_id]
        self._version += 1

        pending.append(make_event(EventType.NODE_REMOVED, node_id=node_id))
        self._publish_committed(pending)
        return node_data, edge_datas

    def get_node(self, node_id: NodeId) -> Optional[NodeData]:
        """Get a node payload, or None if `node_id` is not in the Dag."""
        return self._nodes.get(node_id)

    def get_node_mut(self, node_id: NodeId) -> Optional[NodeRef]:
        """Get a write-through handle on a node payload, or None if absent."""
        if node_id not in self._nodes:
            return None
        return NodeRef(self, node_id, self._nodes)

    def nodes_len(self) -> int:
        """Number of nodes."""
        return len(self._nodes)

    # =========================================================================
    # EDGE OPERATIONS
    # =========================================================================

    def contains_edge(self, from_id: NodeId, to_id: NodeId) -> bool:
        """Check if the edge exists. Unknown endpoints simply give False."""
        children = self._edges.get(from_id)
        if children is None:
            return False
        return to_id in children

    def insert_edge(self, from_id: NodeId, to_id: NodeId, edge_data: EdgeData) -> Optional[EdgeData]:
        """
        Insert or overwrite an edge.

        Returns:
            The previous payload when the edge already existed, else None

        Raises:
            NodeNotFoundError: If `from_id` or `to_id` is not in the Dag
            HasCycleError: If the edge would close a cycle. The Dag is left
                unchanged and the payload is returned on the exception.
        """
        self._require_nodes(from_id, to_id)

        children = self._edges[from_id]
        existed = to_id in children
        previous = children.get(to_id)
        children[to_id] = edge_data

        if self._in_cycle(from_id):
            # roll back
            if existed:
                children[to_id] = previous
            else:
                del children[to_id]
            self._publish(EventType.EDGE_REJECTED, from_id=from_id, to_id=to_id)
            raise HasCycleError(from_id, to_id, edge_data)

        self._back_edges[to_id].add(from_id)
        if not existed:
            self._edge_count += 1
        self._version += 1

        self._publish(
            EventType.EDGE_UPDATED if existed else EventType.EDGE_INSERTED,
            from_id=from_id,
            to_id=to_id,
        )
        return previous

    def remove_edge(self, from_id: NodeId, to_id: NodeId) -> Optional[EdgeData]:
        """
        Remove an edge.

        Both endpoints must be nodes, even when no edge joins them.

        Returns:
            The removed payload, or None if there was no such edge

        Raises:
            NodeNotFoundError: If `from_id` or `to_id` is not in the Dag
        """
        self._require_nodes(from_id, to_id)
        existed, data = self._pop_edge(from_id, to_id)
        if existed:
            self._publish(EventType.EDGE_REMOVED, from_id=from_id, to_id=to_id)
        return data

    def get_edge(self, from_id: NodeId, to_id: NodeId) -> Optional[EdgeData]:
        """
        Get an edge payload.

        Returns:
            The payload, or None if the endpoints exist but are not joined

        Raises:
            NodeNotFoundError: If `from_id` or `to_id` is not in the Dag
        """
        self._require_nodes(from_id, to_id)
        return self._edges[from_id].get(to_id)

    def get_edge_mut(self, from_id: NodeId, to_id: NodeId) -> Optional[EdgeRef]:
        """
        Get a write-through handle on an edge payload.

        Raises:
            NodeNotFoundError: If `from_id` or `to_id` is not in the Dag
        """
        self._require_nodes(from_id, to_id)
        children = self._edges[from_id]
        if to_id not in children:
            return None
        return EdgeRef(self, from_id, to_id, children)

    def edges_len(self) -> int:
        """Number of edges."""
        return self._edge_count

    # =========================================================================
    # ITERATION
    # =========================================================================

    def children(self, node_id: NodeId) -> ChildrenIter:
        """`(child_id, edge_data)` for each outgoing edge; empty if absent."""
        return ChildrenIter(self, self._edges.get(node_id))

    def children_mut(self, node_id: NodeId) -> ChildrenIterMut:
        """`(child_id, EdgeRef)` for each outgoing edge; empty if absent."""
        return ChildrenIterMut(self, node_id, self._edges.get(node_id))

    def parents(self, node_id: NodeId) -> ParentsIter:
        """Predecessor ids; empty if absent."""
        return ParentsIter(self, self._back_edges.get(node_id))

    def nodes(self) -> NodesIter:
        """`(node_id, node_data)` for every node."""
        return NodesIter(self, self._nodes)

    def nodes_mut(self) -> NodesIterMut:
        """`(node_id, NodeRef)` for every node."""
        return NodesIterMut(self, self._nodes)

    def edges(self) -> EdgesIter:
        """`(from_id, to_id, edge_data)` for every edge."""
        return EdgesIter(self, self._edges)

    def edges_mut(self) -> EdgesIterMut:
        """`(from_id, to_id, EdgeRef)` for every edge."""
        return EdgesIterMut(self, self._edges)

    def roots(self) -> Iterator[Tuple[NodeId, NodeData]]:
        """Nodes with no incoming edges."""
        for node_id, data in self.nodes():
            if not self._back_edges[node_id]:
                yield node_id, data

    def leaves(self) -> Iterator[Tuple[NodeId, NodeData]]:
        """Nodes with no outgoing edges."""
        for node_id, data in self.nodes():
            if not self._edges[node_id]:
                yield node_id, data

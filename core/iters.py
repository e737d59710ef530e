"""
DAGSTORE ITERATORS - Borrowed Views over the Dag Indices

Every iterator here walks the container's live indices rather than a copy of
the payloads. Keys are sorted when the iterator is created, so iteration is
always in ascending identifier order.

Borrow Discipline:
- Each iterator and handle records the Dag's structural version on creation.
- Any later structural mutation (insert/remove of a node or edge) makes the
  view stale; touching a stale view raises RuntimeError, the same way a dict
  complains when it changes size during iteration.
- Replacing a payload through a NodeRef/EdgeRef is not structural, so any
  number of handles may write while iterators are alive.
"""
from typing import Any, Dict, Generic, Iterator, Optional, Set, Tuple, TypeVar

K = TypeVar("K")
N = TypeVar("N")
E = TypeVar("E")

_EXHAUSTED = object()


class _Borrow:
    """Base for anything that borrows from a Dag."""

    __slots__ = ("_dag", "_version")

    def __init__(self, dag: Any):
        self._dag = dag
        self._version = dag._version

    def _check(self) -> None:
        if self._dag._version != self._version:
            raise RuntimeError("Dag was structurally modified while a view was alive")


# =============================================================================
# WRITE-THROUGH HANDLES
# =============================================================================

class NodeRef(_Borrow, Generic[K, N]):
    """
    Mutable handle on one node payload.

    Reading or assigning `.data` goes straight to the node index.
    """

    __slots__ = ("node_id", "_nodes")

    def __init__(self, dag: Any, node_id: K, nodes: Dict[K, N]):
        super().__init__(dag)
        self.node_id = node_id
        self._nodes = nodes

    @property
    def data(self) -> N:
        self._check()
        return self._nodes[self.node_id]

    @data.setter
    def data(self, value: N) -> None:
        self._check()
        self._nodes[self.node_id] = value

    def __repr__(self) -> str:
        return f"NodeRef({self.node_id!r})"


class EdgeRef(_Borrow, Generic[K, E]):
    """Mutable handle on one edge payload, stored in the forward index."""

    __slots__ = ("from_id", "to_id", "_children")

    def __init__(self, dag: Any, from_id: K, to_id: K, children: Dict[K, E]):
        super().__init__(dag)
        self.from_id = from_id
        self.to_id = to_id
        self._children = children

    @property
    def data(self) -> E:
        self._check()
        return self._children[self.to_id]

    @data.setter
    def data(self, value: E) -> None:
        self._check()
        self._children[self.to_id] = value

    def __repr__(self) -> str:
        return f"EdgeRef({self.from_id!r} -> {self.to_id!r})"


# =============================================================================
# SINGLE-LEVEL ITERATORS
# =============================================================================

class _KeyedIter(_Borrow):
    """Walks the sorted keys of one index entry; knows how many remain."""

    __slots__ = ("_keys", "_remaining")

    def __init__(self, dag: Any, keys):
        super().__init__(dag)
        self._keys = iter(sorted(keys))
        self._remaining = len(keys)

    def __iter__(self):
        return self

    def _next_key(self):
        self._check()
        key = next(self._keys)
        self._remaining -= 1
        return key

    def __len__(self) -> int:
        return self._remaining

    def __length_hint__(self) -> int:
        return self._remaining


class ChildrenIter(_KeyedIter, Generic[K, E]):
    """Yields `(child_id, edge_data)` for the outgoing edges of one node."""

    __slots__ = ("_children",)

    def __init__(self, dag: Any, children: Optional[Dict[K, E]]):
        self._children = children if children is not None else {}
        super().__init__(dag, self._children)

    def __next__(self) -> Tuple[K, E]:
        to_id = self._next_key()
        return to_id, self._children[to_id]


class ChildrenIterMut(_KeyedIter, Generic[K, E]):
    """Yields `(child_id, EdgeRef)` for the outgoing edges of one node."""

    __slots__ = ("_from_id", "_children")

    def __init__(self, dag: Any, from_id: K, children: Optional[Dict[K, E]]):
        self._from_id = from_id
        self._children = children if children is not None else {}
        super().__init__(dag, self._children)

    def __next__(self) -> Tuple[K, EdgeRef]:
        to_id = self._next_key()
        return to_id, EdgeRef(self._dag, self._from_id, to_id, self._children)


class ParentsIter(_KeyedIter, Generic[K]):
    """Yields predecessor identifiers only; edge payloads live forward."""

    __slots__ = ()

    def __init__(self, dag: Any, parents: Optional[Set[K]]):
        super().__init__(dag, parents if parents is not None else ())

    def __next__(self) -> K:
        return self._next_key()


class NodesIter(_KeyedIter, Generic[K, N]):
    """Yields `(node_id, node_data)` for every node."""

    __slots__ = ("_nodes",)

    def __init__(self, dag: Any, nodes: Dict[K, N]):
        self._nodes = nodes
        super().__init__(dag, nodes)

    def __next__(self) -> Tuple[K, N]:
        node_id = self._next_key()
        return node_id, self._nodes[node_id]


class NodesIterMut(_KeyedIter, Generic[K, N]):
    """Yields `(node_id, NodeRef)` for every node."""

    __slots__ = ("_nodes",)

    def __init__(self, dag: Any, nodes: Dict[K, N]):
        self._nodes = nodes
        super().__init__(dag, nodes)

    def __next__(self) -> Tuple[K, NodeRef]:
        node_id = self._next_key()
        return node_id, NodeRef(self._dag, node_id, self._nodes)


# =============================================================================
# TWO-LEVEL EDGE ITERATORS
# =============================================================================

class EdgesIter(_Borrow, Generic[K, E]):
    """
    Yields `(from_id, to_id, edge_data)` for every edge.

    Order is from-id first, then to-id, mirroring the two-level forward index.
    """

    __slots__ = ("_edges", "_from_keys", "_from_id", "_children", "_to_keys")

    def __init__(self, dag: Any, edges: Dict[K, Dict[K, E]]):
        super().__init__(dag)
        self._edges = edges
        self._from_keys = iter(sorted(edges))
        self._from_id = None
        self._children: Dict[K, E] = {}
        self._to_keys: Iterator[K] = iter(())

    def __iter__(self):
        return self

    def _item(self, from_id: K, to_id: K):
        return from_id, to_id, self._children[to_id]

    def __next__(self):
        self._check()
        while True:
            to_id = next(self._to_keys, _EXHAUSTED)
            if to_id is not _EXHAUSTED:
                return self._item(self._from_id, to_id)
            # StopIteration from the outer level ends the walk
            self._from_id = next(self._from_keys)
            self._children = self._edges[self._from_id]
            self._to_keys = iter(sorted(self._children))


class EdgesIterMut(EdgesIter[K, E]):
    """Yields `(from_id, to_id, EdgeRef)` for every edge."""

    __slots__ = ()

    def _item(self, from_id: K, to_id: K):
        return from_id, to_id, EdgeRef(self._dag, from_id, to_id, self._children)

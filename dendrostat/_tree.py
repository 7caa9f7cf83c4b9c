"""
_tree.py
========
A mutable phylogenetic tree stored as an arena of :class:`Node` records,
with name-keyed registry operations and version-stamped derived caches.

Public API
----------
  Tree(newick_string=None, name="")
      Constructor.  Optionally parses a NEWICK string.

  Registry      .add_node  .delete_node  .rename_node  .set_parent
                .set_length  .remap_labels  .get_node  .root  .root_nodes
                .root_unrooted_tree  .get_free_internal_name
  Traversal     .parent  .children  .descendants  .depth  .path_to_root
                .terminal_elements  .terminal_count  .root_distance
                .length_below  .nodes  .terminal_nodes  .internal_nodes
  Whole tree    .total_length  .longest_path_to_tip  .nonzero_length_count
                .is_ultrametric  .branches_are_nonnegative
                .terminal_counts_by_depth  .to_matrix
                .mean_nearest_neighbour_distance
  Editing       .trim  .trim_to_last_common_ancestor  .merge_knuckle_nodes
                .shuffle_terminal_names
  Clones        .copy  .clone_with_rescaled_branch_lengths
                .clone_with_equalised_branch_lengths
  Analysis      .last_shared_ancestor  .ancestry  .null_model
                .list_names  .get_list_stats

Storage model
-------------
Nodes live in ``self._nodes``, a list indexed by integer node ID.  Parent
and child links are IDs, never object references, so there are no
reference cycles and a deleted node can never be reached through a stale
link: its slot is set to ``None`` and IDs are not reused.

Cache model
-----------
Two counters describe the tree's state:

* ``topology_version`` is bumped by every structural change (add, delete,
  reparent, rename, shuffle).
* ``version`` is bumped by every structural change *and* every branch
  length change.

Derived values are held in small typed cache objects stamped with the
counter they depend on.  Readers compare stamps instead of relying on
mutators to clear caches, so no mutator can forget to invalidate one.
"""

import copy
import logging
import re
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

import numpy as np

from ._backend import import_cpu_kernels, resolve_backend
from ._context import get_backend_override
from ._errors import (
    CacheInvalidationError,
    InvalidTopology,
    NodeAlreadyExists,
    NodeNotFound,
)
from ._logging import (
    log_backend_dispatch,
    log_deletion,
    log_new_root,
    log_tree_summary,
    log_trim_summary,
)
from ._utils import ProgressCallback, report_progress

logger = logging.getLogger(__name__)

#: Tip-to-root path lengths within this tolerance count as equal.
ULTRAMETRIC_TOLERANCE = 1e-3

_INTERNAL_NAME_RE = re.compile(r"^\d+___$")


def is_internal_name(name: str) -> bool:
    """
    Return True if *name* was generated by :meth:`Tree.get_free_internal_name`.

    >>> is_internal_name("12___")
    True
    >>> is_internal_name("Acacia")
    False
    """
    return bool(_INTERNAL_NAME_RE.match(name))


# ======================================================================== #
# Node record                                                               #
# ======================================================================== #


class Node:
    """
    One vertex of a :class:`Tree`.

    A Node is a plain record owned by its tree.  Names, lengths and links
    are read-only here; change them through the tree so that its caches
    are invalidated.  ``lists`` is the exception: it holds named result
    lists attached by calculations and comparisons, and is freely mutable.

    Attributes
    ----------
    node_id   : int            Arena index, stable for the node's lifetime.
    name      : str            Unique within the tree.
    length    : float          Branch length to the parent.
    parent_id : int | None     Arena index of the parent; None for a root.
    child_ids : tuple[int]     Arena indices of the children, in order.
    lists     : dict           Named result lists (``name -> dict | list``).
    """

    __slots__ = ("_id", "_name", "_length", "_parent", "_children", "lists")

    def __init__(self, node_id: int, name: str, length: float = 0.0) -> None:
        self._id = node_id
        self._name = name
        self._length = float(length)
        self._parent: Optional[int] = None
        self._children: List[int] = []
        self.lists: Dict[str, Any] = {}

    @property
    def node_id(self) -> int:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def length(self) -> float:
        return self._length

    @property
    def parent_id(self) -> Optional[int]:
        return self._parent

    @property
    def child_ids(self) -> Tuple[int, ...]:
        return tuple(self._children)

    @property
    def child_count(self) -> int:
        return len(self._children)

    @property
    def is_terminal(self) -> bool:
        return not self._children

    @property
    def is_root(self) -> bool:
        return self._parent is None

    @property
    def is_internal(self) -> bool:
        """True if the node carries an auto-generated internal name."""
        return is_internal_name(self._name)

    def get_list(self, list_name: str, default: Any = None) -> Any:
        """Return the named result list, or *default* if absent."""
        return self.lists.get(list_name, default)

    def __repr__(self) -> str:
        return (
            f"Node(name={self._name!r}, length={self._length!r}, "
            f"children={len(self._children)})"
        )


# ======================================================================== #
# Version-stamped caches                                                    #
# ======================================================================== #


class _TopologyCache:
    """Values that depend only on the tree's shape and names."""

    __slots__ = (
        "version",
        "root_ids",
        "terminal_ids",
        "terminal_counts",
        "terminal_sets",
    )

    def __init__(self, version: int) -> None:
        self.version = version
        self.root_ids: Optional[List[int]] = None
        self.terminal_ids: Optional[List[int]] = None
        self.terminal_counts: Optional[Dict[int, int]] = None
        self.terminal_sets: Dict[int, FrozenSet[str]] = {}


class _LengthCache:
    """Values that depend on shape and branch lengths."""

    __slots__ = (
        "version",
        "root_distance",
        "length_below",
        "ultrametric",
        "nonnegative",
        "mean_nn_distance",
    )

    def __init__(self, version: int) -> None:
        self.version = version
        self.root_distance: Optional[Dict[int, float]] = None
        self.length_below: Optional[Dict[int, float]] = None
        self.ultrametric: Dict[float, bool] = {}
        self.nonnegative: Optional[bool] = None
        self.mean_nn_distance: Optional[float] = None


# ======================================================================== #
# Tree                                                                      #
# ======================================================================== #


class Tree:
    """
    A rooted (transiently multi-rooted) phylogenetic tree.

    Multifurcations and named internal nodes are supported.  Every
    algorithm that needs a root calls :meth:`root`, which raises
    :class:`InvalidTopology` unless exactly one parentless node exists;
    use :meth:`root_unrooted_tree` to join several roots first.

    Parameters
    ----------
    newick_string : str, optional
        A NEWICK tree to load.  Internal labels become node names;
        unlabelled internal nodes receive generated names (``"0___"``,
        ``"1___"``, ...).  Missing branch lengths default to 0.
    name : str, optional
        Label used in log messages and comparison summaries.
    """

    # ================================================================== #
    # Construction                                                         #
    # ================================================================== #

    def __init__(self, newick_string: Optional[str] = None, name: str = "") -> None:
        self.name = name
        self._nodes: List[Optional[Node]] = []
        self._name_index: Dict[str, int] = {}
        self._n_live = 0

        self._topology_version = 0
        self._version = 0
        self._topology_cache = _TopologyCache(-1)
        self._length_cache = _LengthCache(-1)
        self._highest_internal = -1

        # Owned analysis objects, created on first use.
        self._ancestry = None
        self._lca_finder = None
        self._null_model = None

        if newick_string is not None:
            self._parse_newick(newick_string)

    def __repr__(self) -> str:
        return f"Tree(name={self.name!r}, nodes={self._n_live})"

    def __len__(self) -> int:
        return self._n_live

    def __contains__(self, name: object) -> bool:
        return name in self._name_index

    def __iter__(self):
        return iter(list(self._name_index))

    # ================================================================== #
    # Versioning                                                           #
    # ================================================================== #

    @property
    def version(self) -> int:
        """Counter bumped by every structural or branch-length change."""
        return self._version

    @property
    def topology_version(self) -> int:
        """Counter bumped by every structural change (including renames)."""
        return self._topology_version

    def _topology_changed(self) -> None:
        self._topology_version += 1
        self._version += 1

    def _lengths_changed(self) -> None:
        self._version += 1

    def _topology(self) -> _TopologyCache:
        cache = self._topology_cache
        if cache.version != self._topology_version:
            cache = _TopologyCache(self._topology_version)
            self._topology_cache = cache
        return cache

    def _lengths(self) -> _LengthCache:
        cache = self._length_cache
        if cache.version != self._version:
            cache = _LengthCache(self._version)
            self._length_cache = cache
        return cache

    def check_version(self, version: int, operation: str = "operation") -> None:
        """
        Raise :class:`CacheInvalidationError` if the tree changed since *version*.

        Long-running readers record :attr:`version` before they start and
        call this before publishing results derived from cached values.
        """
        if version != self._version:
            raise CacheInvalidationError(
                f"Tree {self.name or '<unnamed>'} was modified during {operation} "
                f"(version {version} -> {self._version})."
            )

    # ================================================================== #
    # Registry                                                             #
    # ================================================================== #

    def add_node(
        self, name: str, length: float = 0.0, parent: Optional[str] = None
    ) -> Node:
        """
        Register a new node, optionally as the last child of *parent*.

        Raises
        ------
        NodeAlreadyExists  if *name* is taken.
        NodeNotFound       if *parent* is given and absent.
        """
        if name in self._name_index:
            raise NodeAlreadyExists(name)
        parent_id = self._resolve(parent) if parent is not None else None

        node = Node(len(self._nodes), name, length)
        self._nodes.append(node)
        self._name_index[name] = node._id
        self._n_live += 1
        if parent_id is not None:
            node._parent = parent_id
            self._nodes[parent_id]._children.append(node._id)

        self._topology_changed()
        return node

    def get_node(self, name: str) -> Node:
        """Return the node called *name*, raising NodeNotFound if absent."""
        return self._nodes[self._resolve(name)]

    def delete_node(self, name: str) -> List[str]:
        """
        Remove *name* and all of its descendants from the tree.

        The node is detached from its parent.  Nothing is reparented: a
        parent left with a single child stays that way until
        :meth:`merge_knuckle_nodes` is called.

        Returns
        -------
        list[str]   Names of every removed node, *name* first.

        Raises
        ------
        NodeNotFound   if *name* is absent; the tree is left unchanged.
        """
        node_id = self._resolve(name)
        doomed = self._preorder_ids([node_id])

        node = self._nodes[node_id]
        if node._parent is not None:
            self._nodes[node._parent]._children.remove(node_id)

        removed = []
        for nid in doomed:
            dead = self._nodes[nid]
            removed.append(dead._name)
            del self._name_index[dead._name]
            dead._parent = None
            dead._children = []
            self._nodes[nid] = None
        self._n_live -= len(removed)

        self._topology_changed()
        log_deletion(name, len(removed), self._n_live)
        return removed

    def rename_node(self, old_name: str, new_name: str) -> None:
        """
        Rename a node.

        Raises
        ------
        NodeNotFound       if *old_name* is absent.
        NodeAlreadyExists  if *new_name* is taken.
        """
        node_id = self._resolve(old_name)
        if new_name == old_name:
            return
        if new_name in self._name_index:
            raise NodeAlreadyExists(new_name)
        del self._name_index[old_name]
        self._name_index[new_name] = node_id
        self._nodes[node_id]._name = new_name
        self._topology_changed()

    def remap_labels(self, remap: Dict[str, Optional[str]]) -> int:
        """
        Rename every node in *remap* that exists in the tree.

        Entries mapping to ``None`` or to the same name are skipped.

        Returns
        -------
        int   Number of nodes renamed.
        """
        renamed = 0
        for old, new in remap.items():
            if old not in self._name_index or new is None or new == old:
                continue
            self.rename_node(old, new)
            renamed += 1
        return renamed

    def set_length(self, name: str, length: float) -> None:
        """
        Set the branch length of *name*.

        Negative values are stored as given; :meth:`branches_are_nonnegative`
        reports them and the null model refuses to run on them.
        """
        node = self._nodes[self._resolve(name)]
        node._length = float(length)
        self._lengths_changed()

    def set_parent(self, name: str, parent: Optional[str]) -> None:
        """
        Move *name* (with its subtree) under *parent*, or make it a root.

        Raises
        ------
        InvalidTopology   if *parent* is *name* itself or one of its descendants.
        """
        node_id = self._resolve(name)
        parent_id = self._resolve(parent) if parent is not None else None

        cursor = parent_id
        while cursor is not None:
            if cursor == node_id:
                raise InvalidTopology(
                    f"Cannot place '{name}' under its own descendant '{parent}'."
                )
            cursor = self._nodes[cursor]._parent

        node = self._nodes[node_id]
        if node._parent is not None:
            self._nodes[node._parent]._children.remove(node_id)
        node._parent = parent_id
        if parent_id is not None:
            self._nodes[parent_id]._children.append(node_id)
        self._topology_changed()

    def get_free_internal_name(self, exclude: Iterable[str] = ()) -> str:
        """
        Return an unused generated internal name of the form ``"<n>___"``.

        Parameters
        ----------
        exclude : iterable of str
            Extra names to avoid, e.g. labels about to be added.
        """
        skip = set(exclude)
        while True:
            self._highest_internal += 1
            candidate = f"{self._highest_internal}___"
            if candidate not in self._name_index and candidate not in skip:
                return candidate

    def root_nodes(self) -> List[Node]:
        """All parentless nodes, sorted by name."""
        cache = self._topology()
        if cache.root_ids is None:
            roots = [n for n in self._iter_nodes() if n._parent is None]
            roots.sort(key=lambda n: n._name)
            cache.root_ids = [n._id for n in roots]
        return [self._nodes[i] for i in cache.root_ids]

    def root(self) -> Node:
        """
        Return the unique root node.

        Raises
        ------
        InvalidTopology   if the tree is empty or has more than one root.
        """
        roots = self.root_nodes()
        if len(roots) != 1:
            if not roots:
                raise InvalidTopology("Tree has no nodes, so it has no root.")
            names = ", ".join(n._name for n in roots[:5])
            raise InvalidTopology(
                f"Tree has {len(roots)} root nodes ({names}"
                f"{', ...' if len(roots) > 5 else ''}); a single root is "
                f"required.  Call root_unrooted_tree() first."
            )
        return roots[0]

    def root_unrooted_tree(self) -> Optional[Node]:
        """
        Graft all root nodes under a new zero-length root.

        Returns
        -------
        Node or None
            The new root, or None if the tree already had at most one root.
        """
        roots = self.root_nodes()
        if len(roots) <= 1:
            return None
        new_name = self.get_free_internal_name()
        new_root = self.add_node(new_name, 0.0)
        for node in roots:
            node._parent = new_root._id
            new_root._children.append(node._id)
        self._topology_changed()
        log_new_root(new_name, len(roots))
        return new_root

    # ================================================================== #
    # Traversal                                                            #
    # ================================================================== #

    def nodes(self) -> List[Node]:
        """All live nodes in insertion order."""
        return list(self._iter_nodes())

    def node_names(self) -> List[str]:
        return list(self._name_index)

    def terminal_nodes(self) -> List[Node]:
        """Nodes without children, in insertion order."""
        return [self._nodes[i] for i in self._terminal_ids()]

    def terminal_names(self) -> List[str]:
        return [self._nodes[i]._name for i in self._terminal_ids()]

    def internal_nodes(self) -> List[Node]:
        """Nodes with at least one child, in insertion order."""
        return [n for n in self._iter_nodes() if n._children]

    @property
    def n_terminals(self) -> int:
        return len(self._terminal_ids())

    def parent(self, name: str) -> Optional[Node]:
        node = self._nodes[self._resolve(name)]
        return None if node._parent is None else self._nodes[node._parent]

    def children(self, name: str) -> List[Node]:
        node = self._nodes[self._resolve(name)]
        return [self._nodes[c] for c in node._children]

    def descendants(self, name: str) -> List[str]:
        """Names of every node below *name*, in pre-order, excluding *name*."""
        node_id = self._resolve(name)
        return [self._nodes[i]._name for i in self._preorder_ids([node_id])[1:]]

    def length(self, name: str) -> float:
        return self._nodes[self._resolve(name)]._length

    def depth(self, name: str) -> int:
        """Number of edges between *name* and its root."""
        return len(self.ancestry.path_ids(self._resolve(name))) - 1

    def path_to_root(self, name: str) -> List[str]:
        """Names from *name* up to its root, inclusive at both ends."""
        return self.ancestry.path(name)

    def terminal_elements(self, name: str) -> FrozenSet[str]:
        """Names of the terminal nodes at or below *name*."""
        return self._terminal_set(self._resolve(name))

    def terminal_count(self, name: str) -> int:
        """Number of terminals at or below *name*; 1 for a terminal."""
        return self._terminal_counts()[self._resolve(name)]

    def root_distance(self, name: str) -> float:
        """Path length from the root down to *name* (the root's own length excluded)."""
        return self._root_distances()[self._resolve(name)]

    def length_below(self, name: str) -> float:
        """Own length plus the longest path length from *name* to a terminal."""
        return self._length_below()[self._resolve(name)]

    # ================================================================== #
    # Whole-tree queries                                                   #
    # ================================================================== #

    def total_length(self) -> float:
        """Sum of every node's branch length."""
        return float(sum(n._length for n in self._iter_nodes()))

    def longest_path_to_tip(self) -> float:
        """Longest root-to-terminal path length."""
        dist = self._root_distances()
        tips = self._terminal_ids()
        return max((dist[i] for i in tips), default=0.0)

    def nonzero_length_count(self) -> int:
        return sum(1 for n in self._iter_nodes() if n._length)

    def node_lengths(self) -> Dict[str, float]:
        return {n._name: n._length for n in self._iter_nodes()}

    def branches_are_nonnegative(self) -> bool:
        cache = self._lengths()
        if cache.nonnegative is None:
            cache.nonnegative = all(n._length >= 0 for n in self._iter_nodes())
        return cache.nonnegative

    def is_ultrametric(self, tolerance: float = ULTRAMETRIC_TOLERANCE) -> bool:
        """
        True if every terminal lies within *tolerance* of the first
        terminal's root-to-tip path length.
        """
        cache = self._lengths()
        hit = cache.ultrametric.get(tolerance)
        if hit is not None:
            return hit
        dist = self._root_distances()
        tips = self._terminal_ids()
        result = True
        if tips:
            first = dist[tips[0]]
            result = all(abs(dist[i] - first) <= tolerance for i in tips)
        cache.ultrametric[tolerance] = result
        return result

    def terminal_counts_by_depth(self) -> Dict[int, int]:
        """
        Summed terminal counts of internal nodes, keyed by depth.

        Terminals add their depth as a key with no count, so every depth
        present in the tree appears.
        """
        counts: Dict[int, int] = {}
        tip_counts = self._terminal_counts()
        index = self.ancestry
        for node in self._iter_nodes():
            depth = len(index.path_ids(node._id)) - 1
            if node._children:
                counts[depth] = counts.get(depth, 0) + tip_counts[node._id]
            else:
                counts.setdefault(depth, 0)
        return counts

    def last_shared_ancestor(
        self, names: Iterable[str], use_probable_depths: bool = True
    ) -> Node:
        """
        Return the deepest node that is an ancestor of every name in *names*.

        A node counts as its own ancestor, so a single name returns itself.
        See :class:`~dendrostat._ancestry.LCAFinder`.
        """
        if self._lca_finder is None:
            from ._ancestry import LCAFinder

            self._lca_finder = LCAFinder(self)
        return self._lca_finder.lca(names, use_probable_depths=use_probable_depths)

    @property
    def ancestry(self):
        """The tree's :class:`~dendrostat._ancestry.AncestryIndex`."""
        if self._ancestry is None:
            from ._ancestry import AncestryIndex

            self._ancestry = AncestryIndex(self)
        return self._ancestry

    @property
    def null_model(self):
        """The tree's :class:`~dendrostat._null_model.PDNullModel`."""
        if self._null_model is None:
            from ._null_model import PDNullModel

            self._null_model = PDNullModel(self)
        return self._null_model

    def to_matrix(
        self,
        backend: str = "best",
        progress: Optional[ProgressCallback] = None,
    ) -> Tuple[List[str], np.ndarray]:
        """
        Patristic distance matrix between all terminals.

        Each pair's distance is the summed branch length on the path through
        their last shared ancestor.

        Parameters
        ----------
        backend : str
            'best', 'python' or 'cpu-parallel'.  A :func:`use_backend`
            override takes precedence.
        progress : callable, optional
            ``progress(text, fraction)`` sink, called once per row by the
            Python backend.

        Returns
        -------
        names : list[str]       Terminal names, in matrix order.
        matrix : float64[n, n]  Symmetric, zero diagonal.

        Raises
        ------
        InvalidTopology   if the tree does not have exactly one root.
        """
        self.root()
        override = get_backend_override()
        resolved = resolve_backend(override if override is not None else backend)
        log_backend_dispatch("to_matrix", resolved)

        tips = self._terminal_ids()
        names = [self._nodes[i]._name for i in tips]
        if resolved == "cpu-parallel":
            _, kernel, _ = import_cpu_kernels()
            ancestors, tip_depth, root_distance = self._ancestor_rows(tips)
            return names, kernel(ancestors, tip_depth, root_distance)

        dist = self._root_distances()
        n = len(tips)
        matrix = np.zeros((n, n), dtype=np.float64)
        for i in range(n):
            report_progress(
                progress, f"Converting tree {self.name} to matrix", i / max(n, 1)
            )
            for j in range(i + 1, n):
                lca = self.last_shared_ancestor((names[i], names[j]))
                value = dist[tips[i]] + dist[tips[j]] - 2.0 * dist[lca._id]
                matrix[i, j] = value
                matrix[j, i] = value
        return names, matrix

    def mean_nearest_neighbour_distance(self) -> Optional[float]:
        """
        Mean over terminals of the distance to the closest other terminal.

        Returns None for trees with fewer than two terminals.
        """
        cache = self._lengths()
        if cache.mean_nn_distance is None:
            names, matrix = self.to_matrix()
            if len(names) < 2:
                return None
            np.fill_diagonal(matrix, np.inf)
            cache.mean_nn_distance = float(np.mean(matrix.min(axis=1)))
        return cache.mean_nn_distance

    # ================================================================== #
    # Editing                                                              #
    # ================================================================== #

    def trim(
        self,
        keep: Optional[Iterable[str]] = None,
        trim: Optional[Iterable[str]] = None,
        delete_internals: bool = True,
        trim_to_lca: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Delete nodes named in *trim*, or every named node not needed by *keep*.

        Parameters
        ----------
        keep : iterable of str, optional
            Names to retain.  When *trim* is not given, every named (not
            auto-generated), non-root node with no kept descendant is
            deleted.  Kept nodes also protect their named ancestors.
        trim : iterable of str, optional
            Names to delete, with their subtrees.  Names also in *keep*
            are spared.
        delete_internals : bool
            After deletions, also remove generated-name internal nodes
            left without any named descendant.
        trim_to_lca : bool
            Finish with :meth:`trim_to_last_common_ancestor`.

        Returns
        -------
        int   Number of nodes removed.
        """
        keep_set = set(keep) if keep is not None else set()

        if trim is None and keep is not None:
            to_trim = set()
            nodes = self.nodes()
            for k, node in enumerate(nodes):
                report_progress(progress, "Checking keeper nodes", k / len(nodes))
                if node._name in keep_set or node._parent is None or node.is_internal:
                    continue
                below = self._preorder_ids([node._id])[1:]
                if any(self._nodes[i]._name in keep_set for i in below):
                    for anc_id in self.ancestry.path_ids(node._id):
                        anc = self._nodes[anc_id]
                        if not anc.is_internal:
                            keep_set.add(anc._name)
                else:
                    to_trim.add(node._name)
        else:
            to_trim = set(trim) if trim is not None else set()

        to_trim -= keep_set
        deleted: set = set()
        for name in sorted(to_trim):
            if name in deleted or name not in self._name_index:
                continue
            deleted.update(self.delete_node(name))

        n_deleted = len(deleted)
        if delete_internals and deleted:
            for node in self.nodes():
                if node._name not in self._name_index:
                    continue
                if node._parent is None or not node.is_internal:
                    continue
                below = self._preorder_ids([node._id])[1:]
                if any(not self._nodes[i].is_internal for i in below):
                    continue
                n_deleted += len(self.delete_node(node._name))

        if trim_to_lca:
            n_deleted += self.trim_to_last_common_ancestor()

        log_trim_summary(n_deleted, 0, self._n_live)
        return n_deleted

    def trim_to_last_common_ancestor(self) -> int:
        """
        Remove single-child nodes from the top of the tree.

        The first node with zero or several children becomes the root and
        its length is set to 0.

        Returns
        -------
        int   Number of nodes removed.
        """
        root = self.root()
        removed = 0
        while len(root._children) == 1:
            child = self._nodes[root._children[0]]
            child._parent = None
            del self._name_index[root._name]
            self._nodes[root._id] = None
            self._n_live -= 1
            removed += 1
            root = child
        root._length = 0.0
        self._topology_changed()
        return removed

    def merge_knuckle_nodes(self) -> int:
        """
        Collapse every single-child ("knuckle") node into its neighbour.

        Lengths are summed.  A terminal or named child survives and is
        attached to the knuckle's parent in the knuckle's place; a
        generated-name internal child is absorbed into the knuckle, which
        adopts its children.  Deepest knuckles are merged first.

        Returns
        -------
        int   Number of nodes removed.
        """
        index = self.ancestry
        knuckles = [n for n in self._iter_nodes() if len(n._children) == 1]
        knuckles.sort(key=lambda n: len(index.path_ids(n._id)), reverse=True)

        merged = 0
        for node in knuckles:
            if self._nodes[node._id] is not node or len(node._children) != 1:
                continue
            child = self._nodes[node._children[0]]
            if child.is_terminal or not child.is_internal:
                child._length += node._length
                if node._parent is None:
                    child._parent = None
                else:
                    siblings = self._nodes[node._parent]._children
                    siblings[siblings.index(node._id)] = child._id
                    child._parent = node._parent
                self._forget(node)
            else:
                node._length += child._length
                node._children = list(child._children)
                for grandchild in node._children:
                    self._nodes[grandchild]._parent = node._id
                self._forget(child)
            merged += 1

        if merged:
            self._topology_changed()
            log_trim_summary(0, merged, self._n_live)
        return merged

    def shuffle_terminal_names(
        self,
        rng: Union[None, int, np.random.Generator] = None,
        target: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Randomly permute the names of the terminals below *target*.

        Result lists stay with their node positions.  Operate on a
        :meth:`copy` if the original labelling is still needed.

        Parameters
        ----------
        rng : int, numpy Generator or None
            Seed or generator passed to :func:`numpy.random.default_rng`.
        target : str, optional
            Node whose terminals are shuffled; defaults to the root.

        Returns
        -------
        dict   ``old_name -> new_name`` for every shuffled terminal.
        """
        generator = np.random.default_rng(rng)
        start = self._resolve(target) if target is not None else self.root()._id
        tips = [i for i in self._preorder_ids([start]) if not self._nodes[i]._children]
        old_names = [self._nodes[i]._name for i in tips]
        order = generator.permutation(len(tips))
        mapping = {}
        for slot, src in zip(tips, order):
            new_name = old_names[src]
            mapping[self._nodes[slot]._name] = new_name
            self._nodes[slot]._name = new_name
            self._name_index[new_name] = slot
        self._topology_changed()
        return mapping

    # ================================================================== #
    # Clones                                                               #
    # ================================================================== #

    def copy(self, name: Optional[str] = None) -> "Tree":
        """
        Return an independent copy with the same node IDs and result lists.

        Derived caches are not copied; the clone rebuilds them on demand.
        """
        clone = Tree(name=self.name if name is None else name)
        clone._nodes = []
        for node in self._nodes:
            if node is None:
                clone._nodes.append(None)
                continue
            dup = Node(node._id, node._name, node._length)
            dup._parent = node._parent
            dup._children = list(node._children)
            dup.lists = copy.deepcopy(node.lists)
            clone._nodes.append(dup)
        clone._name_index = dict(self._name_index)
        clone._n_live = self._n_live
        clone._highest_internal = self._highest_internal
        return clone

    def clone_with_rescaled_branch_lengths(
        self,
        new_length: float = 1.0,
        scale_factor: Optional[float] = None,
        name: Optional[str] = None,
    ) -> "Tree":
        """
        Copy with every branch length multiplied by *scale_factor*.

        By default the factor makes the longest root-to-tip path equal to
        *new_length*.
        """
        if scale_factor is None:
            scale_factor = new_length / (self.longest_path_to_tip() or 1.0)
        clone = self.copy(name if name is not None else f"{self.name} RS")
        for node in clone._iter_nodes():
            node._length *= scale_factor
        return clone

    def clone_with_equalised_branch_lengths(
        self, node_length: Optional[float] = None, name: Optional[str] = None
    ) -> "Tree":
        """
        Copy with every non-zero branch set to one common length.

        Zero-length branches stay zero.  The common length defaults to the
        total tree length divided by the number of non-zero branches, so
        the total is preserved.
        """
        if node_length is None:
            node_length = self.total_length() / (self.nonzero_length_count() or 1)
        clone = self.copy(name if name is not None else f"{self.name} EQ")
        for node in clone._iter_nodes():
            node._length = node_length if node._length else 0.0
        return clone

    # ================================================================== #
    # Result lists                                                         #
    # ================================================================== #

    def list_names(self) -> List[str]:
        """Sorted names of every result list attached to any node."""
        names = set()
        for node in self._iter_nodes():
            names.update(node.lists)
        return sorted(names)

    def get_list_stats(self, list_name: str, index: str) -> Dict[str, Optional[float]]:
        """
        Summary statistics of one index of a result list across all nodes.

        Nodes without the list, without the index, or with a ``None`` value
        are skipped.

        Returns
        -------
        dict   MAX, MIN, MEAN, SD, PCT025, PCT975, PCT05, PCT95; all None
               when no node has a value.
        """
        from ._stats import describe_sample

        data = []
        for node in self._iter_nodes():
            values = node.lists.get(list_name)
            if not isinstance(values, dict):
                continue
            value = values.get(index)
            if value is not None:
                data.append(value)
        return describe_sample(
            data,
            {"MAX": "max", "MIN": "min", "MEAN": "mean", "SD": "sd",
             "PCT025": 2.5, "PCT975": 97.5, "PCT05": 5, "PCT95": 95},
        )

    def describe(self) -> str:
        """Log and return a one-line summary of the tree."""
        n_roots = len(self.root_nodes())
        log_tree_summary(self.name, self._n_live, self.n_terminals, n_roots)
        return (
            f"{self.name or '<unnamed>'}: {self._n_live} nodes, "
            f"{self.n_terminals} terminals, {n_roots} root(s), "
            f"total length {self.total_length():g}"
        )

    # ================================================================== #
    # Private instance methods                                             #
    # ================================================================== #

    def _resolve(self, name: str) -> int:
        """
        **Private.**  Return the arena ID for *name*.

        Raises
        ------
        NodeNotFound   if *name* is not registered.
        """
        try:
            return self._name_index[name]
        except KeyError:
            raise NodeNotFound(name) from None

    def _iter_nodes(self):
        for node_id in self._name_index.values():
            yield self._nodes[node_id]

    def _forget(self, node: Node) -> None:
        """**Private.**  Drop *node* from the registry without touching links."""
        del self._name_index[node._name]
        self._nodes[node._id] = None
        node._parent = None
        node._children = []
        self._n_live -= 1

    def _preorder_ids(self, start_ids: List[int]) -> List[int]:
        """**Private.**  IDs of *start_ids* and their descendants, pre-order."""
        order = []
        stack = list(reversed(start_ids))
        while stack:
            nid = stack.pop()
            order.append(nid)
            stack.extend(reversed(self._nodes[nid]._children))
        return order

    def _postorder_ids(self, start_ids: List[int], skip=None) -> List[int]:
        """
        **Private.**  IDs below *start_ids*, children before parents.

        Subtrees rooted at an ID in *skip* are not entered.  Iterative,
        phase-coded stack: a node is pushed once unexpanded and once
        expanded, and emitted on its expanded pop.
        """
        order = []
        stack = [(nid, False) for nid in reversed(start_ids)]
        while stack:
            nid, expanded = stack.pop()
            if expanded:
                order.append(nid)
                continue
            if skip is not None and nid in skip:
                continue
            stack.append((nid, True))
            for child in reversed(self._nodes[nid]._children):
                stack.append((child, False))
        return order

    def _all_root_ids(self) -> List[int]:
        self.root_nodes()
        return self._topology().root_ids

    def _terminal_ids(self) -> List[int]:
        cache = self._topology()
        if cache.terminal_ids is None:
            cache.terminal_ids = [n._id for n in self._iter_nodes() if not n._children]
        return cache.terminal_ids

    def _terminal_counts(self) -> Dict[int, int]:
        cache = self._topology()
        if cache.terminal_counts is None:
            counts: Dict[int, int] = {}
            for nid in self._postorder_ids(self._all_root_ids()):
                children = self._nodes[nid]._children
                counts[nid] = sum(counts[c] for c in children) if children else 1
            cache.terminal_counts = counts
        return cache.terminal_counts

    def _terminal_set(self, node_id: int) -> FrozenSet[str]:
        sets = self._topology().terminal_sets
        hit = sets.get(node_id)
        if hit is not None:
            return hit
        for nid in self._postorder_ids([node_id], skip=sets):
            node = self._nodes[nid]
            if node._children:
                sets[nid] = frozenset().union(*(sets[c] for c in node._children))
            else:
                sets[nid] = frozenset((node._name,))
        return sets[node_id]

    def _root_distances(self) -> Dict[int, float]:
        cache = self._lengths()
        if cache.root_distance is None:
            dist: Dict[int, float] = {}
            for nid in self._preorder_ids(self._all_root_ids()):
                node = self._nodes[nid]
                if node._parent is None:
                    dist[nid] = 0.0
                else:
                    dist[nid] = dist[node._parent] + node._length
            cache.root_distance = dist
        return cache.root_distance

    def _length_below(self) -> Dict[int, float]:
        cache = self._lengths()
        if cache.length_below is None:
            below: Dict[int, float] = {}
            for nid in self._postorder_ids(self._all_root_ids()):
                node = self._nodes[nid]
                deepest = max((below[c] for c in node._children), default=0.0)
                below[nid] = node._length + deepest
            cache.length_below = below
        return cache.length_below

    def _ancestor_rows(self, tips: List[int]):
        """
        **Private.**  Root-aligned ancestor matrix for the distance kernel.

        Returns (ancestors int64[n, max_depth+1], tip_depth int64[n],
        root_distance float64[n_slots]).
        """
        index = self.ancestry
        paths = [index.path_ids(t) for t in tips]
        max_len = max((len(p) for p in paths), default=1)
        ancestors = np.full((len(tips), max_len), -1, dtype=np.int64)
        tip_depth = np.empty(len(tips), dtype=np.int64)
        for row, path in enumerate(paths):
            ancestors[row, : len(path)] = path[::-1]
            tip_depth[row] = len(path) - 1
        root_distance = np.zeros(len(self._nodes), dtype=np.float64)
        for nid, value in self._root_distances().items():
            root_distance[nid] = value
        return ancestors, tip_depth, root_distance

    def _parse_newick(self, newick_string: str) -> None:
        """
        **Private.**  Parse *newick_string* into registry nodes.

        Iterative, stack-based character scan; no recursion.  The stack
        holds node IDs separated by ``OPEN_PAREN`` markers; a closing
        parenthesis pops every ID back to its marker, so multifurcations
        need no special handling.  Single-quoted labels may contain any
        character except a quote.

        Raises
        ------
        ValueError   on unbalanced parentheses or an unlabelled terminal.
        """
        s = newick_string.strip()
        n_chars = len(s)
        if n_chars > 0 and s[n_chars - 1] == ";":
            n_chars -= 1

        OPEN_PAREN = -1
        DELIMS = ":,();"
        stack: List[int] = []
        pending: List[Tuple[List[int], str, float]] = []

        def skip_space(i: int) -> int:
            while i < n_chars and s[i] in " \t\r\n":
                i += 1
            return i

        def read_label(i: int) -> Tuple[str, int]:
            i = skip_space(i)
            if i < n_chars and s[i] == "'":
                j = s.index("'", i + 1)
                return s[i + 1 : j], j + 1
            j = i
            while j < n_chars and s[j] not in DELIMS and s[j] not in " \t\r\n":
                j += 1
            return s[i:j], j

        def read_length(i: int) -> Tuple[float, int]:
            i = skip_space(i)
            if i < n_chars and s[i] == ":":
                i = skip_space(i + 1)
                j = i
                while j < n_chars and s[j] not in DELIMS and s[j] not in " \t\r\n":
                    j += 1
                return float(s[i:j]), j
            return 0.0, i

        # Internal labels are only known after their subtree has been read,
        # so internal nodes are created once every label is known.
        i = 0
        while i < n_chars:
            c = s[i]
            if c in " \t\r\n" or c == ",":
                i += 1
                continue

            if c == "(":
                stack.append(OPEN_PAREN)
                i += 1
                continue

            if c == ")":
                i += 1
                members: List[int] = []
                while stack and stack[-1] != OPEN_PAREN:
                    members.append(stack.pop())
                if not stack:
                    raise ValueError("Unbalanced ')' in NEWICK string.")
                stack.pop()
                members.reverse()
                label, i = read_label(i)
                length, i = read_length(i)
                pending.append((members, label, length))
                stack.append(-(len(pending) + 1))
                continue

            label, i = read_label(i)
            if not label:
                raise ValueError(f"Unlabelled terminal at position {i} of NEWICK string.")
            length, i = read_length(i)
            stack.append(self.add_node(label, length)._id)

        if OPEN_PAREN in stack:
            raise ValueError("Unbalanced '(' in NEWICK string.")

        # Pending internal nodes were pushed as -(k + 2); pending[k] can only
        # reference earlier pending entries, so creation order is safe.
        labels = {label for _, label, _ in pending if label}
        created: List[int] = []
        for members, label, length in pending:
            name = label or self.get_free_internal_name(exclude=labels)
            node = self.add_node(name, length)
            for member in members:
                child_id = member if member >= 0 else created[-member - 2]
                child = self._nodes[child_id]
                child._parent = node._id
                node._children.append(child_id)
            created.append(node._id)
        self._topology_changed()

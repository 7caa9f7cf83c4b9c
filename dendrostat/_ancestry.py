"""
_ancestry.py
============
Root-ward path caching and last-shared-ancestor (LCA) resolution.

AncestryIndex
-------------
Holds, per tree topology version, the tip-to-root ID path of every node
queried so far, plus the "probable LCA depths" used to short-cut searches.
Paths are built lazily: a walk up the tree stops at the first ancestor whose
path is already cached and reuses it as the tail.

LCAFinder
---------
Folds a set of nodes into their last shared ancestor one path at a time.
The running answer is a depth on the first (reference) path and only ever
moves root-ward.  For each further path, candidate depths are probed
first; a probe succeeds when both paths agree at the probed depth and
disagree one step tip-ward of it.  Otherwise a bounded linear scan walks
root-ward from the deepest possible shared depth until the paths agree.

Probing pays off for the random pairs and small assemblages drawn during
NRI/NTI and matrix work, whose LCAs lie close to a few large, balanced
clades near the root.  Results are identical with probing disabled
(``use_probable_depths=False``), which the test suite checks.
"""

from typing import Dict, Iterable, List, Optional, Tuple

#: A probable LCA holds at least this fraction of all terminals ...
PROBABLE_LCA_FRACTION = 0.66
#: ... and has at least two children each holding more than this fraction of it.
PROBABLE_LCA_CHILD_FRACTION = 0.25


class AncestryIndex:
    """
    Per-tree cache of tip-to-root paths and probable LCA depths.

    The index compares its stamp with the tree's ``topology_version`` on
    every read and discards everything when they differ.

    Parameters
    ----------
    tree : Tree
        The owning tree.
    """

    def __init__(self, tree) -> None:
        self._tree = tree
        self._version = -1
        self._paths: Dict[int, Tuple[int, ...]] = {}
        self._probable_depths: Optional[Tuple[int, ...]] = None

    def __len__(self) -> int:
        """Number of cached paths for the current topology."""
        self._sync()
        return len(self._paths)

    def _sync(self) -> None:
        version = self._tree.topology_version
        if version != self._version:
            self._paths = {}
            self._probable_depths = None
            self._version = version

    def invalidate(self) -> None:
        """Discard every cached path and depth hint."""
        self._paths = {}
        self._probable_depths = None
        self._version = -1

    def path_ids(self, node_id: int) -> Tuple[int, ...]:
        """
        Node IDs from *node_id* up to its root, inclusive.

        Complexity
        ----------
        O(k) for k uncached ancestors; O(1) when cached.
        """
        self._sync()
        path = self._paths.get(node_id)
        if path is not None:
            return path

        nodes = self._tree._nodes
        walked: List[int] = []
        tail: Tuple[int, ...] = ()
        cursor: Optional[int] = node_id
        while cursor is not None:
            cached = self._paths.get(cursor)
            if cached is not None:
                tail = cached
                break
            walked.append(cursor)
            cursor = nodes[cursor]._parent

        path = tuple(walked) + tail
        self._paths[node_id] = path
        return path

    def path(self, name: str) -> List[str]:
        """Names from *name* up to its root, inclusive."""
        nodes = self._tree._nodes
        return [nodes[i]._name for i in self.path_ids(self._tree._resolve(name))]

    def depth(self, name: str) -> int:
        return len(self.path_ids(self._tree._resolve(name))) - 1

    def probable_lca_depths(self) -> Tuple[int, ...]:
        """
        Distinct depths of the tree's probable LCA nodes.

        A probable LCA is an internal node holding at least 66% of all
        terminals with at least two children that each hold more than 25%
        of the node's terminals.  Depths are ordered by the node's terminal
        fraction, largest first.
        """
        self._sync()
        if self._probable_depths is not None:
            return self._probable_depths

        tree = self._tree
        counts = tree._terminal_counts()
        n_terminals = tree.n_terminals
        candidates = []
        for node in tree._iter_nodes():
            if not node._children or not n_terminals:
                continue
            n_below = counts[node._id]
            fraction = n_below / n_terminals
            if fraction < PROBABLE_LCA_FRACTION:
                continue
            triggered = sum(
                1
                for c in node._children
                if counts[c] / n_below > PROBABLE_LCA_CHILD_FRACTION
            )
            if triggered < 2:
                continue
            candidates.append((fraction, len(self.path_ids(node._id)) - 1))

        candidates.sort(key=lambda fd: fd[0], reverse=True)
        depths: List[int] = []
        for _, depth in candidates:
            if depth not in depths:
                depths.append(depth)
        self._probable_depths = tuple(depths)
        return self._probable_depths


class LCAFinder:
    """
    Last-shared-ancestor queries over one tree's :class:`AncestryIndex`.

    Parameters
    ----------
    tree : Tree
    """

    def __init__(self, tree) -> None:
        self._tree = tree

    def lca(self, names: Iterable[str], use_probable_depths: bool = True):
        """
        Return the deepest common ancestor of every node in *names*.

        Parameters
        ----------
        names : iterable of str
            At least one node name.  Duplicates are ignored.
        use_probable_depths : bool
            Probe the tree's probable LCA depths before scanning.

        Returns
        -------
        Node
            The node itself for a single name.  Otherwise an ancestor of
            every named node (a node counts as its own ancestor) such that
            no deeper node is one.

        Raises
        ------
        ValueError       if *names* is empty.
        NodeNotFound     if any name is absent.
        InvalidTopology  if the tree does not have exactly one root.

        Complexity
        ----------
        O(m * d) for m names on paths of depth d, worst case; near O(m)
        when probes hit.
        """
        tree = self._tree
        unique = list(dict.fromkeys(names))
        if not unique:
            raise ValueError("At least one node name is required.")
        ids = [tree._resolve(name) for name in unique]
        if len(ids) == 1:
            return tree._nodes[ids[0]]

        tree.root()
        index = tree.ancestry
        probes = index.probable_lca_depths() if use_probable_depths else ()

        ref = index.path_ids(ids[0])
        n_ref = len(ref)
        common = n_ref - 1

        for other in ids[1:]:
            if common == 0:
                break
            path = index.path_ids(other)
            n_path = len(path)
            if n_path == 1:
                common = 0
                break

            # Paths share nothing deeper than the shallower of the current
            # answer and the other node itself.
            limit = min(common, n_path - 1)
            low, high = 0, limit
            found = None
            for depth in probes:
                if depth < low or depth > high:
                    continue
                if ref[n_ref - 1 - depth] == path[n_path - 1 - depth]:
                    if (
                        depth == limit
                        or ref[n_ref - 2 - depth] != path[n_path - 2 - depth]
                    ):
                        found = depth
                        break
                    low = depth
                else:
                    high = depth - 1

            if found is None:
                found = _scan_rootward(ref, path, low, high)
            common = found

        return tree._nodes[ref[n_ref - 1 - common]]

    def lca_by_scan(self, names: Iterable[str]):
        """Same as :meth:`lca` without depth probing."""
        return self.lca(names, use_probable_depths=False)


def _scan_rootward(
    ref: Tuple[int, ...], path: Tuple[int, ...], low: int, high: int
) -> int:
    """
    Deepest depth in [low, high] at which two tip-to-root paths agree.

    Paths that agree at some depth agree at every shallower depth, so the
    first agreement found walking root-ward from *high* is the answer.
    Callers guarantee agreement at *low*.
    """
    n_ref = len(ref)
    n_path = len(path)
    for depth in range(high, low - 1, -1):
        if ref[n_ref - 1 - depth] == path[n_path - 1 - depth]:
            return depth
    return low


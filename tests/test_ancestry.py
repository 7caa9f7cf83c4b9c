"""
tests/test_ancestry.py
======================
Tests for AncestryIndex and LCAFinder.

Every LCA answer is checked against an independent computation: the last
shared entry of the two root-ward name paths, walked directly through
``Tree.parent``.  Probed and scan-only searches must agree on every pair
and triple of every fixture tree.
"""

import itertools
import os
import sys

import pytest

_TREES_DIR = os.path.join(os.path.dirname(__file__), "trees")

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from dendrostat._ancestry import AncestryIndex, LCAFinder
from dendrostat._errors import InvalidTopology, NodeNotFound
from dendrostat._tree import Tree


TREE_FILES = [
    "balanced_4leaf.tree",
    "caterpillar_5leaf.tree",
    "ultrametric_6leaf.tree",
    "multifurcating_6leaf.tree",
    "two_leaf.tree",
]

# X holds 4 of 5 terminals split 2/2, so depth 1 is a probable LCA depth.
PROBED_NEWICK = "(Z:1,((A:1,B:1)AB:1,(C:1,D:1)CD:1)X:1)root;"


def load_tree(filename: str) -> Tree:
    path = os.path.join(_TREES_DIR, filename)
    with open(path) as fh:
        return Tree(fh.read().strip(), name=filename)


def walk_to_root(tree: Tree, name: str) -> list:
    """Names from *name* to the root, without using the ancestry index."""
    path = [name]
    parent = tree.parent(name)
    while parent is not None:
        path.append(parent.name)
        parent = tree.parent(parent.name)
    return path


def brute_force_lca(tree: Tree, names) -> str:
    paths = [walk_to_root(tree, n)[::-1] for n in names]
    shared = None
    for entries in zip(*paths):
        if len(set(entries)) != 1:
            break
        shared = entries[0]
    return shared


@pytest.fixture(scope="module", params=TREE_FILES + ["probed"])
def any_tree(request):
    if request.param == "probed":
        return Tree(PROBED_NEWICK, name="probed")
    return load_tree(request.param)


# ======================================================================== #
# AncestryIndex                                                             #
# ======================================================================== #


class TestAncestryIndex:
    def test_path_matches_parent_walk(self, any_tree):
        index = AncestryIndex(any_tree)
        for name in any_tree.node_names():
            assert index.path(name) == walk_to_root(any_tree, name)

    def test_depth(self):
        tree = Tree(PROBED_NEWICK)
        index = tree.ancestry
        assert index.depth("root") == 0
        assert index.depth("X") == 1
        assert index.depth("A") == 3

    def test_paths_are_cached_and_share_tails(self):
        tree = Tree(PROBED_NEWICK)
        index = tree.ancestry
        index.path("A")
        assert len(index) == 1
        index.path("B")
        # Only queried nodes get an entry, not every ancestor walked.
        assert len(index) == 2
        assert index.path("AB") == ["AB", "X", "root"]
        assert index.path("A")[1:] == index.path("AB")

    def test_topology_change_discards_paths(self):
        tree = Tree(PROBED_NEWICK)
        index = tree.ancestry
        assert index.path("Z") == ["Z", "root"]
        tree.set_parent("Z", "AB")
        assert index.path("Z") == ["Z", "AB", "X", "root"]

    def test_length_change_keeps_paths(self):
        tree = Tree(PROBED_NEWICK)
        index = tree.ancestry
        index.path("A")
        tree.set_length("A", 4.0)
        assert len(index) == 1

    def test_invalidate(self):
        tree = Tree(PROBED_NEWICK)
        index = tree.ancestry
        index.path("A")
        index.invalidate()
        assert len(index) == 0

    def test_probable_lca_depths(self):
        tree = Tree(PROBED_NEWICK)
        assert tree.ancestry.probable_lca_depths() == (1,)

    def test_probable_lca_depths_balanced(self):
        tree = load_tree("balanced_4leaf.tree")
        assert tree.ancestry.probable_lca_depths() == (0,)

    def test_probable_lca_depths_caterpillar(self):
        # No node splits its terminals evenly enough.
        tree = load_tree("caterpillar_5leaf.tree")
        assert tree.ancestry.probable_lca_depths() == ()

    def test_missing_name_raises(self):
        tree = Tree(PROBED_NEWICK)
        with pytest.raises(NodeNotFound):
            tree.ancestry.path("nope")


# ======================================================================== #
# LCAFinder                                                                 #
# ======================================================================== #


class TestLCA:
    def test_pairs_match_brute_force(self, any_tree):
        finder = LCAFinder(any_tree)
        for a, b in itertools.combinations(any_tree.node_names(), 2):
            expected = brute_force_lca(any_tree, [a, b])
            assert finder.lca([a, b]).name == expected, (a, b)

    def test_pair_result_is_ancestor_of_both(self, any_tree):
        for a, b in itertools.combinations(any_tree.terminal_names(), 2):
            lca = any_tree.last_shared_ancestor([a, b]).name
            assert lca in walk_to_root(any_tree, a)
            assert lca in walk_to_root(any_tree, b)

    def test_probe_and_scan_agree(self, any_tree):
        finder = LCAFinder(any_tree)
        names = any_tree.node_names()
        for size in (2, 3):
            for combo in itertools.combinations(names, size):
                assert finder.lca(combo).name == finder.lca_by_scan(combo).name

    def test_triples_match_brute_force(self, any_tree):
        finder = LCAFinder(any_tree)
        for combo in itertools.combinations(any_tree.node_names(), 3):
            assert finder.lca(combo).name == brute_force_lca(any_tree, combo)

    def test_monotonicity(self, any_tree):
        terminals = any_tree.terminal_names()
        for a, b, c in itertools.permutations(terminals, 3):
            pair = any_tree.last_shared_ancestor([a, b]).name
            triple = any_tree.last_shared_ancestor([a, b, c]).name
            assert triple in walk_to_root(any_tree, pair)

    def test_single_name_returns_node(self):
        tree = Tree(PROBED_NEWICK)
        assert tree.last_shared_ancestor(["A"]).name == "A"

    def test_duplicates_ignored(self):
        tree = Tree(PROBED_NEWICK)
        assert tree.last_shared_ancestor(["A", "A"]).name == "A"

    def test_with_root(self):
        tree = Tree(PROBED_NEWICK)
        assert tree.last_shared_ancestor(["A", "root"]).name == "root"

    def test_ancestor_and_descendant(self):
        tree = Tree(PROBED_NEWICK)
        assert tree.last_shared_ancestor(["A", "AB"]).name == "AB"
        assert tree.last_shared_ancestor(["X", "D"]).name == "X"

    def test_probe_depth_hit(self):
        tree = Tree(PROBED_NEWICK)
        assert tree.last_shared_ancestor(["A", "C"]).name == "X"
        assert tree.last_shared_ancestor(["A", "C", "Z"]).name == "root"

    def test_empty_raises(self):
        tree = Tree(PROBED_NEWICK)
        with pytest.raises(ValueError):
            tree.last_shared_ancestor([])

    def test_missing_name_raises(self):
        tree = Tree(PROBED_NEWICK)
        with pytest.raises(NodeNotFound):
            tree.last_shared_ancestor(["A", "nope"])

    def test_multiple_roots_raise(self):
        tree = Tree(PROBED_NEWICK)
        tree.add_node("orphan")
        with pytest.raises(InvalidTopology):
            tree.last_shared_ancestor(["A", "B"])

    def test_follows_reparenting(self):
        tree = Tree(PROBED_NEWICK)
        assert tree.last_shared_ancestor(["A", "Z"]).name == "root"
        tree.set_parent("Z", "AB")
        assert tree.last_shared_ancestor(["A", "Z"]).name == "AB"

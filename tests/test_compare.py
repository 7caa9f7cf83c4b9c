"""
tests/test_compare.py
=====================
Tests for RankAccumulator, compare_lists_by_item and TreeComparator.

The swapped tree ``((A,C)AC,(B,D)BD)root`` shares every terminal and the
root with the balanced fixture but neither cherry, so exactly five of its
seven nodes match perfectly.
"""

import itertools
import os
import sys

import pytest

_TREES_DIR = os.path.join(os.path.dirname(__file__), "trees")

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from dendrostat import _compare
from dendrostat._compare import (
    SPATIAL_RESULTS,
    RankAccumulator,
    TreeComparator,
    compare_lists_by_item,
)
from dendrostat._errors import CacheInvalidationError
from dendrostat._tree import Tree
from dendrostat._utils import sorenson_dissimilarity

SWAPPED_NEWICK = "((A:1,C:1)AC:1,(B:1,D:1)BD:1)root;"


def load_tree(filename: str) -> Tree:
    path = os.path.join(_TREES_DIR, filename)
    with open(path) as fh:
        return Tree(fh.read().strip(), name=filename)


@pytest.fixture
def balanced():
    return load_tree("balanced_4leaf.tree")


# ======================================================================== #
# RankAccumulator                                                           #
# ======================================================================== #


class TestRankAccumulator:
    def test_observed_wins(self):
        acc = RankAccumulator()
        acc.add(5.0, 3.0)
        assert (acc.c, acc.q, acc.t) == (1, 1, 0)
        assert acc.sumx == 3.0
        assert acc.sumxx == 9.0

    def test_tie_within_tolerance(self):
        acc = RankAccumulator()
        acc.add(3.0, 3.0 + 1e-12)
        assert (acc.c, acc.q, acc.t) == (0, 1, 1)

    def test_observed_loses(self):
        acc = RankAccumulator()
        acc.add(1.0, 3.0)
        assert (acc.c, acc.q, acc.t) == (0, 1, 0)

    def test_p_is_ratio(self):
        acc = RankAccumulator(c=3, q=4)
        assert acc.p == 0.75
        assert RankAccumulator().p is None

    def test_sig_rank_upper(self):
        assert RankAccumulator(c=99, q=100).sig_rank() == 0.99

    def test_sig_rank_lower_counts_ties(self):
        acc = RankAccumulator()
        for randomised in (3.0, 3.0, 1.0):
            acc.add(2.0, randomised)
        acc.add(2.0, 2.0)
        # c=1, t=1, q=4 -> p=0.25 -> (c + t) / q
        assert acc.sig_rank() == 0.5

    def test_sig_rank_none_without_comparisons(self):
        assert RankAccumulator().sig_rank() is None

    def test_z_score(self):
        acc = RankAccumulator()
        acc.add(4.0, 1.0)
        acc.add(4.0, 3.0)
        # mean 2, population variance 1
        assert acc.z_score(4.0) == pytest.approx(2.0)

    def test_z_score_zero_variance(self):
        acc = RankAccumulator()
        acc.add(5.0, 3.0)
        acc.add(5.0, 3.0)
        assert acc.z_score(5.0) == 0.0

    def test_z_score_undefined(self):
        assert RankAccumulator().z_score(1.0) is None
        acc = RankAccumulator()
        acc.add(1.0, 2.0)
        assert acc.z_score(None) is None

    def test_merge_is_elementwise(self):
        a = RankAccumulator(c=1, q=2, t=0, sumx=3.0, sumxx=5.0)
        b = RankAccumulator(c=2, q=3, t=1, sumx=4.0, sumxx=6.0)
        a.merge(b)
        assert a == RankAccumulator(c=3, q=5, t=1, sumx=7.0, sumxx=11.0)
        assert a.p == 0.6

    def test_as_dict(self):
        d = RankAccumulator(c=1, q=2).as_dict()
        assert d["C"] == 1
        assert d["Q"] == 2
        assert d["P"] == 0.5


class TestCompareListsByItem:
    def test_shared_indices_only(self):
        results = {}
        compare_lists_by_item(
            {"PD": 2.0, "PE_WE": 1.0, "ONLY_BASE": 1.0, "NONE": None},
            {"PD": 1.0, "PE_WE": 3.0, "NONE": 2.0},
            results,
        )
        assert set(results) == {"PD", "PE_WE"}
        assert results["PD"].c == 1
        assert results["PE_WE"].c == 0

    def test_updates_existing(self):
        results = {"PD": RankAccumulator(c=1, q=1)}
        compare_lists_by_item({"PD": 2.0}, {"PD": 1.0}, results)
        assert results["PD"].q == 2
        assert results["PD"].c == 2


# ======================================================================== #
# Sorenson                                                                  #
# ======================================================================== #


class TestSorenson:
    def test_symmetric_over_tree_nodes(self, balanced):
        swapped = Tree(SWAPPED_NEWICK)
        for a, b in itertools.product(balanced.node_names(), swapped.node_names()):
            ta = balanced.terminal_elements(a)
            tb = swapped.terminal_elements(b)
            assert sorenson_dissimilarity(ta, tb) == sorenson_dissimilarity(tb, ta)

    def test_values(self):
        assert sorenson_dissimilarity({"A", "B"}, {"A", "C"}) == 0.5
        assert sorenson_dissimilarity({"A", "B"}, {"A", "B", "C", "D"}) == pytest.approx(1 / 3)


# ======================================================================== #
# TreeComparator                                                            #
# ======================================================================== #


class TestComparator:
    def test_reflexive(self, balanced):
        comparator = TreeComparator()
        assert comparator.compare(balanced, balanced.copy(), "rand") == len(balanced)

    def test_trees_are_same(self, balanced):
        comparator = TreeComparator()
        assert comparator.trees_are_same(balanced, balanced.copy())
        assert not comparator.trees_are_same(balanced, Tree(SWAPPED_NEWICK))

    def test_length_difference_breaks_perfect_match(self, balanced):
        other = balanced.copy()
        other.set_length("AB", 1.5)
        assert TreeComparator().compare(balanced, other, track_matches=False) == 6
        assert TreeComparator(terminals_only=True).compare(
            balanced, other, track_matches=False
        ) == 7

    def test_swapped_tree(self, balanced):
        swapped = Tree(SWAPPED_NEWICK)
        assert TreeComparator().compare(balanced, swapped, "rand") == 5
        stats = balanced.get_node("AB").lists["rand"]
        assert stats["COUNT_IDENTICAL"] == 0
        # Best available match for {A, B} is the root, {A, B, C, D}.
        assert balanced.get_node("AB").lists["rand_DATA"] == [pytest.approx(1 / 3)]

    def test_match_statistics(self, balanced):
        comparator = TreeComparator()
        comparator.compare(balanced, balanced.copy(), "rand")
        comparator.compare(balanced, Tree(SWAPPED_NEWICK), "rand")
        node = balanced.get_node("AB")
        stats = node.lists["rand"]
        assert stats["COMPARISONS"] == 2
        assert stats["COUNT_IDENTICAL"] == 1
        assert stats["PCT_IDENTICAL"] == 50.0
        assert stats["MEAN"] == pytest.approx(1 / 6)
        assert node.lists["rand_DATA"] == [0.0, pytest.approx(1 / 3)]
        assert node.lists["rand_ID_LDIFFS"] == [0.0]

    def test_length_below_difference_recorded(self, balanced):
        other = balanced.copy()
        other.set_length("A", 3.0)
        TreeComparator(terminals_only=True).compare(balanced, other, "rand")
        assert balanced.get_node("AB").lists["rand_ID_LDIFFS"] == [-2.0]

    def test_no_statistics_when_disabled(self, balanced):
        TreeComparator(track_node_stats=False).compare(balanced, balanced.copy(), "rand")
        assert "rand" not in balanced.get_node("A").lists

    def test_rank_accumulators(self, balanced):
        other = balanced.copy()
        for name in balanced.node_names():
            balanced.get_node(name).lists[SPATIAL_RESULTS] = {"PE_WE": 2.0, "PD": 1.0}
            other.get_node(name).lists[SPATIAL_RESULTS] = {"PE_WE": 1.0, "PD": 1.0}
        TreeComparator().compare(balanced, other, "rand")
        ranks = balanced.get_node("A").lists[f"rand>>{SPATIAL_RESULTS}"]
        assert ranks["PE_WE"] == RankAccumulator(c=1, q=1, t=0, sumx=1.0, sumxx=1.0)
        assert ranks["PD"].t == 1
        # The comparison tree is never modified.
        assert f"rand>>{SPATIAL_RESULTS}" not in other.get_node("A").lists

    def test_extra_index_lists(self, balanced):
        other = balanced.copy()
        balanced.get_node("A").lists["EXTRA"] = {"X": 1.0}
        other.get_node("A").lists["EXTRA"] = {"X": 0.0}
        TreeComparator(index_lists=["EXTRA"]).compare(balanced, other, "rand")
        assert balanced.get_node("A").lists["rand>>EXTRA"]["X"].c == 1

    def test_result_name_required(self, balanced):
        with pytest.raises(ValueError):
            TreeComparator().compare(balanced, balanced.copy())

    def test_contains_tree(self, balanced):
        sub = Tree("(A:1,B:1)AB;")
        comparator = TreeComparator()
        assert not comparator.contains_tree(balanced, sub)
        assert comparator.contains_tree(balanced, sub, ignore_root=True)

    def test_progress_reports(self, balanced):
        calls = []
        TreeComparator(progress=lambda t, f: calls.append(f)).compare(
            balanced, balanced.copy(), "rand"
        )
        assert len(calls) == len(balanced)
        assert calls[-1] == 1.0

    def test_scores_reused_across_calls(self, balanced, monkeypatch):
        calls = []

        def counting(set_a, set_b):
            calls.append(1)
            return sorenson_dissimilarity(set_a, set_b)

        monkeypatch.setattr(_compare, "sorenson_dissimilarity", counting)
        comparator = TreeComparator()
        swapped = Tree(SWAPPED_NEWICK)
        comparator.compare(balanced, swapped, track_matches=False)
        first = len(calls)
        assert first > 0
        assert comparator.compare(balanced, swapped, track_matches=False) == 5
        assert len(calls) == first

    def test_topology_change_discards_scores(self, balanced, monkeypatch):
        calls = []

        def counting(set_a, set_b):
            calls.append(1)
            return sorenson_dissimilarity(set_a, set_b)

        monkeypatch.setattr(_compare, "sorenson_dissimilarity", counting)
        comparator = TreeComparator()
        other = balanced.copy()
        comparator.compare(balanced, other, track_matches=False)
        first = len(calls)
        other.add_node("E", 1.0, parent="CD")
        assert comparator.compare(balanced, other, track_matches=False) == 5
        assert len(calls) > first

    def test_length_change_keeps_scores(self, balanced):
        comparator = TreeComparator()
        other = balanced.copy()
        assert comparator.compare(balanced, other, track_matches=False) == 7
        other.set_length("AB", 1.5)
        assert comparator.compare(balanced, other, track_matches=False) == 6

    def test_mutation_during_compare_raises(self, balanced):
        def mutate(text, fraction):
            balanced.set_length("A", fraction + 5.0)

        with pytest.raises(CacheInvalidationError):
            TreeComparator(progress=mutate).compare(balanced, balanced.copy(), "rand")

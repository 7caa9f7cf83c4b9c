"""
_compare.py
===========
Cross-tree node matching for randomisation testing.

Every node of a base tree is matched to the node of a comparison tree
whose terminal set is most similar (lowest Sorenson dissimilarity).  The
match feeds two kinds of per-node record:

* **Match-quality statistics** under the result prefix ``pfx``:
  ``pfx_DATA`` (every best score seen), ``pfx`` (MEAN, SD, MEDIAN, Q25,
  Q05, Q01, COUNT_IDENTICAL, COMPARISONS, PCT_IDENTICAL) and
  ``pfx_ID_LDIFFS`` (length-below differences of identical matches).
* **Rank accumulators** under ``pfx>>LIST`` for each tracked result list
  (``SPATIAL_RESULTS`` by default): one :class:`RankAccumulator` per index,
  counting how often the base tree's observed value beats the matched
  comparison node's value.

Result-list naming
------------------
``pfx>>LIST``            dict index -> RankAccumulator
``pfx>>p_rank>>LIST``    dict index -> significance rank (see _randomisation)
``pfx>>z_scores>>LIST``  dict index -> z-score
``pfx>>CANAPE>>``        dict of CANAPE code and flags
"""

import logging
import math
from itertools import chain
from typing import Dict, Iterable, Optional, Sequence

from ._logging import log_comparison_summary
from ._stats import MATCH_SCORE_FIELDS, describe_sample
from ._tree import Node, Tree
from ._utils import ProgressCallback, report_progress, sorenson_dissimilarity

logger = logging.getLogger(__name__)

#: Name of the result list holding observed spatial-calculation values.
SPATIAL_RESULTS = "SPATIAL_RESULTS"

#: Values closer than this are equal.
DEFAULT_TOLERANCE = 1e-10


# ======================================================================== #
# Rank accumulator                                                          #
# ======================================================================== #


class RankAccumulator:
    """
    Running comparison counts for one index of one node's result list.

    Attributes
    ----------
    c     : int    Comparisons where the observed value exceeded the
                   randomised value by more than the tolerance.
    q     : int    Comparisons made.
    t     : int    Comparisons where the two values were equal within
                   the tolerance.
    sumx  : float  Sum of randomised values.
    sumxx : float  Sum of squared randomised values.

    Merging is elementwise addition, so it is commutative and associative.
    """

    __slots__ = ("c", "q", "t", "sumx", "sumxx")

    def __init__(
        self, c: int = 0, q: int = 0, t: int = 0, sumx: float = 0.0, sumxx: float = 0.0
    ) -> None:
        self.c = c
        self.q = q
        self.t = t
        self.sumx = sumx
        self.sumxx = sumxx

    @property
    def p(self) -> Optional[float]:
        """Fraction of comparisons the observed value won; None before any."""
        return self.c / self.q if self.q else None

    def add(
        self, observed: float, randomised: float, tolerance: float = DEFAULT_TOLERANCE
    ) -> None:
        """Fold one comparison into the counts."""
        diff = observed - randomised
        if diff > tolerance:
            self.c += 1
        if abs(diff) <= tolerance:
            self.t += 1
        self.q += 1
        self.sumx += randomised
        self.sumxx += randomised * randomised

    def merge(self, other: "RankAccumulator") -> None:
        """Add *other*'s counts into this accumulator."""
        self.c += other.c
        self.q += other.q
        self.t += other.t
        self.sumx += other.sumx
        self.sumxx += other.sumxx

    def sig_rank(self) -> Optional[float]:
        """
        Percentile rank of the observed value.

        Returns P when the observed value beat more than half the
        randomisations, otherwise ``(C + T) / Q``, the fraction it did not
        fall below.  None before any comparison.
        """
        p = self.p
        if p is None:
            return None
        if p > 0.5:
            return p
        return (self.c + self.t) / self.q

    def z_score(self, observed: Optional[float]) -> Optional[float]:
        """
        Standard score of *observed* against the randomised values.

        Uses the population variance (n denominator).  Zero variance gives
        0.0; no comparisons or no observed value gives None.
        """
        if not self.q or observed is None:
            return None
        n = self.q
        mean = self.sumx / n
        variance = max(0.0, (self.sumxx - self.sumx * self.sumx / n) / n)
        if not variance:
            return 0.0
        return (observed - mean) / math.sqrt(variance)

    def as_dict(self) -> Dict[str, float]:
        return {"C": self.c, "Q": self.q, "P": self.p, "T": self.t,
                "SUMX": self.sumx, "SUMXX": self.sumxx}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RankAccumulator):
            return NotImplemented
        return (self.c, self.q, self.t, self.sumx, self.sumxx) == (
            other.c, other.q, other.t, other.sumx, other.sumxx
        )

    def __repr__(self) -> str:
        return (
            f"RankAccumulator(c={self.c}, q={self.q}, t={self.t}, "
            f"sumx={self.sumx!r}, sumxx={self.sumxx!r})"
        )


def compare_lists_by_item(
    base_list: Dict[str, Optional[float]],
    comp_list: Dict[str, Optional[float]],
    results: Dict[str, RankAccumulator],
    tolerance: float = DEFAULT_TOLERANCE,
) -> None:
    """
    Update *results* in place with one comparison per shared index.

    Indices missing or ``None`` in either list are skipped.
    """
    for index, observed in base_list.items():
        randomised = comp_list.get(index)
        if observed is None or randomised is None:
            continue
        acc = results.get(index)
        if acc is None:
            acc = results[index] = RankAccumulator()
        acc.add(observed, randomised, tolerance)


# ======================================================================== #
# Comparator                                                                #
# ======================================================================== #


class TreeComparator:
    """
    Match nodes of one tree against another by terminal-set similarity.

    Parameters
    ----------
    terminals_only : bool
        A perfect match needs only identical terminal sets.  Otherwise
        branch lengths must also agree within *tolerance*.
    track_node_stats : bool
        Record match-quality statistics on each base node.
    tolerance : float
        Equality tolerance for lengths and result-list values.
    index_lists : sequence of str, optional
        Result lists to rank-compare besides ``SPATIAL_RESULTS``.
    progress : callable, optional
        ``progress(text, fraction)`` sink, called once per base node.

    Examples
    --------
    >>> comparator = TreeComparator()
    >>> comparator.trees_are_same(tree, tree.copy())
    True
    >>> for k, rand_tree in enumerate(replicates):
    ...     comparator.compare(tree, rand_tree, "rand1")
    """

    def __init__(
        self,
        terminals_only: bool = False,
        track_node_stats: bool = True,
        tolerance: float = DEFAULT_TOLERANCE,
        index_lists: Sequence[str] = (),
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.terminals_only = terminals_only
        self.track_node_stats = track_node_stats
        self.tolerance = tolerance
        self.index_lists = tuple(index_lists)
        self.progress = progress
        self._memo: Optional[tuple] = None

    # ================================================================== #
    # Public methods                                                       #
    # ================================================================== #

    def compare(
        self,
        base: Tree,
        comparison: Tree,
        result_list_name: Optional[str] = None,
        track_matches: bool = True,
    ) -> int:
        """
        Match every node of *base* against *comparison*.

        Parameters
        ----------
        base : Tree
            Tree whose nodes receive the results.
        comparison : Tree
            Tree searched for matches; never modified.
        result_list_name : str
            Prefix of the result lists written to *base*.  Required unless
            *track_matches* is False.
        track_matches : bool
            Write statistics and rank accumulators.  When False only the
            perfect-match count is computed.

        Returns
        -------
        int
            Number of comparison nodes claimed by a perfect match.  A
            claimed node cannot match a later base node.

        Raises
        ------
        ValueError              if *result_list_name* is missing.
        CacheInvalidationError  if either tree changes mid-comparison.
        """
        if track_matches and result_list_name is None:
            raise ValueError("result_list_name is required when tracking matches.")

        list_names = self._tracked_lists(base) if track_matches else []
        base_version = base.version
        comp_version = comparison.version

        comp_nodes = comparison.nodes()
        comp_by_name = {node.name: node for node in comp_nodes}
        scores = self._score_memo(base, comparison)
        claimed: Dict[str, bool] = {}
        to_do = max(len(base), len(comparison)) or 1
        text = f"Comparing {base.name} with {comparison.name}"

        for i, base_node in enumerate(base.nodes(), 1):
            report_progress(self.progress, text, i / to_do)
            base.check_version(base_version, "compare")
            comparison.check_version(comp_version, "compare")

            base_name = base_node.name
            base_terms = base.terminal_elements(base_name)
            min_val = 1.0
            best: Optional[Node] = None

            # Nodes sharing a name often share terminals, so try that one first.
            same = comp_by_name.get(base_name)
            candidates: Iterable[Node] = (
                chain((same,), (n for n in comp_nodes if n is not same))
                if same is not None
                else comp_nodes
            )
            for cand in candidates:
                if cand.name in claimed:
                    continue
                key = (base_name, cand.name)
                score = scores.get(key)
                if score is None:
                    score = sorenson_dissimilarity(
                        base_terms, comparison.terminal_elements(cand.name)
                    )
                    scores[key] = score
                if score <= min_val:
                    min_val = score
                    best = cand
                    if score == 0.0:
                        if self.terminals_only or (
                            abs(cand.length - base_node.length) < self.tolerance
                        ):
                            claimed[cand.name] = True
                        break

            if not track_matches:
                continue
            if self.track_node_stats:
                self._record_match(base, comparison, base_node, best, min_val,
                                   result_list_name)
            if best is not None:
                for list_name in list_names:
                    base_list = base_node.lists.get(list_name)
                    comp_list = best.lists.get(list_name)
                    if base_list is None or comp_list is None:
                        continue
                    results = base_node.lists.setdefault(
                        f"{result_list_name}>>{list_name}", {}
                    )
                    compare_lists_by_item(base_list, comp_list, results,
                                          self.tolerance)

        base.check_version(base_version, "compare")
        comparison.check_version(comp_version, "compare")
        log_comparison_summary(base.name, comparison.name, len(base),
                               len(claimed), result_list_name)
        return len(claimed)

    def trees_are_same(self, base: Tree, comparison: Tree) -> bool:
        """True if both trees have the same node count and every node matches perfectly."""
        matches = self.compare(base, comparison, track_matches=False)
        return len(base) == len(comparison) and matches == len(base)

    def contains_tree(
        self,
        base: Tree,
        comparison: Tree,
        ignore_root: bool = False,
        correction: int = 0,
    ) -> bool:
        """
        True if every node of *comparison* has a perfect match in *base*.

        Parameters
        ----------
        ignore_root : bool
            Do not require the comparison tree's root to match, e.g. when
            its length differs.
        correction : int
            Added to the required match count.
        """
        matches = self.compare(base, comparison, track_matches=False)
        required = len(comparison) - (1 if ignore_root else 0) + correction
        return matches == required

    # ================================================================== #
    # Private methods                                                      #
    # ================================================================== #

    def _score_memo(self, base: Tree, comparison: Tree) -> Dict[tuple, float]:
        """
        Sorenson scores for this ordered tree pair, keyed by node names.

        Reused across calls until either tree changes topology; only the
        most recent pair is kept.
        """
        stamp = (base.topology_version, comparison.topology_version)
        memo = self._memo
        if (
            memo is not None
            and memo[0] is base
            and memo[1] is comparison
            and memo[2] == stamp
        ):
            return memo[3]
        scores: Dict[tuple, float] = {}
        self._memo = (base, comparison, stamp, scores)
        return scores

    def _tracked_lists(self, base: Tree):
        if self.index_lists:
            return list(dict.fromkeys((SPATIAL_RESULTS,) + self.index_lists))
        if any(SPATIAL_RESULTS in node.lists for node in base.nodes()):
            return [SPATIAL_RESULTS]
        return []

    @staticmethod
    def _record_match(base, comparison, base_node, best, min_val, pfx) -> None:
        data = base_node.lists.setdefault(f"{pfx}_DATA", [])
        data.append(min_val)

        identical = min_val == 0.0
        prev = base_node.lists.get(pfx) or {}
        stats = describe_sample(data, MATCH_SCORE_FIELDS)
        stats["COUNT_IDENTICAL"] = prev.get("COUNT_IDENTICAL", 0) + int(identical)
        stats["COMPARISONS"] = prev.get("COMPARISONS", 0) + 1
        stats["PCT_IDENTICAL"] = 100.0 * stats["COUNT_IDENTICAL"] / stats["COMPARISONS"]
        base_node.lists[pfx] = stats

        ldiffs = base_node.lists.setdefault(f"{pfx}_ID_LDIFFS", [])
        if identical and best is not None:
            ldiffs.append(
                base.length_below(base_node.name) - comparison.length_below(best.name)
            )

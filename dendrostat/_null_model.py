"""
_null_model.py
==============
Exact null-model moments for the NRI and NTI phylogenetic diversity indices.

Under uniform random selection of ``r`` of a tree's ``s`` terminals, the
mean pairwise distance (MPD) and mean nearest-taxon distance (MNTD) of the
selection have closed-form first and second moments (Tsirogiannis, Sandel
and Cheliotis, 2012).  :class:`PDNullModel` evaluates them without
simulation.

Every edge is identified with the node below it; the root contributes
nothing.  For an edge ``e`` with length ``w_e`` and ``s_e`` terminals below:

  E[MPD]     = 2 / (s (s-1)) * sum_e  w_e s_e (s - s_e)
  E[MNTD]    = 2 / r * sum_e  w_e s_e P1(s_e)

  P1(k)      = C(s-k, r-1) / C(s, r)
  P2(k + l)  = C(s-k-l, r-2) / C(s, r)

Binomial ratios are evaluated in log space from a table of ``log(n!)``,
so trees with thousands of terminals neither overflow nor lose precision.

MNTD moments assume an ultrametric tree, where the distance to the nearest
taxon is twice the height of the lowest ancestor holding another sampled
terminal.  Both NTI moments refuse other trees.

Caching
-------
Per-node scores and every computed moment are held in one cache object
stamped with the tree's :attr:`~dendrostat.Tree.version`, so any topology
or branch-length change discards them all.  A tree modified while a moment
is being computed raises :class:`CacheInvalidationError` instead of
storing a stale value.
"""

import logging
import math
from typing import Callable, Dict, List, Optional

import numpy as np

from ._backend import check_numba_available, import_cpu_kernels, resolve_backend
from ._context import get_backend_override
from ._errors import InvalidTopology, NonUltrametricTree, SampleSizeOutOfRange
from ._logging import (
    log_backend_dispatch,
    log_negative_variance,
    log_null_model_rebuild,
    log_optimization_status,
)

logger = logging.getLogger(__name__)

# Log optimization status once at import time
log_optimization_status(check_numba_available())


def log_factorials(n: int) -> np.ndarray:
    """
    ``log(k!)`` for k in 0..n.

    >>> [round(float(v), 6) for v in log_factorials(3)]
    [0.0, 0.0, 0.693147, 1.791759]
    """
    return np.concatenate(([0.0], np.cumsum(np.log(np.arange(1, n + 1)))))


class _ModelCache:
    """Per-version node scores and memoised moments."""

    __slots__ = (
        "version",
        "s",
        "order",
        "counts",
        "edge_lengths",
        "edge_tip_counts",
        "log_factorial",
        "tce_sums",
        "class_weights",
        "moments",
    )

    def __init__(self, version: int) -> None:
        self.version = version
        self.s = 0
        self.order: List[int] = []
        self.counts: Dict[int, int] = {}
        self.edge_lengths = np.empty(0, dtype=np.float64)
        self.edge_tip_counts = np.empty(0, dtype=np.int64)
        self.log_factorial = np.zeros(1, dtype=np.float64)
        self.tce_sums = None
        self.class_weights: Optional[Dict[int, float]] = None
        self.moments: Dict[tuple, Optional[float]] = {}


class PDNullModel:
    """
    Exact expectations of MPD and MNTD for one tree.

    Normally reached through :attr:`Tree.null_model`, which keeps a single
    instance per tree.

    Parameters
    ----------
    tree : Tree
    backend : str
        'best', 'python' or 'cpu-parallel', for the class-pair sum of the
        MNTD variance.  A :func:`use_backend` override takes precedence.

    Raises
    ------
    InvalidTopology  from every moment, if the tree does not have exactly
                     one root or has a negative branch length.

    Examples
    --------
    >>> model = tree.null_model
    >>> model.expected_mean_mpd()
    3.333333333333333
    >>> model.expected_sd_ntd(2)
    0.9428090415820634
    """

    def __init__(self, tree, backend: str = "best") -> None:
        self._tree = tree
        self.backend = backend
        self._state: Optional[_ModelCache] = None

    # ================================================================== #
    # Public methods                                                       #
    # ================================================================== #

    def expected_mean_mpd(self) -> Optional[float]:
        """
        Expected mean pairwise distance of a random terminal selection.

        Independent of the sample size.  None for trees with fewer than two
        terminals.
        """
        return self._memoised(("mean_mpd", None), "expected_mean_mpd",
                              self._compute_mean_mpd)

    def expected_sd_mpd(self, sample_count: int) -> Optional[float]:
        """
        Standard deviation of MPD over random selections of *sample_count*.

        Returns
        -------
        float or None
            None when *sample_count* is 1 (no pairs); 0.0 when it equals
            the terminal count (only one selection exists).

        Raises
        ------
        SampleSizeOutOfRange  if *sample_count* is below 1 or above the
                              terminal count.
        """
        r = self._check_sample_count(sample_count, 1, "expected_sd_mpd")
        return self._memoised(("sd_mpd", r), "expected_sd_mpd",
                              lambda state: self._compute_sd_mpd(state, r))

    def expected_mean_ntd(self, sample_count: int) -> float:
        """
        Expected MNTD over random selections of *sample_count* terminals.

        Raises
        ------
        NonUltrametricTree    if the tree is not ultrametric.
        SampleSizeOutOfRange  unless 2 <= *sample_count* <= terminal count.
        """
        self._check_ultrametric("expected_mean_ntd")
        r = self._check_sample_count(sample_count, 2, "expected_mean_ntd")
        return self._memoised(("mean_ntd", r), "expected_mean_ntd",
                              lambda state: self._compute_mean_ntd(state, r))

    def expected_sd_ntd(self, sample_count: int) -> float:
        """
        Standard deviation of MNTD over random selections of *sample_count*.

        0.0 when *sample_count* equals the terminal count.  Raises as
        :meth:`expected_mean_ntd`.
        """
        self._check_ultrametric("expected_sd_ntd")
        r = self._check_sample_count(sample_count, 2, "expected_sd_ntd")
        return self._memoised(("sd_ntd", r), "expected_sd_ntd",
                              lambda state: self._compute_sd_ntd(state, r))

    def bnok_ratio_callback_one(self, sample_count: int) -> Callable[[int], float]:
        """
        Return ``P1(k) = C(s-k, r-1) / C(s, r)`` as a memoising function.

        ``P1(k)`` is the probability that one given terminal is sampled and
        the other ``r - 1`` fall outside a clade of ``k`` terminals.  Zero
        when ``k > s - r + 1``.
        """
        state = self._sync()
        r = self._check_sample_count(sample_count, 1, "bnok_ratio_callback_one")
        s = state.s
        lf = state.log_factorial
        log_bnok = lf[s] - lf[r] - lf[s - r]
        limit = s - r + 1
        cache: Dict[int, float] = {}

        def ratio(se: int) -> float:
            value = cache.get(se)
            if value is None:
                if se > limit:
                    value = 0.0
                else:
                    value = math.exp(lf[s - se] - lf[r - 1] - lf[limit - se] - log_bnok)
                cache[se] = value
            return value

        return ratio

    def bnok_ratio_callback_two(
        self, sample_count: int
    ) -> Callable[[int, int], float]:
        """
        Return ``P2(k, l) = C(s-k-l, r-2) / C(s, r)`` as a memoising function.

        Depends only on ``k + l``; zero when ``k + l > s - r + 2``.
        """
        state = self._sync()
        r = self._check_sample_count(sample_count, 2, "bnok_ratio_callback_two")
        s = state.s
        lf = state.log_factorial
        log_bnok = lf[s] - lf[r] - lf[s - r]
        limit = s - r + 2
        cache: Dict[int, float] = {}

        def ratio(se: int, sl: int) -> float:
            x = se + sl
            value = cache.get(x)
            if value is None:
                if x > limit:
                    value = 0.0
                else:
                    value = math.exp(lf[s - x] - lf[r - 2] - lf[limit - x] - log_bnok)
                cache[x] = value
            return value

        return ratio

    def log_factorial_table(self) -> np.ndarray:
        """``log(k!)`` for k in 0..s, shared by every ratio.  Do not modify."""
        return self._sync().log_factorial

    # ================================================================== #
    # Cache management                                                     #
    # ================================================================== #

    def _sync(self) -> _ModelCache:
        tree = self._tree
        state = self._state
        if state is not None and state.version == tree.version:
            return state

        root = tree.root()
        if not tree.branches_are_nonnegative():
            raise InvalidTopology(
                f"Tree {tree.name or '<unnamed>'} has negative branch lengths; "
                f"null-model moments are undefined."
            )

        state = _ModelCache(tree.version)
        counts = tree._terminal_counts()
        nodes = tree._nodes
        state.s = tree.n_terminals
        state.order = tree._preorder_ids([root._id])
        state.counts = counts
        edges = state.order[1:]
        state.edge_lengths = np.array([nodes[i]._length for i in edges], dtype=np.float64)
        state.edge_tip_counts = np.array([counts[i] for i in edges], dtype=np.int64)
        state.log_factorial = log_factorials(state.s)
        self._state = state
        log_null_model_rebuild(state.s, len(tree), state.version)
        return state

    def _memoised(self, key: tuple, operation: str, compute):
        state = self._sync()
        if key in state.moments:
            return state.moments[key]
        version = self._tree.version
        value = compute(state)
        self._tree.check_version(version, operation)
        state.moments[key] = value
        return value

    def _check_sample_count(self, sample_count: int, minimum: int, operation: str) -> int:
        s = self._sync().s
        r = int(sample_count)
        if r < minimum or r > s:
            raise SampleSizeOutOfRange(
                f"{operation}: sample count {sample_count} is outside "
                f"[{minimum}, {s}] for a tree with {s} terminals."
            )
        return r

    def _check_ultrametric(self, operation: str) -> None:
        tree = self._tree
        if not tree.is_ultrametric():
            raise NonUltrametricTree(
                f"{operation} requires an ultrametric tree; "
                f"{tree.name or '<unnamed>'} is not."
            )

    # ================================================================== #
    # MPD                                                                  #
    # ================================================================== #

    def _compute_mean_mpd(self, state: _ModelCache) -> Optional[float]:
        s = state.s
        if s < 2:
            return None
        k = state.edge_tip_counts
        total = float(np.sum(state.edge_lengths * k * (s - k)))
        return total * 2.0 / (s * (s - 1))

    def _compute_sd_mpd(self, state: _ModelCache, r: int) -> Optional[float]:
        s = state.s
        if r == 1:
            return None
        if r == s:
            return 0.0

        mean = self._compute_mean_mpd(state)
        sum_tcuu, sum_tce = self._tce_sums(state)

        c1 = (
            4.0 * (r - 2) * (r - 3) / (r * (r - 1) * s * (s - 1) * (s - 2) * (s - 3))
            if r >= 4
            else 0.0
        )
        c2 = 4.0 * (r - 2) / (r * (r - 1) * s * (s - 1) * (s - 2)) if r >= 3 else 0.0
        c3 = 4.0 / (r * (r - 1) * s * (s - 1))
        total_cost = mean * s * (s - 1) / 2.0

        variance = (
            c1 * total_cost ** 2
            + (c2 - c1) * sum_tcuu
            + (c1 - 2.0 * c2 + c3) * sum_tce
            - mean ** 2
        )
        if variance < 0:
            log_negative_variance("MPD", r, variance)
            variance = 0.0
        return math.sqrt(variance)

    def _tce_sums(self, state: _ModelCache):
        """
        Crossing-path sums for the MPD variance.

        ``TCE(n)`` is the summed distance over terminal pairs separated by
        the edge above *n*.  Returns ``(sum over terminals of TCE**2,
        sum over edges of TCE * length)``.
        """
        if state.tce_sums is not None:
            return state.tce_sums

        nodes = self._tree._nodes
        counts = state.counts
        s = state.s
        order = state.order

        # Distance sums from each node down to its terminals ...
        down: Dict[int, float] = {}
        for nid in reversed(order):
            down[nid] = sum(
                down[c] + counts[c] * nodes[c]._length for c in nodes[nid]._children
            )
        # ... and out to every other terminal.
        out: Dict[int, float] = {order[0]: 0.0}
        for nid in order[1:]:
            node = nodes[nid]
            parent = node._parent
            k = counts[nid]
            w = node._length
            out[nid] = (s - k) * w + out[parent] + down[parent] - (down[nid] + k * w)

        sum_tcuu = 0.0
        sum_tce = 0.0
        for nid in order[1:]:
            node = nodes[nid]
            k = counts[nid]
            tce = (s - k) * down[nid] + k * out[nid]
            sum_tce += tce * node._length
            if not node._children:
                sum_tcuu += tce * tce

        state.tce_sums = (sum_tcuu, sum_tce)
        return state.tce_sums

    # ================================================================== #
    # MNTD                                                                 #
    # ================================================================== #

    def _compute_mean_ntd(self, state: _ModelCache, r: int) -> float:
        p1 = self.bnok_ratio_callback_one(r)
        total = 0.0
        for w, k in zip(state.edge_lengths.tolist(), state.edge_tip_counts.tolist()):
            if w:
                total += w * k * p1(k)
        return 2.0 / r * total

    def _compute_sd_ntd(self, state: _ModelCache, r: int) -> float:
        """
        MNTD = (2/r) * sum_e w_e X_e, with X_e = s_e when exactly one
        sampled terminal lies below e and 0 otherwise.  Its second moment
        splits into same-edge, nested-edge and disjoint-edge pairs; the
        disjoint pairs are the all-pairs class sum less the diagonal and
        the nested pairs.
        """
        if r == state.s:
            return 0.0

        mean = self._memoised(("mean_ntd", r), "expected_sd_ntd",
                              lambda st: self._compute_mean_ntd(st, r))
        p1 = self.bnok_ratio_callback_one(r)
        p2 = self.bnok_ratio_callback_two(r)
        nodes = self._tree._nodes
        counts = state.counts
        root_id = state.order[0]

        sum_self = 0.0
        sum_nested = 0.0
        sum_diagonal = 0.0
        sum_nested_p2 = 0.0

        # below[n]: tip count k -> summed length * k over strict descendants.
        below: Dict[int, Dict[int, float]] = {}
        for nid in reversed(state.order):
            node = nodes[nid]
            merged: Dict[int, float] = {}
            for child in node._children:
                part = below.pop(child)
                kc = counts[child]
                part[kc] = part.get(kc, 0.0) + nodes[child]._length * kc
                if len(part) > len(merged):
                    merged, part = part, merged
                for k, value in part.items():
                    merged[k] = merged.get(k, 0.0) + value
            if nid == root_id:
                break
            below[nid] = merged

            w = node._length
            if not w:
                continue
            se = counts[nid]
            pe = p1(se)
            sum_self += w * w * se * pe
            sum_diagonal += w * w * se * se * p2(se, se)
            if merged:
                sum_nested += w * pe * sum(merged.values())
                sum_nested_p2 += w * se * sum(
                    p2(se, k) * value for k, value in merged.items()
                )

        all_pairs = self._class_pair_sum(state, r, p2)
        second = (
            sum_self + 2.0 * sum_nested + all_pairs - sum_diagonal - 2.0 * sum_nested_p2
        )
        variance = 4.0 * second / (r * r) - mean * mean
        if variance < 0:
            log_negative_variance("MNTD", r, variance)
            variance = 0.0
        return math.sqrt(variance)

    def _class_weights(self, state: _ModelCache) -> Dict[int, float]:
        if state.class_weights is None:
            weights: Dict[int, float] = {}
            for w, k in zip(state.edge_lengths.tolist(), state.edge_tip_counts.tolist()):
                weights[k] = weights.get(k, 0.0) + w * k
            state.class_weights = weights
        return state.class_weights

    def _class_pair_sum(self, state: _ModelCache, r: int, p2) -> float:
        """Sum of ``L(a) L(b) P2(a + b)`` over ordered tip-count classes."""
        weights = self._class_weights(state)
        keys = sorted(weights)

        override = get_backend_override()
        resolved = resolve_backend(override if override is not None else self.backend)
        log_backend_dispatch("expected_sd_ntd", resolved)

        if resolved == "cpu-parallel":
            _, _, kernel = import_cpu_kernels()
            return float(
                kernel(
                    np.array(keys, dtype=np.int64),
                    np.array([weights[k] for k in keys], dtype=np.float64),
                    state.log_factorial,
                    state.s,
                    r,
                )
            )

        total = 0.0
        for a in keys:
            row = 0.0
            for b in keys:
                row += weights[b] * p2(a, b)
            total += weights[a] * row
        return total

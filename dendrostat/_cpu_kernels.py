"""
_cpu_kernels.py
===============
CPU-accelerated kernels for tree distance and null-model sums using Numba.

This module contains ONLY numba-accelerated code and should not import other
project modules to avoid import-time complications.  Importing it requires
numba; callers go through :func:`dendrostat._backend.import_cpu_kernels`,
which reports failure instead of raising, and fall back to the pure-Python
code paths in ``_tree.py`` and ``_null_model.py``.

Exported Functions
------------------
_pairwise_tip_distance_njit : njit function
    Parallel all-pairs patristic distance between tips, resolving each
    pair's LCA by a root-aligned scan of their ancestor rows.

_tip_class_pair_sum_njit : njit function
    Parallel double sum over tip-count classes weighted by the two-argument
    binomial ratio, the dominant cost of the NTI variance.

Notes
-----
- cache=True persists compiled binary to disk for faster subsequent runs
- Kernels accept only numpy arrays and plain scalars; node-name resolution
  is done once in the host wrapper before the kernel call
"""

import numpy as np
from numba import njit, prange


# ======================================================================== #
# CPU Kernels                                                               #
# ======================================================================== #


@njit(cache=True, parallel=True)
def _pairwise_tip_distance_njit(ancestors, tip_depth, root_distance):
    """
    All-pairs patristic distance between tips.

    Parameters
    ----------
    ancestors     : int64[n_tips, max_depth + 1]
        Root-aligned ancestor rows: ``ancestors[i, d]`` is the node ID of
        tip *i*'s ancestor at depth *d* (0 = root).  Entries beyond the
        tip's own depth are -1.  ``ancestors[i, tip_depth[i]]`` is the tip.
    tip_depth     : int64[n_tips]
        Edge depth of each tip.
    root_distance : float64[n_nodes]
        Path length from the root, indexed by node ID.

    Returns
    -------
    float64[n_tips, n_tips]
        Symmetric distance matrix with a zero diagonal.
    """
    n = ancestors.shape[0]
    out = np.zeros((n, n), dtype=np.float64)
    for i in prange(n):
        tip_i = ancestors[i, tip_depth[i]]
        for j in range(i + 1, n):
            tip_j = ancestors[j, tip_depth[j]]
            limit = min(tip_depth[i], tip_depth[j])
            d = 0
            while d < limit and ancestors[i, d + 1] == ancestors[j, d + 1]:
                d += 1
            lca = ancestors[i, d]
            dist = (
                root_distance[tip_i]
                + root_distance[tip_j]
                - 2.0 * root_distance[lca]
            )
            out[i, j] = dist
            out[j, i] = dist
    return out


@njit(cache=True, parallel=True)
def _tip_class_pair_sum_njit(tip_counts, class_weights, log_factorial, s, r):
    """
    Sum ``W[a] * W[b] * P(k_a + k_b)`` over all ordered class pairs.

    ``P(x) = C(s - x, r - 2) / C(s, r)``, evaluated in log space and zero
    when ``x > s - r + 2``.

    Parameters
    ----------
    tip_counts    : int64[n_classes]    Distinct tip counts k.
    class_weights : float64[n_classes]  Summed ``length * k`` per class.
    log_factorial : float64[s + 1]      ``log(n!)`` for n in 0..s.
    s, r          : int                 Tip count and sample size (r >= 2).

    Returns
    -------
    float
    """
    n = tip_counts.shape[0]
    log_bnok = log_factorial[s] - log_factorial[r] - log_factorial[s - r]
    limit = s - r + 2
    total = 0.0
    for a in prange(n):
        row = 0.0
        for b in range(n):
            x = tip_counts[a] + tip_counts[b]
            if x > limit:
                continue
            log_p = (
                log_factorial[s - x]
                - log_factorial[r - 2]
                - log_factorial[s - x - r + 2]
                - log_bnok
            )
            row += class_weights[b] * np.exp(log_p)
        total += class_weights[a] * row
    return total

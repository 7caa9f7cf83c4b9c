"""
_utils.py
=========
General-purpose utility functions for dendrostat.

These are standalone functions that don't depend on the main classes
and could be useful in multiple contexts.
"""

import logging
from typing import AbstractSet, Callable, Optional, TypeVar


T = TypeVar('T')

#: Signature of an optional progress sink: ``sink(text, fraction)``.
ProgressCallback = Callable[[str, float], None]

logger = logging.getLogger(__name__)


def sorenson_dissimilarity(set_a: AbstractSet[T], set_b: AbstractSet[T]) -> float:
    """
    Compute the Sorenson dissimilarity between two sets.

    The score is ``1 - 2|A ∩ B| / (|A| + |B|)``.  The shared count is
    taken by membership tests over the smaller set; neither the
    intersection nor the union is materialised.

    Parameters
    ----------
    set_a, set_b : AbstractSet[T]
        Two sets to compare. Can contain any hashable type.

    Returns
    -------
    float
        Dissimilarity in [0, 1]; 0 means identical, 1 means disjoint.
        Returns 1.0 if both sets are empty.

    Examples
    --------
    >>> sorenson_dissimilarity({1, 2, 3}, {1, 2, 3})
    0.0

    >>> sorenson_dissimilarity({1, 2}, {3, 4})
    1.0

    >>> sorenson_dissimilarity({'A', 'B'}, {'B', 'C'})
    0.5

    >>> sorenson_dissimilarity(set(), set())
    1.0

    Notes
    -----
    The measure is symmetric in its arguments.  The empty/empty case
    follows the convention that empty sets are maximally dissimilar.
    """
    total = len(set_a) + len(set_b)
    if total == 0:
        return 1.0
    small, large = (set_a, set_b) if len(set_a) <= len(set_b) else (set_b, set_a)
    shared = sum(1 for item in small if item in large)
    return 1.0 - 2.0 * shared / total


def report_progress(
    progress: Optional[ProgressCallback], text: str, fraction: float
) -> None:
    """
    Forward *text* and *fraction* to an optional progress sink.

    A ``None`` sink is a no-op.  Every report is also logged at DEBUG so
    long passes remain traceable without a sink.

    Parameters
    ----------
    progress : callable or None
        ``progress(text, fraction)``; fraction is clamped to [0, 1].
    text : str
        Short human-readable status.
    fraction : float
        Completed fraction of the pass.
    """
    fraction = min(max(fraction, 0.0), 1.0)
    logger.debug("%s (%.1f%%)", text, 100.0 * fraction)
    if progress is not None:
        progress(text, fraction)

"""
_stats.py
=========
Descriptive statistics over small numeric samples, via numpy.

Percentiles use the nearest-rank definition (numpy's ``inverted_cdf``
method): the result is always a member of the sample, which suits the
discrete similarity scores and rank counts that accumulate on tree nodes.
"""

from typing import Dict, Mapping, Optional, Sequence, Union

import numpy as np


# Field descriptor: a named statistic or a percentile in [0, 100].
FieldSpec = Union[str, float]

#: Fields recorded for a node's running match-score sample.
MATCH_SCORE_FIELDS: Dict[str, FieldSpec] = {
    "MEAN": "mean",
    "SD": "sd",
    "MEDIAN": "median",
    "Q25": 25,
    "Q05": 5,
    "Q01": 1,
}


def sample_sd(data: np.ndarray) -> float:
    """Sample standard deviation (n - 1 denominator); 0.0 below two values."""
    if data.size < 2:
        return 0.0
    return float(np.std(data, ddof=1))


def percentile(data: np.ndarray, pct: float) -> float:
    """Nearest-rank percentile of a non-empty sample."""
    return float(np.percentile(data, pct, method="inverted_cdf"))


def describe_sample(
    values: Sequence[float], fields: Mapping[str, FieldSpec]
) -> Dict[str, Optional[float]]:
    """
    Compute the requested statistics of *values*.

    Parameters
    ----------
    values : sequence of float
    fields : mapping
        Output key -> ``'mean'``, ``'sd'``, ``'median'``, ``'min'``,
        ``'max'`` or a percentile in [0, 100].

    Returns
    -------
    dict
        One entry per field; every entry is None for an empty sample.

    Examples
    --------
    >>> describe_sample([1.0, 2.0, 3.0, 4.0], {"MEAN": "mean", "P50": 50})
    {'MEAN': 2.5, 'P50': 2.0}
    """
    if len(values) == 0:
        return {key: None for key in fields}

    data = np.asarray(values, dtype=np.float64)
    named = {
        "mean": lambda: float(np.mean(data)),
        "sd": lambda: sample_sd(data),
        "median": lambda: float(np.median(data)),
        "min": lambda: float(np.min(data)),
        "max": lambda: float(np.max(data)),
    }
    out: Dict[str, Optional[float]] = {}
    for key, spec in fields.items():
        if isinstance(spec, str):
            out[key] = named[spec]()
        else:
            out[key] = percentile(data, spec)
    return out

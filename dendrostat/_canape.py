"""
_canape.py
==========
Categorical Analysis of Neo- And Paleo-Endemism (CANAPE).

Three significance ranks per node decide its category:

  PE_obs   rank of observed phylogenetic endemism (index ``PE_WE``)
  PE_alt   rank of PE on the comparison tree (index ``PHYLO_RPE_NULL2``)
  RPE      rank of relative phylogenetic endemism (index ``PHYLO_RPE2``)

====  ==========================================================  ==========
code  condition (first that holds)                                category
====  ==========================================================  ==========
0     PE_obs <= 0.95 and PE_alt <= 0.95                           not sig.
1     RPE < 0.025                                                 neo
2     RPE > 0.975                                                 palaeo
4     PE_obs >= 0.99 and PE_alt >= 0.99                           super
3     otherwise                                                   mixed
====  ==========================================================  ==========

The super-endemism test departs on purpose from the strict ``> 0.99`` of
the usual CANAPE table: it is inclusive, so a pair of ranks at exactly
0.99 (99 wins in 100 randomisations) counts as super rather than mixed.
"""

from typing import Dict, Optional

#: Index names read from the observed and p-rank result lists.
PE_INDEX = "PE_WE"
PE_ALT_INDEX = "PHYLO_RPE_NULL2"
RPE_INDEX = "PHYLO_RPE2"

NOT_SIGNIFICANT, NEO, PALAEO, MIXED, SUPER = 0, 1, 2, 3, 4

#: Rank assumed when an input rank is missing.
NEUTRAL_RANK = 0.5

PE_THRESHOLD = 0.95
RPE_LOW = 0.025
RPE_HIGH = 0.975
SUPER_THRESHOLD = 0.99

_FLAGS = (("NEO", NEO), ("PALAEO", PALAEO), ("MIXED", MIXED), ("SUPER", SUPER))


def classify_canape(
    pe_obs: Optional[float],
    pe_alt: Optional[float] = None,
    rpe: Optional[float] = None,
) -> Optional[int]:
    """
    Return the CANAPE code for one node's significance ranks.

    A missing *pe_alt* or *rpe* counts as the neutral rank 0.5.  A
    missing *pe_obs* means the node has no observed endemism, and the code
    is None.

    Examples
    --------
    >>> classify_canape(0.90, 0.90, 0.5)
    0
    >>> classify_canape(0.96, 0.80, 0.01)
    1
    >>> classify_canape(0.99, 0.995, 0.5)
    4
    >>> classify_canape(None, 0.99, 0.5) is None
    True
    """
    if pe_obs is None:
        return None
    pe_alt = NEUTRAL_RANK if pe_alt is None else pe_alt
    rpe = NEUTRAL_RANK if rpe is None else rpe

    if pe_obs <= PE_THRESHOLD and pe_alt <= PE_THRESHOLD:
        return NOT_SIGNIFICANT
    if rpe < RPE_LOW:
        return NEO
    if rpe > RPE_HIGH:
        return PALAEO
    if pe_obs >= SUPER_THRESHOLD and pe_alt >= SUPER_THRESHOLD:
        return SUPER
    return MIXED


def canape_flags(code: Optional[int]) -> Dict[str, Optional[int]]:
    """
    0/1 indicator per category; all None when *code* is None.

    >>> canape_flags(2)
    {'NEO': 0, 'PALAEO': 1, 'MIXED': 0, 'SUPER': 0}
    """
    if code is None:
        return {name: None for name, _ in _FLAGS}
    return {name: int(code == value) for name, value in _FLAGS}


def assign_canape_codes(
    p_ranks: Dict[str, Optional[float]],
    observed: Optional[Dict[str, Optional[float]]],
    results: Optional[Dict[str, Optional[int]]] = None,
) -> Dict[str, Optional[int]]:
    """
    Write ``CANAPE_CODE`` and the four flags into *results*.

    Parameters
    ----------
    p_ranks : dict
        Significance ranks by index name (``pfx>>p_rank>>SPATIAL_RESULTS``).
    observed : dict or None
        Observed values by index name (``SPATIAL_RESULTS``).  The code is
        None unless an observed ``PE_WE`` is present; a missing PE rank then
        counts as neutral.
    results : dict, optional
        Updated in place and returned; previous flags are overwritten.
    """
    if results is None:
        results = {}
    code = None
    if observed is not None and observed.get(PE_INDEX) is not None:
        pe_obs = p_ranks.get(PE_INDEX)
        code = classify_canape(
            NEUTRAL_RANK if pe_obs is None else pe_obs,
            p_ranks.get(PE_ALT_INDEX),
            p_ranks.get(RPE_INDEX),
        )
    results["CANAPE_CODE"] = code
    results.update(canape_flags(code))
    return results

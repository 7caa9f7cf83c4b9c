"""
_randomisation.py
=================
Derived randomisation results and the merge of independently run batches.

A randomisation run named ``pfx`` leaves :class:`RankAccumulator` dicts in
``pfx>>LIST`` result lists (see ``_compare.py``).  From those this module
derives significance ranks (``pfx>>p_rank>>LIST``), z-scores
(``pfx>>z_scores>>LIST``) and CANAPE codes (``pfx>>CANAPE>>``).

Batches
-------
Randomisations may be split across workers, each holding a private copy
of the master tree.  :func:`reintegrate` folds one worker's copy back into
the master: accumulators are summed, sample lists concatenated, and every
derived list recomputed from the new totals.  Merging is commutative and
associative, but not idempotent: merging the same batch twice counts its
comparisons twice, so each batch must be merged exactly once.
"""

import logging
import re
from typing import Dict, Iterable, List, Sequence

from ._canape import PE_INDEX, RPE_INDEX, assign_canape_codes
from ._compare import SPATIAL_RESULTS, RankAccumulator
from ._errors import InvalidTopology
from ._logging import log_canape_summary, log_reintegration
from ._stats import MATCH_SCORE_FIELDS, describe_sample
from ._tree import Tree
from ._utils import ProgressCallback, report_progress

logger = logging.getLogger(__name__)


def randomisation_list_names(tree: Tree, prefixes: Iterable[str]) -> List[str]:
    """
    Names of the accumulator lists ``pfx>>LIST`` for any of *prefixes*.

    Derived lists such as ``pfx>>p_rank>>LIST`` are excluded.  Names come
    back sorted, as from :meth:`Tree.list_names`.
    """
    prefixes = list(dict.fromkeys(prefixes))
    if not prefixes:
        return []
    pattern = re.compile(
        r"^(?:" + "|".join(re.escape(p) for p in prefixes) + r")>>(?!\w+>>)"
    )
    return [name for name in tree.list_names() if pattern.match(name)]


# ======================================================================== #
# Derived lists                                                             #
# ======================================================================== #


def convert_comparisons_to_significances(
    tree: Tree, result_list_name: str, progress: ProgressCallback = None
) -> None:
    """
    Write ``pfx>>p_rank>>LIST`` for every accumulator list of *result_list_name*.

    Each index maps to :meth:`RankAccumulator.sig_rank`.
    """
    report_progress(progress, "Calculating significances", 0.0)
    for list_name in randomisation_list_names(tree, [result_list_name]):
        target = list_name.replace(">>", ">>p_rank>>", 1)
        for node in tree.nodes():
            accumulators = node.lists.get(list_name)
            if accumulators is None:
                continue
            results = node.lists.setdefault(target, {})
            for index, acc in accumulators.items():
                results[index] = acc.sig_rank()
    report_progress(progress, "Calculating significances", 1.0)


def convert_comparisons_to_zscores(
    tree: Tree, result_list_name: str, progress: ProgressCallback = None
) -> None:
    """
    Write ``pfx>>z_scores>>LIST`` for every accumulator list of *result_list_name*.

    The observed value for index ``k`` is read from the node's ``LIST``.
    Indices without comparisons are left out.
    """
    report_progress(progress, "Calculating z-scores", 0.0)
    for list_name in randomisation_list_names(tree, [result_list_name]):
        base_list_name = list_name.split(">>", 1)[1]
        target = list_name.replace(">>", ">>z_scores>>", 1)
        for node in tree.nodes():
            accumulators = node.lists.get(list_name)
            if accumulators is None:
                continue
            observed = node.lists.get(base_list_name) or {}
            results = node.lists.setdefault(target, {})
            for index, acc in accumulators.items():
                if not acc.q:
                    continue
                results[index] = acc.z_score(observed.get(index))
    report_progress(progress, "Calculating z-scores", 1.0)


def canape_protocol_is_valid(tree: Tree) -> bool:
    """
    True if some node's observed results carry both PE and RPE indices.

    CANAPE codes are meaningless without both calculations.
    """
    for node in tree.nodes():
        observed = node.lists.get(SPATIAL_RESULTS)
        if observed and PE_INDEX in observed and RPE_INDEX in observed:
            return True
    return False


def calculate_canape(tree: Tree, result_list_name: str) -> bool:
    """
    Write ``pfx>>CANAPE>>`` on every node with significance ranks.

    Returns
    -------
    bool   False, with nothing written, if the tree's observed results do
           not support CANAPE (see :func:`canape_protocol_is_valid`).
    """
    if not canape_protocol_is_valid(tree):
        return False

    p_rank_name = f"{result_list_name}>>p_rank>>{SPATIAL_RESULTS}"
    target = f"{result_list_name}>>CANAPE>>"
    counts: Dict[object, int] = {}
    for node in tree.nodes():
        p_ranks = node.lists.get(p_rank_name)
        if p_ranks is None:
            continue
        results = node.lists.setdefault(target, {})
        assign_canape_codes(p_ranks, node.lists.get(SPATIAL_RESULTS), results)
        code = results["CANAPE_CODE"]
        counts[code] = counts.get(code, 0) + 1
    log_canape_summary(result_list_name, counts)
    return True


def derive_randomisation_results(tree: Tree, result_list_name: str) -> None:
    """Recompute significance ranks, z-scores and CANAPE codes for one run."""
    convert_comparisons_to_significances(tree, result_list_name)
    convert_comparisons_to_zscores(tree, result_list_name)
    calculate_canape(tree, result_list_name)


# ======================================================================== #
# Reintegration                                                             #
# ======================================================================== #


def reintegrate(
    master: Tree,
    batch: Tree,
    randomisation_names: Sequence[str],
    progress: ProgressCallback = None,
) -> None:
    """
    Merge one batch's randomisation results into *master*.

    Parameters
    ----------
    master : Tree
        Receives the merged results.
    batch : Tree
        A copy of the master on which further randomisations were run.
        Never modified.
    randomisation_names : sequence of str
        Result prefixes to merge.

    Raises
    ------
    InvalidTopology   if the two trees do not have the same node names.

    Notes
    -----
    Rank accumulators are summed elementwise, so P is re-derived from the
    merged C and Q rather than added.  Match-score samples are
    concatenated and their statistics recomputed; identical-match counts
    and comparison totals are summed.
    """
    names = list(dict.fromkeys(randomisation_names))
    if set(master.node_names()) != set(batch.node_names()):
        raise InvalidTopology(
            f"Cannot reintegrate {batch.name or '<unnamed>'} into "
            f"{master.name or '<unnamed>'}: node names differ."
        )

    rand_lists = sorted(
        set(randomisation_list_names(master, names))
        | set(randomisation_list_names(batch, names))
    )
    to_nodes = master.nodes()
    n_steps = len(rand_lists) + 1
    for step, list_name in enumerate(rand_lists):
        report_progress(progress, f"Merging {list_name}", step / n_steps)
        for to_node in to_nodes:
            from_list = batch.get_node(to_node.name).lists.get(list_name)
            if not from_list:
                continue
            to_list = to_node.lists.setdefault(list_name, {})
            for index, acc in from_list.items():
                target = to_list.get(index)
                if target is None:
                    target = to_list[index] = RankAccumulator()
                target.merge(acc)

    for name in names:
        derive_randomisation_results(master, name)

    for to_node in to_nodes:
        from_node = batch.get_node(to_node.name)
        for name in names:
            _merge_match_samples(to_node, from_node, name)

    report_progress(progress, "Reintegration complete", 1.0)
    log_reintegration(master.name, batch.name, len(rand_lists), len(to_nodes))


def reintegrate_batches(
    master: Tree, batches: Iterable[Tree], randomisation_names: Sequence[str]
) -> int:
    """
    Merge several batches in turn; returns how many were merged.

    Safe to call with batches produced concurrently, as long as each
    worker held its own tree copy and every batch appears once.
    """
    count = 0
    for batch in batches:
        reintegrate(master, batch, randomisation_names)
        count += 1
    return count


def _merge_match_samples(to_node, from_node, name: str) -> None:
    data = from_node.lists.get(f"{name}_DATA")
    if not data:
        return
    to_data = to_node.lists.setdefault(f"{name}_DATA", [])
    to_data.extend(data)

    to_prev = to_node.lists.get(name) or {}
    from_prev = from_node.lists.get(name) or {}
    stats = describe_sample(to_data, MATCH_SCORE_FIELDS)
    stats["COUNT_IDENTICAL"] = (
        to_prev.get("COUNT_IDENTICAL", 0) + from_prev.get("COUNT_IDENTICAL", 0)
    )
    stats["COMPARISONS"] = to_prev.get("COMPARISONS", 0) + from_prev.get("COMPARISONS", 0)
    stats["PCT_IDENTICAL"] = (
        100.0 * stats["COUNT_IDENTICAL"] / stats["COMPARISONS"]
        if stats["COMPARISONS"]
        else None
    )
    to_node.lists[name] = stats

    ldiffs = from_node.lists.get(f"{name}_ID_LDIFFS")
    if ldiffs:
        to_node.lists.setdefault(f"{name}_ID_LDIFFS", []).extend(ldiffs)

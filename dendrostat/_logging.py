"""
_logging.py
===========
Logging functions for dendrostat.

All functions in this module have NO side effects except logging. They take
computed data as parameters and format/emit log messages.

This separation keeps computation separate from presentation and lets
tests silence or capture diagnostics without touching the algorithms.
"""

import logging
from typing import Dict, Optional


logger = logging.getLogger(__name__)


# ============================================================================ #
# System and Backend Logging (called at module import time)
# ============================================================================ #


def log_optimization_status(numba_available: bool) -> None:
    """
    Log optimization library availability at INFO level.

    Called once at import time of the null-model module.

    Parameters
    ----------
    numba_available : bool
        Whether numba was successfully imported.
    """
    import os
    import platform

    cpu_count = os.cpu_count() or 1
    logger.info(
        f"System: {platform.machine()} ({platform.system()}), "
        f"{cpu_count} CPU cores, Python {platform.python_version()}"
    )

    if numba_available:
        import numba

        logger.info(f"Numba {numba.__version__} loaded successfully")
        try:
            logger.info(f"Numba threading: {numba.get_num_threads()} threads active")
        except (AttributeError, RuntimeError):
            pass  # threading info unavailable in some configs
    else:
        logger.info("Numba not installed; distance and NTI kernels run as pure Python")
        logger.info("Install numba for faster to_matrix and NTI moments: pip install numba")


def log_backend_dispatch(operation: str, backend: str) -> None:
    """Log which backend an operation resolved to."""
    logger.debug(f"{operation}: using '{backend}' backend")


# ============================================================================ #
# Tree Editing
# ============================================================================ #


def log_tree_summary(
    name: str, n_nodes: int, n_terminals: int, n_roots: int
) -> None:
    """
    Log a one-line description of a tree at INFO level.

    Warns when the tree currently has more than one root, since most
    algorithms require a single root.
    """
    label = name or "<unnamed>"
    logger.info(
        f"Tree {label}: {n_nodes} nodes, {n_terminals} terminals, "
        f"{n_roots} root(s)"
    )
    if n_roots > 1:
        logger.warning(
            f"Tree {label} has {n_roots} roots; call root_unrooted_tree() "
            f"before LCA, comparison or null-model operations"
        )


def log_deletion(name: str, n_deleted: int, n_remaining: int) -> None:
    """Log removal of a node and its descendants at DEBUG level."""
    logger.debug(
        f"Deleted node '{name}' and {n_deleted - 1} descendant(s); "
        f"{n_remaining} node(s) remain"
    )


def log_trim_summary(n_deleted: int, n_knuckles: int, n_remaining: int) -> None:
    """Log the outcome of a trim pass at INFO level."""
    logger.info(
        f"Trim removed {n_deleted} node(s) and merged {n_knuckles} "
        f"single-child node(s); {n_remaining} node(s) remain"
    )


def log_new_root(root_name: str, n_grafted: int) -> None:
    """Log the synthetic root created to join a multi-rooted tree."""
    logger.info(
        f"Grafted {n_grafted} root nodes under new zero-length root '{root_name}'"
    )


# ============================================================================ #
# Comparison and Randomisation
# ============================================================================ #


def log_comparison_summary(
    base_name: str,
    comp_name: str,
    n_base_nodes: int,
    n_perfect: int,
    result_prefix: Optional[str],
) -> None:
    """
    Log the outcome of a tree comparison at DEBUG level.

    Parameters
    ----------
    base_name, comp_name : str
        Names of the two trees.
    n_base_nodes : int
        Node count of the base tree.
    n_perfect : int
        Number of base nodes with a perfect match in the comparison tree.
    result_prefix : str or None
        Result-list prefix the comparison was recorded under.
    """
    pct = 100.0 * n_perfect / n_base_nodes if n_base_nodes else 0.0
    target = f" into '{result_prefix}'" if result_prefix else ""
    logger.debug(
        f"Compared {base_name or '<unnamed>'} against "
        f"{comp_name or '<unnamed>'}{target}: {n_perfect}/{n_base_nodes} "
        f"perfect matches ({pct:.1f}%)"
    )


def log_reintegration(
    master_name: str, batch_name: str, n_lists: int, n_nodes: int
) -> None:
    """Log a batch merge at INFO level."""
    logger.info(
        f"Reintegrated {batch_name or '<unnamed>'} into "
        f"{master_name or '<unnamed>'}: {n_lists} result list(s) "
        f"across {n_nodes} node(s)"
    )


def log_canape_summary(prefix: str, code_counts: Dict[Optional[int], int]) -> None:
    """Log how many nodes fell into each CANAPE category at DEBUG level."""
    parts = ", ".join(
        f"{'undef' if code is None else code}={count}"
        for code, count in sorted(
            code_counts.items(), key=lambda kv: (kv[0] is None, kv[0] or 0)
        )
    )
    logger.debug(f"CANAPE codes for {prefix}: {parts or 'none'}")


# ============================================================================ #
# Null Model
# ============================================================================ #


def log_null_model_rebuild(n_terminals: int, n_nodes: int, version: int) -> None:
    """Log a rebuild of the per-version null-model cache at DEBUG level."""
    logger.debug(
        f"Rebuilding null-model cache for tree version {version}: "
        f"{n_terminals} terminals, {n_nodes} nodes"
    )


def log_negative_variance(statistic: str, sample_count: int, variance: float) -> None:
    """Warn when a closed-form variance came out negative and was clamped."""
    if variance < -1e-9:
        logger.warning(
            f"{statistic} variance for r={sample_count} was {variance:.3e}; "
            f"clamped to zero"
        )

"""
dendrostat
==========

Analytical engine for phylogenetic trees used in biodiversity statistics.

*Dendrostat* holds a mutable, version-stamped tree and the algorithms that
run over it: last-shared-ancestor queries, cross-tree node matching for
randomisation tests, the merge of randomisation batches, CANAPE endemism
classification, and exact null-model moments for the NRI and NTI indices.

Main Classes
------------
Tree : Arena-backed tree with NEWICK parsing, editing and cached queries
Node : One vertex of a Tree, carrying named result lists
TreeComparator : Match nodes across trees and accumulate rank comparisons
PDNullModel : Exact MPD/MNTD expectations under random terminal sampling
RankAccumulator : Running C/Q/T/SUMX/SUMXX counters for one index

Randomisation
-------------
reintegrate : Merge one randomisation batch into a master tree
reintegrate_batches : Merge several batches in turn
convert_comparisons_to_significances : Derive p-rank lists
convert_comparisons_to_zscores : Derive z-score lists
calculate_canape : Derive CANAPE codes from p-ranks

Context Managers
----------------
quiet : Suppress logging during operations
suppress_logger : Suppress specific logger
suppress_warnings : Suppress specific warnings
use_backend : Force specific computational backend

Errors
------
TreeError and its subclasses NodeAlreadyExists, NodeNotFound,
InvalidTopology, NonUltrametricTree, SampleSizeOutOfRange and
CacheInvalidationError.

Examples
--------
Basic usage:

>>> from dendrostat import Tree
>>> tree = Tree('((A:1,B:1)AB:1,(C:1,D:1)CD:1)root;')
>>> tree.last_shared_ancestor(['A', 'B']).name
'AB'
>>> tree.null_model.expected_mean_mpd()
3.3333333333333335

Randomisation against a shuffled replicate:

>>> from dendrostat import TreeComparator, convert_comparisons_to_significances
>>> comparator = TreeComparator()
>>> replicate = tree.copy()
>>> replicate.shuffle_terminal_names(rng=42)
>>> comparator.compare(tree, replicate, 'rand1')
>>> convert_comparisons_to_significances(tree, 'rand1')
"""

__version__ = "0.1.0"
__license__ = "MIT"

# Main classes
from ._tree import Node, Tree, ULTRAMETRIC_TOLERANCE
from ._ancestry import AncestryIndex, LCAFinder
from ._compare import SPATIAL_RESULTS, RankAccumulator, TreeComparator
from ._null_model import PDNullModel

# Randomisation and CANAPE passes
from ._randomisation import (
    calculate_canape,
    convert_comparisons_to_significances,
    convert_comparisons_to_zscores,
    reintegrate,
    reintegrate_batches,
)
from ._canape import canape_flags, classify_canape

# Errors
from ._errors import (
    CacheInvalidationError,
    InvalidTopology,
    NodeAlreadyExists,
    NodeNotFound,
    NonUltrametricTree,
    SampleSizeOutOfRange,
    TreeError,
)

# Context managers (user-facing utilities)
from ._context import (
    suppress_logger,
    quiet,
    suppress_warnings,
    use_backend,
)

# Utilities
from ._utils import sorenson_dissimilarity

# Backend information (useful for checking capabilities)
from ._backend import (
    get_available_backends,
    get_backend_info,
    check_numba_available,
)

# Public API
__all__ = [
    # Main classes
    "Tree",
    "Node",
    "AncestryIndex",
    "LCAFinder",
    "TreeComparator",
    "RankAccumulator",
    "PDNullModel",
    "SPATIAL_RESULTS",
    "ULTRAMETRIC_TOLERANCE",
    # Randomisation
    "reintegrate",
    "reintegrate_batches",
    "convert_comparisons_to_significances",
    "convert_comparisons_to_zscores",
    "calculate_canape",
    "classify_canape",
    "canape_flags",
    # Errors
    "TreeError",
    "NodeAlreadyExists",
    "NodeNotFound",
    "InvalidTopology",
    "NonUltrametricTree",
    "SampleSizeOutOfRange",
    "CacheInvalidationError",
    # Context managers
    "suppress_logger",
    "quiet",
    "suppress_warnings",
    "use_backend",
    # Utilities
    "sorenson_dissimilarity",
    # Backend information
    "get_available_backends",
    "get_backend_info",
    "check_numba_available",
    # Version info
    "__version__",
]

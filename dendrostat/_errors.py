"""
_errors.py
==========
Exception types raised by dendrostat.

Every exception derives from :class:`TreeError` and from the builtin that
best describes it, so callers may catch either ``KeyError``/``ValueError``
(as they would for a dict or a numpy routine) or the specific class.

Structural errors (registry collisions, missing nodes, stale caches) are
always surfaced to the caller and never recovered internally.
"""


class TreeError(Exception):
    """Base class for all dendrostat errors."""


class NodeAlreadyExists(TreeError, KeyError):
    """A node with the requested name is already registered in the tree."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Node '{name}' already exists in tree.")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


class NodeNotFound(TreeError, KeyError):
    """No node with the requested name is registered in the tree."""

    def __init__(self, name: str) -> None:
        super().__init__(f"No node with name '{name}' found in tree.")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


class InvalidTopology(TreeError, ValueError):
    """
    The tree's shape does not satisfy an operation's precondition.

    Raised for multiple (or zero) roots where a single root is required,
    negative branch lengths where they are disallowed, parent links that
    would create a cycle, and trees that do not align node-for-node when
    they must.
    """


class NonUltrametricTree(TreeError, ValueError):
    """Tip-to-root path lengths differ by more than the ultrametric tolerance."""


class SampleSizeOutOfRange(TreeError, ValueError):
    """A sample size is below the statistic's minimum or above the tip count."""


class CacheInvalidationError(TreeError, RuntimeError):
    """
    A cached value was read after the tree it describes had been mutated.

    This is always fatal: continuing would silently mix statistics from two
    different tree versions.
    """

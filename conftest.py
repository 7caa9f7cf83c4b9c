"""
conftest.py
===========
Session-level pytest configuration for the test suite.

Custom marks
------------
large_scale
    Applied to tests that build trees large enough to take several seconds
    on a single CPU core (exact null-model moments for thousands of
    terminals, all-pairs distance matrices).  Opt out with
    ``-m "not large_scale"``.

    Registration here suppresses PytestUnknownMarkWarning and makes the mark
    visible in ``pytest --markers``.

Warning filters
---------------
NumbaPerformanceWarning messages are filtered out during tests.  Parallel
kernels given the tiny fixture trees cannot use every core, and the
warnings say nothing about correctness.
"""

import pytest
import warnings


def pytest_configure(config):
    """
    Configure pytest before test collection begins.

    This runs very early in the pytest lifecycle, before any test modules
    are imported, which is important for catching warnings from numba
    kernel compilation.
    """
    config.addinivalue_line(
        "markers",
        "large_scale: exercises large trees (slow; deselect with -m 'not large_scale')",
    )

    # Suppress NumbaPerformanceWarning during tests
    # This must happen early, before any kernels are compiled
    try:
        from numba.core.errors import NumbaPerformanceWarning
        warnings.filterwarnings('ignore', category=NumbaPerformanceWarning)
    except ImportError:
        # Numba not available, no warnings to suppress
        pass


def pytest_unconfigure(config):
    """
    Clean up after all tests complete.

    Restore default warning behavior.
    """
    warnings.resetwarnings()

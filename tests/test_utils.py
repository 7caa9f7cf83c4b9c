"""
tests/test_utils.py
===================
Tests for backend selection, context managers, descriptive statistics and
small utilities.
"""

import logging
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import dendrostat
from dendrostat import _context
from dendrostat._backend import (
    get_available_backends,
    get_backend_info,
    get_best_backend,
    resolve_backend,
)
from dendrostat._context import quiet, suppress_logger, suppress_warnings, use_backend
from dendrostat._errors import NodeAlreadyExists, NodeNotFound, TreeError
from dendrostat._stats import MATCH_SCORE_FIELDS, describe_sample, percentile, sample_sd
from dendrostat._utils import report_progress, sorenson_dissimilarity


# ======================================================================== #
# Backends                                                                  #
# ======================================================================== #


class TestBackends:
    def test_python_always_available(self):
        assert get_available_backends()[0] == "python"

    def test_best_is_last(self):
        assert get_best_backend() == get_available_backends()[-1]

    def test_resolve(self):
        assert resolve_backend("python") == "python"
        assert resolve_backend("best") == get_best_backend()

    def test_resolve_unknown_raises(self):
        with pytest.raises(ValueError):
            resolve_backend("quantum")

    def test_info(self):
        info = get_backend_info()
        assert info["backends"] == get_available_backends()
        assert info["cpu_kernels_available"] == ("cpu-parallel" in info["backends"])


# ======================================================================== #
# Context managers                                                          #
# ======================================================================== #


class TestContext:
    def test_use_backend_sets_and_restores(self):
        assert _context.get_backend_override() is None
        with use_backend("python"):
            assert _context.get_backend_override() == "python"
        assert _context.get_backend_override() is None

    def test_use_backend_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with use_backend("python"):
                raise RuntimeError("boom")
        assert _context.get_backend_override() is None

    def test_use_backend_unknown_raises(self):
        with pytest.raises(ValueError):
            with use_backend("quantum"):
                pass

    def test_quiet_restores_level(self):
        logger = logging.getLogger(_context.PACKAGE_LOGGER)
        original = logger.level
        with quiet():
            assert logger.level == logging.CRITICAL
        assert logger.level == original

    def test_suppress_logger(self):
        logger = logging.getLogger("dendrostat._compare")
        original = logger.level
        with suppress_logger("dendrostat._compare", logging.ERROR):
            assert logger.level == logging.ERROR
        assert logger.level == original

    def test_quiet_hides_package_logs(self, caplog):
        tree = dendrostat.Tree("((A:1,B:1)AB:1,C:2)R;")
        with caplog.at_level(logging.DEBUG, logger="dendrostat"):
            with quiet():
                tree.delete_node("C")
        assert not [r for r in caplog.records if r.name.startswith("dendrostat")]

    def test_suppress_warnings(self):
        import warnings

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with suppress_warnings(UserWarning):
                warnings.warn("hidden", UserWarning)
            warnings.warn("shown", RuntimeWarning)
        assert [str(w.message) for w in caught] == ["shown"]


# ======================================================================== #
# Statistics                                                                #
# ======================================================================== #


class TestStats:
    def test_describe_match_scores(self):
        stats = describe_sample([0.0, 0.5, 1.0, 0.5], MATCH_SCORE_FIELDS)
        assert stats["MEAN"] == 0.5
        assert stats["MEDIAN"] == 0.5
        assert stats["SD"] == pytest.approx(np.std([0.0, 0.5, 1.0, 0.5], ddof=1))
        assert stats["Q01"] == 0.0

    def test_empty_sample(self):
        assert describe_sample([], {"MEAN": "mean", "P5": 5}) == {"MEAN": None, "P5": None}

    def test_single_value_sd(self):
        assert sample_sd(np.array([3.0])) == 0.0

    def test_percentile_is_a_member(self):
        data = np.array([1.0, 2.0, 3.0, 4.0])
        assert percentile(data, 50) == 2.0
        assert percentile(data, 25) == 1.0
        assert percentile(data, 100) == 4.0


# ======================================================================== #
# Utilities and errors                                                      #
# ======================================================================== #


class TestUtils:
    def test_sorenson(self):
        assert sorenson_dissimilarity({1, 2, 3}, {1, 2, 3}) == 0.0
        assert sorenson_dissimilarity({1, 2}, {3, 4}) == 1.0
        assert sorenson_dissimilarity(set(), set()) == 1.0
        assert sorenson_dissimilarity(frozenset("AB"), frozenset("BC")) == 0.5
        assert sorenson_dissimilarity({"A"}, {"A", "B", "C"}) == 0.5
        assert sorenson_dissimilarity({"A", "B", "C"}, {"A"}) == 0.5

    def test_report_progress_clamps(self):
        calls = []
        report_progress(lambda t, f: calls.append((t, f)), "step", 1.5)
        report_progress(None, "ignored", 0.5)
        assert calls == [("step", 1.0)]

    def test_error_hierarchy(self):
        err = NodeNotFound("X")
        assert isinstance(err, TreeError)
        assert isinstance(err, KeyError)
        assert err.name == "X"
        assert "X" in str(err)
        assert isinstance(NodeAlreadyExists("Y"), KeyError)

    def test_public_api(self):
        for name in dendrostat.__all__:
            assert hasattr(dendrostat, name), name

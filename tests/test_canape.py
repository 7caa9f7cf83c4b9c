"""
tests/test_canape.py
====================
Tests for the CANAPE decision table and flag assignment.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from dendrostat._canape import (
    MIXED,
    NEO,
    NOT_SIGNIFICANT,
    PALAEO,
    SUPER,
    assign_canape_codes,
    canape_flags,
    classify_canape,
)


class TestClassify:
    @pytest.mark.parametrize(
        "pe_obs, pe_alt, rpe, expected",
        [
            (0.99, 0.995, 0.5, SUPER),
            (0.96, 0.80, 0.01, NEO),
            (0.90, 0.90, 0.5, NOT_SIGNIFICANT),
            (0.90, 0.90, 0.01, NOT_SIGNIFICANT),
            (0.97, 0.97, 0.99, PALAEO),
            (0.97, 0.97, 0.5, MIXED),
            (0.80, 0.999, 0.5, MIXED),
            (0.999, 0.999, 0.001, NEO),
        ],
    )
    def test_table(self, pe_obs, pe_alt, rpe, expected):
        assert classify_canape(pe_obs, pe_alt, rpe) == expected

    def test_thresholds_are_inclusive_for_not_significant(self):
        assert classify_canape(0.95, 0.95, 0.5) == NOT_SIGNIFICANT

    def test_rpe_thresholds_are_strict(self):
        assert classify_canape(0.97, 0.97, 0.025) == MIXED
        assert classify_canape(0.97, 0.97, 0.975) == MIXED

    def test_super_needs_both(self):
        assert classify_canape(0.99, 0.98, 0.5) == MIXED

    def test_missing_inputs_are_neutral(self):
        assert classify_canape(0.97) == MIXED
        assert classify_canape(0.90) == NOT_SIGNIFICANT

    def test_missing_observed_is_undefined(self):
        assert classify_canape(None, 0.99, 0.01) is None


class TestFlags:
    def test_one_hot(self):
        flags = canape_flags(NEO)
        assert flags == {"NEO": 1, "PALAEO": 0, "MIXED": 0, "SUPER": 0}

    def test_not_significant_has_no_flag(self):
        assert sum(canape_flags(NOT_SIGNIFICANT).values()) == 0

    def test_undefined_clears(self):
        assert canape_flags(None) == {"NEO": None, "PALAEO": None, "MIXED": None, "SUPER": None}


class TestAssign:
    def test_writes_code_and_flags(self):
        results = assign_canape_codes(
            {"PE_WE": 0.99, "PHYLO_RPE_NULL2": 0.995, "PHYLO_RPE2": 0.5},
            {"PE_WE": 3.2},
        )
        assert results["CANAPE_CODE"] == SUPER
        assert results["SUPER"] == 1

    def test_missing_pe_rank_is_neutral(self):
        results = assign_canape_codes({"PHYLO_RPE_NULL2": 0.999}, {"PE_WE": 1.0})
        assert results["CANAPE_CODE"] == MIXED

    def test_no_observed_pe(self):
        results = assign_canape_codes({"PE_WE": 0.99}, {"PD": 1.0})
        assert results["CANAPE_CODE"] is None
        assert results["MIXED"] is None
        assert assign_canape_codes({"PE_WE": 0.99}, None)["CANAPE_CODE"] is None

    def test_overwrites_previous_flags(self):
        results = {"CANAPE_CODE": NEO, "NEO": 1}
        assign_canape_codes({"PE_WE": 0.5}, {"PE_WE": 1.0}, results)
        assert results["CANAPE_CODE"] == NOT_SIGNIFICANT
        assert results["NEO"] == 0

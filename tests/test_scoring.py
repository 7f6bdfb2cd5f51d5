"""Tests for the shared scoring primitives."""

import pytest

from rescue_core_lib.core.scoring import (
    CAP_EXCEEDED,
    UNVERIFIED,
    clamp,
    linear_decay,
    rank_and_cap,
    round_half_up,
    weighted_fraction,
    weighted_sum,
)


class TestRounding:
    def test_half_rounds_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4

    def test_below_half_rounds_down(self):
        assert round_half_up(2.49) == 2

    def test_clamp(self):
        assert clamp(120, 0, 100) == 100
        assert clamp(-3, 0, 100) == 0
        assert clamp(42, 0, 100) == 42


class TestLinearDecay:
    def test_full_score_at_zero(self):
        assert linear_decay(0, 50) == 100.0

    def test_zero_at_reference_and_beyond(self):
        assert linear_decay(50, 50) == 0.0
        assert linear_decay(80, 50) == 0.0

    def test_midpoint(self):
        assert linear_decay(25, 50) == pytest.approx(50.0)

    def test_non_positive_reference(self):
        assert linear_decay(1, 0) == 0.0


class TestWeighted:
    def test_weighted_sum_ignores_unweighted_components(self):
        assert weighted_sum({"a": 100, "b": 50, "c": 999}, {"a": 0.5, "b": 0.5}) == pytest.approx(75.0)

    def test_weighted_fraction(self):
        assert weighted_fraction([(20, True), (25, True)]) == 100
        assert weighted_fraction([(20, True), (20, False)]) == 50

    def test_weighted_fraction_no_weight(self):
        assert weighted_fraction([]) == 0


class TestRankAndCap:
    def test_best_instances_count_first(self):
        items = [("photo", 10), ("photo", 30), ("photo", 20)]
        total, entries = rank_and_cap(
            items,
            score_of=lambda i: i[1],
            category_of=lambda i: i[0],
            cap_of=lambda _: 2,
        )
        assert total == 50
        assert [e.base_score for e in entries] == [30, 20, 10]
        assert entries[2].counted is False
        assert entries[2].adjustments == ((CAP_EXCEEDED, -10),)

    def test_ineligible_items_consume_no_cap_slot(self):
        items = [("chip", 80, False), ("chip", 70, True)]
        total, entries = rank_and_cap(
            items,
            score_of=lambda i: i[1],
            category_of=lambda i: i[0],
            cap_of=lambda _: 1,
            counts_if=lambda i: i[2],
        )
        assert total == 70
        assert entries[0].adjustments == ((UNVERIFIED, -80),)
        assert entries[1].counted is True

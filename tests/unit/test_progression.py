"""Progression calculator tests: levels, elo tiers and point formulas."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from labquest.gamification.progression import (
    ELO_ORDER,
    chest_discount_rate,
    compare_elo,
    compute_progression,
    days_late,
    discounted_unit_price,
    elo_of,
    elo_rank,
    level_of,
    meets_min_elo,
    normalize_xp,
    progress_to_next_level,
    task_coins,
    task_completion_points,
    work_session_coins,
    work_session_points,
)

DUE = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)


class TestLevel:
    """Level is floor(xp / 100)."""

    def test_zero_xp_is_level_zero(self):
        assert level_of(0) == 0

    def test_boundaries(self):
        assert level_of(99) == 0
        assert level_of(100) == 1
        assert level_of(250) == 2
        assert level_of(1000) == 10

    @pytest.mark.parametrize("bad", [-5, None, float("nan"), float("inf"), "abc", True])
    def test_malformed_xp_is_treated_as_zero(self, bad):
        assert normalize_xp(bad) == 0
        assert level_of(bad) == 0

    def test_level_is_monotone(self):
        levels = [level_of(xp) for xp in range(0, 5000, 7)]
        assert levels == sorted(levels)


class TestEloTiers:
    """Tier table lookups and ordering."""

    def test_floor_tier(self):
        assert elo_of(0) == "MADEIRA_II"
        assert elo_of(499) == "MADEIRA_II"

    def test_tier_boundaries(self):
        assert elo_of(500) == "MADEIRA_I"
        assert elo_of(1000) == "FERRO_III"
        assert elo_of(6500) == "OURO_I"
        assert elo_of(9999) == "GRAO_MESTRE"
        assert elo_of(10000) == "CHALLENGER"
        assert elo_of(10**9) == "CHALLENGER"

    def test_elo_is_monotone(self):
        ranks = [elo_rank(elo_of(xp)) for xp in range(0, 12000, 50)]
        assert ranks == sorted(ranks)

    def test_order_lowest_first(self):
        assert ELO_ORDER[0] == "MADEIRA_II"
        assert ELO_ORDER[-1] == "CHALLENGER"

    def test_unknown_tier_ranks_lowest(self):
        assert elo_rank("PLATINA") == -1
        assert compare_elo("PLATINA", "MADEIRA_II") == -1

    def test_compare_and_min_elo(self):
        assert compare_elo("OURO_I", "OURO_III") == 1
        assert compare_elo("FERRO_II", "FERRO_II") == 0
        assert meets_min_elo("FERRO_III", "FERRO_III") is True
        assert meets_min_elo("MADEIRA_I", "FERRO_III") is False
        assert meets_min_elo("MADEIRA_II", None) is True


class TestProgressToNextLevel:
    """Percentage towards the next level."""

    def test_zero(self):
        assert progress_to_next_level(0) == 0

    def test_midway(self):
        assert progress_to_next_level(150) == 50

    def test_exact_level_floor(self):
        assert progress_to_next_level(300) == 0

    def test_always_bounded(self):
        for xp in range(0, 2000, 13):
            assert 0 <= progress_to_next_level(xp) <= 100

    def test_snapshot_fields(self):
        snap = compute_progression(user_id=7, points=1234, coins=40, trophies=2)
        assert snap["level"] == 12
        assert snap["elo"] == "FERRO_III"
        assert snap["next_level_xp"] == 1300
        assert snap["progress_to_next_level"] == 34
        assert snap["xp"] == snap["points"] == 1234


class TestTaskPoints:
    """Late penalty: days_late * base, floored at zero."""

    def test_on_time(self):
        result = task_completion_points(100, DUE, DUE - timedelta(hours=3))
        assert result["points"] == 100
        assert result["days_late"] == 0

    def test_two_days_late_floors_at_zero(self):
        result = task_completion_points(100, DUE, DUE + timedelta(days=2))
        assert result["days_late"] == 2
        assert result["penalty"] == 200
        assert result["points"] == 0

    def test_partial_day_rounds_up(self):
        assert days_late(DUE, DUE + timedelta(hours=1)) == 1
        assert days_late(DUE, DUE + timedelta(days=1, minutes=1)) == 2

    def test_date_only_due_means_midnight_utc(self):
        assert days_late(date(2026, 3, 2), datetime(2026, 3, 2, 23, 0, tzinfo=timezone.utc)) == 1

    def test_no_due_date(self):
        assert task_completion_points(40, None, DUE)["points"] == 40

    def test_default_points_when_missing(self):
        assert task_completion_points(None)["points"] == 10

    def test_task_coins(self):
        assert task_coins(0) == 0
        assert task_coins(1) == 1
        assert task_coins(100) == 50


class TestWorkSessionPoints:
    """10 base + duration bonus (cap 40) + task bonus (cap 30)."""

    def test_zero_duration(self):
        assert work_session_points(0, 0) == 10

    def test_ninety_minutes_two_tasks(self):
        assert work_session_points(5400, 2) == 10 + 15 + 10

    def test_caps(self):
        assert work_session_points(12 * 3600, 20) == 80

    def test_session_coins(self):
        assert work_session_coins(10) == 7
        assert work_session_coins(1) == 2


class TestChestDiscount:
    """ALQUIMISTA archetype pricing."""

    def test_no_archetype(self):
        assert chest_discount_rate(None, 10000) == 0.0
        assert chest_discount_rate("GUERREIRO", 10000) == 0.0

    def test_alchemist_scales_and_caps(self):
        assert chest_discount_rate("ALQUIMISTA", 0) == pytest.approx(0.05)
        assert chest_discount_rate("alquimista", 500) == pytest.approx(0.15)
        assert chest_discount_rate("ALQUIMISTA", 100000) == pytest.approx(0.22)

    def test_discounted_price_never_below_one(self):
        assert discounted_unit_price(120, 0.0) == 120
        assert discounted_unit_price(120, 0.5) == 60
        assert discounted_unit_price(99, 0.5) == 49
        assert discounted_unit_price(1, 0.22) == 1

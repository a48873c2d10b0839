"""
Unit tests for productivity scoring formulas
"""

import pytest
from analytics.scoring import (
    code_productivity_score,
    task_productivity_score,
    overall_productivity_score,
    calculate_trend,
    rank_and_percentile,
    interim_productivity_score,
)


class TestScores:
    """Test score formulas and their bounds"""

    def test_code_score(self):
        # 0.3 * 20 + 0.4 * 20 + 0.3 * 100
        assert code_productivity_score(2, 200, 20) == 44.0

    def test_task_score(self):
        # 0.5 * 20 + 0.3 * (100 - 2 * 2) + 0.2 * 0
        assert task_productivity_score(1, 2.0, 0) == 38.8

    def test_task_score_without_completions_uses_neutral_speed(self):
        assert task_productivity_score(0, 0.0, 0) == 15.0

    def test_slow_completion_never_goes_negative(self):
        assert task_productivity_score(1, 500.0, 0) == 10.0

    def test_scores_are_bounded(self):
        assert code_productivity_score(10_000, 10_000_000, 10_000) == 100.0
        assert task_productivity_score(10_000, 0.01, 10_000) <= 100.0
        assert overall_productivity_score(100.0, 100.0) == 100.0
        assert code_productivity_score(0, 0, 0) == 0.0
        assert overall_productivity_score(0.0, 0.0) == 0.0

    def test_overall_is_mean(self):
        assert overall_productivity_score(44.0, 38.8) == 41.4


class TestTrend:
    """Test percentage change"""

    def test_from_zero_baseline(self):
        assert calculate_trend(5, 0) == 100.0
        assert calculate_trend(0, 0) == 0.0

    def test_change(self):
        assert calculate_trend(15, 10) == 50.0
        assert calculate_trend(5, 10) == -50.0
        assert calculate_trend(1, 3) == -66.67


class TestRanking:
    """Test rank and percentile"""

    def test_ties_share_rank(self):
        scores = [90, 70, 70, 40]
        assert rank_and_percentile(90, scores) == (1, 100.0)
        assert rank_and_percentile(70, scores) == (2, 75.0)
        assert rank_and_percentile(40, scores) == (4, 25.0)

    def test_single_user(self):
        assert rank_and_percentile(12.5, [12.5]) == (1, 100.0)


class TestInterimScore:
    """Test the connector-side estimate"""

    def test_caps(self):
        assert interim_productivity_score(0, 0, 0) == 0.0
        assert interim_productivity_score(3, 1, 5.0) == pytest.approx(22.5)
        assert interim_productivity_score(1000, 1000, 1000) == 100.0

"""Tests for the accessibility score and WCAG → AODA classification."""

import random

import pytest

from apex.engines.scoring import (
    REPORT_DISCLAIMER,
    calculate_accessibility_score,
    extract_wcag_criteria,
    generate_report_summary,
    get_aoda_info,
    get_impact_weight,
    is_aoda_relevant,
    tag_to_criterion,
)


class TestImpactWeight:
    @pytest.mark.parametrize(
        "impact,weight",
        [("critical", 10), ("serious", 7), ("moderate", 4), ("minor", 1), ("CRITICAL", 10)],
    )
    def test_known_levels(self, impact, weight):
        assert get_impact_weight(impact) == weight

    def test_unknown_or_missing_counts_as_minor(self):
        assert get_impact_weight(None) == 1
        assert get_impact_weight("catastrophic") == 1


class TestScore:
    def test_empty_is_perfect(self):
        assert calculate_accessibility_score([]) == 100

    def test_four_serious_nodes_score_30(self):
        """One color-contrast rule on 4 nodes: round(100 - 28/40*100) = 30."""
        nodes = [{"impact": "serious"} for _ in range(4)]
        assert calculate_accessibility_score(nodes) == 30

    def test_all_critical_is_zero(self):
        assert calculate_accessibility_score([{"impact": "critical"}] * 5) == 0

    def test_all_minor_is_ninety(self):
        assert calculate_accessibility_score([{"impact": "minor"}] * 3) == 90

    def test_order_independent(self):
        impacts = ["critical", "serious", "moderate", "minor", "serious", "minor", "moderate"]
        baseline = calculate_accessibility_score([{"impact": i} for i in impacts])
        for seed in range(5):
            shuffled = impacts[:]
            random.Random(seed).shuffle(shuffled)
            assert calculate_accessibility_score([{"impact": i} for i in shuffled]) == baseline

    def test_always_in_range(self):
        rng = random.Random(7)
        levels = ["critical", "serious", "moderate", "minor", None]
        for _ in range(50):
            vs = [{"impact": rng.choice(levels)} for _ in range(rng.randint(0, 30))]
            assert 0 <= calculate_accessibility_score(vs) <= 100

    def test_adding_more_severe_violation_never_raises_score(self):
        base = [{"impact": "moderate"}, {"impact": "minor"}]
        worse = base + [{"impact": "critical"}]
        assert calculate_accessibility_score(worse) <= calculate_accessibility_score(base)

    def test_accepts_objects_with_impact(self):
        class Row:
            def __init__(self, impact):
                self.impact = impact

        assert calculate_accessibility_score([Row("serious")] * 4) == 30


class TestWcagCriteria:
    def test_tag_to_criterion(self):
        assert tag_to_criterion("wcag143") == "1.4.3"
        assert tag_to_criterion("wcag1410") == "1.4.10"
        assert tag_to_criterion("wcag2aa") is None
        assert tag_to_criterion("wcag21a") is None
        assert tag_to_criterion("best-practice") is None

    def test_extract_dedupes_in_order(self):
        tags = ["cat.color", "wcag2aa", "wcag143", "wcag111", "wcag143"]
        assert extract_wcag_criteria(tags) == ["1.4.3", "1.1.1"]

    def test_aoda_relevance(self):
        assert is_aoda_relevant(["1.4.3"])
        assert is_aoda_relevant(["wcag412"])
        # 1.4.10 (Reflow) is WCAG 2.1, not part of the AODA set
        assert not is_aoda_relevant(["1.4.10"])
        assert not is_aoda_relevant([])

    def test_aoda_info(self):
        info = get_aoda_info(["1.4.3", "1.4.10", "wcag111"])
        assert info == [
            {"criterion": "1.4.3", "description": "Contrast (Minimum)"},
            {"criterion": "1.1.1", "description": "Non-text Content"},
        ]


class TestReportSummary:
    def test_counts_by_severity(self):
        violations = [
            {"impact": "critical", "aoda_relevant": True},
            {"impact": "serious", "aoda_relevant": True},
            {"impact": "serious", "aoda_relevant": False},
            {"impact": "minor", "aoda_relevant": False},
        ]
        summary = generate_report_summary(violations)
        assert summary["total_violations"] == 4
        assert summary["by_severity"] == {"critical": 1, "serious": 2, "moderate": 0, "minor": 1}
        assert summary["aoda_relevant_count"] == 2
        assert summary["score"] == calculate_accessibility_score(violations)
        assert summary["disclaimer"] == REPORT_DISCLAIMER

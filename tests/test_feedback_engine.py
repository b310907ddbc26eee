import pytest

from engines.feedback_engine import (
    CaseFeedbackEngine,
    compare_with_expert,
    expert_rationale,
    grade_for_score,
    match_status,
)
from engines.scoring import score_case


@pytest.mark.parametrize(
    "score, grade",
    [(100, "excellent"), (85, "excellent"), (84, "adequate"), (70, "adequate"), (69, "needs_improvement"), (0, "needs_improvement")],
)
def test_grade_thresholds(score, grade):
    assert grade_for_score(score) == grade


def test_match_status_classification():
    assert match_status(None, ["A"]) == "not_answered"
    assert match_status([], ["A"]) == "none"
    assert match_status(["A"], ["A"]) == "perfect"
    assert match_status(["A", "B"], ["A"]) == "partial"
    assert match_status(["B"], ["A"]) == "none"


def test_expert_rationale_prefers_expert_options(sample_case):
    multi = sample_case.decision("s2", "d2")
    assert expert_rationale(multi) == "Raises FiO2. Improves mechanics."

    no_rationale = sample_case.decision("s2", "d3")
    assert expert_rationale(no_rationale) is None


def test_comparison_rows_follow_declaration_order(sample_case):
    answers = {"s1": {"d1": ["B"]}, "s2": {"d2": ["X", "Y"]}}
    rows = compare_with_expert(sample_case, answers)

    assert [(row.step_id, row.decision_id) for row in rows] == [("s1", "d1"), ("s2", "d2"), ("s2", "d3")]
    first, second, third = rows
    assert first.selected_labels == ["Wait"]
    assert first.expert_labels == ["Jaw thrust"]
    assert first.score == pytest.approx(0.5)
    assert first.match == "none"
    assert second.match == "perfect"
    assert third.score is None
    assert third.match == "not_answered"


def test_report_orders_domains_worst_first(sample_case):
    answers = {"s1": {"d1": ["B"]}, "s2": {"d2": ["X", "Y"], "d3": ["yes"]}}
    result = score_case(sample_case, answers)

    report = CaseFeedbackEngine().build_report(sample_case, answers, result)

    assert report["caseId"] == "case-test"
    assert report["score"] == result.score == 83
    assert report["grade"] == "adequate"
    domains = [entry["domain"] for entry in report["domainAnalysis"]]
    assert domains[0] == "airway"
    airway = report["domainAnalysis"][0]
    assert airway["recommendations"] == ["Airway first."]
    assert all(not entry["recommendations"] for entry in report["domainAnalysis"][1:])
    assert report["comparison"][0]["selectedOptionIds"] == ["B"]


def test_recommendations_are_capped(sample_case):
    answers = {"s1": {"d1": ["C"]}, "s2": {"d2": ["Z"], "d3": ["no"]}}
    result = score_case(sample_case, answers)

    engine = CaseFeedbackEngine(max_recommendations=1)
    report = engine.build_report(sample_case, answers, result)

    for entry in report["domainAnalysis"]:
        assert len(entry["recommendations"]) <= 1
    oxygenation = next(e for e in report["domainAnalysis"] if e["domain"] == "oxygenation")
    assert oxygenation["recommendations"] == ["Raises FiO2. Improves mechanics."]

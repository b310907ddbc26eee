"""Post-case feedback: grade, expert comparison and per-domain recommendations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from engines.scoring import cached_score_decision, selection_for
from schemas import Answers, Case, CaseScore, Decision, DecisionComparison

EXCELLENT_THRESHOLD = 85
ADEQUATE_THRESHOLD = 70
RECOMMENDATION_THRESHOLD = 0.7
MAX_RECOMMENDATIONS_PER_DOMAIN = 2


def grade_for_score(score: int) -> str:
    if score >= EXCELLENT_THRESHOLD:
        return "excellent"
    if score >= ADEQUATE_THRESHOLD:
        return "adequate"
    return "needs_improvement"


def match_status(selected: Optional[Sequence[str]], expert: Sequence[str]) -> str:
    """Classify how a learner selection lines up with the expert options."""

    if selected is None:
        return "not_answered"
    selected_set = set(selected)
    expert_set = set(expert)
    if selected_set == expert_set:
        return "perfect"
    if selected_set & expert_set:
        return "partial"
    return "none"


def _labels(decision: Decision, option_ids: Sequence[str]) -> List[str]:
    labels = []
    for option_id in option_ids:
        option = decision.option(option_id)
        labels.append(option.label if option else option_id)
    return labels


def expert_rationale(decision: Decision) -> Optional[str]:
    """Join the rationales of the expert options, falling back to decision feedback."""

    rationales = [
        option.rationale
        for option in decision.options
        if option.is_expert_choice and option.rationale
    ]
    if rationales:
        return " ".join(rationales)
    return decision.feedback or None


def compare_with_expert(case: Case, answers: Answers) -> List[DecisionComparison]:
    rows: List[DecisionComparison] = []
    for step, decision in case.iter_decisions():
        selected = selection_for(answers, step.id, decision.id)
        expert = list(decision.expert_option_ids)
        rows.append(
            DecisionComparison(
                step_id=step.id,
                decision_id=decision.id,
                prompt=decision.prompt,
                domain=decision.domain,
                selected_option_ids=list(selected or []),
                selected_labels=_labels(decision, selected or []),
                expert_option_ids=expert,
                expert_labels=_labels(decision, expert),
                expert_rationale=expert_rationale(decision),
                score=None if selected is None else cached_score_decision(decision, selected),
                match=match_status(selected, expert),
            )
        )
    return rows


@dataclass
class DomainAnalysis:
    domain: str
    percentage: int
    decision_count: int
    recommendations: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "percentage": self.percentage,
            "decisionCount": self.decision_count,
            "recommendations": list(self.recommendations),
        }


class CaseFeedbackEngine:
    """Build the end-of-case report shown next to the final score."""

    def __init__(
        self,
        *,
        recommendation_threshold: float = RECOMMENDATION_THRESHOLD,
        max_recommendations: int = MAX_RECOMMENDATIONS_PER_DOMAIN,
    ) -> None:
        self.recommendation_threshold = recommendation_threshold
        self.max_recommendations = max_recommendations

    def build_report(self, case: Case, answers: Answers, case_score: CaseScore) -> Dict[str, Any]:
        comparison = compare_with_expert(case, answers)
        domains = self._analyse_domains(case, comparison, case_score)
        return {
            "caseId": case.id,
            "score": case_score.score,
            "grade": grade_for_score(case_score.score),
            "breakdownByDomain": case_score.to_payload()["breakdownByDomain"],
            "comparison": [row.model_dump(by_alias=True) for row in comparison],
            "domainAnalysis": [entry.as_dict() for entry in domains],
        }

    def _analyse_domains(
        self,
        case: Case,
        comparison: Sequence[DecisionComparison],
        case_score: CaseScore,
    ) -> List[DomainAnalysis]:
        decisions = {(step.id, decision.id): decision for step, decision in case.iter_decisions()}
        analysis: List[DomainAnalysis] = []
        for domain, breakdown in case_score.breakdown_by_domain.items():
            recommendations: List[str] = []
            for row in comparison:
                if row.domain != domain or row.score is None:
                    continue
                if row.score >= self.recommendation_threshold:
                    continue
                decision = decisions.get((row.step_id, row.decision_id))
                text = (decision.feedback if decision else None) or row.expert_rationale
                if text and text not in recommendations:
                    recommendations.append(text)
                if len(recommendations) >= self.max_recommendations:
                    break
            analysis.append(
                DomainAnalysis(
                    domain=domain,
                    percentage=breakdown.percentage,
                    decision_count=breakdown.decision_count,
                    recommendations=recommendations,
                )
            )
        # Weakest domains first
        analysis.sort(key=lambda entry: (entry.percentage, entry.domain))
        return analysis

"""Scoring of clinical decisions against the expert reference answers.

Every decision is normalized to a 0 to 1 scale whose maximum is 1:

* ``single`` decisions divide the selected option's weight by the largest weight.
* ``multi`` decisions divide the summed weights of the selection by the summed
  weights of the expert options.

Negative weights model harmful choices and are carried through untouched, so a
decision score may fall below zero. Only the upper bound is clamped. Rounding to an
integer percentage happens once, at the very end of :func:`score_case`.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Dict, Mapping, Optional, Sequence

from engines.caching import DecisionScoreCache
from schemas import Answers, Case, CaseScore, Decision, DecisionType, DomainBreakdown

logger = logging.getLogger(__name__)

_SCORE_CACHE = DecisionScoreCache()


def round_half_up(value: float) -> int:
    """Round ``value`` to the nearest integer, with halves rounded up."""

    return int(math.floor(value + 0.5))


def _weight(decision: Decision, option_id: str) -> float:
    return float(decision.weights.get(option_id, 0.0))


def score_decision(decision: Decision, selected_option_ids: Sequence[str]) -> float:
    """Return the normalized score of ``selected_option_ids`` for ``decision``."""

    if not selected_option_ids:
        return 0.0

    if decision.type is DecisionType.SINGLE:
        max_weight = max((float(w) for w in decision.weights.values()), default=0.0)
        if max_weight <= 0:
            return 0.0
        return min(1.0, _weight(decision, selected_option_ids[0]) / max_weight)

    expert_sum = sum(_weight(decision, option_id) for option_id in decision.expert_option_ids)
    if expert_sum <= 0:
        return 0.0
    # repeated ids count once
    selected_sum = sum(_weight(decision, option_id) for option_id in dict.fromkeys(selected_option_ids))
    return min(1.0, selected_sum / expert_sum)


def cached_score_decision(
    decision: Decision,
    selected_option_ids: Sequence[str],
    *,
    cache: Optional[DecisionScoreCache] = None,
) -> float:
    """Memoized :func:`score_decision`; safe to call from concurrent readers."""

    store = cache if cache is not None else _SCORE_CACHE
    cached = store.get(decision, selected_option_ids)
    if cached is not None:
        return cached
    score = score_decision(decision, selected_option_ids)
    store.add(decision, selected_option_ids, score)
    return score


def selection_for(answers: Mapping[str, Mapping[str, Sequence[str]]], step_id: str, decision_id: str):
    """Return the recorded selection, or ``None`` when the decision is unanswered."""

    step_answers = answers.get(step_id)
    if not step_answers or decision_id not in step_answers:
        return None
    return list(step_answers[decision_id] or [])


def _percentage(total: float, maximum: float) -> int:
    if maximum <= 0:
        return 0
    return max(0, min(100, round_half_up(100.0 * total / maximum)))


def score_case(
    case: Case,
    answers: Answers,
    *,
    cache: Optional[DecisionScoreCache] = None,
) -> CaseScore:
    """Aggregate decision scores into an overall and per-domain percentage.

    Decisions without an answer entry are left out of both the numerator and the
    denominator; an empty selection counts as an answered decision scoring zero.
    """

    total = 0.0
    maximum = 0.0
    domains: Dict[str, list] = OrderedDict()

    for step, decision in case.iter_decisions():
        selected = selection_for(answers, step.id, decision.id)
        if selected is None:
            continue
        value = cached_score_decision(decision, selected, cache=cache)
        total += value
        maximum += 1.0
        bucket = domains.setdefault(decision.domain, [0.0, 0.0, 0])
        bucket[0] += value
        bucket[1] += 1.0
        bucket[2] += 1

    breakdown: Dict[str, DomainBreakdown] = {}
    for domain, (domain_total, domain_max, count) in domains.items():
        pct = _percentage(domain_total, domain_max)
        breakdown[domain] = DomainBreakdown(
            average_score=pct,
            percentage=pct,
            decision_count=int(count),
        )

    result = CaseScore(score=_percentage(total, maximum), breakdown_by_domain=breakdown)
    logger.debug(
        "Scored case %s: %s answered decision(s), score=%s", case.id, int(maximum), result.score
    )
    return result

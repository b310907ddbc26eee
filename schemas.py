"""Pydantic schemas for clinical case documents, scores and persisted attempts."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "DecisionType",
    "Option",
    "Decision",
    "StepMedia",
    "Step",
    "Case",
    "Answers",
    "DomainBreakdown",
    "CaseScore",
    "AttemptRecord",
    "DecisionComparison",
    "utc_timestamp",
]

Answers = Dict[str, Dict[str, List[str]]]
"""Nested ``step_id -> decision_id -> [option_id, ...]`` mapping."""

_CASE_CONFIG = {
    "frozen": True,
    "populate_by_name": True,
    "extra": "ignore",
}

_WIRE_CONFIG = {
    "populate_by_name": True,
}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class DecisionType(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class Option(BaseModel):
    id: str
    label: str
    rationale: str = ""
    is_expert_choice: bool = Field(default=False, alias="isExpertChoice")

    model_config = _CASE_CONFIG


class Decision(BaseModel):
    id: str
    type: DecisionType
    prompt: str
    domain: str = Field(
        default="general",
        description="Knowledge domain used to bucket the score breakdown.",
    )
    options: tuple[Option, ...]
    weights: Dict[str, float]
    feedback: str | None = None

    model_config = _CASE_CONFIG

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("domain", mode="before")
    @classmethod
    def _default_domain(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "general"
        return value

    @property
    def option_ids(self) -> tuple[str, ...]:
        return tuple(option.id for option in self.options)

    @property
    def expert_option_ids(self) -> tuple[str, ...]:
        return tuple(option.id for option in self.options if option.is_expert_choice)

    def option(self, option_id: str) -> Option | None:
        for option in self.options:
            if option.id == option_id:
                return option
        return None


class StepMedia(BaseModel):
    type: str
    src: str
    alt: str | None = None

    model_config = _CASE_CONFIG


class Step(BaseModel):
    id: str
    title: str
    narrative: str = ""
    media: StepMedia | None = None
    decisions: tuple[Decision, ...] = ()

    model_config = _CASE_CONFIG

    @field_validator("decisions", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return () if value is None else value


class Case(BaseModel):
    id: str
    module_id: str | None = Field(default=None, alias="moduleId")
    title: str
    intro: str = ""
    objectives: tuple[str, ...] = ()
    steps: tuple[Step, ...] = ()

    model_config = _CASE_CONFIG

    def step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def decision(self, step_id: str, decision_id: str) -> Decision | None:
        step = self.step(step_id)
        if step is None:
            return None
        for decision in step.decisions:
            if decision.id == decision_id:
                return decision
        return None

    def iter_decisions(self):
        """Yield ``(step, decision)`` pairs in declaration order."""

        for step in self.steps:
            for decision in step.decisions:
                yield step, decision

    @property
    def decision_count(self) -> int:
        return sum(len(step.decisions) for step in self.steps)


class DomainBreakdown(BaseModel):
    average_score: int = Field(alias="averageScore")
    percentage: int = Field(
        description="Same value as ``averageScore``; kept for consumers reading either field.",
    )
    decision_count: int = Field(default=0, alias="decisionCount")

    model_config = _WIRE_CONFIG


class CaseScore(BaseModel):
    score: int = Field(ge=0, le=100)
    breakdown_by_domain: Dict[str, DomainBreakdown] = Field(
        default_factory=dict, alias="breakdownByDomain"
    )

    model_config = _WIRE_CONFIG

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class AttemptRecord(BaseModel):
    timestamp: str = Field(
        default_factory=utc_timestamp,
        description="ISO-8601 UTC submission time; natural key of the record.",
    )
    score: int
    breakdown_by_domain: Dict[str, DomainBreakdown] = Field(
        default_factory=dict, alias="breakdownByDomain"
    )
    answers: Answers = Field(default_factory=dict)
    backend_id: str | None = Field(default=None, alias="backendId")
    pending_sync: bool = Field(default=True, alias="pendingSync")

    model_config = _WIRE_CONFIG

    @field_validator("backend_id", mode="before")
    @classmethod
    def _stringify_backend_id(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def remote_payload(self) -> Dict[str, Any]:
        """Body submitted to the remote results store."""

        dumped = self.model_dump(by_alias=True)
        return {
            "score": dumped["score"],
            "breakdownByDomain": dumped["breakdownByDomain"],
            "answers": dumped["answers"],
        }

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class DecisionComparison(BaseModel):
    step_id: str = Field(alias="stepId")
    decision_id: str = Field(alias="decisionId")
    prompt: str
    domain: str
    selected_option_ids: List[str] = Field(default_factory=list, alias="selectedOptionIds")
    selected_labels: List[str] = Field(default_factory=list, alias="selectedLabels")
    expert_option_ids: List[str] = Field(default_factory=list, alias="expertOptionIds")
    expert_labels: List[str] = Field(default_factory=list, alias="expertLabels")
    expert_rationale: str | None = Field(default=None, alias="expertRationale")
    score: float | None = Field(
        default=None,
        description="Normalized decision score; None when the decision was not answered.",
    )
    match: Literal["perfect", "partial", "none", "not_answered"]

    model_config = _WIRE_CONFIG

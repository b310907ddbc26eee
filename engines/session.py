"""Step navigation and answer bookkeeping for one attempt at a clinical case."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from engines.scoring import score_case
from schemas import Answers, Case, CaseScore, DomainBreakdown

logger = logging.getLogger(__name__)

FinalizeListener = Callable[["CaseSession", CaseScore], None]


class InvalidStateError(RuntimeError):
    """Raised when an operation is not allowed in the session's current state."""


class UnknownDecisionError(LookupError):
    """Raised when an answer targets a step or decision the case does not define."""


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    FINALIZED = "finalized"


class CaseSession:
    """State machine for a single traversal of a case.

    ``not_started -> in_progress -> finalized``. A finalized session is never reset;
    :meth:`retry` hands back a fresh session and leaves this one (and anything
    persisted from it) untouched.
    """

    def __init__(
        self,
        case: Case,
        *,
        attempt: int = 1,
        listeners: Optional[Sequence[FinalizeListener]] = None,
    ) -> None:
        self.case = case
        self.session_id = uuid.uuid4().hex
        self.attempt = attempt
        self._state = SessionState.NOT_STARTED
        self._current_step_index = 0
        self._answers: Answers = {}
        self._final: Optional[CaseScore] = None
        self._listeners: List[FinalizeListener] = list(listeners or [])
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # read-only views
    # ------------------------------------------------------------------
    @property
    def case_id(self) -> str:
        return self.case.id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def finalized(self) -> bool:
        return self._state is SessionState.FINALIZED

    @property
    def current_step_index(self) -> int:
        return self._current_step_index

    @property
    def current_step(self):
        if not self.case.steps:
            return None
        return self.case.steps[self._current_step_index]

    @property
    def total_steps(self) -> int:
        return len(self.case.steps)

    @property
    def is_first_step(self) -> bool:
        return self._current_step_index == 0

    @property
    def is_last_step(self) -> bool:
        return self._current_step_index >= max(0, self.total_steps - 1)

    @property
    def answers(self) -> Answers:
        """Deep copy of the recorded answers."""
        with self._lock:
            return copy.deepcopy(self._answers)

    @property
    def final_score(self) -> Optional[int]:
        return self._final.score if self._final else None

    @property
    def final_breakdown(self) -> Optional[Dict[str, DomainBreakdown]]:
        return dict(self._final.breakdown_by_domain) if self._final else None

    @property
    def final_result(self) -> Optional[CaseScore]:
        return self._final

    # ------------------------------------------------------------------
    # listeners
    # ------------------------------------------------------------------
    def on_finalize(self, listener: FinalizeListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------
    def _ensure_open(self, action: str) -> None:
        if self._state is SessionState.FINALIZED:
            raise InvalidStateError(f"Cannot {action}: session {self.session_id} is finalized")

    def _touch(self) -> None:
        if self._state is SessionState.NOT_STARTED:
            self._state = SessionState.IN_PROGRESS

    def start(self) -> None:
        with self._lock:
            self._ensure_open("start")
            self._touch()

    def record_answer(
        self,
        step_id: str,
        decision_id: str,
        selected_option_ids: Sequence[str],
    ) -> None:
        """Insert or replace the selection for one decision."""

        with self._lock:
            self._ensure_open("record an answer")
            if self.case.decision(step_id, decision_id) is None:
                raise UnknownDecisionError(
                    f"Case {self.case_id} has no decision {decision_id!r} in step {step_id!r}"
                )
            self._answers.setdefault(step_id, {})[decision_id] = list(
                dict.fromkeys(str(o) for o in selected_option_ids)
            )
            self._touch()

    def clear_answer(self, step_id: str, decision_id: str) -> None:
        """Drop an answer entry so the decision counts as unanswered again."""

        with self._lock:
            self._ensure_open("clear an answer")
            step_answers = self._answers.get(step_id)
            if step_answers and decision_id in step_answers:
                del step_answers[decision_id]
                if not step_answers:
                    del self._answers[step_id]
            self._touch()

    def go_to_step(self, index: int) -> int:
        with self._lock:
            self._ensure_open("navigate")
            upper = max(0, self.total_steps - 1)
            self._current_step_index = max(0, min(int(index), upper))
            self._touch()
            return self._current_step_index

    def next_step(self) -> int:
        with self._lock:
            return self.go_to_step(self._current_step_index + 1)

    def previous_step(self) -> int:
        with self._lock:
            return self.go_to_step(self._current_step_index - 1)

    def interim_score(self) -> CaseScore:
        """Live score from the answers recorded so far."""

        with self._lock:
            if self._final is not None:
                return self._final
            return score_case(self.case, self._answers)

    def finalize(self) -> CaseScore:
        with self._lock:
            self._ensure_open("finalize")
            if not self.case.steps:
                raise InvalidStateError(f"Case {self.case_id} has no steps to finalize")
            result = score_case(self.case, self._answers)
            self._final = result
            self._state = SessionState.FINALIZED
            listeners = list(self._listeners)

        logger.info(
            "Session %s finalized case %s (attempt %s) with score %s",
            self.session_id,
            self.case_id,
            self.attempt,
            result.score,
        )
        for listener in listeners:
            try:
                listener(self, result)
            except Exception:
                # Listener failures never reach the caller of finalize.
                logger.exception("Finalize listener failed for session %s", self.session_id)
        return result

    def retry(self) -> "CaseSession":
        with self._lock:
            if self._state is not SessionState.FINALIZED:
                raise InvalidStateError(
                    f"Cannot retry: session {self.session_id} has not been finalized"
                )
            listeners = list(self._listeners)
        fresh = CaseSession(self.case, attempt=self.attempt + 1, listeners=listeners)
        logger.info(
            "Session %s retried as %s (attempt %s)", self.session_id, fresh.session_id, fresh.attempt
        )
        return fresh

    # ------------------------------------------------------------------
    def navigation(self) -> Dict[str, Any]:
        return {
            "currentStepIndex": self._current_step_index,
            "isFirstStep": self.is_first_step,
            "isLastStep": self.is_last_step,
            "totalSteps": self.total_steps,
        }

    def answered_count(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._answers.values())

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            payload: Dict[str, Any] = {
                "sessionId": self.session_id,
                "caseId": self.case_id,
                "attempt": self.attempt,
                "state": self._state.value,
                "finalized": self.finalized,
                "answeredDecisions": self.answered_count(),
                "totalDecisions": self.case.decision_count,
                "answers": copy.deepcopy(self._answers),
                **self.navigation(),
            }
            if self._final is not None:
                payload["finalScore"] = self._final.score
                payload["finalBreakdown"] = self._final.to_payload()["breakdownByDomain"]
            return payload

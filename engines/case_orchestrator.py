"""Wires case sessions to local persistence and background result submission."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Set

from attempt_store import AttemptStoreError
from case_library import CaseLibrary
from engines.feedback_engine import CaseFeedbackEngine, grade_for_score
from engines.session import CaseSession
from schemas import AttemptRecord, CaseScore
from sync import SAVED_LOCALLY_NOTICE, AttemptSyncManager, SyncOutcome, schedule

logger = logging.getLogger(__name__)

SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_SAVED_LOCALLY = "saved_locally"


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ClinicalCaseOrchestrator:
    """Registry of live sessions plus the finalize hook that stores and submits results.

    ``scheduler`` receives the ``sync_attempt`` coroutine; the default runs it as a
    task on the current loop or on a daemon thread when no loop is running.
    """

    def __init__(
        self,
        library: CaseLibrary,
        manager: AttemptSyncManager,
        feedback_engine: Optional[CaseFeedbackEngine] = None,
        *,
        scheduler: Callable[[Any], Any] = schedule,
    ) -> None:
        self.library = library
        self.manager = manager
        self.feedback_engine = feedback_engine or CaseFeedbackEngine()
        self._scheduler = scheduler
        self._sessions: Dict[str, CaseSession] = {}
        self._sync_status: Dict[str, str] = {}
        self._stored_locally: Dict[str, bool] = {}
        self._records: Dict[str, AttemptRecord] = {}
        self._jobs: Dict[str, Any] = {}
        self._superseded: Set[str] = set()
        self._last_stamp: Dict[str, datetime] = {}
        self._lock = threading.RLock()
        self._stamp_lock = threading.Lock()

    # ------------------------------------------------------------------
    # session registry
    # ------------------------------------------------------------------
    def open_case(self, case_key: str) -> CaseSession:
        case = self.library.get(case_key)
        session = CaseSession(case)
        session.on_finalize(self._handle_finalize)
        session.start()
        self._register(session)
        logger.info("Opened case %s as session %s", case.id, session.session_id)
        return session

    def _register(self, session: CaseSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> CaseSession:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise KeyError(f"Unknown session: {session_id}") from None

    def retry(self, session_id: str) -> CaseSession:
        """Open the next attempt and release the finished one.

        The superseded session is dropped right away unless its submission is still
        running, in which case it is dropped when that submission settles.
        """
        fresh = self.get(session_id).retry()
        fresh.start()
        self._register(fresh)
        with self._lock:
            if self._sync_status.get(session_id) == SYNC_PENDING:
                self._superseded.add(session_id)
            else:
                self.close(session_id)
        return fresh

    def close(self, session_id: str) -> None:
        """Forget ``session_id`` and everything tracked for it."""
        with self._lock:
            self._sessions.pop(session_id, None)
            self._sync_status.pop(session_id, None)
            self._stored_locally.pop(session_id, None)
            self._records.pop(session_id, None)
            self._jobs.pop(session_id, None)
            self._superseded.discard(session_id)

    # ------------------------------------------------------------------
    # finalize
    # ------------------------------------------------------------------
    def finalize(self, session_id: str) -> Dict[str, Any]:
        session = self.get(session_id)
        result = session.finalize()
        report = self.feedback_engine.build_report(session.case, session.answers, result)
        return {
            **self.summary(session_id),
            "score": result.score,
            "breakdownByDomain": result.to_payload()["breakdownByDomain"],
            "grade": report["grade"],
            "report": report,
        }

    def _next_timestamp(self, case_id: str) -> str:
        now = datetime.now(timezone.utc)
        newest = self._last_stamp.get(case_id)
        try:
            history = self.manager.history(case_id)
        except AttemptStoreError as exc:
            logger.warning("Could not read history for case %s: %s", case_id, exc)
            history = []
        for record in history:
            parsed = _parse_timestamp(record.timestamp)
            if parsed is not None and (newest is None or parsed > newest):
                newest = parsed
        if newest is not None and now <= newest:
            now = newest + timedelta(microseconds=1)
        self._last_stamp[case_id] = now
        return now.isoformat()

    def _handle_finalize(self, session: CaseSession, result: CaseScore) -> None:
        with self._stamp_lock:
            record = AttemptRecord(
                timestamp=self._next_timestamp(session.case_id),
                score=result.score,
                breakdown_by_domain=dict(result.breakdown_by_domain),
                answers=session.answers,
                pending_sync=True,
            )
            stored = self.manager.commit_attempt(session.case_id, record)

        with self._lock:
            self._records[session.session_id] = record
            self._stored_locally[session.session_id] = stored
            self._sync_status[session.session_id] = SYNC_PENDING

        job = self._scheduler(self._sync_and_track(session.session_id, session.case_id, record))
        with self._lock:
            if session.session_id in self._sessions:
                self._jobs[session.session_id] = job

    async def _sync_and_track(self, session_id: str, case_id: str, record: AttemptRecord) -> SyncOutcome:
        outcome = await self.manager.sync_attempt(case_id, record)
        with self._lock:
            if session_id in self._superseded:
                self.close(session_id)
            elif session_id in self._sessions:
                self._sync_status[session_id] = SYNC_SYNCED if outcome.ok else SYNC_SAVED_LOCALLY
        return outcome

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------
    def sync_status(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._sync_status.get(session_id)

    def sync_job(self, session_id: str) -> Any:
        with self._lock:
            return self._jobs.get(session_id)

    def record_for(self, session_id: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self._records.get(session_id)

    def summary(self, session_id: str) -> Dict[str, Any]:
        session = self.get(session_id)
        payload = session.summary()
        with self._lock:
            status = self._sync_status.get(session_id)
            stored = self._stored_locally.get(session_id)
            record = self._records.get(session_id)
        payload["syncStatus"] = status
        if stored is not None:
            payload["storedLocally"] = stored
        if record is not None:
            payload["timestamp"] = record.timestamp
            payload["backendId"] = record.backend_id
        if session.final_result is not None:
            payload["grade"] = grade_for_score(session.final_result.score)
        if status == SYNC_SAVED_LOCALLY:
            payload["notice"] = SAVED_LOCALLY_NOTICE
        return payload

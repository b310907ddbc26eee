# app.py - clinical case engine HTTP surface
# - JSON endpoints for the case viewer UI (cases, sessions, answers, finalize, retry)
# - Local-first attempt history with background submission to the results API

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

import db
from attempt_store import SqliteAttemptStore
from case_library import CaseLibrary, MalformedCaseError
from engines.case_orchestrator import ClinicalCaseOrchestrator
from engines.feedback_engine import CaseFeedbackEngine, grade_for_score
from engines.session import CaseSession, InvalidStateError, UnknownDecisionError
from env_validation import DEFAULT_CASES_PATH, Settings
from sync import DEFAULT_SYNC_TIMEOUT, AttemptSyncManager, ResultsApiClient

logger = logging.getLogger(__name__)
api_logger = logging.getLogger("caselab.api")


def build_orchestrator(settings: Settings) -> ClinicalCaseOrchestrator:
    """Assemble library, store, remote client and orchestrator from ``settings``."""
    library = CaseLibrary(settings.cases_path)
    client = None
    if settings.results_api_url:
        client = ResultsApiClient(
            settings.results_api_url,
            token=settings.results_api_token,
            timeout=settings.sync_timeout_seconds,
        )
    manager = AttemptSyncManager(
        SqliteAttemptStore(db, initialise=False),
        client,
        timeout=settings.sync_timeout_seconds,
    )
    return ClinicalCaseOrchestrator(library, manager, CaseFeedbackEngine())


def _import_time_settings() -> Settings:
    return Settings(
        db_path=db.DB_PATH,
        cases_path=os.getenv("CASES_PATH") or DEFAULT_CASES_PATH,
        results_api_url=None,
        results_api_token=None,
        sync_timeout_seconds=DEFAULT_SYNC_TIMEOUT,
        sync_on_startup=False,
    )


ORCHESTRATOR = build_orchestrator(_import_time_settings())


@asynccontextmanager
async def _lifespan(_: FastAPI):
    global ORCHESTRATOR
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        settings = validate_environment()

        if settings.db_path != db.DB_PATH:
            db.configure(settings.db_path)
        db.init()
        ORCHESTRATOR = build_orchestrator(settings)
        logger.info(
            "Loaded %d case(s) from %s; results API %s",
            len(ORCHESTRATOR.library),
            settings.cases_path,
            settings.results_api_url or "not configured",
        )
        if settings.sync_on_startup:
            outcomes = await ORCHESTRATOR.manager.sync_pending()
            logger.info("Startup sync processed %d pending attempt(s)", len(outcomes))
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Clinical Case Engine", version="1.0.0", lifespan=_lifespan)


# ---------- Schemas ----------
class StartSessionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    case_id: str = Field(alias="caseId")


class AnswerBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(alias="stepId")
    decision_id: str = Field(alias="decisionId")
    selected_option_ids: List[str] = Field(default_factory=list, alias="selectedOptionIds")


class SyncPendingBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    case_id: Optional[str] = Field(default=None, alias="caseId")


# ---------- Helpers ----------
def _session(session_id: str) -> CaseSession:
    try:
        return ORCHESTRATOR.get(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="session not found") from None


def _case_payload(case) -> dict[str, Any]:
    return case.model_dump(by_alias=True, mode="json")


def _case_listing(case) -> dict[str, Any]:
    return {
        "id": case.id,
        "moduleId": case.module_id,
        "title": case.title,
        "stepCount": len(case.steps),
        "decisionCount": case.decision_count,
    }


def _interim(session: CaseSession) -> dict[str, Any]:
    interim = session.interim_score()
    return {
        "score": interim.score,
        "grade": grade_for_score(interim.score),
        "breakdownByDomain": interim.to_payload()["breakdownByDomain"],
    }


# ---------- Cases ----------
@app.get("/cases")
def list_cases():
    return {"cases": [_case_listing(case) for case in ORCHESTRATOR.library.cases]}


@app.get("/cases/{case_id}")
def get_case(case_id: str):
    case = ORCHESTRATOR.library.find(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="case not found")
    return _case_payload(case)


@app.get("/cases/{case_id}/history")
def case_history(case_id: str):
    case = ORCHESTRATOR.library.find(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="case not found")
    history = ORCHESTRATOR.manager.history(case.id)
    return {"caseId": case.id, "attempts": [record.to_wire() for record in history]}


@app.get("/cases/{case_id}/last-result")
def case_last_result(case_id: str):
    case = ORCHESTRATOR.library.find(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="case not found")
    record = ORCHESTRATOR.manager.last_result(case.id)
    return {"caseId": case.id, "lastResult": record.to_wire() if record else None}


# ---------- Sessions ----------
@app.post("/sessions")
def start_session(body: StartSessionBody):
    try:
        session = ORCHESTRATOR.open_case(body.case_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="case not found") from None
    except MalformedCaseError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ORCHESTRATOR.summary(session.session_id)


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    _session(session_id)
    return ORCHESTRATOR.summary(session_id)


@app.post("/sessions/{session_id}/answers")
def record_answer(session_id: str, body: AnswerBody):
    session = _session(session_id)
    try:
        session.record_answer(body.step_id, body.decision_id, body.selected_option_ids)
    except UnknownDecisionError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "sessionId": session.session_id,
        "navigation": session.navigation(),
        "answeredDecisions": session.answered_count(),
        "interim": _interim(session),
    }


def _navigate(session_id: str, forward: bool):
    session = _session(session_id)
    try:
        if forward:
            session.next_step()
        else:
            session.previous_step()
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    step = session.current_step
    return {
        "sessionId": session.session_id,
        "navigation": session.navigation(),
        "step": step.model_dump(by_alias=True, mode="json") if step else None,
    }


@app.post("/sessions/{session_id}/next")
def next_step(session_id: str):
    return _navigate(session_id, forward=True)


@app.post("/sessions/{session_id}/previous")
def previous_step(session_id: str):
    return _navigate(session_id, forward=False)


@app.post("/sessions/{session_id}/finalize")
def finalize_session(session_id: str):
    _session(session_id)
    try:
        payload = ORCHESTRATOR.finalize(session_id)
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    api_logger.info(
        "Session %s finalized with score %s (stored locally: %s)",
        session_id,
        payload["score"],
        payload.get("storedLocally"),
    )
    return payload


@app.post("/sessions/{session_id}/retry")
def retry_session(session_id: str):
    _session(session_id)
    try:
        fresh = ORCHESTRATOR.retry(session_id)
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return ORCHESTRATOR.summary(fresh.session_id)


# ---------- Sync ----------
@app.post("/sync/pending")
async def sync_pending(body: Optional[SyncPendingBody] = None):
    case_id = body.case_id if body else None
    outcomes = await ORCHESTRATOR.manager.sync_pending(case_id)
    synced = sum(1 for entry in outcomes if entry["ok"])
    return {"attempted": len(outcomes), "synced": synced, "results": outcomes}

"""Local-first persistence of finished attempts with best-effort remote submission.

Every finalized attempt is written to the durable local store before any network
call is made. Submission to the remote results store is a single request with a
bounded timeout; failures never propagate and only flip the local record's
``pendingSync`` flag so a later reconciliation pass can pick it up.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Coroutine, Dict, List, Optional, Union
from urllib.parse import quote

import requests

from attempt_store import AttemptStore, AttemptStoreError
from schemas import AttemptRecord

LOGGER = logging.getLogger("caselab.sync")

HISTORY_LIMIT = 10
DEFAULT_SYNC_TIMEOUT = 10.0
SAVED_LOCALLY_NOTICE = "Results saved locally. We will retry sending them on your next visit."


@dataclass(frozen=True)
class SyncReceipt:
    backend_id: str

    @property
    def ok(self) -> bool:
        return True

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": True, "backendId": self.backend_id}


@dataclass(frozen=True)
class NetworkFailure:
    """Outcome of a submission that did not reach (or was refused by) the remote store."""

    reason: str
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return False

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": False, "reason": self.reason, "statusCode": self.status_code}


SyncOutcome = Union[SyncReceipt, NetworkFailure]


class RemoteSubmissionError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResultsApiClient:
    """Thin ``requests`` client for the remote results store."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid results API URL: {base_url}")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session or requests.Session()

    def results_url(self, case_id: str) -> str:
        return f"{self.base_url}/clinical-cases/{quote(case_id, safe='')}/results"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = self.token
        return headers

    def submit(self, case_id: str, payload: Dict[str, Any]) -> str:
        """POST ``payload`` and return the id assigned by the remote store."""

        response = self._session.post(
            self.results_url(case_id),
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        if not 200 <= response.status_code < 300:
            raise RemoteSubmissionError(
                f"Results API responded with status {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteSubmissionError(
                "Results API returned a non-JSON body", status_code=response.status_code
            ) from exc
        backend_id = body.get("id") if isinstance(body, dict) else None
        if backend_id in (None, ""):
            raise RemoteSubmissionError(
                "Results API response did not include an id", status_code=response.status_code
            )
        return str(backend_id)


def schedule(coro: Coroutine[Any, Any, Any]) -> Union[asyncio.Task, threading.Thread]:
    """Run ``coro`` without awaiting it: a task on a running loop, else a daemon thread."""

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        return loop.create_task(coro)
    thread = threading.Thread(target=lambda: asyncio.run(coro), daemon=True)
    thread.start()
    return thread


class AttemptSyncManager:
    """Sole owner of the local attempt store; mirrors attempts to the remote store."""

    def __init__(
        self,
        store: AttemptStore,
        client: Optional[ResultsApiClient] = None,
        *,
        history_limit: int = HISTORY_LIMIT,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
    ) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.store = store
        self.client = client
        self.history_limit = history_limit
        self.timeout = timeout
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # local writes
    # ------------------------------------------------------------------
    def commit_attempt(self, case_id: str, record: AttemptRecord) -> bool:
        """Insert ``record`` at the head of the case history and refresh the last result.

        Returns ``False`` (after logging) when the local store fails; never raises for
        storage errors.
        """

        with self._lock:
            try:
                history = [
                    entry
                    for entry in self.store.read_history(case_id)
                    if entry.timestamp != record.timestamp
                ]
                history.insert(0, record.model_copy(deep=True))
                evicted = history[self.history_limit :]
                self.store.write_history(case_id, history[: self.history_limit])
                self.store.write_last_result(case_id, record)
            except AttemptStoreError as exc:
                LOGGER.warning(
                    "Could not store attempt %s for case %s locally: %s",
                    record.timestamp,
                    case_id,
                    exc,
                )
                return False

        if evicted:
            LOGGER.debug(
                "Evicted %d attempt(s) from case %s history: %s",
                len(evicted),
                case_id,
                ", ".join(entry.timestamp for entry in evicted),
            )
        LOGGER.info("Stored attempt %s for case %s (score %s)", record.timestamp, case_id, record.score)
        return True

    def _apply(self, case_id: str, record: AttemptRecord, changes: Dict[str, Any]) -> bool:
        """Update the stored copy of ``record`` (matched by timestamp) with ``changes``."""

        for key, value in changes.items():
            setattr(record, key, value)

        with self._lock:
            try:
                history = self.store.read_history(case_id)
                found = False
                for idx, entry in enumerate(history):
                    if entry.timestamp == record.timestamp:
                        history[idx] = entry.model_copy(update=changes)
                        found = True
                        break
                if found:
                    self.store.write_history(case_id, history)
                last = self.store.read_last_result(case_id)
                if last is not None and last.timestamp == record.timestamp:
                    self.store.write_last_result(case_id, last.model_copy(update=changes))
            except AttemptStoreError as exc:
                LOGGER.warning(
                    "Could not update attempt %s for case %s: %s", record.timestamp, case_id, exc
                )
                return False

        if not found:
            LOGGER.debug(
                "Attempt %s for case %s is no longer in local history", record.timestamp, case_id
            )
        return found

    # ------------------------------------------------------------------
    # remote submission
    # ------------------------------------------------------------------
    async def sync_attempt(self, case_id: str, record: AttemptRecord) -> SyncOutcome:
        """Submit ``record`` once. Never raises; failures come back as :class:`NetworkFailure`."""

        failure: NetworkFailure
        if self.client is None:
            failure = NetworkFailure("remote results store is not configured")
        else:
            try:
                backend_id = await asyncio.wait_for(
                    asyncio.to_thread(self.client.submit, case_id, record.remote_payload()),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                failure = NetworkFailure(f"timed out after {self.timeout:g}s")
            except RemoteSubmissionError as exc:
                failure = NetworkFailure(str(exc), exc.status_code)
            except Exception as exc:
                failure = NetworkFailure(f"{type(exc).__name__}: {exc}")
            else:
                await asyncio.to_thread(
                    self._apply, case_id, record, {"backend_id": backend_id, "pending_sync": False}
                )
                LOGGER.info(
                    "Synced attempt %s for case %s as %s", record.timestamp, case_id, backend_id
                )
                return SyncReceipt(backend_id)

        LOGGER.warning(
            "Attempt %s for case %s left pending sync: %s", record.timestamp, case_id, failure.reason
        )
        await asyncio.to_thread(self._apply, case_id, record, {"pending_sync": True})
        return failure

    async def sync_pending(self, case_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Submit every pending attempt once, oldest first."""

        outcomes: List[Dict[str, Any]] = []
        for pending_case, record in await asyncio.to_thread(self.pending, case_id):
            outcome = await self.sync_attempt(pending_case, record)
            outcomes.append(
                {"caseId": pending_case, "timestamp": record.timestamp, **outcome.as_dict()}
            )
        if outcomes:
            synced = sum(1 for entry in outcomes if entry["ok"])
            LOGGER.info("Reconciled %d of %d pending attempt(s)", synced, len(outcomes))
        return outcomes

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def history(self, case_id: str) -> List[AttemptRecord]:
        with self._lock:
            return self.store.read_history(case_id)

    def last_result(self, case_id: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self.store.read_last_result(case_id)

    def pending(self, case_id: Optional[str] = None) -> List[tuple[str, AttemptRecord]]:
        """``(case_id, record)`` pairs still awaiting confirmation, oldest first."""

        with self._lock:
            case_ids = [case_id] if case_id is not None else self.store.list_case_ids()
            pending: List[tuple[str, AttemptRecord]] = []
            for cid in case_ids:
                for record in reversed(self.store.read_history(cid)):
                    if record.pending_sync:
                        pending.append((cid, record))
        return pending

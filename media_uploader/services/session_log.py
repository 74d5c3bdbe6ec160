"""
Upload session log implementations.

The session log is the durable record of upload attempts: it rejects
duplicates, validates status transitions and lets stuck sessions be swept.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import DuplicateUploadError
from ..models import SessionStatus, UploadKind, UploadSessionRecord, UploadTask
from ..protocols import IUploadSessionLog
from .api_client import HTTPAPIClient

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = 300.0
STALE_STATUSES = (SessionStatus.COMPRESSING, SessionStatus.UPLOADING)
STALE_MESSAGE = "Upload timed out"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dedup_key(task: UploadTask) -> Tuple[str, str, Optional[str], Optional[str]]:
    """Identity of an upload: same content, kind and destination."""
    content = task.fingerprint or f"{task.file_name}:{task.size}"
    return (content, task.kind.value, task.target_id, task.record_id)


def _check_transition(session: UploadSessionRecord, status: SessionStatus) -> None:
    if not session.status.can_transition_to(status):
        raise ValueError(
            f"Invalid session transition {session.status.value} -> {status.value} for {session.id}"
        )


def _apply(
    session: UploadSessionRecord,
    status: SessionStatus,
    progress: Optional[float],
    error: Optional[str],
    result_url: Optional[str],
    now: datetime,
) -> None:
    session.status = status
    if progress is not None:
        session.progress = progress
    if error is not None:
        session.error_message = error
    elif status is SessionStatus.PENDING:
        session.error_message = None
    if result_url is not None:
        session.result_url = result_url
    session.updated_at = now


class InMemoryUploadSessionLog(IUploadSessionLog):
    """
    Process-local session log.

    Terminal sessions are forgotten once they are older than the dedup
    window; a forgotten session that gets reopened is tracked again.
    """

    def __init__(
        self,
        dedup_window: float = DEFAULT_DEDUP_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._dedup_window = timedelta(seconds=dedup_window)
        self._clock = clock
        self._sessions: Dict[str, UploadSessionRecord] = {}
        self._keys: Dict[str, Tuple] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _prune(self, now: datetime) -> None:
        expired = [
            session_id for session_id, session in self._sessions.items()
            if session.status.is_terminal and now - session.updated_at > self._dedup_window
        ]
        for session_id in expired:
            del self._sessions[session_id]
            del self._keys[session_id]
        if expired:
            logger.debug("Dropped %d expired session(s)", len(expired))

    async def initialize(self, task: UploadTask, session_id: str) -> UploadSessionRecord:
        key = dedup_key(task)
        now = self._clock()
        self._prune(now)
        for existing_id, existing_key in self._keys.items():
            existing = self._sessions[existing_id]
            if existing_key != key or existing.status is SessionStatus.FAILED:
                continue
            if now - existing.created_at <= self._dedup_window:
                raise DuplicateUploadError(
                    f"{task.file_name} is already being uploaded or was uploaded recently "
                    f"(session {existing.id}, {existing.status.value})"
                )

        session = UploadSessionRecord(
            id=session_id,
            kind=task.kind,
            file_name=task.file_name,
            file_size=task.size,
            fingerprint=task.fingerprint,
            target_id=task.target_id,
            record_id=task.record_id,
            created_at=now,
            updated_at=now,
        )
        self._sessions[session_id] = session
        self._keys[session_id] = key
        logger.debug("Session %s created for %s", session_id, task.file_name)
        return session

    async def update_status(
        self,
        session: UploadSessionRecord,
        status: SessionStatus,
        progress: Optional[float] = None,
        error: Optional[str] = None,
        result_url: Optional[str] = None,
    ) -> None:
        _check_transition(session, status)
        _apply(session, status, progress, error, result_url, self._clock())
        if session.id not in self._sessions and not status.is_terminal:
            self._sessions[session.id] = session
            self._keys[session.id] = (
                session.fingerprint or f"{session.file_name}:{session.file_size}",
                session.kind.value,
                session.target_id,
                session.record_id,
            )

    async def increment_retry(self, session: UploadSessionRecord) -> None:
        session.retry_count += 1
        session.updated_at = self._clock()

    async def list_active(self) -> List[UploadSessionRecord]:
        return [s for s in self._sessions.values() if not s.status.is_terminal]

    async def mark_stale_as_failed(self, max_age: float) -> int:
        now = self._clock()
        self._prune(now)
        cutoff = now - timedelta(seconds=max_age)
        count = 0
        for session in self._sessions.values():
            if session.status in STALE_STATUSES and session.updated_at < cutoff:
                _apply(session, SessionStatus.FAILED, None, STALE_MESSAGE, None, self._clock())
                count += 1
        if count:
            logger.info("Marked %d stale session(s) as failed", count)
        return count

    def get(self, session_id: str) -> Optional[UploadSessionRecord]:
        return self._sessions.get(session_id)


class RestUploadSessionLog(IUploadSessionLog):
    """
    Session log stored in the ``upload_logs`` table of a PostgREST datastore.

    Usage:
        async with HTTPAPIClient(datastore_url, api_key) as api:
            log = RestUploadSessionLog(api)
            session = await log.initialize(task, session_id)
    """

    TABLE = "/rest/v1/upload_logs"

    def __init__(
        self,
        api: HTTPAPIClient,
        dedup_window: float = DEFAULT_DEDUP_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._api = api
        self._dedup_window = timedelta(seconds=dedup_window)
        self._clock = clock

    async def initialize(self, task: UploadTask, session_id: str) -> UploadSessionRecord:
        now = self._clock()
        params = {
            "select": "session_id,status",
            "file_type": f"eq.{task.kind.value}",
            "status": f"neq.{SessionStatus.FAILED.value}",
            "created_at": f"gte.{(now - self._dedup_window).isoformat()}",
        }
        if task.fingerprint:
            params["file_hash"] = f"eq.{task.fingerprint}"
        else:
            params["file_name"] = f"eq.{task.file_name}"
            params["file_size"] = f"eq.{task.size}"
        params["sector_id"] = f"eq.{task.target_id}" if task.target_id else "is.null"
        params["boulder_id"] = f"eq.{task.record_id}" if task.record_id else "is.null"

        response = await self._api.get(self.TABLE, params=params)
        existing = response.json()
        if existing:
            raise DuplicateUploadError(
                f"{task.file_name} is already being uploaded or was uploaded recently "
                f"(session {existing[0].get('session_id')}, {existing[0].get('status')})"
            )

        session = UploadSessionRecord(
            id=session_id,
            kind=task.kind,
            file_name=task.file_name,
            file_size=task.size,
            fingerprint=task.fingerprint,
            target_id=task.target_id,
            record_id=task.record_id,
            created_at=now,
            updated_at=now,
        )
        await self._api.post(
            self.TABLE,
            json={
                "session_id": session_id,
                "boulder_id": task.record_id,
                "sector_id": task.target_id,
                "file_type": task.kind.value,
                "file_name": task.file_name,
                "file_size": task.size,
                "file_hash": task.fingerprint,
                "status": session.status.value,
                "progress": 0,
                "retry_count": 0,
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            },
            headers={"Prefer": "return=minimal"},
        )
        return session

    async def update_status(
        self,
        session: UploadSessionRecord,
        status: SessionStatus,
        progress: Optional[float] = None,
        error: Optional[str] = None,
        result_url: Optional[str] = None,
    ) -> None:
        _check_transition(session, status)
        now = self._clock()
        updates = {"status": status.value, "updated_at": now.isoformat()}
        if progress is not None:
            updates["progress"] = round(progress, 2)
        if error is not None:
            updates["error"] = error
        if result_url is not None:
            updates["result_url"] = result_url
        await self._patch(session.id, updates)
        _apply(session, status, progress, error, result_url, now)

    async def increment_retry(self, session: UploadSessionRecord) -> None:
        session.retry_count += 1
        session.updated_at = self._clock()
        await self._patch(session.id, {
            "retry_count": session.retry_count,
            "updated_at": session.updated_at.isoformat(),
        })

    async def list_active(self) -> List[UploadSessionRecord]:
        active = ",".join(s.value for s in SessionStatus if not s.is_terminal)
        response = await self._api.get(self.TABLE, params={
            "select": "*",
            "status": f"in.({active})",
            "order": "created_at.desc",
        })
        return [self._from_row(row) for row in response.json()]

    async def mark_stale_as_failed(self, max_age: float) -> int:
        now = self._clock()
        cutoff = now - timedelta(seconds=max_age)
        stale = ",".join(s.value for s in STALE_STATUSES)
        response = await self._api.patch(
            self.TABLE,
            json={"status": SessionStatus.FAILED.value, "error": STALE_MESSAGE, "updated_at": now.isoformat()},
            params={
                "status": f"in.({stale})",
                "updated_at": f"lt.{cutoff.isoformat()}",
                "select": "session_id",
            },
            headers={"Prefer": "return=representation"},
        )
        count = len(response.json())
        if count:
            logger.info("Marked %d stale session(s) as failed", count)
        return count

    async def _patch(self, session_id: str, updates: Dict) -> None:
        await self._api.patch(
            self.TABLE,
            json=updates,
            params={"session_id": f"eq.{session_id}"},
            headers={"Prefer": "return=minimal"},
        )

    @staticmethod
    def _from_row(row: Dict) -> UploadSessionRecord:
        def _ts(value: Optional[str]) -> datetime:
            return datetime.fromisoformat(value) if value else _utcnow()

        return UploadSessionRecord(
            id=row["session_id"],
            kind=UploadKind(row.get("file_type", UploadKind.VIDEO.value)),
            file_name=row.get("file_name") or "",
            file_size=int(row.get("file_size") or 0),
            status=SessionStatus(row.get("status", SessionStatus.PENDING.value)),
            progress=float(row.get("progress") or 0),
            retry_count=int(row.get("retry_count") or 0),
            error_message=row.get("error"),
            result_url=row.get("result_url"),
            fingerprint=row.get("file_hash"),
            target_id=row.get("sector_id"),
            record_id=row.get("boulder_id"),
            created_at=_ts(row.get("created_at")),
            updated_at=_ts(row.get("updated_at")),
        )

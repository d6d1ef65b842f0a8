"""Session lifecycle, per-record outcomes and progress tracking."""

import asyncio
import copy
import inspect
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from enum import Enum

from ..exceptions import InvalidStateTransitionError, SessionNotFoundError
from ..models.migration import MigrationProgress, MigrationSession, MigrationStatus
from ..models.record import MigrationRecord, RecordStatus

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    CREATED = "session_created"
    STARTED = "session_started"
    PROGRESS = "progress"
    COMPLETED = "session_completed"
    FAILED = "session_failed"
    CANCELLED = "session_cancelled"


SessionListener = Callable[[SessionEvent, MigrationSession, Dict[str, Any]], Any]


class SessionStore(ABC):
    """Persistence for sessions and their records."""

    @abstractmethod
    async def save_session(self, session: MigrationSession) -> None:
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[MigrationSession]:
        pass

    @abstractmethod
    async def list_sessions(self, project_id: Optional[str] = None) -> List[MigrationSession]:
        pass

    @abstractmethod
    async def add_record(self, record: MigrationRecord) -> None:
        pass

    @abstractmethod
    async def get_records(
        self,
        session_id: str,
        status: Optional[RecordStatus] = None
    ) -> List[MigrationRecord]:
        pass


class InMemorySessionStore(SessionStore):
    """Session store backed by dictionaries. Contents live as long as the process."""

    def __init__(self):
        self._sessions: Dict[str, MigrationSession] = {}
        self._records: Dict[str, List[MigrationRecord]] = {}

    async def save_session(self, session: MigrationSession) -> None:
        self._sessions[session.id] = session

    async def get_session(self, session_id: str) -> Optional[MigrationSession]:
        return self._sessions.get(session_id)

    async def list_sessions(self, project_id: Optional[str] = None) -> List[MigrationSession]:
        return [
            s for s in self._sessions.values()
            if project_id is None or s.project_id == project_id
        ]

    async def add_record(self, record: MigrationRecord) -> None:
        self._records.setdefault(record.session_id, []).append(record)

    async def get_records(
        self,
        session_id: str,
        status: Optional[RecordStatus] = None
    ) -> List[MigrationRecord]:
        records = self._records.get(session_id, [])
        if status is None:
            return list(records)
        return [r for r in records if r.status == status]


class SessionTracker:
    """
    The only writer of migration sessions.

    Lifecycle: PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED.
    Terminal sessions are immutable. Appending a record and bumping the
    session counters happen as one unit under a lock, so
    processed == successful + failed always holds.
    """

    def __init__(self, store: Optional[SessionStore] = None):
        self.store = store or InMemorySessionStore()
        self._lock = asyncio.Lock()
        self._listeners: List[SessionListener] = []

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event: SessionEvent, session: MigrationSession, payload: Optional[Dict[str, Any]] = None) -> None:
        snapshot = copy.deepcopy(session)
        for listener in list(self._listeners):
            # A failing listener never changes the session it was told about
            try:
                result = listener(event, snapshot, payload or {})
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Session listener failed on {event.value} for {session.id}: {e}")

    async def _require(self, session_id: str) -> MigrationSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @staticmethod
    def _require_running(session: MigrationSession, action: str) -> None:
        if session.status != MigrationStatus.RUNNING:
            raise InvalidStateTransitionError(session.id, session.status.value, action)

    async def create_session(self, project_id: str, object_type: str) -> MigrationSession:
        """Create a PENDING session for one object type."""
        session = MigrationSession(project_id=project_id, object_type=object_type)
        await self.store.save_session(session)
        logger.info(f"Created session {session.id} for {object_type}")
        await self._emit(SessionEvent.CREATED, session)
        return copy.deepcopy(session)

    async def start_session(self, session_id: str) -> MigrationSession:
        async with self._lock:
            session = await self._require(session_id)
            if session.status != MigrationStatus.PENDING:
                raise InvalidStateTransitionError(session_id, session.status.value, MigrationStatus.RUNNING.value)
            session.status = MigrationStatus.RUNNING
            session.started_at = datetime.utcnow()
            await self.store.save_session(session)
        await self._emit(SessionEvent.STARTED, session)
        return copy.deepcopy(session)

    async def complete_session(self, session_id: str) -> MigrationSession:
        async with self._lock:
            session = await self._require(session_id)
            if session.status != MigrationStatus.RUNNING:
                raise InvalidStateTransitionError(session_id, session.status.value, MigrationStatus.COMPLETED.value)
            session.status = MigrationStatus.COMPLETED
            session.completed_at = datetime.utcnow()
            await self.store.save_session(session)
        logger.info(
            f"Session {session_id} completed: {session.successful_records} succeeded, "
            f"{session.failed_records} failed"
        )
        await self._emit(SessionEvent.COMPLETED, session, await self.generate_summary(session_id))
        return copy.deepcopy(session)

    async def fail_session(self, session_id: str, error: str, details: Optional[Dict[str, Any]] = None) -> MigrationSession:
        return await self._terminate(session_id, MigrationStatus.FAILED, error, details, SessionEvent.FAILED)

    async def cancel_session(self, session_id: str, reason: str = "Migration cancelled") -> MigrationSession:
        return await self._terminate(session_id, MigrationStatus.CANCELLED, reason, None, SessionEvent.CANCELLED)

    async def _terminate(
        self,
        session_id: str,
        status: MigrationStatus,
        message: str,
        details: Optional[Dict[str, Any]],
        event: SessionEvent
    ) -> MigrationSession:
        async with self._lock:
            session = await self._require(session_id)
            if session.status.is_terminal:
                raise InvalidStateTransitionError(session_id, session.status.value, status.value)
            session.status = status
            session.completed_at = datetime.utcnow()
            session.error_log.append(self._error_entry(message, details=details))
            await self.store.save_session(session)
        logger.warning(f"Session {session_id} {status.value}: {message}")
        await self._emit(event, session, {"message": message})
        return copy.deepcopy(session)

    async def update_progress(
        self,
        session_id: str,
        total_records: Optional[int] = None,
        current_batch: Optional[int] = None
    ) -> MigrationProgress:
        async with self._lock:
            session = await self._require(session_id)
            if session.status.is_terminal:
                raise InvalidStateTransitionError(session_id, session.status.value, "progress")
            if total_records is not None:
                session.total_records = total_records
            if current_batch is not None:
                session.current_batch = current_batch
            await self.store.save_session(session)
        progress = self._progress(session)
        await self._emit(SessionEvent.PROGRESS, session, progress.to_dict())
        return progress

    async def record_success(
        self,
        session_id: str,
        source_record_id: str,
        target_record_id: Optional[str],
        record_data: Optional[Dict[str, Any]] = None,
        already_existed: bool = False
    ) -> MigrationRecord:
        record = MigrationRecord(
            session_id=session_id,
            source_record_id=source_record_id,
            target_record_id=target_record_id,
            status=RecordStatus.SUCCESS,
            record_data=record_data or {},
            already_existed=already_existed,
        )
        async with self._lock:
            session = await self._require(session_id)
            self._require_running(session, "record_success")
            await self.store.add_record(record)
            session.processed_records += 1
            session.successful_records += 1
            await self.store.save_session(session)
        return record

    async def record_failure(
        self,
        session_id: str,
        source_record_id: str,
        error_message: str,
        record_data: Optional[Dict[str, Any]] = None
    ) -> MigrationRecord:
        record = MigrationRecord(
            session_id=session_id,
            source_record_id=source_record_id,
            status=RecordStatus.FAILED,
            error_message=error_message,
            record_data=record_data or {},
        )
        async with self._lock:
            session = await self._require(session_id)
            self._require_running(session, "record_failure")
            await self.store.add_record(record)
            session.processed_records += 1
            session.failed_records += 1
            await self.store.save_session(session)
        return record

    async def add_error(
        self,
        session_id: str,
        message: str,
        record_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Append an entry to a session's error log."""
        async with self._lock:
            session = await self._require(session_id)
            if session.status.is_terminal:
                raise InvalidStateTransitionError(session_id, session.status.value, "add_error")
            session.error_log.append(self._error_entry(message, record_id, details))
            await self.store.save_session(session)

    @staticmethod
    def _error_entry(
        message: str,
        record_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat(),
            "message": message,
        }
        if record_id:
            entry["record_id"] = record_id
        if details:
            entry["details"] = details
        return entry

    async def get_session(self, session_id: str) -> MigrationSession:
        return copy.deepcopy(await self._require(session_id))

    async def list_sessions(self, project_id: Optional[str] = None) -> List[MigrationSession]:
        return [copy.deepcopy(s) for s in await self.store.list_sessions(project_id)]

    async def get_records(self, session_id: str, status: Optional[RecordStatus] = None) -> List[MigrationRecord]:
        await self._require(session_id)
        return await self.store.get_records(session_id, status)

    async def get_failed_records(self, session_id: str) -> List[MigrationRecord]:
        """Get the failed records of a session, e.g. to retry them."""
        return await self.get_records(session_id, RecordStatus.FAILED)

    async def get_progress(self, session_id: str) -> MigrationProgress:
        return self._progress(await self._require(session_id))

    @staticmethod
    def _progress(session: MigrationSession) -> MigrationProgress:
        """
        Compute progress and ETA for a session.

        Percent is processed / total (0 while total is 0). ETA is
        (total - processed) * (elapsed / processed), undefined until at
        least one record has been processed.
        """
        percent = 0
        if session.total_records > 0:
            percent = int(round(session.processed_records / session.total_records * 100))

        elapsed = 0.0
        if session.started_at:
            end = session.completed_at or datetime.utcnow()
            elapsed = (end - session.started_at).total_seconds()

        eta = None
        if session.processed_records > 0 and not session.status.is_terminal:
            remaining = max(session.total_records - session.processed_records, 0)
            eta = remaining * (elapsed / session.processed_records)

        return MigrationProgress(
            session_id=session.id,
            object_type=session.object_type,
            status=session.status,
            total_records=session.total_records,
            processed_records=session.processed_records,
            successful_records=session.successful_records,
            failed_records=session.failed_records,
            percent_complete=percent,
            current_batch=session.current_batch,
            elapsed_seconds=elapsed,
            estimated_seconds_remaining=eta,
        )

    async def generate_summary(self, session_id: str) -> Dict[str, Any]:
        """Summarize a session's outcome and its most common errors."""
        session = await self._require(session_id)
        failed = await self.store.get_records(session_id, RecordStatus.FAILED)
        succeeded = await self.store.get_records(session_id, RecordStatus.SUCCESS)

        error_counts: Dict[str, int] = {}
        for record in failed:
            key = record.error_message or "Unknown error"
            error_counts[key] = error_counts.get(key, 0) + 1
        top_errors = sorted(error_counts.items(), key=lambda item: item[1], reverse=True)[:5]

        success_rate = 0.0
        if session.processed_records:
            success_rate = session.successful_records / session.processed_records

        return {
            "session_id": session.id,
            "object_type": session.object_type,
            "status": session.status.value,
            "total_records": session.total_records,
            "processed_records": session.processed_records,
            "successful_records": session.successful_records,
            "failed_records": session.failed_records,
            "already_existed": sum(1 for r in succeeded if r.already_existed),
            "success_rate": success_rate,
            "duration_seconds": session.duration_seconds,
            "top_errors": [{"message": m, "count": c} for m, c in top_errors],
            "error_log_size": len(session.error_log),
        }

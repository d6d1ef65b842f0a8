"""Migration execution and session endpoints."""

import logging
from typing import Dict, Optional
from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from ..models import (
    CancelResponse,
    MigrationExecuteRequest,
    MigrationExecuteResponse,
    MigrationResultResponse,
    ProgressResponse,
    RecordListResponse,
    RecordStatusEnum,
    SessionListResponse,
    SessionResponse,
)
from ...exceptions import SessionNotFoundError
from ...models.migration import MigrationProject, MigrationResult
from ...models.record import RecordStatus
from ...orchestrator import MigrationEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def _engine(request: Request) -> MigrationEngine:
    return request.app.state.engine


def _results(request: Request) -> Dict[str, MigrationResult]:
    return request.app.state.results


@router.post("/execute", response_model=MigrationExecuteResponse, status_code=202)
async def execute_migration(data: MigrationExecuteRequest, request: Request, background_tasks: BackgroundTasks):
    """Start a migration run in the background."""
    engine = _engine(request)
    if engine.is_running:
        raise HTTPException(status_code=409, detail="A migration is already running")

    project = data.to_project()
    if not project.object_types and not project.template_id:
        raise HTTPException(status_code=400, detail="object_types or template_id is required")

    background_tasks.add_task(run_migration_task, engine, project, _results(request))
    return MigrationExecuteResponse(status="started", project_id=project.id)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_migration(request: Request):
    """Cancel the running migration at its next batch boundary."""
    return CancelResponse(cancelled=_engine(request).cancel_migration())


@router.post("/rollback")
async def rollback_migration(request: Request):
    """Delete the records the last run created."""
    engine = _engine(request)
    if engine.is_running:
        raise HTTPException(status_code=409, detail="Cannot roll back while a migration is running")
    deleted = await engine.rollback()
    return {"status": "rolled_back", "deleted": deleted}


@router.get("/results/{project_id}", response_model=MigrationResultResponse)
async def get_result(project_id: str, request: Request):
    """Get the result of a finished run."""
    result = _results(request).get(project_id)
    if not result:
        raise HTTPException(status_code=404, detail="Result not found")
    return result.to_dict()


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request, project_id: Optional[str] = None):
    """List sessions, optionally for one project."""
    sessions = await _engine(request).tracker.list_sessions(project_id)
    return SessionListResponse(sessions=[s.to_dict() for s in sessions], total=len(sessions))


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, request: Request):
    """Get a session."""
    try:
        session = await _engine(request).tracker.get_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_dict()


@router.get("/sessions/{session_id}/progress", response_model=ProgressResponse)
async def get_progress(session_id: str, request: Request):
    """Get the progress of a session."""
    try:
        progress = await _engine(request).tracker.get_progress(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return progress.to_dict()


@router.get("/sessions/{session_id}/records", response_model=RecordListResponse)
async def get_records(session_id: str, request: Request, status: Optional[RecordStatusEnum] = None):
    """Get the record outcomes of a session."""
    record_status = RecordStatus(status.value) if status else None
    try:
        records = await _engine(request).tracker.get_records(session_id, record_status)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return RecordListResponse(records=[r.to_dict() for r in records], total=len(records))


async def run_migration_task(
    engine: MigrationEngine,
    project: MigrationProject,
    results: Dict[str, MigrationResult]
):
    """Background task running a migration and keeping its result."""
    result = await engine.execute_migration(project)
    results[project.id] = result
    logger.info(f"Migration {project.id} finished: success={result.success}")

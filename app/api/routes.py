from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException

from app.models.pydantic import (
    ProjectState,
    RevisionRun,
    StartRunRequest,
    Unit,
    UnitPayload,
)
from app.services.revision.errors import InvalidRunState, RunConflict, RunNotFound
from app.services.revision_service import RevisionService

router = APIRouter()
revision_service = RevisionService()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, RunNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (RunConflict, InvalidRunState)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# einfacher Health-Check
@router.get("/health")
async def health():
    return {"status": "ok"}


# ---------- Kapitel ---------- #

@router.put("/projects/{project_id}/units/{unit_id}", response_model=Unit)
def put_unit(project_id: int, unit_id: int, payload: UnitPayload):
    try:
        return revision_service.put_unit(project_id, unit_id, payload.content, payload.title)
    except Exception as e:
        raise _http_error(e)


@router.get("/projects/{project_id}/units/{unit_id}", response_model=Unit)
def get_unit(project_id: int, unit_id: int):
    unit = revision_service.get_unit(project_id, unit_id)
    if unit is None:
        raise HTTPException(status_code=404, detail=f"Kapitel {unit_id} nicht gefunden")
    return unit


@router.get("/projects/{project_id}/state", response_model=ProjectState)
def get_state(project_id: int):
    return revision_service.get_state(project_id)


# Operator-Override für gesperrte Kapitel
@router.post("/projects/{project_id}/units/{unit_id}/reset-corrections", response_model=ProjectState)
def reset_corrections(project_id: int, unit_id: int):
    try:
        return revision_service.reset_correction_count(project_id, unit_id)
    except Exception as e:
        raise _http_error(e)


# ---------- Revision-Runs ---------- #

# legt den Run an und führt ihn im Hintergrund aus
@router.post("/projects/{project_id}/revision-runs", response_model=RevisionRun, status_code=202)
def start_revision_run(
    project_id: int,
    background_tasks: BackgroundTasks,
    req: Optional[StartRunRequest] = None,
):
    try:
        run = revision_service.start_run(project_id, req.parameters if req else None)
    except Exception as e:
        raise _http_error(e)
    background_tasks.add_task(revision_service.execute_run, run.run_id)
    return run


@router.get("/revision-runs/{run_id}", response_model=RevisionRun)
def get_revision_run(run_id: int):
    try:
        return revision_service.get_run(run_id)
    except Exception as e:
        raise _http_error(e)


@router.post("/revision-runs/{run_id}/cancel", response_model=RevisionRun)
def cancel_revision_run(run_id: int):
    try:
        return revision_service.cancel_run(run_id)
    except Exception as e:
        raise _http_error(e)


@router.post("/revision-runs/{run_id}/retry", response_model=RevisionRun, status_code=202)
def retry_revision_run(run_id: int, background_tasks: BackgroundTasks):
    try:
        run = revision_service.retry_run(run_id)
    except Exception as e:
        raise _http_error(e)
    background_tasks.add_task(revision_service.execute_run, run.run_id)
    return run

import json
import logging
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import get_db
from routes.deps import get_current_user, get_job_store, get_notifier, get_object_storage
from schemas.job import (
    DocumentUpdateRequest,
    JobCreateRequest,
    JobStatus,
    TemplateResponse,
    UploadedRequest,
)
from services.errors import InvalidTransition, JobNotFound
from services.job_store import JobStore, job_to_dict
from services.notifier import ChangeNotifier
from services.storage import ObjectStorage
from services.templates import template_for

router = APIRouter()
logger = logging.getLogger(__name__)


def _load(store: JobStore, job_id: str, user_id: str):
    try:
        return store.get(job_id, owner_id=user_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/api/jobs", status_code=201)
def create_job(
    req: JobCreateRequest,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
) -> dict:
    title = req.title or (Path(req.file_name).stem if req.file_name else "Untitled")
    try:
        job_id = store.create(user_id, title, job_id=req.id, file_name=req.file_name)
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Job {req.id} already exists")
    return job_to_dict(store.get(job_id))


@router.get("/api/jobs")
def list_jobs(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
) -> dict:
    return {"jobs": [job_to_dict(j) for j in store.list_recent(user_id, limit)]}


@router.get("/api/jobs/latest")
def latest_job(
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
) -> dict:
    job = store.latest(user_id)
    if job is None:
        raise HTTPException(status_code=404, detail="No jobs for this user")
    return job_to_dict(job)


@router.get("/api/jobs/events")
def stream_job_events(
    user_id: str = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
) -> StreamingResponse:
    """Server-sent events carrying every change to the caller's jobs."""

    def _events():
        connected = False
        for event in notifier.listen(user_id):
            if event is None:
                yield ": keep-alive\n\n" if connected else ": connected\n\n"
                connected = True
                continue
            yield f"event: change\ndata: {json.dumps(event)}\n\n"

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/api/jobs/{job_id}")
def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
) -> dict:
    return job_to_dict(_load(store, job_id, user_id))


@router.post("/api/jobs/{job_id}/uploaded")
def mark_uploaded(
    job_id: str,
    req: UploadedRequest,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
    storage: ObjectStorage = Depends(get_object_storage),
) -> dict:
    """Record the finished upload and hand back a fresh read credential."""
    _load(store, job_id, user_id)
    expected = f"audios/{user_id}/{job_id}"
    if req.storage_path != expected and not req.storage_path.startswith(f"{expected}."):
        raise HTTPException(status_code=400, detail="storagePath does not belong to this job")

    try:
        job = store.update(
            job_id,
            {"status": JobStatus.UPLOADED.value, "audio_path": req.storage_path},
            owner_id=user_id,
        )
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    return {
        "job": job_to_dict(job),
        "fetchUrl": storage.issue_fetch_credential(req.storage_path),
    }


@router.patch("/api/jobs/{job_id}/document")
def update_document(
    job_id: str,
    req: DocumentUpdateRequest,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
) -> dict:
    """User edits of the finished minutes. Never re-triggers a stage."""
    job = _load(store, job_id, user_id)
    if job.status not in (JobStatus.GENERATED.value, JobStatus.COMPLETE.value):
        raise HTTPException(status_code=409, detail="Document is not available for editing yet")

    updates = req.model_dump(exclude_none=True)
    if not updates:
        return job_to_dict(job)
    job = store.update(job_id, updates, owner_id=user_id)
    logger.info("Job %s: document edited (%s)", job_id, ", ".join(sorted(updates)))
    return job_to_dict(job)


@router.post("/api/jobs/{job_id}/complete")
def complete_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
    storage: ObjectStorage = Depends(get_object_storage),
) -> dict:
    """Persist the terminal success state, then drop the source audio."""
    job = _load(store, job_id, user_id)
    if job.status != JobStatus.GENERATED.value:
        raise HTTPException(status_code=409, detail=f"Job is {job.status}, expected generated")
    try:
        job = store.update(job_id, {"status": JobStatus.COMPLETE.value}, owner_id=user_id)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    if job.audio_path:
        try:
            storage.delete(job.audio_path)
        except Exception as exc:
            logger.warning("Job %s: failed to delete source audio %s: %s", job_id, job.audio_path, exc)

    return job_to_dict(job)


@router.get("/api/config")
def get_config(
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    template = template_for(db, user_id)
    if template is None:
        raise HTTPException(status_code=404, detail="No template assigned to this user")
    return TemplateResponse(
        name=template.name,
        speaker_context=template.speaker_context,
        default_prompt=template.default_prompt,
        docx_function=template.docx_function,
        has_transcription_key=bool(template.deepgram_api_key),
        has_generation_key=bool(template.gemini_api_key),
    ).to_wire()

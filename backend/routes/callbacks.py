import logging
from typing import Callable, Optional, Type, TypeVar

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import get_db
from routes.deps import (
    get_dispatcher,
    get_job_store,
    get_transcription_client_factory,
    verify_callback_secret,
)
from schemas.job import JobStatus
from schemas.stages import DraftCallback, SpeakersCallback
from services.deepgram import DeepgramClient, build_transcript
from services.dispatch import DRAFT_DOCUMENT, IDENTIFY_SPEAKERS, StageDispatcher
from services.drafting import validate_document_body
from services.errors import ContentValidityError, InvalidTransition, JobNotFound, failure_reason
from services.job_store import JobStore
from services.templates import resolve_engine_key, template_for

router = APIRouter(dependencies=[Depends(verify_callback_secret)])
logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _parse(payload: dict, model: Type[M]) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.error("Incomplete %s payload (jobId=%s): %s", model.__name__, payload.get("jobId"), exc)
        raise HTTPException(status_code=400, detail="Incomplete callback payload")


def _trigger(dispatcher: StageDispatcher, store: JobStore, stage: str, job_id: str) -> None:
    """Start the next stage; a failure to even enqueue it fails the job."""
    try:
        dispatcher.dispatch(stage, job_id)
    except Exception as exc:
        logger.exception("Job %s: could not trigger %s", job_id, stage)
        store.mark_failed(job_id, f"Could not start {stage.replace('_', ' ')}: {exc}")


def _duplicate(job_id: str, exc: InvalidTransition) -> dict:
    logger.warning("Job %s: ignoring late or duplicate callback (%s)", job_id, exc)
    return {"success": True, "duplicate": True}


def _tag_of(payload: dict) -> Optional[str]:
    tags = (payload.get("metadata") or {}).get("tags") or []
    return tags[0] if tags and isinstance(tags[0], str) else None


@router.post("/api/transcribe-callback")
def transcribe_callback(
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    store: JobStore = Depends(get_job_store),
    dispatcher: StageDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    client_factory: Callable[[str], DeepgramClient] = Depends(get_transcription_client_factory),
) -> dict:
    job_id = _tag_of(payload)
    if not job_id:
        logger.error("Transcription callback without a job tag: metadata=%s", payload.get("metadata"))
        raise HTTPException(status_code=400, detail="Missing job tag in callback metadata")
    logger.info("Job %s: transcription callback received", job_id)

    try:
        job = store.get(job_id)
        request_id = job.engine_request_id or (payload.get("metadata") or {}).get("request_id")
        if not request_id:
            raise ValueError("no transcription request id recorded for this job")

        template = template_for(db, job.owner_id)
        api_key = resolve_engine_key(
            None,
            template.deepgram_api_key if template else None,
            settings.deepgram_api_key,
            "Deepgram",
        )
        result = client_factory(api_key).fetch_result(request_id)
        transcript = build_transcript(result)
        logger.info("Job %s: transcript formatted (%d chars)", job_id, len(transcript))

        store.update(job_id, {
            "transcript": transcript,
            "engine_request_id": request_id,
            "status": JobStatus.TRANSCRIBED.value,
        })
    except InvalidTransition as exc:
        return _duplicate(job_id, exc)
    except JobNotFound:
        logger.error("Job %s: transcription callback for unknown job", job_id)
        raise HTTPException(status_code=404, detail="Job not found")
    except Exception as exc:
        logger.exception("Job %s: transcription callback failed", job_id)
        store.mark_failed(job_id, failure_reason("Transcription", exc))
        raise HTTPException(status_code=500, detail=str(exc))

    _trigger(dispatcher, store, IDENTIFY_SPEAKERS, job_id)
    return {"success": True, "jobId": job_id}


@router.post("/api/identify-speakers-callback")
def identify_speakers_callback(
    payload: dict = Body(...),
    store: JobStore = Depends(get_job_store),
    dispatcher: StageDispatcher = Depends(get_dispatcher),
) -> dict:
    body = _parse(payload, SpeakersCallback)
    logger.info("Job %s: speaker identification callback received", body.job_id)

    try:
        store.update(body.job_id, {
            "diarized_transcript": body.diarized_transcript,
            "summary": body.summary,
            "speakers": [s.model_dump() for s in body.speakers],
            "status": JobStatus.DIARIZED.value,
        })
    except InvalidTransition as exc:
        return _duplicate(body.job_id, exc)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except Exception as exc:
        logger.exception("Job %s: failed to record speaker identification", body.job_id)
        store.mark_failed(body.job_id, failure_reason("Speaker identification", exc))
        raise HTTPException(status_code=500, detail=str(exc))

    _trigger(dispatcher, store, DRAFT_DOCUMENT, body.job_id)
    return {"success": True, "jobId": body.job_id}


@router.post("/api/generate-document-callback")
def generate_document_callback(
    payload: dict = Body(...),
    store: JobStore = Depends(get_job_store),
) -> dict:
    body = _parse(payload, DraftCallback)
    logger.info("Job %s: document draft callback received", body.job_id)

    try:
        document_body = validate_document_body(body.document_body)
    except ContentValidityError as exc:
        store.mark_failed(body.job_id, failure_reason("Document drafting", exc))
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        store.update(body.job_id, {
            "document_body": document_body,
            "agreements": body.agreements,
            "status": JobStatus.GENERATED.value,
        })
    except InvalidTransition as exc:
        return _duplicate(body.job_id, exc)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except Exception as exc:
        logger.exception("Job %s: failed to record document draft", body.job_id)
        store.mark_failed(body.job_id, failure_reason("Document drafting", exc))
        raise HTTPException(status_code=500, detail=str(exc))

    # Last automatic stage; export is driven by the client.
    logger.info("Job %s: document generated", body.job_id)
    return {"success": True, "jobId": body.job_id}

import logging
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import get_db
from routes.deps import (
    callback_url,
    get_current_user,
    get_job_store,
    get_llm_client_factory,
    get_object_storage,
    get_renderer,
    get_transcription_client_factory,
)
from schemas.job import JobStatus
from schemas.stages import (
    DraftDocumentRequest,
    ExportRequest,
    IdentifySpeakersRequest,
    TranscribeRequest,
)
from services.deepgram import DeepgramClient
from services.drafting import DocumentDrafter
from services.errors import (
    ConfigurationError,
    ContentValidityError,
    EngineError,
    InvalidTransition,
    JobNotFound,
    failure_reason,
)
from services.job_store import JobStore
from services.llm_client import GeminiClient
from services.renderer import DOCX_CONTENT_TYPE, DocumentRenderer, export_filename
from services.speakers import SpeakerIdentifier
from services.storage import ObjectStorage, document_path_for
from services.templates import resolve_engine_key, template_for

router = APIRouter()
logger = logging.getLogger(__name__)


def _engine_key(explicit, template_key, fallback, engine: str) -> str:
    try:
        return resolve_engine_key(explicit, template_key, fallback, engine)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/api/transcribe", status_code=202)
def transcribe(
    req: TranscribeRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
    client_factory: Callable[[str], DeepgramClient] = Depends(get_transcription_client_factory),
) -> dict:
    try:
        job = store.get(req.job_id, owner_id=user_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != JobStatus.UPLOADED.value:
        raise HTTPException(status_code=409, detail=f"Job is {job.status}, expected uploaded")

    template = template_for(db, user_id)
    api_key = _engine_key(
        req.engine_api_key,
        template.deepgram_api_key if template else None,
        settings.deepgram_api_key,
        "Deepgram",
    )

    try:
        request_id = client_factory(api_key).submit(
            req.audio_url,
            tag=req.job_id,
            callback_url=callback_url(settings, "/api/transcribe-callback"),
        )
    except EngineError as exc:
        logger.error("Job %s: transcription rejected: %s", req.job_id, exc)
        store.mark_failed(req.job_id, failure_reason("Transcription", exc))
        raise HTTPException(status_code=502, detail=str(exc))

    try:
        store.update(
            req.job_id,
            {"status": JobStatus.TRANSCRIBING.value, "engine_request_id": request_id},
        )
    except InvalidTransition:
        # The completion callback beat us here; keep its status.
        store.update(req.job_id, {"engine_request_id": request_id})

    logger.info("Job %s: transcription accepted (request_id=%s)", req.job_id, request_id)
    return {"accepted": True, "jobId": req.job_id}


@router.post("/api/identify-speakers")
def identify_speakers(
    req: IdentifySpeakersRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    llm_factory: Callable[[str], GeminiClient] = Depends(get_llm_client_factory),
) -> dict:
    if not req.transcript.strip():
        raise HTTPException(status_code=400, detail="transcript must not be empty")

    template = template_for(db, user_id)
    api_key = _engine_key(
        req.engine_api_key,
        template.gemini_api_key if template else None,
        settings.gemini_api_key,
        "Gemini",
    )
    try:
        result = SpeakerIdentifier(llm_factory(api_key)).identify(req.transcript, req.context_hints)
    except EngineError as exc:
        logger.error("Speaker identification failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc))
    return result.to_wire()


@router.post("/api/generate-document")
def generate_document(
    req: DraftDocumentRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    llm_factory: Callable[[str], GeminiClient] = Depends(get_llm_client_factory),
) -> dict:
    if not req.transcript.strip():
        raise HTTPException(status_code=400, detail="transcript must not be empty")

    template = template_for(db, user_id)
    api_key = _engine_key(
        req.engine_api_key,
        template.gemini_api_key if template else None,
        settings.gemini_api_key,
        "Gemini",
    )
    instruction = req.custom_instruction or (template.default_prompt if template else None)
    try:
        draft = DocumentDrafter(llm_factory(api_key)).draft(req.transcript, req.speakers, instruction)
    except (EngineError, ContentValidityError) as exc:
        logger.error("Document drafting failed: %s", exc)
        raise HTTPException(status_code=502, detail=failure_reason("Document drafting", exc))
    return draft.to_wire()


@router.post("/api/export")
def export_document(
    req: ExportRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: JobStore = Depends(get_job_store),
    storage: ObjectStorage = Depends(get_object_storage),
    renderer: DocumentRenderer = Depends(get_renderer),
    settings: Settings = Depends(get_settings),
):
    """Render the minutes to DOCX and stream the file back."""
    if req.owner_id != user_id:
        raise HTTPException(status_code=401, detail="ownerId does not match the session")
    if not req.document_body.strip():
        raise HTTPException(status_code=400, detail="documentBody must not be empty")

    template = template_for(db, user_id)
    if template is None:
        raise HTTPException(status_code=404, detail="User or template not found")
    function_name = template.docx_function or settings.renderer_function

    job = None
    if req.job_id:
        try:
            job = store.get(req.job_id, owner_id=user_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Job not found")

    try:
        data = renderer.render(function_name, req.document_body)
    except EngineError as exc:
        logger.error("Export failed for owner %s: %s", user_id, exc)
        raise HTTPException(status_code=502, detail=f"Document server error: {exc}")

    if job is not None:
        path = document_path_for(user_id, job.id)
        try:
            storage.write(path, data, DOCX_CONTENT_TYPE)
            store.update(job.id, {"export_path": path}, owner_id=user_id)
        except Exception as exc:
            logger.warning("Job %s: failed to archive exported document: %s", job.id, exc)

    title = req.title or (job.title if job is not None else None)
    return Response(
        content=data,
        media_type=DOCX_CONTENT_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{export_filename(title)}"'},
    )

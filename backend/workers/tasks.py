import logging
from urllib.parse import quote

from config import Settings, get_settings
from database import SessionLocal
from schemas.job import JobStatus, Speaker
from services import http
from services.drafting import DocumentDrafter
from services.errors import InvalidTransition, JobNotFound, failure_reason
from services.job_store import JobStore
from services.llm_client import GeminiClient
from services.notifier import ChangeNotifier
from services.speakers import SpeakerIdentifier
from services.templates import resolve_engine_key, template_for

logger = logging.getLogger(__name__)

CALLBACK_TIMEOUT_SEC = 60


def _job_store(db, settings: Settings) -> JobStore:
    return JobStore(db, ChangeNotifier.from_settings(settings))


def deliver_callback(settings: Settings, path: str, payload: dict) -> None:
    """POST a stage result to its callback endpoint; non-2xx raises EngineError."""
    url = f"{settings.public_base_url.rstrip('/')}{path}?secret={quote(settings.callback_secret)}"
    http.post_json(url, payload, timeout=CALLBACK_TIMEOUT_SEC, label=f"callback {path}")


def run_speaker_identification(job_id: str) -> None:
    settings = get_settings()
    db = SessionLocal()
    store = _job_store(db, settings)
    try:
        job = store.update(job_id, {"status": JobStatus.DIARIZING.value})
        if not job.transcript:
            raise ValueError("job has no transcript to identify speakers in")

        template = template_for(db, job.owner_id)
        api_key = resolve_engine_key(
            None,
            template.gemini_api_key if template else None,
            settings.gemini_api_key,
            "Gemini",
        )
        identifier = SpeakerIdentifier(GeminiClient.from_settings(settings, api_key))
        result = identifier.identify(
            job.transcript,
            template.speaker_context if template else None,
        )

        deliver_callback(
            settings,
            "/api/identify-speakers-callback",
            {"jobId": job_id, **result.to_wire()},
        )
        logger.info("Job %s: speaker identification delivered", job_id)

    except (InvalidTransition, JobNotFound) as exc:
        # Job moved on (duplicate trigger) or failed meanwhile; nothing to record.
        logger.warning("Job %s: skipping speaker identification: %s", job_id, exc)
    except Exception as exc:
        logger.exception("Job %s: speaker identification failed", job_id)
        store.mark_failed(job_id, failure_reason("Speaker identification", exc))
    finally:
        db.close()


def run_document_drafting(job_id: str) -> None:
    settings = get_settings()
    db = SessionLocal()
    store = _job_store(db, settings)
    try:
        job = store.update(job_id, {"status": JobStatus.GENERATING.value})
        if not job.diarized_transcript:
            raise ValueError("job has no diarized transcript to draft from")

        template = template_for(db, job.owner_id)
        api_key = resolve_engine_key(
            None,
            template.gemini_api_key if template else None,
            settings.gemini_api_key,
            "Gemini",
        )
        drafter = DocumentDrafter(GeminiClient.from_settings(settings, api_key))
        speakers = [Speaker.model_validate(s) for s in (job.speakers or [])]
        draft = drafter.draft(
            job.diarized_transcript,
            speakers,
            template.default_prompt if template else None,
        )

        deliver_callback(
            settings,
            "/api/generate-document-callback",
            {"jobId": job_id, **draft.to_wire()},
        )
        logger.info("Job %s: document draft delivered", job_id)

    except (InvalidTransition, JobNotFound) as exc:
        logger.warning("Job %s: skipping document drafting: %s", job_id, exc)
    except Exception as exc:
        logger.exception("Job %s: document drafting failed", job_id)
        store.mark_failed(job_id, failure_reason("Document drafting", exc))
    finally:
        db.close()


def mark_stage_failed(job, connection, exc_type, exc_value, traceback) -> None:
    """rq on_failure hook for crashes the stage task could not record itself."""
    job_id = job.args[0] if job.args else None
    if job_id is None:
        logger.error("rq job %s failed without a job id: %s", job.id, exc_value)
        return
    settings = get_settings()
    db = SessionLocal()
    try:
        _job_store(db, settings).mark_failed(job_id, f"Background stage crashed: {exc_value}")
    finally:
        db.close()

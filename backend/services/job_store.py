import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Job
from schemas.job import JobStatus, allowed_predecessors
from services.errors import InvalidTransition, JobNotFound
from services.notifier import ChangeNotifier

logger = logging.getLogger(__name__)

_PATCHABLE = frozenset({
    "title",
    "status",
    "file_name",
    "audio_path",
    "engine_request_id",
    "transcript",
    "diarized_transcript",
    "speakers",
    "summary",
    "document_body",
    "agreements",
    "export_path",
    "error",
})


def job_to_dict(job: Job) -> dict:
    return {
        "id": job.id,
        "ownerId": job.owner_id,
        "title": job.title,
        "status": job.status,
        "fileName": job.file_name,
        "audioPath": job.audio_path,
        "engineRequestId": job.engine_request_id,
        "transcript": job.transcript,
        "diarizedTranscript": job.diarized_transcript,
        "speakers": job.speakers,
        "summary": job.summary,
        "documentBody": job.document_body,
        "agreements": job.agreements,
        "exportPath": job.export_path,
        "error": job.error,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "updatedAt": job.updated_at.isoformat() if job.updated_at else None,
    }


class JobStore:
    """Persisted job records. Every mutation is a partial patch and is announced
    on the owner's change channel once committed."""

    def __init__(self, db: Session, notifier: Optional[ChangeNotifier] = None):
        self._db = db
        self._notifier = notifier

    def create(
        self,
        owner_id: str,
        title: str,
        job_id: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> str:
        job = Job(
            id=job_id or str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            file_name=file_name,
            status=JobStatus.UPLOADING.value,
        )
        self._db.add(job)
        try:
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(job)
        logger.info("Job %s: created for owner %s", job.id, owner_id)
        self._publish(owner_id, "insert", job_to_dict(job))
        return job.id

    def get(self, job_id: str, owner_id: Optional[str] = None) -> Job:
        query = self._db.query(Job).filter(Job.id == job_id)
        if owner_id is not None:
            query = query.filter(Job.owner_id == owner_id)
        job = query.first()
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def list_recent(self, owner_id: str, limit: int = 20) -> List[Job]:
        return (
            self._db.query(Job)
            .filter(Job.owner_id == owner_id)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .all()
        )

    def latest(self, owner_id: str) -> Optional[Job]:
        recent = self.list_recent(owner_id, limit=1)
        return recent[0] if recent else None

    def update(self, job_id: str, fields: dict, owner_id: Optional[str] = None) -> Job:
        """Apply ``fields`` as one atomic partial patch.

        A status change only lands if the stored status is one of its allowed
        predecessors; otherwise nothing is written and InvalidTransition is raised.
        """
        unknown = set(fields) - _PATCHABLE
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        job = self.get(job_id, owner_id)
        previous = job_to_dict(job)

        values = dict(fields)
        values["updated_at"] = datetime.now(timezone.utc)
        query = self._db.query(Job).filter(Job.id == job_id)
        if owner_id is not None:
            query = query.filter(Job.owner_id == owner_id)

        target = None
        if "status" in fields:
            target = JobStatus(fields["status"])
            values["status"] = target.value
            query = query.filter(Job.status.in_(allowed_predecessors(target)))

        updated = query.update(values, synchronize_session=False)
        if updated == 0:
            self._db.rollback()
            self._db.refresh(job)
            raise InvalidTransition(job_id, job.status, target.value if target else "?")
        self._db.commit()
        self._db.refresh(job)

        if target is not None:
            logger.info("Job %s: %s -> %s", job_id, previous["status"], job.status)
        self._publish(job.owner_id, "update", job_to_dict(job), previous)
        return job

    def mark_failed(self, job_id: str, reason: str) -> bool:
        """Best-effort move to the terminal error state. Never raises."""
        try:
            self._db.rollback()
            self.update(job_id, {"status": JobStatus.ERROR.value, "error": reason})
        except InvalidTransition as exc:
            logger.warning("Job %s: not marked failed, already %s", job_id, exc.current)
            return False
        except JobNotFound:
            logger.error("Job %s: cannot record failure, job not found (%s)", job_id, reason)
            return False
        except SQLAlchemyError:
            logger.exception("Job %s: failed to record failure reason %r", job_id, reason)
            self._db.rollback()
            return False
        logger.error("Job %s: FAILED: %s", job_id, reason)
        return True

    def _publish(self, owner_id: str, event_type: str, current: dict, previous: Optional[dict] = None) -> None:
        if self._notifier is not None:
            self._notifier.publish(owner_id, event_type, current, previous)

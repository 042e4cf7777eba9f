import logging

import redis
from rq import Queue

from config import Settings
from workers.tasks import (
    CALLBACK_TIMEOUT_SEC,
    mark_stage_failed,
    run_document_drafting,
    run_speaker_identification,
)

logger = logging.getLogger(__name__)

IDENTIFY_SPEAKERS = "identify_speakers"
DRAFT_DOCUMENT = "draft_document"

_STAGE_TASKS = {
    IDENTIFY_SPEAKERS: run_speaker_identification,
    DRAFT_DOCUMENT: run_document_drafting,
}

# Store writes and prompt building on top of the engine and callback calls
_JOB_TIMEOUT_MARGIN_SEC = 60


class StageDispatcher:
    """Hands the next pipeline stage to the worker queue without waiting for it.

    Failures inside the stage are recorded on the job by the task itself;
    crashes the task cannot catch go through ``mark_stage_failed``.
    """

    def __init__(self, queue: Queue, job_timeout: int = 180):
        self._queue = queue
        self.job_timeout = job_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "StageDispatcher":
        conn = redis.from_url(settings.redis_url)
        # A stage must outlive its slowest engine call plus the callback POST.
        job_timeout = settings.gemini_timeout_sec + CALLBACK_TIMEOUT_SEC + _JOB_TIMEOUT_MARGIN_SEC
        return cls(Queue(settings.queue_name, connection=conn), job_timeout=job_timeout)

    def dispatch(self, stage: str, job_id: str) -> str:
        task = _STAGE_TASKS[stage]
        rq_job = self._queue.enqueue(
            task, job_id, job_timeout=self.job_timeout, on_failure=mark_stage_failed
        )
        logger.info("Job %s: enqueued %s (rq job %s)", job_id, stage, rq_job.id)
        return rq_job.id

"""
Client-side state machine for one recording at a time.

The controller holds the local view of the active job, follows the
server's change events, resumes after a restart from the user's latest job
and drives the two steps the server does not: the raw upload and the export.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from requests.exceptions import RequestException

from client.api_client import APIClient, APIError, guess_content_type
from client.subscription import ReconnectingSubscription

logger = logging.getLogger(__name__)


class Step(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    DIARIZING = "diarizing"
    DIARIZED = "diarized"
    GENERATING = "generating"
    GENERATED = "generated"
    EXPORTING = "exporting"
    COMPLETE = "complete"
    ERROR = "error"


# Rough progress shown per step.
PROGRESS = {
    Step.IDLE: 0,
    Step.UPLOADING: 5,
    Step.UPLOADED: 15,
    Step.TRANSCRIBING: 25,
    Step.TRANSCRIBED: 40,
    Step.DIARIZING: 50,
    Step.DIARIZED: 65,
    Step.GENERATING: 75,
    Step.GENERATED: 90,
    Step.EXPORTING: 95,
    Step.COMPLETE: 100,
    Step.ERROR: 0,
}


# Forward order of the steps a job walks through; stale snapshots never move it back.
_ORDER = [
    Step.UPLOADING,
    Step.UPLOADED,
    Step.TRANSCRIBING,
    Step.TRANSCRIBED,
    Step.DIARIZING,
    Step.DIARIZED,
    Step.GENERATING,
    Step.GENERATED,
    Step.EXPORTING,
    Step.COMPLETE,
]


@dataclass
class ExportedDocument:
    filename: str
    content: bytes


class PipelineController:
    def __init__(
        self,
        client: APIClient,
        subscription_factory: Callable[..., ReconnectingSubscription] = ReconnectingSubscription,
        on_change: Optional[Callable[["PipelineController"], None]] = None,
    ):
        self.client = client
        self.on_change = on_change
        self.step = Step.IDLE
        self.job: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self.document: Optional[ExportedDocument] = None
        self.upload_in_progress = False
        self._exported: List[str] = []
        self._lock = threading.RLock()
        self._subscription = subscription_factory(
            client, on_event=self.handle_event, on_resync=self.resync
        )

    @property
    def job_id(self) -> Optional[str]:
        return self.job["id"] if self.job else None

    @property
    def progress(self) -> int:
        return PROGRESS[self.step]

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Resume the latest job, then follow change events."""
        self.resume()
        self._subscription.start()

    def stop(self) -> None:
        self._subscription.stop()

    def on_visibility_regained(self) -> None:
        # The stream may have died while in the background; a fresh one resyncs on connect.
        if not self._subscription.is_alive:
            logger.info("Change subscription is down, re-establishing")
            self._subscription.start()

    def resume(self) -> None:
        latest = self.client.latest_job()
        with self._lock:
            if latest is None or self.step == Step.UPLOADING:
                return
            logger.info("Resuming job %s at %s", latest["id"], latest["status"])
            self._apply(latest)

    def resync(self) -> None:
        """Full re-read of the held job; run after every (re)connect."""
        with self._lock:
            job_id = self.job_id
            if job_id is None or self.step in (Step.COMPLETE, Step.ERROR, Step.UPLOADING):
                return
        try:
            fresh = self.client.get_job(job_id)
        except APIError as e:
            logger.warning("Job %s: resync failed: %s", job_id, e)
            return
        with self._lock:
            if self.job_id == job_id:
                self._apply(fresh)

    def reset(self) -> None:
        """Forget the local job. The persisted record is left untouched."""
        with self._lock:
            self.job = None
            self.error = None
            self.document = None
            self.upload_in_progress = False
            self._set_step(Step.IDLE)

    # -- upload ------------------------------------------------------------

    def upload(self, file_path: str, content_type: Optional[str] = None) -> Optional[str]:
        """
        Push a recording through creation, raw upload and transcription start.

        Returns:
            The new job id, or None when any step failed (see ``error``)
        """
        path = Path(file_path)
        content_type = content_type or guess_content_type(path.name)
        job_id = str(uuid.uuid4())

        with self._lock:
            self.job = None
            self.error = None
            self.document = None
            self._set_step(Step.UPLOADING)

        try:
            job = self.client.create_job(job_id, path.name)
            with self._lock:
                self.job = job
            credential = self.client.sign_upload(job_id, path.name, content_type)

            self.upload_in_progress = True
            try:
                self.client.upload_file(credential["signedUrl"], str(path), content_type)
            finally:
                self.upload_in_progress = False

            uploaded = self.client.mark_uploaded(job_id, credential["storagePath"])
            with self._lock:
                self._apply(uploaded["job"])
            self.client.start_transcription(job_id, uploaded["fetchUrl"])
        except (APIError, RequestException, OSError) as e:
            logger.error("Job %s: upload failed: %s", job_id, e)
            with self._lock:
                self._fail(getattr(e, "detail", None) or str(e))
            return None

        logger.info("Job %s: uploaded %s, transcription requested", job_id, path.name)
        return job_id

    # -- change events -----------------------------------------------------

    def handle_event(self, event: Dict[str, Any]) -> None:
        current = event.get("current") or {}
        with self._lock:
            if not self.job_id or current.get("id") != self.job_id:
                return
            self._apply(current)

    def _is_stale(self, status: Optional[str]) -> bool:
        if self.step not in _ORDER or status not in {s.value for s in _ORDER}:
            return False
        return _ORDER.index(Step(status)) < _ORDER.index(self.step)

    def _apply(self, job: Dict[str, Any]) -> None:
        status = job.get("status")
        if job.get("id") == self.job_id and self._is_stale(status):
            return
        self.job = job
        if status == Step.ERROR.value:
            self._fail(job.get("error") or "Processing failed")
        elif status == Step.COMPLETE.value:
            self._set_step(Step.COMPLETE)
        elif status == Step.GENERATED.value:
            self._set_step(Step.GENERATED)
            self._export()
        else:
            try:
                self._set_step(Step(status))
            except ValueError:
                logger.warning("Job %s: ignoring unknown status %r", job.get("id"), status)

    # -- export ------------------------------------------------------------

    def _export(self) -> None:
        job_id = self.job_id
        if job_id in self._exported:
            return
        self._exported.append(job_id)
        self._set_step(Step.EXPORTING)

        try:
            # The event payload may be stale; export what is stored now.
            fresh = self.client.get_job(job_id)
            body = fresh.get("documentBody")
            if not body:
                self._fail("The document is empty and cannot be exported")
                return
            content, filename = self.client.export_document(
                body, self.client.user_id, job_id=job_id, title=fresh.get("title")
            )
            self.document = ExportedDocument(filename=filename, content=content)
            self.job = self._complete(job_id)
        except (APIError, RequestException) as e:
            logger.error("Job %s: export failed: %s", job_id, e)
            self._fail(f"Export failed: {getattr(e, 'detail', None) or e}")
            return

        logger.info("Job %s: exported %s (%d bytes)", job_id, filename, len(content))
        self._set_step(Step.COMPLETE)

    def _complete(self, job_id: str) -> Dict[str, Any]:
        try:
            return self.client.complete_job(job_id)
        except APIError as e:
            if e.status_code != 409:
                raise
            # Another session may have completed the job first.
            fresh = self.client.get_job(job_id)
            if fresh.get("status") != Step.COMPLETE.value:
                raise
            logger.info("Job %s: already completed elsewhere", job_id)
            return fresh

    def export(self) -> Optional[ExportedDocument]:
        """Re-render the held job's document, e.g. after resuming a completed job."""
        with self._lock:
            job_id = self.job_id
            if job_id is None or not self.job.get("documentBody"):
                return None
            try:
                content, filename = self.client.export_document(
                    self.job["documentBody"], self.client.user_id, title=self.job.get("title")
                )
            except (APIError, RequestException) as e:
                logger.warning("Job %s: re-export failed: %s", job_id, e)
                return None
            self.document = ExportedDocument(filename=filename, content=content)
            return self.document

    # -- state -------------------------------------------------------------

    def _fail(self, reason: str) -> None:
        self.error = reason
        self._set_step(Step.ERROR)

    def _set_step(self, step: Step) -> None:
        if step == self.step:
            return
        self.step = step
        if self.on_change:
            self.on_change(self)

"""
Client for the Documette API.

Wraps the HTTP surface a front end needs to drive one recording through
the pipeline: create the job, push the audio straight into storage, start
transcription, follow change events and export the finished minutes.
"""

import json
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Non-2xx answer from the API, carrying the server's ``detail`` when present."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def _detail_of(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or response.reason or ""
    if isinstance(body, dict) and "detail" in body:
        detail = body["detail"]
        return detail if isinstance(detail, str) else json.dumps(detail)
    return json.dumps(body)[:300]


class EventStream:
    """An open server-sent events response.

    ``wait_until_ready`` blocks until the server confirms its subscription,
    so a snapshot read afterwards cannot miss a change.
    """

    def __init__(self, response: requests.Response):
        self._response = response
        self._lines = response.iter_lines(decode_unicode=True)

    def wait_until_ready(self) -> None:
        for line in self._lines:
            if line.startswith(":"):
                return
        raise RequestException("Event stream closed before the subscription was confirmed")

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        data: List[str] = []
        for line in self._lines:
            if line is None:
                continue
            if line == "":
                if data:
                    try:
                        yield json.loads("\n".join(data))
                    except ValueError:
                        logger.warning("Skipping malformed change event")
                    data = []
                continue
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if field == "data":
                data.append(value[1:] if value.startswith(" ") else value)

    def close(self) -> None:
        self._response.close()


class APIClient:
    """Client for the Documette API, acting on behalf of one user."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        user_id: str = "",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["X-User-Id"] = user_id

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        response = self.session.request(method, self._url(path), **kwargs)
        if response.status_code >= 400:
            raise APIError(response.status_code, _detail_of(response))
        return response

    def health_check(self) -> Dict[str, Any]:
        return self._send("GET", "/health").json()

    def create_job(self, job_id: str, file_name: str, title: Optional[str] = None) -> Dict[str, Any]:
        body = {"id": job_id, "fileName": file_name}
        if title:
            body["title"] = title
        return self._send("POST", "/api/jobs", json=body).json()

    def get_job(self, job_id: str) -> Dict[str, Any]:
        return self._send("GET", f"/api/jobs/{job_id}").json()

    def latest_job(self) -> Optional[Dict[str, Any]]:
        """Most recent job of the user, or None when there is none."""
        try:
            return self._send("GET", "/api/jobs/latest").json()
        except APIError as e:
            if e.status_code == 404:
                return None
            raise

    def list_jobs(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._send("GET", "/api/jobs", params={"limit": limit}).json()["jobs"]

    def sign_upload(self, job_id: str, file_name: str, file_type: str) -> Dict[str, Any]:
        """
        Ask for a short-lived upload credential.

        Returns:
            Dictionary with ``signedUrl``, ``storagePath`` and ``expiresAt``
        """
        body = {"jobId": job_id, "fileName": file_name, "fileType": file_type}
        return self._send("POST", "/api/sign-upload", json=body).json()

    def upload_file(self, signed_url: str, file_path: str, content_type: str, timeout: int = 600) -> None:
        """
        PUT the file to the signed URL.

        The URL may point at the API's own storage route or at the bucket,
        so it is used as is rather than joined to ``base_url``.

        Raises:
            FileNotFoundError: If the file doesn't exist
            APIError: If storage rejects the upload
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Audio file not found: {file_path}")

        with open(file_path, "rb") as audio_file:
            response = self.session.put(
                signed_url,
                data=audio_file,
                headers={"Content-Type": content_type},
                timeout=timeout,
            )
        if response.status_code >= 400:
            raise APIError(response.status_code, _detail_of(response))

    def mark_uploaded(self, job_id: str, storage_path: str) -> Dict[str, Any]:
        """Returns ``{"job": {...}, "fetchUrl": "..."}``."""
        body = {"storagePath": storage_path}
        return self._send("POST", f"/api/jobs/{job_id}/uploaded", json=body).json()

    def start_transcription(self, job_id: str, audio_url: str) -> Dict[str, Any]:
        body = {"jobId": job_id, "audioUrl": audio_url}
        return self._send("POST", "/api/transcribe", json=body).json()

    def update_document(self, job_id: str, **fields: Any) -> Dict[str, Any]:
        return self._send("PATCH", f"/api/jobs/{job_id}/document", json=fields).json()

    def export_document(
        self, document_body: Any, owner_id: str, job_id: Optional[str] = None, title: Optional[str] = None
    ) -> Tuple[bytes, str]:
        """
        Render the minutes to DOCX.

        Returns:
            Tuple of (file bytes, suggested file name)
        """
        body = {"documentBody": document_body, "ownerId": owner_id}
        if job_id:
            body["jobId"] = job_id
        if title:
            body["title"] = title
        response = self._send("POST", "/api/export", json=body, timeout=max(self.timeout, 120))
        return response.content, _attachment_name(response) or "minutes.docx"

    def complete_job(self, job_id: str) -> Dict[str, Any]:
        return self._send("POST", f"/api/jobs/{job_id}/complete").json()

    def open_event_stream(self) -> EventStream:
        response = self._send("GET", "/api/jobs/events", stream=True, timeout=(self.timeout, 60))
        return EventStream(response)

    @property
    def user_id(self) -> str:
        return self.session.headers.get("X-User-Id", "")


def _attachment_name(response: requests.Response) -> Optional[str]:
    disposition = response.headers.get("content-disposition", "")
    for part in disposition.split(";"):
        key, _, value = part.strip().partition("=")
        if key.lower() == "filename" and value:
            return value.strip('"')
    return None


def guess_content_type(file_name: str) -> str:
    return mimetypes.guess_type(file_name)[0] or "application/octet-stream"

from enum import Enum
from typing import List, Optional

from pydantic import field_validator

from schemas.base import CamelModel


class JobStatus(str, Enum):
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    DIARIZING = "diarizing"
    DIARIZED = "diarized"
    GENERATING = "generating"
    GENERATED = "generated"
    COMPLETE = "complete"
    ERROR = "error"


# Pipeline order; ERROR sits outside it and is reachable from any non-terminal status.
STATUS_ORDER: List[JobStatus] = [
    JobStatus.UPLOADING,
    JobStatus.UPLOADED,
    JobStatus.TRANSCRIBING,
    JobStatus.TRANSCRIBED,
    JobStatus.DIARIZING,
    JobStatus.DIARIZED,
    JobStatus.GENERATING,
    JobStatus.GENERATED,
    JobStatus.COMPLETE,
]

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.ERROR})


def allowed_predecessors(target: JobStatus) -> List[str]:
    """Statuses a job may hold for a change to ``target`` to be accepted."""
    if target == JobStatus.ERROR:
        return [s.value for s in STATUS_ORDER if s not in TERMINAL_STATUSES]
    rank = STATUS_ORDER.index(target)
    return [s.value for s in STATUS_ORDER[:rank] if s not in TERMINAL_STATUSES]


class Speaker(CamelModel):
    name: str = "Unknown"
    role: str = "Unknown"


class JobCreateRequest(CamelModel):
    id: str
    title: Optional[str] = None
    file_name: Optional[str] = None

    @field_validator("id")
    @classmethod
    def id_must_be_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("id must be a non-empty string")
        return v.strip()


class UploadedRequest(CamelModel):
    storage_path: str


class DocumentUpdateRequest(CamelModel):
    title: Optional[str] = None
    summary: Optional[str] = None
    document_body: Optional[str] = None
    agreements: Optional[List[str]] = None


class TemplateResponse(CamelModel):
    name: str
    speaker_context: Optional[str] = None
    default_prompt: Optional[str] = None
    docx_function: Optional[str] = None
    has_transcription_key: bool
    has_generation_key: bool

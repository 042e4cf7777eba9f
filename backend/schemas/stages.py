from typing import Any, List, Optional

from pydantic import Field

from schemas.base import CamelModel
from schemas.job import Speaker


class TranscribeRequest(CamelModel):
    audio_url: str
    job_id: str
    engine_api_key: Optional[str] = None


class IdentifySpeakersRequest(CamelModel):
    transcript: str
    context_hints: Optional[str] = None
    engine_api_key: Optional[str] = None


class IdentifiedSpeaker(CamelModel):
    """One entry of the generative engine's speaker list."""

    speaker_index: int
    name: Optional[str] = None
    role: Optional[str] = None


class SpeakerIdentification(CamelModel):
    diarized_transcript: str
    summary: str
    speakers: List[Speaker]


class DraftDocumentRequest(CamelModel):
    transcript: str
    speakers: List[Speaker]
    engine_api_key: Optional[str] = None
    custom_instruction: Optional[str] = None


class DocumentDraft(CamelModel):
    document_body: str
    agreements: List[str] = Field(default_factory=list)


class SpeakersCallback(CamelModel):
    job_id: str
    diarized_transcript: str
    summary: str
    speakers: List[Speaker]


class DraftCallback(CamelModel):
    job_id: str
    # Any: an empty or non-string body is a content failure, not a malformed payload
    document_body: Any
    agreements: List[str]


class ExportRequest(CamelModel):
    document_body: str
    owner_id: str
    job_id: Optional[str] = None
    title: Optional[str] = None

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="Untitled")
    status = Column(String, nullable=False, default="uploading")

    file_name = Column(String, nullable=True)
    audio_path = Column(String, nullable=True)
    engine_request_id = Column(String, nullable=True)

    transcript = Column(Text, nullable=True)
    diarized_transcript = Column(Text, nullable=True)
    speakers = Column(JSON, nullable=True)
    summary = Column(Text, nullable=True)
    document_body = Column(Text, nullable=True)
    agreements = Column(JSON, nullable=True)
    export_path = Column(String, nullable=True)

    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Template(Base):
    """Per-user engine configuration shared by a group of users."""

    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    deepgram_api_key = Column(String, nullable=True)
    gemini_api_key = Column(String, nullable=True)
    speaker_context = Column(Text, nullable=True)
    default_prompt = Column(Text, nullable=True)
    docx_function = Column(String, nullable=True)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=True)

import logging
from typing import List, Optional

from pydantic import ValidationError

from schemas.job import Speaker
from schemas.stages import IdentifiedSpeaker, SpeakerIdentification
from services.errors import EngineError
from services.llm_client import GeminiClient

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "summary": {
            "type": "STRING",
            "description": "A short general summary of the topics discussed in the meeting.",
        },
        "speakers": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "speakerIndex": {"type": "INTEGER"},
                    "name": {"type": "STRING"},
                    "role": {"type": "STRING"},
                },
                "required": ["speakerIndex", "name", "role"],
            },
        },
    },
    "required": ["summary", "speakers"],
}

_PROMPT = """\
Analyse the following meeting transcript and extract:

1. "summary": a short, general summary of the main topics discussed.
2. "speakers": one entry per speaker, each with
   - "speakerIndex": the integer shown in the transcript's [Speaker:<number>] tag,
   - "name": the speaker's name as inferred from the text, or "{unknown}" if it cannot be determined,
   - "role": the speaker's role or function, or "{unknown}" if it cannot be inferred.
{context}
Transcript:
```
{transcript}
```

Return only a JSON object matching the requested structure, with no extra text.
"""


def apply_speaker_labels(transcript: str, speakers: List[IdentifiedSpeaker]) -> str:
    """Replace every ``[Speaker:N]`` tag with ``**name, role:**``.

    Plain text substitution: all occurrences of a tag get the same label.
    """
    for sp in speakers:
        label = f"**{sp.name or UNKNOWN}, {sp.role or UNKNOWN}:**"
        transcript = transcript.replace(f"[Speaker:{sp.speaker_index}]", label)
    return transcript


class SpeakerIdentifier:
    def __init__(self, client: GeminiClient):
        self._client = client

    def identify(self, transcript: str, context_hints: Optional[str] = None) -> SpeakerIdentification:
        context = (
            f"\nAdditional context about the participants:\n{context_hints}\n"
            if context_hints
            else ""
        )
        prompt = _PROMPT.format(unknown=UNKNOWN, context=context, transcript=transcript)
        data = self._client.generate_json(prompt, _SCHEMA)

        summary = data.get("summary")
        raw_speakers = data.get("speakers")
        if not isinstance(summary, str) or not isinstance(raw_speakers, list):
            logger.error("Unexpected speaker JSON: %s", str(data)[:200])
            raise EngineError("Gemini JSON is missing 'summary' or 'speakers'")

        try:
            identified = [IdentifiedSpeaker.model_validate(s) for s in raw_speakers]
        except ValidationError as exc:
            raise EngineError(f"Gemini returned malformed speaker entries: {exc}") from exc

        diarized = apply_speaker_labels(transcript, identified)
        speakers = [Speaker(name=s.name or UNKNOWN, role=s.role or UNKNOWN) for s in identified]
        logger.info("Identified %d speakers", len(speakers))
        return SpeakerIdentification(diarized_transcript=diarized, summary=summary, speakers=speakers)

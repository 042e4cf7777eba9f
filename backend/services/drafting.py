import logging
from typing import Any, List, Optional

from schemas.job import Speaker
from schemas.stages import DocumentDraft
from services.errors import ContentValidityError, EngineError
from services.llm_client import GeminiClient

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = (
    "You are an expert assistant for writing meeting minutes. Analyse the "
    "transcript and the list of participants and produce complete, well "
    "structured minutes in Markdown together with a list of agreements. "
    "Follow the requested JSON structure."
)

_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "documentBody": {
            "type": "STRING",
            "description": "The complete meeting minutes in Markdown.",
        },
        "agreements": {
            "type": "ARRAY",
            "description": "Key agreements or action items extracted from the meeting.",
            "items": {"type": "STRING"},
        },
    },
    "required": ["documentBody", "agreements"],
}

_PROMPT = """\
**Instruction:**
{instruction}

---
**Data for this meeting:**

**Participants:**
{participants}

**Meeting transcript:**
```
{transcript}
```
"""


def validate_document_body(body: Any) -> str:
    if not isinstance(body, str) or not body.strip():
        raise ContentValidityError(
            "the generated document is empty; the engine returned no minutes for this transcript"
        )
    return body


class DocumentDrafter:
    def __init__(self, client: GeminiClient):
        self._client = client

    def draft(
        self,
        transcript: str,
        speakers: List[Speaker],
        custom_instruction: Optional[str] = None,
    ) -> DocumentDraft:
        participants = "\n".join(f"- {s.name} ({s.role})" for s in speakers)
        prompt = _PROMPT.format(
            instruction=custom_instruction or DEFAULT_INSTRUCTION,
            participants=participants,
            transcript=transcript,
        )
        data = self._client.generate_json(prompt, _SCHEMA, max_output_tokens=50192)

        body = validate_document_body(data.get("documentBody"))
        agreements = data.get("agreements", [])
        if not isinstance(agreements, list) or not all(isinstance(a, str) for a in agreements):
            raise EngineError("Gemini returned agreements that are not a list of strings")

        logger.info("Drafted document: %d chars, %d agreements", len(body), len(agreements))
        return DocumentDraft(document_body=body, agreements=agreements)

import logging
from typing import List, Optional
from urllib.parse import quote, urlencode

from config import Settings
from services import http
from services.errors import ContentValidityError, EngineError

logger = logging.getLogger(__name__)


class DeepgramClient:
    """Deepgram pre-recorded transcription with asynchronous callbacks."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.deepgram.com",
        model: str = "nova-2",
        language: str = "es",
        timeout: int = 60,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._language = language
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, api_key: str) -> "DeepgramClient":
        return cls(
            api_key=api_key,
            base_url=settings.deepgram_base_url,
            model=settings.deepgram_model,
            language=settings.deepgram_language,
        )

    def _headers(self) -> dict:
        return {"Authorization": f"Token {self._api_key}"}

    def submit(self, audio_url: str, tag: str, callback_url: str) -> str:
        """Queue a transcription of ``audio_url``. Returns the engine request id.

        ``tag`` comes back in the callback's metadata so the notification can be
        correlated to a job without a lookup.
        """
        params = urlencode({
            "model": self._model,
            "language": self._language,
            "smart_format": "true",
            "punctuate": "true",
            "diarize": "true",
            "tag": tag,
            "callback": callback_url,
        })
        data = http.post_json(
            f"{self._base_url}/v1/listen?{params}",
            {"url": audio_url},
            headers=self._headers(),
            timeout=self._timeout,
            label="Deepgram",
        )
        request_id = data.get("request_id")
        if not request_id:
            raise EngineError(f"Deepgram did not return request_id: {sorted(data.keys())}")
        logger.info("Deepgram transcription submitted: request_id=%s tag=%s", request_id, tag)
        return str(request_id)

    def fetch_result(self, request_id: str) -> dict:
        """Retrieve the stored result of a finished request."""
        return http.get_json(
            f"{self._base_url}/v1/requests/{quote(request_id)}",
            headers=self._headers(),
            timeout=self._timeout,
            label="Deepgram",
        )


def _results(payload: dict) -> dict:
    # Callbacks carry results at the top level; the requests API nests them
    # under "response".
    if "results" in payload:
        return payload.get("results") or {}
    response = payload.get("response") or {}
    return response.get("results") or {}


def _first_alternative(payload: dict) -> dict:
    channels = _results(payload).get("channels") or []
    if not channels:
        return {}
    alternatives = channels[0].get("alternatives") or []
    return alternatives[0] if alternatives else {}


def extract_words(payload: dict) -> Optional[List[dict]]:
    words = _first_alternative(payload).get("words")
    return words if isinstance(words, list) else None


def format_speaker_transcript(words: List[dict]) -> str:
    """Group consecutive words by speaker into ``[Speaker:N] ...`` lines.

    A change of speaker index closes the open block. Words without a speaker
    index are appended to whichever block is open, so they can be attributed
    to the wrong speaker at a boundary.
    """
    lines: List[str] = []
    current: Optional[int] = None
    block: List[str] = []

    for info in words:
        text = info.get("punctuated_word") or info.get("word") or ""
        speaker = info.get("speaker")

        if speaker is None:
            block.append(text)
            continue
        if current is None:
            current = speaker
        if speaker != current:
            if " ".join(block).strip():
                lines.append(f"[Speaker:{current}] {' '.join(block).strip()}")
            current = speaker
            block = []
        block.append(text)

    if " ".join(block).strip() and current is not None:
        lines.append(f"[Speaker:{current}] {' '.join(block).strip()}")

    return "\n".join(lines).rstrip()


def build_transcript(payload: dict) -> str:
    """Speaker-annotated transcript for a finished request.

    Falls back to the plain transcript when the engine returned no word list.
    """
    words = extract_words(payload)
    transcript = format_speaker_transcript(words) if words else ""
    if not transcript:
        transcript = (_first_alternative(payload).get("transcript") or "").strip()
    if not transcript:
        raise ContentValidityError("the transcription engine returned no speech for this audio")
    return transcript

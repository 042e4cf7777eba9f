import json
import logging
from urllib.parse import quote

from config import Settings
from services import http
from services.errors import EngineError

logger = logging.getLogger(__name__)


class GeminiClient:
    """Minimal Gemini generateContent client returning schema-constrained JSON."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: int = 300,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, api_key: str) -> "GeminiClient":
        return cls(
            api_key=api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout=settings.gemini_timeout_sec,
        )

    def generate_json(
        self,
        prompt: str,
        schema: dict,
        *,
        temperature: float = 0.7,
        top_p: float = 0.9,
        top_k: int = 30,
        max_output_tokens: int = 20192,
    ) -> dict:
        """Single non-streaming request; returns the parsed JSON object."""
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "topP": top_p,
                "topK": top_k,
                "maxOutputTokens": max_output_tokens,
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }
        data = http.post_json(
            f"{self._base_url}/v1beta/models/{quote(self._model)}:generateContent",
            body,
            headers={"x-goog-api-key": self._api_key},
            timeout=self._timeout,
            label="Gemini",
        )

        candidates = data.get("candidates") or []
        parts = (candidates[0].get("content") or {}).get("parts", []) if candidates else []
        text = "".join(p.get("text", "") for p in parts).strip()
        if not text:
            reason = candidates[0].get("finishReason") if candidates else data.get("promptFeedback")
            raise EngineError(f"Gemini returned no text (reason: {reason})")

        # Strip markdown fences if the model wraps its output
        if text.startswith("```"):
            text = text.split("\n", 1)[1] if "\n" in text else text[3:]
            if text.endswith("```"):
                text = text[:-3]
            text = text.strip()

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error("Gemini returned non-JSON: %s", text[:200])
            raise EngineError("Gemini did not return valid JSON") from exc
        if not isinstance(parsed, dict):
            raise EngineError("Gemini returned JSON that is not an object")
        return parsed

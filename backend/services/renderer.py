import json
import logging
import re
from typing import Optional
from urllib.parse import quote

from config import Settings
from services import http
from services.errors import ConfigurationError, EngineError

logger = logging.getLogger(__name__)

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def export_filename(title: Optional[str]) -> str:
    slug = re.sub(r"\s+", "-", (title or "minutes").strip()).lower()
    slug = re.sub(r"[^\w.-]", "", slug) or "minutes"
    return f"minutes-{slug}.docx"


class DocumentRenderer:
    """Proxy to the external Markdown -> DOCX rendering functions."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: int = 120):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "DocumentRenderer":
        if not settings.renderer_base_url:
            raise ConfigurationError("RENDERER_BASE_URL is not set")
        return cls(settings.renderer_base_url, settings.renderer_api_key)

    def render(self, function_name: str, document_body: str) -> bytes:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        url = f"{self._base_url}/functions/v1/{quote(function_name)}"
        logger.info("Rendering document via %s (%d chars)", url, len(document_body))

        data = http.request(
            "POST",
            url,
            body=json.dumps({"text": document_body}).encode(),
            headers=headers,
            timeout=self._timeout,
            label="Document renderer",
        )
        if not data:
            raise EngineError("Document renderer returned an empty file")
        return data

import json
import logging
import urllib.error
import urllib.request
from typing import Optional

from services.errors import EngineError

logger = logging.getLogger(__name__)


def request(
    method: str,
    url: str,
    *,
    body: Optional[bytes] = None,
    headers: Optional[dict] = None,
    timeout: float = 60,
    label: str = "upstream",
) -> bytes:
    """Perform an HTTP request and return the raw body.

    Non-2xx responses and network failures raise EngineError carrying the
    upstream message (and status, when there was one).
    """
    req = urllib.request.Request(url, data=body, method=method, headers=headers or {})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except urllib.error.HTTPError as exc:
        detail = _error_detail(exc.read())
        raise EngineError(f"{label} returned {exc.code}: {detail}", status_code=exc.code) from exc
    except urllib.error.URLError as exc:
        raise EngineError(f"{label} unreachable: {exc.reason}") from exc
    except (TimeoutError, OSError) as exc:
        # Read timeouts and dropped connections surface outside URLError.
        raise EngineError(f"{label} unreachable: {exc}") from exc


def post_json(url: str, payload: dict, *, headers: Optional[dict] = None, timeout: float = 60, label: str = "upstream") -> dict:
    hdrs = {"Content-Type": "application/json"}
    if headers:
        hdrs.update(headers)
    raw = request("POST", url, body=json.dumps(payload).encode(), headers=hdrs, timeout=timeout, label=label)
    return _decode(raw, label)


def get_json(url: str, *, headers: Optional[dict] = None, timeout: float = 60, label: str = "upstream") -> dict:
    raw = request("GET", url, headers=headers, timeout=timeout, label=label)
    return _decode(raw, label)


def _decode(raw: bytes, label: str) -> dict:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise EngineError(f"{label} returned non-JSON body: {raw[:200]!r}") from exc


def _error_detail(raw: bytes) -> str:
    text = raw.decode(errors="replace")
    try:
        data = json.loads(text)
    except ValueError:
        return text[:500]
    if isinstance(data, dict):
        for key in ("err_msg", "error", "message", "detail"):
            value = data.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)
    return text[:500]

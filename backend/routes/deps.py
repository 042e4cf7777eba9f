import hmac
from functools import lru_cache
from typing import Callable, Optional
from urllib.parse import quote

import redis
from fastapi import Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import get_db
from services.deepgram import DeepgramClient
from services.dispatch import StageDispatcher
from services.job_store import JobStore
from services.llm_client import GeminiClient
from services.notifier import ChangeNotifier
from services.renderer import DocumentRenderer
from services.storage import ObjectStorage, get_storage


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    # Identity is asserted by the auth layer in front of the API.
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def verify_callback_secret(
    secret: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not secret or not hmac.compare_digest(secret, settings.callback_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


def callback_url(settings: Settings, path: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}{path}?secret={quote(settings.callback_secret)}"


@lru_cache
def _notifier_for(redis_url: str) -> ChangeNotifier:
    return ChangeNotifier(redis.from_url(redis_url))


def get_notifier(settings: Settings = Depends(get_settings)) -> ChangeNotifier:
    return _notifier_for(settings.redis_url)


def get_job_store(
    db: Session = Depends(get_db),
    notifier: ChangeNotifier = Depends(get_notifier),
) -> JobStore:
    return JobStore(db, notifier)


def get_object_storage(settings: Settings = Depends(get_settings)) -> ObjectStorage:
    return get_storage(settings)


def get_dispatcher(settings: Settings = Depends(get_settings)) -> StageDispatcher:
    return StageDispatcher.from_settings(settings)


def get_renderer(settings: Settings = Depends(get_settings)) -> DocumentRenderer:
    return DocumentRenderer.from_settings(settings)


def get_transcription_client_factory(
    settings: Settings = Depends(get_settings),
) -> Callable[[str], DeepgramClient]:
    return lambda api_key: DeepgramClient.from_settings(settings, api_key)


def get_llm_client_factory(
    settings: Settings = Depends(get_settings),
) -> Callable[[str], GeminiClient]:
    return lambda api_key: GeminiClient.from_settings(settings, api_key)

import logging
import mimetypes
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from routes.deps import get_current_user, get_job_store, get_object_storage
from schemas.storage import SignUploadRequest, SignUploadResponse
from services.errors import JobNotFound
from services.job_store import JobStore
from services.storage import LocalStorage, ObjectStorage, audio_path_for

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/api/sign-upload")
def sign_upload(
    req: SignUploadRequest,
    user_id: str = Depends(get_current_user),
    store: JobStore = Depends(get_job_store),
    storage: ObjectStorage = Depends(get_object_storage),
) -> dict:
    """Issue a short-lived credential to PUT the audio straight into storage."""
    try:
        store.get(req.job_id, owner_id=user_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")

    path = audio_path_for(user_id, req.job_id, req.file_name)
    signed_url = storage.issue_upload_credential(path, req.file_type)
    logger.info("Job %s: issued upload credential for %s", req.job_id, path)
    return SignUploadResponse(
        signed_url=signed_url,
        storage_path=path,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=storage.ttl_sec),
    ).to_wire()


def _local(storage: ObjectStorage) -> LocalStorage:
    if not isinstance(storage, LocalStorage):
        raise HTTPException(status_code=404, detail="Not found")
    return storage


def _authorize(storage: LocalStorage, method: str, path: str, expires: int, signature: str) -> None:
    try:
        storage.resolve(path)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid storage path")
    if not storage.verify(method, path, expires, signature):
        raise HTTPException(status_code=403, detail="Signature invalid or expired")


@router.put("/storage/{path:path}")
async def put_object(
    path: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: ObjectStorage = Depends(get_object_storage),
) -> dict:
    local = _local(storage)
    _authorize(local, "PUT", path, expires, signature)
    data = await request.body()
    local.write(path, data, request.headers.get("content-type", "application/octet-stream"))
    return {"storagePath": path, "size": len(data)}


@router.get("/storage/{path:path}")
def get_object(
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: ObjectStorage = Depends(get_object_storage),
) -> Response:
    local = _local(storage)
    _authorize(local, "GET", path, expires, signature)
    try:
        data = local.read(path)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Object not found")
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)

from datetime import datetime

from schemas.base import CamelModel


class SignUploadRequest(CamelModel):
    job_id: str
    file_name: str
    file_type: str


class SignUploadResponse(CamelModel):
    signed_url: str
    storage_path: str
    expires_at: datetime

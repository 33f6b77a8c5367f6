import datetime as dt
from pydantic import BaseModel


class UploadedLink(BaseModel):
    id: str
    original_name: str
    url: str
    descriptor_url: str | None = None
    expires_at: dt.datetime


class UploadResponse(BaseModel):
    files: list[UploadedLink]

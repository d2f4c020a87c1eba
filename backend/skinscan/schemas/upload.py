"""
Pydantic schemas for upload-target issuance.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UploadMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(None, alias="userId", max_length=128)
    source: str | None = Field(None, max_length=64)


class UploadUrlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mime_type: str = Field(..., alias="mimeType")
    size_bytes: int | None = Field(None, alias="sizeBytes", ge=0)
    metadata: UploadMetadata = Field(default_factory=UploadMetadata)


class UploadUrlResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_url: str = Field(..., alias="uploadUrl")
    public_url: str = Field(..., alias="publicUrl")
    blob_url: str = Field(..., alias="blobUrl")
    blob_name: str = Field(..., alias="blobName")
    expires_at: datetime = Field(..., alias="expiresAt")

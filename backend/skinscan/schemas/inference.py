"""
Pydantic schemas for the inference proxy.
"""

from typing import Any

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator

from skinscan.core.validators import MAX_IMAGE_URL_LENGTH


class InferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: AnyHttpUrl = Field(..., alias="imageUrl")
    sync: bool = True
    user_id: str | None = Field(None, alias="userId", max_length=128)
    webhook_url: AnyHttpUrl | None = Field(None, alias="webhookUrl")
    user_data: dict[str, Any] | None = Field(None, alias="userData")
    metadata: dict[str, Any] | None = None

    @field_validator("image_url", mode="before")
    @classmethod
    def limit_url_length(cls, v: Any) -> Any:
        if isinstance(v, str) and len(v) > MAX_IMAGE_URL_LENGTH:
            raise ValueError(f"imageUrl must be at most {MAX_IMAGE_URL_LENGTH} characters")
        return v


class InferQueuedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = "Inference queued"
    job_id: str = Field(..., alias="jobId")
    status: str = "queued"

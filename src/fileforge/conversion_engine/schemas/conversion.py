from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConversionOptions(BaseModel):
    """Codec hints forwarded untouched to the converter."""

    model_config = ConfigDict(populate_by_name=True)

    quality: Optional[int] = Field(default=None, ge=1, le=100)
    resolution: Optional[str] = Field(
        default=None, pattern=r"^\d+x\d+$", description="e.g. '1920x1080'"
    )
    bitrate: Optional[str] = Field(default=None, description="e.g. '128k'")
    codec: Optional[str] = None
    fps: Optional[float] = Field(default=None, gt=0)
    sample_rate: Optional[int] = Field(default=None, alias="sampleRate", gt=0)
    channels: Optional[int] = Field(default=None, ge=1)
    compression: Optional[int] = Field(default=None, ge=0)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ConvertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_id: Optional[str] = Field(default=None, alias="fileId")
    source_key: str = Field(..., alias="s3Key", min_length=1)
    source_format: str = Field(..., alias="sourceFormat", min_length=1)
    target_format: str = Field(..., alias="targetFormat", min_length=1)
    options: Optional[ConversionOptions] = None


class SubmitResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    status: str
    source_format: str = Field(..., alias="sourceFormat")
    target_format: str = Field(..., alias="targetFormat")


class JobStatusView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")
    status: str
    progress: int
    source_format: str = Field(..., alias="sourceFormat")
    target_format: str = Field(..., alias="targetFormat")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    error: Optional[str] = None

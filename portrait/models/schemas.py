from pydantic import BaseModel, Field
from typing import Any, Optional


class ProcessRequest(BaseModel):
    """Request body for /process and /process_async. Why available: Carries the source URL and an optional caller-chosen prediction_id.
    Fields are loosely typed so a missing or non-string video_url reaches the handler and gets the documented 400 body instead of a 422."""

    video_url: Optional[Any] = Field(None, description="Absolute http(s) URL of the source video")
    prediction_id: Optional[Any] = Field(None, description="Identifier to publish under; generated when omitted")


class ProcessResponse(BaseModel):
    """Response for a successful /process. Why available: Gives the client the stable URL of the portrait video."""

    success: bool = True
    fixed_url: str
    prediction_id: str
    source_url: str


class ProcessAsyncResponse(BaseModel):
    """Response for POST /process_async. Why available: Clients poll /jobs/{prediction_id} or /video/{prediction_id} until ready."""

    success: bool = True
    prediction_id: str
    status: str
    source_url: str
    status_url: str
    fixed_url: str


class ErrorResponse(BaseModel):
    """Error body for /process and /video failures. stage/status/detail are set for pipeline failures only."""

    success: bool = False
    error: str
    stage: Optional[str] = None
    status: Optional[int] = None
    detail: Optional[str] = None


class JobStatusResponse(BaseModel):
    """Response for GET /jobs/{prediction_id}: job state, output URL once ready, error once failed."""

    prediction_id: str
    status: str
    source_url: str
    fixed_url: Optional[str] = None
    stage: Optional[str] = None
    error: Optional[str] = None
    created_at: float
    finished_at: Optional[float] = None


class ConfigResponse(BaseModel):
    """Response for GET /config: active transcode profile and pipeline limits."""

    profile: str
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    video_codec: str
    audio_codec: str
    max_concurrent_transcodes: int
    fetch_timeout_seconds: int
    transcode_timeout_seconds: int
    output_ttl_seconds: int

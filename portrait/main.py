import logging
import os
from typing import Optional
from urllib.parse import quote

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from portrait.core.config import settings
from portrait.guardrails.errors import JobNotFound, ValidationError, as_http_500
from portrait.models.schemas import (
    ConfigResponse,
    ErrorResponse,
    JobStatusResponse,
    ProcessAsyncResponse,
    ProcessRequest,
    ProcessResponse,
)
from portrait.observability.middleware import RequestTimingMiddleware, configure_logging, get_request_id
from portrait.pipeline.fetcher import HttpFetcher, validate_source_url
from portrait.pipeline.jobs import Job, JobRegistry, JobState, Stage, validate_identifier
from portrait.pipeline.storage import StorageArea
from portrait.pipeline.transcoder import FfmpegTranscoder, get_profile
from portrait.pipeline.worker import Pipeline

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


# -------------------------
# App setup
# -------------------------

app = FastAPI(title="Portrait Transcoder")
app.add_middleware(RequestTimingMiddleware)
# Allow browser requests
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


def build_pipeline() -> Pipeline:
    """Wire the production pipeline from settings: storage root, requests fetcher, ffmpeg transcoder, profile and limits.
    Why available: Single place that turns configuration into collaborators; tests swap the result via dependency_overrides."""
    storage = StorageArea(settings.storage_root).ensure()
    fetcher = HttpFetcher(
        connect_timeout=settings.fetch_connect_timeout_seconds,
        read_timeout=min(60, settings.fetch_timeout_seconds),
        total_timeout=settings.fetch_timeout_seconds,
        max_bytes=settings.max_download_mb * 1024 * 1024,
    )
    transcoder = FfmpegTranscoder(
        binary=settings.ffmpeg_binary,
        timeout=settings.transcode_timeout_seconds,
        probe_binary=settings.ffprobe_binary,
    )
    return Pipeline(
        registry=JobRegistry(),
        storage=storage,
        fetcher=fetcher,
        transcoder=transcoder,
        profile=get_profile(settings.transcode_profile),
        max_concurrent_transcodes=settings.max_concurrent_transcodes,
    )


_pipeline = build_pipeline()


def get_pipeline() -> Pipeline:
    return _pipeline


def _error(status_code: int, error: str, **fields) -> JSONResponse:
    body = ErrorResponse(error=error, **fields)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _base_url(request: Request) -> str:
    return settings.public_base_url or str(request.base_url).rstrip("/")


def _video_url(request: Request, identifier: str) -> str:
    return f"{_base_url(request)}/video/{quote(identifier, safe='')}"


def _failure_response(job: Job) -> JSONResponse:
    """Map a failed job to 502 (source download failed) or 500 (transcode or internal failure)."""
    err = job.error
    if err.stage == Stage.FETCH:
        return _error(
            502,
            err.message,
            stage=err.stage.value,
            status=err.status_code,
            detail=err.detail or None,
        )
    return _error(500, err.message, stage=err.stage.value)


def _in_progress_response(request: Request, job: Job) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "success": True,
            "prediction_id": job.identifier,
            "status": job.state.value,
            "status_url": f"{_base_url(request)}/jobs/{quote(job.identifier, safe='')}",
        },
    )


def _validate(req: Optional[ProcessRequest]) -> tuple[str, Optional[str]]:
    """Return (video_url, prediction_id or None). Raises ValidationError before any job exists."""
    req = req or ProcessRequest()
    video_url = validate_source_url(req.video_url)
    prediction_id = req.prediction_id
    if prediction_id is not None:
        prediction_id = validate_identifier(prediction_id)
    return video_url, prediction_id


def _iter_file(handle, chunk_size: int = 64 * 1024):
    with handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


# -------------------------
# Root
# -------------------------

@app.get("/")
def root():
    """Returns a minimal welcome payload with app name and docs URL.
    Why available: Gives clients and load balancers a simple root endpoint to confirm the API is running."""
    return {"app": "Portrait Transcoder", "docs": "/docs"}


@app.get("/health")
def health():
    """Returns 200 OK with status. Used by load balancers and probes to check if the API is up."""
    return {"status": "ok"}


@app.get("/config", response_model=ConfigResponse)
def config(pipeline: Pipeline = Depends(get_pipeline)):
    """Returns the active transcode profile and pipeline limits."""
    profile = pipeline.profile
    return ConfigResponse(
        profile=profile.name,
        width=profile.width,
        height=profile.height,
        video_codec=profile.video_codec,
        audio_codec=profile.audio_codec,
        max_concurrent_transcodes=settings.max_concurrent_transcodes,
        fetch_timeout_seconds=settings.fetch_timeout_seconds,
        transcode_timeout_seconds=settings.transcode_timeout_seconds,
        output_ttl_seconds=settings.output_ttl_seconds,
    )


# -------------------------
# Sync processing
# -------------------------

@app.post("/process", response_model=ProcessResponse)
def process(request: Request, req: Optional[ProcessRequest] = None, pipeline: Pipeline = Depends(get_pipeline)):
    """Downloads video_url, converts it to the portrait canvas and returns fixed_url once the file is ready. The response is held until the job is ready or failed.
    Resubmitting a prediction_id that is in flight waits for that job; one that is ready returns immediately without re-running."""
    try:
        video_url, prediction_id = _validate(req)
    except ValidationError as e:
        return _error(400, str(e))

    logger.info(
        "process_requested",
        extra={"request_id": get_request_id(request), "prediction_id": prediction_id, "source_url": video_url},
    )
    try:
        pipeline.evict_expired(settings.output_ttl_seconds)
        job = pipeline.process(prediction_id, video_url, wait_timeout=settings.sync_wait_timeout_seconds)
    except JobNotFound:
        # finished and evicted while this request was waiting
        return _error(404, "Job is no longer available")
    except Exception as e:
        raise as_http_500(e)

    if job.state == JobState.FAILED:
        return _failure_response(job)
    if job.state != JobState.READY:
        return _in_progress_response(request, job)

    return ProcessResponse(
        fixed_url=_video_url(request, job.identifier),
        prediction_id=job.identifier,
        source_url=job.source_url,
    )


# -------------------------
# Async processing
# -------------------------

@app.post("/process_async", response_model=ProcessAsyncResponse)
def process_async(
    request: Request,
    background_tasks: BackgroundTasks,
    req: Optional[ProcessRequest] = None,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Admits the job and returns its prediction_id immediately; the pipeline runs in the background. Client polls GET /jobs/{prediction_id} or GET /video/{prediction_id}.
    Why available: Lets clients avoid holding a connection open for the whole transcode."""
    try:
        video_url, prediction_id = _validate(req)
    except ValidationError as e:
        return _error(400, str(e))

    logger.info(
        "process_async_requested",
        extra={"request_id": get_request_id(request), "prediction_id": prediction_id, "source_url": video_url},
    )
    try:
        pipeline.evict_expired(settings.output_ttl_seconds)
        job, created = pipeline.submit(prediction_id, video_url)
    except Exception as e:
        raise as_http_500(e)

    if created:
        background_tasks.add_task(pipeline.run, job.identifier)

    return ProcessAsyncResponse(
        prediction_id=job.identifier,
        status=job.state.value,
        source_url=job.source_url,
        status_url=f"{_base_url(request)}/jobs/{quote(job.identifier, safe='')}",
        fixed_url=_video_url(request, job.identifier),
    )


# -------------------------
# Job Status
# -------------------------

@app.get("/jobs/{prediction_id}", response_model=JobStatusResponse)
def job_status(prediction_id: str, request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """Returns the state of a job (pending / fetching / transcoding / ready / failed), its fixed_url once ready, and the failed stage and error once failed."""
    try:
        job = pipeline.registry.get(prediction_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobStatusResponse(
        prediction_id=job.identifier,
        status=job.state.value,
        source_url=job.source_url,
        fixed_url=_video_url(request, job.identifier) if job.state == JobState.READY else None,
        stage=job.error.stage.value if job.error else None,
        error=job.error.message if job.error else None,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


# -------------------------
# Publishing
# -------------------------

@app.get("/video/{prediction_id}")
def video(prediction_id: str, request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """Streams the portrait video. 404 if unknown, 202 with status while processing, 502/500 with the recorded error if the job failed."""
    try:
        job = pipeline.registry.get(prediction_id)
    except JobNotFound:
        return JSONResponse(status_code=404, content={"error": "Not found"})

    if job.state == JobState.READY:
        try:
            handle = open(job.output_path, "rb")
        except FileNotFoundError:
            # evicted between lookup and open; an open handle survives later eviction
            return JSONResponse(status_code=404, content={"error": "Not found"})
        return StreamingResponse(
            _iter_file(handle),
            media_type="video/mp4",
            headers={
                "content-length": str(os.fstat(handle.fileno()).st_size),
                "content-disposition": f'inline; filename="{job.identifier}.mp4"',
            },
        )
    if job.state == JobState.FAILED:
        return _failure_response(job)
    return _in_progress_response(request, job)


if __name__ == "__main__":
    import uvicorn

    logger.info("Transcoder listening on port %s", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)

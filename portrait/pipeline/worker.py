import logging
import threading
from typing import Optional, Protocol, Tuple

from portrait.guardrails.errors import Conflict, FetchError, JobNotFound, TranscodeError
from portrait.pipeline.jobs import Job, JobError, JobRegistry, JobState, Stage
from portrait.pipeline.storage import StorageArea
from portrait.pipeline.transcoder import Profile, Transcoder

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    def fetch(self, source_url: str, destination): ...


class Pipeline:
    """Drives one job through fetch -> transcode -> publish and always reclaims its scratch files.
    Why available: Single entry point for sync /process and background /process_async so both run the same state machine."""

    def __init__(
        self,
        registry: JobRegistry,
        storage: StorageArea,
        fetcher: Fetcher,
        transcoder: Transcoder,
        profile: Profile,
        max_concurrent_transcodes: int = 2,
    ):
        self.registry = registry
        self.storage = storage
        self.fetcher = fetcher
        self.transcoder = transcoder
        self.profile = profile
        self.transcode_slots = threading.BoundedSemaphore(max_concurrent_transcodes)

    def submit(self, identifier: Optional[str], source_url: str) -> Tuple[Job, bool]:
        """Admit a job without running it. created=True means the caller must schedule run()."""
        return self.registry.submit(identifier, source_url)

    def process(self, identifier: Optional[str], source_url: str, wait_timeout: Optional[float] = None) -> Job:
        """Synchronous mode: run the pipeline if this call won admission, otherwise wait for the job that did."""
        job, created = self.registry.submit(identifier, source_url)
        if created:
            return self.run(job.identifier)
        if job.state.terminal:
            return job
        return self.registry.wait(job.identifier, wait_timeout)

    def run(self, identifier: str) -> Job:
        """Run every stage for an admitted job and return its terminal snapshot. Never leaves the job pending or in flight."""
        job = self.registry.get(identifier)
        input_path = self.storage.input_path(identifier)
        partial_path = self.storage.partial_path(identifier)
        output_path = self.storage.output_path(identifier)

        stage = Stage.FETCH
        error: Optional[JobError] = None
        try:
            self.registry.mark(identifier, JobState.FETCHING, input_path=input_path)
            self.fetcher.fetch(job.source_url, input_path)

            stage = Stage.TRANSCODE
            self.registry.mark(identifier, JobState.TRANSCODING)
            with self.transcode_slots:
                self.transcoder.transcode(input_path, output_path, self.profile)
            if not output_path.is_file():
                raise TranscodeError("Transcoder reported success but wrote no output")
        except FetchError as e:
            logger.warning(
                "fetch_failed",
                extra={"prediction_id": identifier, "status_code": e.status_code, "error": e.message},
            )
            error = JobError(Stage.FETCH, e.message, status_code=e.status_code, detail=e.detail)
        except TranscodeError as e:
            logger.error(
                "transcode_failed",
                extra={"prediction_id": identifier, "error": e.message, "diagnostics": e.diagnostics},
            )
            error = JobError(Stage.TRANSCODE, e.message)
        except Exception:
            logger.exception("pipeline_error", extra={"prediction_id": identifier, "stage": stage.value})
            error = JobError(stage, f"Internal error during {stage.value}")

        try:
            self.storage.discard(input_path, partial_path)
            if error is not None:
                self.storage.discard(output_path)
        except OSError:
            if error is None:
                error = JobError(Stage.TRANSCODE, "Could not reclaim scratch files")
            self._discard_output_quietly(output_path)

        if error is None:
            logger.info("job_ready", extra={"prediction_id": identifier, "output": str(output_path)})
            return self.registry.complete(identifier, output_path)
        return self.registry.fail(identifier, error)

    def _discard_output_quietly(self, output_path) -> None:
        try:
            self.storage.discard(output_path)
        except OSError:
            logger.error("output_not_reclaimed", extra={"path": str(output_path)})

    def evict_expired(self, max_age_seconds: float) -> int:
        """Remove terminal jobs older than max_age_seconds together with their output files. Returns how many were evicted."""
        if max_age_seconds <= 0:
            return 0
        evicted = 0
        for identifier in self.registry.expired(max_age_seconds):
            try:
                output_path = self.registry.evict(identifier)
            except (JobNotFound, Conflict):
                # resubmitted or evicted concurrently
                continue
            if output_path is not None:
                self.storage.discard(output_path)
            evicted += 1
        if evicted:
            logger.info("jobs_evicted", extra={"count": evicted})
        return evicted

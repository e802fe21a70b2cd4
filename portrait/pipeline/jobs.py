"""In-memory job registry: one Job per identifier, guarded by a single lock so check-then-insert and state transitions are atomic."""
import logging
import os
import re
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from portrait.guardrails.errors import Conflict, JobNotFound, ValidationError

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class JobState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    TRANSCODING = "transcoding"
    READY = "ready"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.READY, JobState.FAILED)


class Stage(str, Enum):
    FETCH = "fetch"
    TRANSCODE = "transcode"


@dataclass(frozen=True)
class JobError:
    """Why a job failed: the stage that failed plus a short client-safe message. status_code/detail come from the remote server on fetch failures."""

    stage: Stage
    message: str
    status_code: Optional[int] = None
    detail: str = ""


# Allowed (from, to) transitions; READY and FAILED are terminal.
_TRANSITIONS = {
    JobState.PENDING: {JobState.FETCHING, JobState.FAILED},
    JobState.FETCHING: {JobState.TRANSCODING, JobState.FAILED},
    JobState.TRANSCODING: {JobState.READY, JobState.FAILED},
}


@dataclass
class Job:
    """A single fetch-transcode-publish run keyed by identifier.
    Why available: The registry's unit of record; the pipeline mutates it (under the registry lock) and the HTTP layer reads snapshots of it."""

    identifier: str
    source_url: str
    state: JobState = JobState.PENDING
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    input_path: Optional[Path] = None
    output_path: Optional[Path] = None
    error: Optional[JobError] = None
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def snapshot(self) -> "Job":
        # Shares the done event so waiters on a snapshot still wake up.
        return replace(self)


def generate_identifier() -> str:
    return secrets.token_hex(8)


def validate_identifier(identifier) -> str:
    """Return identifier if it is safe as a file name component and URL segment, else raise ValidationError."""
    if not isinstance(identifier, str) or not IDENTIFIER_RE.match(identifier):
        raise ValidationError(
            "prediction_id must be 1-128 characters of letters, digits, '-' or '_' and start with a letter or digit"
        )
    return identifier


class JobRegistry:
    """Thread-safe identifier -> Job map.

    Resubmission policy is reuse: submitting an identifier whose job is pending, in flight or ready returns that job and
    created=False, so at most one pipeline ever runs per identifier. A failed job is replaced by a fresh one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def submit(self, identifier: Optional[str], source_url: str) -> Tuple[Job, bool]:
        """Admit a job. Returns (snapshot, created); created is True only for the caller that must run the pipeline."""
        if identifier is None:
            identifier = generate_identifier()
        else:
            validate_identifier(identifier)

        with self._lock:
            existing = self._jobs.get(identifier)
            if existing is not None and existing.state != JobState.FAILED:
                logger.info("job_reused", extra={"prediction_id": identifier, "state": existing.state.value})
                return existing.snapshot(), False
            job = Job(identifier=identifier, source_url=source_url)
            self._jobs[identifier] = job
            logger.info("job_submitted", extra={"prediction_id": identifier, "source_url": source_url})
            return job.snapshot(), True

    def get(self, identifier: str) -> Job:
        """Consistent snapshot of the job. Raises JobNotFound for unknown identifiers or ready jobs whose output disappeared."""
        with self._lock:
            job = self._jobs.get(identifier)
            if job is None:
                raise JobNotFound(identifier)
            if job.state == JobState.READY and not (job.output_path and os.path.isfile(job.output_path)):
                logger.warning("job_output_missing", extra={"prediction_id": identifier})
                del self._jobs[identifier]
                raise JobNotFound(identifier)
            return job.snapshot()

    def _transition(self, identifier: str, to: JobState) -> Job:
        # caller holds self._lock
        job = self._jobs.get(identifier)
        if job is None:
            raise JobNotFound(identifier)
        if to not in _TRANSITIONS.get(job.state, set()):
            raise Conflict(f"Job {identifier} cannot move from {job.state.value} to {to.value}")
        job.state = to
        return job

    def mark(self, identifier: str, state: JobState, input_path: Optional[Path] = None) -> Job:
        """Advance a job to a non-terminal state (fetching or transcoding)."""
        if state.terminal:
            raise Conflict("Use complete() or fail() for terminal states")
        with self._lock:
            job = self._transition(identifier, state)
            if state == JobState.FETCHING:
                job.started_at = time.time()
                job.input_path = input_path
            return job.snapshot()

    def complete(self, identifier: str, output_path: Path) -> Job:
        with self._lock:
            job = self._transition(identifier, JobState.READY)
            job.output_path = Path(output_path)
            job.input_path = None
            job.finished_at = time.time()
            job.done.set()
            return job.snapshot()

    def fail(self, identifier: str, error: JobError) -> Job:
        with self._lock:
            job = self._transition(identifier, JobState.FAILED)
            job.error = error
            job.input_path = None
            job.output_path = None
            job.finished_at = time.time()
            job.done.set()
            return job.snapshot()

    def wait(self, identifier: str, timeout: Optional[float] = None) -> Job:
        """Block until the job reaches a terminal state (or timeout) and return its latest snapshot."""
        with self._lock:
            job = self._jobs.get(identifier)
            if job is None:
                raise JobNotFound(identifier)
            done = job.done
        done.wait(timeout)
        return self.get(identifier)

    def evict(self, identifier: str) -> Optional[Path]:
        """Drop a terminal job and return its output path (if any) for the caller to delete. In-flight jobs cannot be evicted."""
        with self._lock:
            job = self._jobs.get(identifier)
            if job is None:
                raise JobNotFound(identifier)
            if not job.state.terminal:
                raise Conflict(f"Job {identifier} is still {job.state.value}")
            del self._jobs[identifier]
            return job.output_path

    def expired(self, max_age_seconds: float, now: Optional[float] = None) -> List[str]:
        """Identifiers of terminal jobs that finished more than max_age_seconds ago."""
        now = time.time() if now is None else now
        with self._lock:
            return [
                j.identifier
                for j in self._jobs.values()
                if j.state.terminal and j.finished_at is not None and now - j.finished_at > max_age_seconds
            ]

"""Pipeline state machine tests with fake fetcher/transcoder: stage order, failure mapping, cleanup and at-most-one run per identifier."""
import threading
import time

import pytest

from portrait.guardrails.errors import JobNotFound
from portrait.pipeline.jobs import JobState, Stage

URL = "https://example.com/clip.mp4"


def test_run_reaches_ready_and_reclaims_input(pipeline, storage, fetcher, transcoder):
    job, created = pipeline.submit("clip1", URL)
    assert created

    done = pipeline.run("clip1")

    assert done.state == JobState.READY
    assert done.output_path == storage.output_path("clip1")
    assert done.output_path.read_bytes() == b"portrait:source-bytes"
    assert not storage.input_path("clip1").exists()
    assert not storage.partial_path("clip1").exists()
    assert len(fetcher.calls) == 1
    assert len(transcoder.calls) == 1
    assert transcoder.calls[0][0] == storage.input_path("clip1")


def test_process_generates_identifier(pipeline):
    job = pipeline.process(None, URL)
    assert job.state == JobState.READY
    assert len(job.identifier) == 16


def test_fetch_failure_marks_failed_and_skips_transcode(pipeline, storage, fetcher, transcoder, fetch_404):
    fetcher.error = fetch_404

    job = pipeline.process("clip404", URL)

    assert job.state == JobState.FAILED
    assert job.error.stage == Stage.FETCH
    assert job.error.status_code == 404
    assert job.error.detail == "no such clip"
    assert transcoder.calls == []
    assert not storage.input_path("clip404").exists()
    assert not storage.output_path("clip404").exists()


def test_transcode_failure_removes_input_and_partial_output(pipeline, storage, transcoder, ffmpeg_crash):
    transcoder.error = ffmpeg_crash

    job = pipeline.process("broken", URL)

    assert job.state == JobState.FAILED
    assert job.error.stage == Stage.TRANSCODE
    assert job.error.message == "ffmpeg exited with code 1"
    # raw diagnostics stay in the log
    assert "Invalid data" not in job.error.message
    assert not storage.input_path("broken").exists()
    assert not storage.partial_path("broken").exists()
    assert not storage.output_path("broken").exists()


def test_unexpected_error_still_reaches_terminal_state(pipeline, storage, transcoder):
    transcoder.error = RuntimeError("disk on fire")

    job = pipeline.process("oops", URL)

    assert job.state == JobState.FAILED
    assert job.error.stage == Stage.TRANSCODE
    assert "disk on fire" not in job.error.message
    assert not storage.input_path("oops").exists()


def test_transcoder_claiming_success_without_output_fails(pipeline, storage, transcoder):
    transcoder.transcode = lambda input_path, output_path, profile: output_path

    job = pipeline.process("ghost", URL)

    assert job.state == JobState.FAILED
    assert job.error.stage == Stage.TRANSCODE


def test_states_progress_in_order(pipeline):
    seen = []
    registry = pipeline.registry
    original_mark = registry.mark

    def spy(identifier, state, **kwargs):
        seen.append(state)
        return original_mark(identifier, state, **kwargs)

    registry.mark = spy
    pipeline.process("ordered", URL)

    assert seen == [JobState.FETCHING, JobState.TRANSCODING]
    assert registry.get("ordered").state == JobState.READY


def test_ready_resubmission_does_not_rerun(pipeline, fetcher, transcoder):
    first = pipeline.process("again", URL)
    second = pipeline.process("again", URL)

    assert first.state == second.state == JobState.READY
    assert len(fetcher.calls) == 1
    assert len(transcoder.calls) == 1


def test_failed_identifier_can_be_resubmitted(pipeline, fetcher, fetch_404):
    fetcher.error = fetch_404
    assert pipeline.process("retry", URL).state == JobState.FAILED

    fetcher.error = None
    assert pipeline.process("retry", URL).state == JobState.READY
    assert len(fetcher.calls) == 2


def test_concurrent_same_identifier_runs_pipeline_once(pipeline, fetcher, transcoder):
    fetcher.delay = 0.2
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def client():
        barrier.wait()
        job = pipeline.process("shared", URL, wait_timeout=10)
        with lock:
            results.append(job)

    threads = [threading.Thread(target=client) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(15)

    assert len(results) == 8
    assert all(j.state == JobState.READY for j in results)
    assert len(fetcher.calls) == 1
    assert len(transcoder.calls) == 1


def test_transcode_concurrency_is_bounded(pipeline, transcoder):
    transcoder.delay = 0.15
    threads = [threading.Thread(target=pipeline.process, args=(f"job{i}", URL)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(15)

    assert len(transcoder.calls) == 6
    assert transcoder.max_active <= 2


def test_evict_expired_removes_entry_and_file(pipeline, storage):
    job = pipeline.process("old", URL)
    assert job.output_path.exists()

    time.sleep(0.05)
    evicted = pipeline.evict_expired(0.01)

    assert evicted == 1
    assert not storage.output_path("old").exists()
    with pytest.raises(JobNotFound):
        pipeline.registry.get("old")


def test_evict_expired_disabled_with_zero(pipeline):
    pipeline.process("keep", URL)
    assert pipeline.evict_expired(0) == 0
    assert pipeline.registry.get("keep").state == JobState.READY
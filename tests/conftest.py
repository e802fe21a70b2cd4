import os
import sys
import tempfile
import threading
import time
from pathlib import Path
import json
import pytest

# Ensure repo root is on sys.path so `import portrait...` works in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep app import side effects (storage dir creation) out of the working tree
os.environ.setdefault("STORAGE_ROOT", tempfile.mkdtemp(prefix="portrait-test-"))

from portrait.guardrails.errors import FetchError, TranscodeError  # noqa: E402
from portrait.pipeline.jobs import JobRegistry  # noqa: E402
from portrait.pipeline.storage import StorageArea, partial_path_for  # noqa: E402
from portrait.pipeline.transcoder import PROFILES  # noqa: E402
from portrait.pipeline.worker import Pipeline  # noqa: E402


def pretty_json(obj) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False, sort_keys=True)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Attach request/response payloads into pytest-html report.

    In tests, store payloads like:
      item._api_logs = [{"title": "...", "request": ..., "response": ...}, ...]
    """
    outcome = yield
    rep = outcome.get_result()

    if rep.when != "call":
        return

    api_logs = getattr(item, "_api_logs", None)
    if not api_logs:
        return

    # Only attach if pytest-html is installed/enabled
    extras = getattr(rep, "extra", [])

    try:
        from pytest_html import extras as html_extras
    except ImportError:
        rep.extra = extras
        return

    for entry in api_logs:
        title = entry.get("title", "API Call")
        req = entry.get("request", {})
        res = entry.get("response", {})

        html = f"""
        <div style="font-family: ui-monospace, SFMono-Regular, Menlo, Monaco, Consolas, 'Liberation Mono', monospace;">
          <h4 style="margin:8px 0;">{title}</h4>

          <details style="margin:6px 0;">
            <summary><b>Request</b></summary>
            <pre style="background:#0b1020;color:#cfe3ff;padding:10px;border-radius:8px;overflow:auto;">{pretty_json(req)}</pre>
          </details>

          <details style="margin:6px 0;">
            <summary><b>Response</b></summary>
            <pre style="background:#0b1020;color:#cfe3ff;padding:10px;border-radius:8px;overflow:auto;">{pretty_json(res)}</pre>
          </details>
        </div>
        """
        extras.append(html_extras.html(html))

    rep.extra = extras


# -------------------------
# Pipeline doubles
# -------------------------


class FakeFetcher:
    """Writes fixed bytes to the destination. error: raise it instead; delay: sleep first (to widen race windows)."""

    def __init__(self, payload: bytes = b"source-bytes", error: Exception = None, delay: float = 0.0):
        self.payload = payload
        self.error = error
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, source_url, destination):
        with self._lock:
            self.calls.append((source_url, Path(destination)))
        if self.delay:
            time.sleep(self.delay)
        destination = Path(destination)
        if self.error is not None:
            # leave a partial file behind to prove the pipeline reclaims it
            destination.write_bytes(b"partial")
            raise self.error
        destination.write_bytes(self.payload)
        return destination


class FakeTranscoder:
    """Copies input to output with a marker prefix. error: leave a partial file and raise it instead."""

    def __init__(self, error: Exception = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def transcode(self, input_path, output_path, profile):
        with self._lock:
            self.calls.append((Path(input_path), Path(output_path), profile))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            output_path = Path(output_path)
            partial = partial_path_for(output_path)
            if self.error is not None:
                partial.write_bytes(b"half-written")
                raise self.error
            assert Path(input_path).is_file(), "input must be fully fetched before transcoding"
            output_path.write_bytes(b"portrait:" + Path(input_path).read_bytes())
            return output_path
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def storage(tmp_path) -> StorageArea:
    return StorageArea(tmp_path / "videos").ensure()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def pipeline(storage, fetcher, transcoder) -> Pipeline:
    return Pipeline(
        registry=JobRegistry(),
        storage=storage,
        fetcher=fetcher,
        transcoder=transcoder,
        profile=PROFILES["portrait_720"],
        max_concurrent_transcodes=2,
    )


@pytest.fixture
def fetch_404() -> FetchError:
    return FetchError("Failed to download input", status_code=404, detail="no such clip")


@pytest.fixture
def ffmpeg_crash() -> TranscodeError:
    return TranscodeError("ffmpeg exited with code 1", diagnostics="Invalid data found when processing input")

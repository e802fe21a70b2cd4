"""
Fetcher: stream a remote video to a local file.
Transport failures and non-2xx responses both raise FetchError; the destination is removed on any failure so a truncated file never looks valid.
"""
import logging
import os
import socket
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union
from urllib.parse import urlparse

import requests

from portrait.guardrails.errors import FetchError, ValidationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DETAIL_MAX_CHARS = 512


def validate_source_url(url) -> str:
    """Return the stripped URL if it is an absolute http(s) URL with a host, else raise ValidationError.
    Why available: Rejects bad input at the HTTP boundary before any job is created."""
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Missing or invalid video_url")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("video_url must be an absolute http(s) URL")
    return url


def _error_detail(response: requests.Response) -> str:
    try:
        return (response.text or "")[:DETAIL_MAX_CHARS]
    except requests.RequestException:
        return ""


class HttpFetcher:
    """Downloads with requests in streaming mode.
    connect_timeout/read_timeout are per-socket; total_timeout bounds the whole stage; max_bytes (0 = unlimited) caps the download size."""

    def __init__(
        self,
        connect_timeout: float = 10,
        read_timeout: float = 60,
        total_timeout: float = 300,
        max_bytes: int = 0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.total_timeout = total_timeout
        self.max_bytes = max_bytes
        self.session = session
        self.clock = clock

    def _get(self, url: str) -> requests.Response:
        getter = self.session.get if self.session is not None else requests.get
        return getter(url, stream=True, timeout=(self.connect_timeout, self.read_timeout))

    def fetch(self, source_url: str, destination: Union[str, Path]) -> Path:
        """Stream source_url into destination and return the destination path. Raises FetchError; never leaves a partial file behind.
        Transport errors reach the log with their full text; the FetchError message stays short enough to hand to clients."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        deadline = self.clock() + self.total_timeout

        try:
            response = self._get(source_url)
        except requests.Timeout as e:
            logger.warning("fetch_connect_timeout", exc_info=True, extra={"url": source_url})
            raise FetchError("Timed out connecting to source") from e
        except requests.RequestException as e:
            logger.warning("fetch_unreachable", exc_info=True, extra={"url": source_url})
            raise FetchError("Source unreachable") from e

        expired = threading.Event()
        watchdog = threading.Timer(max(0.0, deadline - self.clock()), _abort_stream, args=(response, expired))
        watchdog.daemon = True
        watchdog.start()
        try:
            if not 200 <= response.status_code < 300:
                raise FetchError(
                    "Failed to download input",
                    status_code=response.status_code,
                    detail=_error_detail(response),
                )
            written = self._write_body(response, destination, deadline, expired)
        except BaseException:
            _remove_quietly(destination)
            raise
        finally:
            watchdog.cancel()
            response.close()

        logger.info("fetch_done", extra={"url": source_url, "bytes": written, "path": str(destination)})
        return destination

    def _write_body(self, response: requests.Response, destination: Path, deadline: float, expired: threading.Event) -> int:
        written = 0
        try:
            with open(destination, "wb") as out:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    out.write(chunk)
                    written += len(chunk)
                    if self.max_bytes and written > self.max_bytes:
                        raise FetchError(f"Source exceeds download limit of {self.max_bytes} bytes")
                    if expired.is_set() or self.clock() > deadline:
                        raise FetchError(f"Download exceeded {self.total_timeout}s")
        except requests.RequestException as e:
            if expired.is_set():
                raise FetchError(f"Download exceeded {self.total_timeout}s") from e
            logger.warning("fetch_interrupted", exc_info=True, extra={"path": str(destination)})
            raise FetchError("Download interrupted") from e
        except OSError as e:
            if expired.is_set():
                raise FetchError(f"Download exceeded {self.total_timeout}s") from e
            logger.error("fetch_write_failed", exc_info=True, extra={"path": str(destination)})
            raise FetchError("Could not write input file") from e
        # a stream cut by the watchdog can end like a clean EOF
        if expired.is_set():
            raise FetchError(f"Download exceeded {self.total_timeout}s")
        if written == 0:
            raise FetchError("Source returned an empty body")
        return written


def _stream_socket(response: requests.Response) -> Optional[socket.socket]:
    raw = response.raw
    conn = getattr(raw, "connection", None) or getattr(raw, "_connection", None)
    sock = getattr(conn, "sock", None)
    if sock is not None:
        return sock
    # http.client drops conn.sock on "Connection: close"; the body reader still holds it
    reader = getattr(getattr(getattr(raw, "_fp", None), "fp", None), "raw", None)
    return getattr(reader, "_sock", None)


def _abort_stream(response: requests.Response, expired: threading.Event) -> None:
    """Fired by the fetch watchdog at the stage deadline. Shutting the socket down wakes a reader blocked in recv."""
    expired.set()
    sock = _stream_socket(response)
    if sock is None:
        response.close()
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        logger.debug("fetch_socket_already_closed", exc_info=True)
    logger.warning("fetch_deadline_exceeded", extra={"url": response.url})


def _remove_quietly(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass

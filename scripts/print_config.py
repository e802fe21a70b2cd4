#!/usr/bin/env python3
"""Print the effective pipeline configuration (from env / .env). Run from repo root: uv run python scripts/print_config.py"""
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from portrait.core.config import settings
from portrait.pipeline.transcoder import build_filter_graph, get_profile


def main():
    """Print storage, profile, timeout and concurrency settings plus the ffmpeg filter graph they produce."""
    profile = get_profile(settings.transcode_profile)
    print("Portrait transcoder configuration")
    print("---------------------------------")
    print(f"  PORT                          = {settings.port}")
    print(f"  PUBLIC_BASE_URL               = {settings.public_base_url or '(request host)'}")
    print(f"  STORAGE_ROOT                  = {settings.storage_root}")
    print(f"  TRANSCODE_PROFILE             = {profile.name} ({profile.width}x{profile.height}, {profile.video_codec}, audio {profile.audio_codec})")
    print(f"  FETCH_CONNECT_TIMEOUT_SECONDS = {settings.fetch_connect_timeout_seconds}")
    print(f"  FETCH_TIMEOUT_SECONDS         = {settings.fetch_timeout_seconds}")
    print(f"  TRANSCODE_TIMEOUT_SECONDS     = {settings.transcode_timeout_seconds}")
    print(f"  MAX_CONCURRENT_TRANSCODES     = {settings.max_concurrent_transcodes}")
    print(f"  MAX_DOWNLOAD_MB               = {settings.max_download_mb or 'unlimited'}")
    print(f"  OUTPUT_TTL_SECONDS            = {settings.output_ttl_seconds or 'keep forever'}")
    print("")
    print(f"  ffmpeg -vf {build_filter_graph(profile)}")
    print("")
    print("Env: see .env.example")


if __name__ == "__main__":
    main()

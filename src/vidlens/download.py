from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from pathlib import Path
from typing import Protocol

from .config import DownloadConfig
from .errors import DownloadFailed
from .models import VideoMetadata
from .utils import log_event


class Downloader(Protocol):
    async def download(self, url: str, destination: Path) -> Path: ...

    async def fetch_metadata(self, url: str) -> VideoMetadata: ...


class YtDlpDownloader:
    """Runs the yt-dlp executable as a subprocess.

    The download merges the best video and audio streams into a single
    container. Timeouts are left to yt-dlp itself (``--socket-timeout``).
    """

    def __init__(self, config: DownloadConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("vidlens.download")

    def _base_command(self) -> list[str]:
        if self._config.ytdlp_path:
            return [self._config.ytdlp_path]
        return [sys.executable, "-m", "yt_dlp"]

    def build_download_command(self, url: str, destination: Path) -> list[str]:
        return [
            *self._base_command(),
            "-f",
            self._config.format,
            "--merge-output-format",
            self._config.merge_output_format,
            "-o",
            str(destination),
            "--no-playlist",
            "--quiet",
            "--no-warnings",
            "--socket-timeout",
            str(self._config.socket_timeout_seconds),
            "--",
            url,
        ]

    def build_metadata_command(self, url: str) -> list[str]:
        return [
            *self._base_command(),
            "--dump-single-json",
            "--skip-download",
            "--no-playlist",
            "--quiet",
            "--no-warnings",
            "--socket-timeout",
            str(self._config.socket_timeout_seconds),
            "--",
            url,
        ]

    async def download(self, url: str, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        log_event(self._logger, logging.INFO, "download_started", url=url, path=destination)
        returncode, _, stderr = await _run(self.build_download_command(url, destination), url)
        if returncode != 0:
            raise DownloadFailed(url, f"exit_code={returncode} {_tail(stderr)}".strip())
        if not destination.exists():
            raise DownloadFailed(url, "output_missing")
        log_event(
            self._logger,
            logging.INFO,
            "download_finished",
            url=url,
            path=destination,
            bytes=destination.stat().st_size,
        )
        return destination

    async def fetch_metadata(self, url: str) -> VideoMetadata:
        try:
            returncode, stdout, stderr = await _run(self.build_metadata_command(url), url)
        except DownloadFailed as exc:
            log_event(self._logger, logging.WARNING, "metadata_failed", url=url, error=exc.reason)
            return VideoMetadata()
        if returncode != 0:
            log_event(
                self._logger,
                logging.WARNING,
                "metadata_failed",
                url=url,
                exit_code=returncode,
                error=_tail(stderr),
            )
            return VideoMetadata()
        try:
            info = json.loads(stdout.decode("utf-8", errors="replace"))
        except json.JSONDecodeError:
            log_event(self._logger, logging.WARNING, "metadata_invalid_json", url=url)
            return VideoMetadata()
        if not isinstance(info, dict):
            return VideoMetadata()
        return VideoMetadata(
            title=_clean(info.get("title")),
            description=_clean(info.get("description")),
        )


async def _run(command: list[str], url: str) -> tuple[int, bytes, bytes]:
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise DownloadFailed(url, f"spawn_error: {exc}") from exc
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise
    return int(process.returncode or 0), stdout or b"", stderr or b""


def _tail(stderr: bytes, limit: int = 500) -> str:
    text = stderr.decode("utf-8", errors="replace").strip()
    return text[-limit:]


def _clean(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None

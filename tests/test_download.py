import asyncio
import json

import pytest

from vidlens.download import YtDlpDownloader
from vidlens.errors import DownloadFailed


class _FakeProcess:
    def __init__(self, returncode, stdout=b"", stderr=b""):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr

    async def communicate(self):
        return self._stdout, self._stderr


def _patch_exec(monkeypatch, process, on_call=None):
    seen = []

    async def fake_exec(*command, **kwargs):
        seen.append(list(command))
        if on_call:
            on_call(list(command))
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    return seen


def test_download_command_uses_best_merged_format(config, tmp_path):
    downloader = YtDlpDownloader(config.download)
    command = downloader.build_download_command("https://example.com/v/1", tmp_path / "42.mp4")

    assert command[command.index("-f") + 1] == "bv*+ba/b"
    assert command[command.index("--merge-output-format") + 1] == "mp4"
    assert command[command.index("-o") + 1] == str(tmp_path / "42.mp4")
    assert "--no-playlist" in command
    assert command[-2:] == ["--", "https://example.com/v/1"]


async def test_download_returns_path(config, tmp_path, monkeypatch):
    destination = tmp_path / "tmp" / "42.mp4"
    _patch_exec(monkeypatch, _FakeProcess(0), on_call=lambda _: destination.write_bytes(b"video"))

    path = await YtDlpDownloader(config.download).download("https://example.com/v/1", destination)
    assert path == destination


async def test_non_zero_exit_raises(config, tmp_path, monkeypatch):
    _patch_exec(monkeypatch, _FakeProcess(1, stderr=b"ERROR: Unsupported URL"))

    with pytest.raises(DownloadFailed) as excinfo:
        await YtDlpDownloader(config.download).download("https://example.com/v/1", tmp_path / "42.mp4")
    assert "exit_code=1" in excinfo.value.reason
    assert "Unsupported URL" in excinfo.value.reason


async def test_missing_output_raises(config, tmp_path, monkeypatch):
    _patch_exec(monkeypatch, _FakeProcess(0))

    with pytest.raises(DownloadFailed) as excinfo:
        await YtDlpDownloader(config.download).download("https://example.com/v/1", tmp_path / "42.mp4")
    assert excinfo.value.reason == "output_missing"


async def test_spawn_error_raises(config, tmp_path, monkeypatch):
    async def broken_exec(*command, **kwargs):
        raise FileNotFoundError("yt-dlp")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", broken_exec)
    with pytest.raises(DownloadFailed) as excinfo:
        await YtDlpDownloader(config.download).download("https://example.com/v/1", tmp_path / "42.mp4")
    assert excinfo.value.reason.startswith("spawn_error")


async def test_fetch_metadata(config, monkeypatch):
    info = {"title": "  Demo clip ", "description": "", "id": "abc"}
    seen = _patch_exec(monkeypatch, _FakeProcess(0, stdout=json.dumps(info).encode("utf-8")))

    metadata = await YtDlpDownloader(config.download).fetch_metadata("https://example.com/v/1")
    assert metadata.title == "Demo clip"
    assert metadata.description is None
    assert "--dump-single-json" in seen[0]


async def test_fetch_metadata_failures_are_empty(config, monkeypatch):
    _patch_exec(monkeypatch, _FakeProcess(0, stdout=b"not json"))
    assert (await YtDlpDownloader(config.download).fetch_metadata("https://x.io")).is_empty

    _patch_exec(monkeypatch, _FakeProcess(2, stderr=b"boom"))
    assert (await YtDlpDownloader(config.download).fetch_metadata("https://x.io")).is_empty


class _HangingProcess:
    def __init__(self):
        self.returncode = None
        self.killed = False
        self.started = asyncio.Event()

    async def communicate(self):
        self.started.set()
        await asyncio.sleep(3600)

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


async def test_cancelled_download_kills_child(config, tmp_path, monkeypatch):
    process = _HangingProcess()
    _patch_exec(monkeypatch, process)

    task = asyncio.create_task(
        YtDlpDownloader(config.download).download("https://example.com/v/1", tmp_path / "42.mp4")
    )
    await process.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert process.killed

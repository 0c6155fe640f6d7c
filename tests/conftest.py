from __future__ import annotations

from pathlib import Path

import pytest

from vidlens.config import load_config
from vidlens.errors import DownloadFailed
from vidlens.models import VideoMetadata
from vidlens.orchestrator import build_context

TARGET_CHAT = -1001


class FakeTransport:
    def __init__(self, send_ids: list[int | None] | None = None) -> None:
        self.calls: list[tuple] = []
        self._send_ids = list(send_ids or [])
        self._next_id = 500

    async def send_message(self, chat_id, text, reply_to=None, button=None):
        self.calls.append(("send", chat_id, text, reply_to, button))
        if self._send_ids:
            return self._send_ids.pop(0)
        self._next_id += 1
        return self._next_id

    async def edit_message(self, chat_id, message_id, text):
        self.calls.append(("edit", chat_id, message_id, text))
        return True

    async def answer_callback(self, callback_id, text=None):
        self.calls.append(("answer", callback_id, text))

    def of_kind(self, kind: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == kind]


class FakeDownloader:
    def __init__(self, fail: bool = False, metadata: VideoMetadata | None = None) -> None:
        self.fail = fail
        self.metadata = metadata or VideoMetadata(title="Demo clip", description="A short demo.")
        self.downloads: list[tuple[str, Path]] = []

    async def download(self, url: str, destination: Path) -> Path:
        self.downloads.append((url, destination))
        if self.fail:
            raise DownloadFailed(url, "exit_code=1 boom")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"fake-video")
        return destination

    async def fetch_metadata(self, url: str) -> VideoMetadata:
        return self.metadata


class FakeAnalysisClient:
    """Plays back ``outcomes`` in order: a string is returned, an exception raised."""

    def __init__(self, outcomes: list | None = None, default: object = "Summary text") -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls: list[dict] = []

    async def generate(self, *, api_key, model, video_b64, context_text, prompt):
        self.calls.append(
            {
                "api_key": api_key,
                "model": model,
                "video_b64": video_b64,
                "context_text": context_text,
                "prompt": prompt,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def config(tmp_path, monkeypatch):
    for name in ("VL_CONFIG", "GEMINI_MODELS", "GEMINI_PROMPT", "VL_WEBHOOK_SECRET", "VIDLENS_MASTER_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("VL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TARGET_CHAT_ID", str(TARGET_CHAT))
    monkeypatch.setenv("GEMINI_API_KEY", "key-aaaa,key-bbbb")
    return load_config()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def downloader():
    return FakeDownloader()


@pytest.fixture
def analysis_client():
    return FakeAnalysisClient()


@pytest.fixture
def context(config, transport, downloader, analysis_client):
    ctx = build_context(
        config,
        transport=transport,
        downloader=downloader,
        analysis_client=analysis_client,
    )
    yield ctx
    ctx.conn.close()

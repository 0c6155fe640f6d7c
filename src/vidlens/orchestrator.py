from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .artifacts import merge_rerun_artifacts
from .config import Config, ConfigError
from .download import Downloader, YtDlpDownloader
from .errors import ArtifactMergeFailed, DownloadFailed, VidlensError
from .events import CallbackEvent, InboundEvent, MessageEvent, RerunToken, Unrecognized
from .formatting import compose_final_text
from .llm.gemini import AnalysisClient, GeminiClient
from .models import JOB_DONE, AnalysisContext, VideoMetadata
from .services.analysis import AnalysisService
from .services.credentials import CredentialRotator
from .status import WAITING_TEXT, StatusReporter
from .storage import (
    create_job,
    get_job_url,
    get_latest_job_for_url,
    init_db,
    mark_job_done,
    mark_job_failed,
)
from .telegram import ChatTransport, InlineButton, TelegramClient
from .utils import extract_first_url, log_event

DOWNLOADING_TEXT = "⏳ **Downloading video...**"
DOWNLOAD_FAILED_TEXT = "❌ **Failed to download the video link.**"
ANALYSIS_FAILED_TEXT = "❌ **Failed to analyze video with AI.**"
RERUN_TEXT = "⏳ **Re-running analysis...**"
RERUN_FAILED_TEXT = "❌ **Re-run failed. Please try again later.**"
NO_LINK_TEXT = "No video link detected in your message."
ALREADY_PROCESSED_TEXT = "This link was already processed. Press to re-run."
RERUN_BUTTON_TEXT = "Re-run analysis"
NO_URL_ANSWER = "No URL found for previous analysis."
RERUN_ANSWER = "Re-running analysis..."
RERUN_FAILED_ANSWER = "Re-run failed. Please try again later."


@dataclass
class AppContext:
    """Everything a webhook event needs, constructed once per process."""

    config: Config
    conn: sqlite3.Connection
    rotator: CredentialRotator
    transport: ChatTransport
    downloader: Downloader
    analyzer: AnalysisService
    closeables: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        for item in self.closeables:
            await item.aclose()
        self.closeables.clear()
        self.conn.close()


def build_context(
    config: Config,
    transport: ChatTransport | None = None,
    downloader: Downloader | None = None,
    analysis_client: AnalysisClient | None = None,
) -> AppContext:
    if not config.telegram.target_chat_id:
        # Message ids are only unique per chat, jobs and artifacts are keyed by them alone.
        raise ConfigError("telegram.target_chat_id must be set (TARGET_CHAT_ID)")
    conn = init_db(config.paths.state_db)
    rotator = CredentialRotator(conn)
    rotator.register(config.analysis.api_keys)
    closeables: list[Any] = []
    if transport is None:
        telegram = TelegramClient(config.telegram)
        closeables.append(telegram)
        transport = telegram
    if analysis_client is None:
        gemini = GeminiClient(config.analysis)
        closeables.append(gemini)
        analysis_client = gemini
    analyzer = AnalysisService(config.analysis, config.paths.md_dir, rotator, analysis_client)
    return AppContext(
        config=config,
        conn=conn,
        rotator=rotator,
        transport=transport,
        downloader=downloader or YtDlpDownloader(config.download),
        analyzer=analyzer,
        closeables=closeables,
    )


class WebhookOrchestrator:
    def __init__(self, context: AppContext, logger: logging.Logger | None = None) -> None:
        self._ctx = context
        self._logger = logger or logging.getLogger("vidlens.orchestrator")
        self._answered: set[str] = set()

    async def handle(self, event: InboundEvent) -> None:
        try:
            if isinstance(event, CallbackEvent):
                await self.handle_callback(event)
            elif isinstance(event, MessageEvent):
                await self.handle_message(event)
            elif isinstance(event, Unrecognized):
                log_event(self._logger, logging.DEBUG, "event_ignored", reason=event.reason)
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.ERROR, "event_failed", error=str(exc))
            await self._notify_failure(event)
        finally:
            if isinstance(event, CallbackEvent):
                self._answered.discard(event.callback_id)

    async def handle_message(self, event: MessageEvent) -> None:
        if not self._is_target_chat(event.chat_id) or event.message_id is None:
            log_event(
                self._logger,
                logging.DEBUG,
                "message_ignored",
                chat_id=event.chat_id,
                message_id=event.message_id,
            )
            return
        transport = self._ctx.transport
        url = extract_first_url(event.text)
        if not url:
            await transport.send_message(event.chat_id, NO_LINK_TEXT, reply_to=event.message_id)
            return

        existing = get_latest_job_for_url(self._ctx.conn, url)
        if existing is not None and existing.status == JOB_DONE:
            token = RerunToken(existing.message_id, event.message_id)
            log_event(
                self._logger,
                logging.INFO,
                "duplicate_url",
                message_id=event.message_id,
                prior_message_id=existing.message_id,
            )
            await transport.send_message(
                event.chat_id,
                ALREADY_PROCESSED_TEXT,
                reply_to=event.message_id,
                button=InlineButton(RERUN_BUTTON_TEXT, token.encode()),
            )
            return

        reporter = self._reporter(event.chat_id, reply_to=event.message_id)
        await reporter.start(DOWNLOADING_TEXT)
        await self._run_job(
            reporter,
            url,
            event.message_id,
            download_failed_text=DOWNLOAD_FAILED_TEXT,
            analysis_failed_text=ANALYSIS_FAILED_TEXT,
        )

    async def handle_callback(self, event: CallbackEvent) -> None:
        token = RerunToken.parse(event.data)
        if token is None or event.chat_id is None or not self._is_target_chat(event.chat_id):
            log_event(self._logger, logging.DEBUG, "callback_ignored", data=event.data, chat_id=event.chat_id)
            await self._answer(event)
            return

        url = get_job_url(self._ctx.conn, token.prior_message_id)
        if not url:
            log_event(
                self._logger,
                logging.WARNING,
                "rerun_missing_url",
                prior_message_id=token.prior_message_id,
            )
            await self._answer(event, NO_URL_ANSWER)
            return

        await self._answer(event, RERUN_ANSWER)
        log_event(
            self._logger,
            logging.INFO,
            "rerun_started",
            prior_message_id=token.prior_message_id,
            message_id=token.new_message_id,
        )
        reporter = self._reporter(event.chat_id, reply_to=None, message_id=event.message_id)
        if reporter.message_id is None:
            await reporter.start(RERUN_TEXT)
        else:
            await reporter.update(RERUN_TEXT)
        await self._run_job(
            reporter,
            url,
            token.new_message_id,
            prior_message_id=token.prior_message_id,
            download_failed_text=RERUN_FAILED_TEXT,
            analysis_failed_text=RERUN_FAILED_TEXT,
        )

    async def _run_job(
        self,
        reporter: StatusReporter,
        url: str,
        message_id: int,
        *,
        download_failed_text: str,
        analysis_failed_text: str,
        prior_message_id: int | None = None,
    ) -> None:
        destination = Path(self._ctx.config.paths.tmp_dir) / f"{message_id}.mp4"
        try:
            create_job(self._ctx.conn, message_id, url, destination.name)
        except (sqlite3.Error, RuntimeError) as exc:
            log_event(self._logger, logging.ERROR, "job_create_failed", message_id=message_id, error=str(exc))
            await reporter.finish(download_failed_text)
            return

        try:
            await self._download_and_analyze(
                reporter,
                url,
                message_id,
                destination,
                prior_message_id=prior_message_id,
                download_failed_text=download_failed_text,
                analysis_failed_text=analysis_failed_text,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.ERROR, "job_failed", message_id=message_id, error=str(exc))
            mark_job_failed(self._ctx.conn, message_id)
            await reporter.finish(analysis_failed_text)
        finally:
            self._cleanup(destination, message_id)

    async def _download_and_analyze(
        self,
        reporter: StatusReporter,
        url: str,
        message_id: int,
        destination: Path,
        *,
        prior_message_id: int | None,
        download_failed_text: str,
        analysis_failed_text: str,
    ) -> None:
        os.makedirs(destination.parent, exist_ok=True)
        try:
            video_path = await self._ctx.downloader.download(url, destination)
        except DownloadFailed as exc:
            mark_job_failed(self._ctx.conn, message_id)
            log_event(self._logger, logging.ERROR, "job_download_failed", message_id=message_id, error=exc.reason)
            await reporter.finish(download_failed_text)
            return
        mark_job_done(self._ctx.conn, message_id)

        metadata = await self._probe_metadata(url, message_id)
        await reporter.update(WAITING_TEXT)
        context = AnalysisContext.from_metadata(url, metadata)
        try:
            async with reporter.heartbeat():
                text = await self._ctx.analyzer.analyze(video_path, message_id, context)
        except VidlensError as exc:
            log_event(self._logger, logging.ERROR, "job_analysis_failed", message_id=message_id, error=str(exc))
            await reporter.finish(analysis_failed_text)
            return

        if prior_message_id is not None:
            try:
                merge_rerun_artifacts(self._ctx.config.paths.md_dir, prior_message_id, message_id)
            except ArtifactMergeFailed as exc:
                log_event(self._logger, logging.WARNING, "artifact_merge_failed", message_id=message_id, error=str(exc))

        limit = self._ctx.config.status.source_description_limit
        await reporter.finish(compose_final_text(text, url, metadata, limit))
        log_event(self._logger, logging.INFO, "job_completed", message_id=message_id)

    async def _probe_metadata(self, url: str, message_id: int) -> VideoMetadata:
        if not self._ctx.config.download.fetch_metadata:
            return VideoMetadata()
        try:
            return await self._ctx.downloader.fetch_metadata(url)
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.WARNING, "metadata_probe_failed", message_id=message_id, error=str(exc))
            return VideoMetadata()

    async def _answer(self, event: CallbackEvent, text: str | None = None) -> None:
        self._answered.add(event.callback_id)
        await self._ctx.transport.answer_callback(event.callback_id, text)

    async def _notify_failure(self, event: InboundEvent) -> None:
        transport = self._ctx.transport
        try:
            if isinstance(event, MessageEvent):
                if event.message_id is not None and self._is_target_chat(event.chat_id):
                    await transport.send_message(event.chat_id, ANALYSIS_FAILED_TEXT, reply_to=event.message_id)
            elif isinstance(event, CallbackEvent):
                if event.callback_id not in self._answered:
                    await transport.answer_callback(event.callback_id, RERUN_FAILED_ANSWER)
                elif event.chat_id is not None:
                    await transport.send_message(event.chat_id, RERUN_FAILED_TEXT)
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.ERROR, "failure_notice_failed", error=str(exc))

    def _reporter(self, chat_id: int, reply_to: int | None, message_id: int | None = None) -> StatusReporter:
        return StatusReporter(
            self._ctx.transport,
            chat_id,
            reply_to,
            heartbeat_seconds=self._ctx.config.status.heartbeat_seconds,
            message_id=message_id,
        )

    def _is_target_chat(self, chat_id: int) -> bool:
        return chat_id == self._ctx.config.telegram.target_chat_id

    def _cleanup(self, path: Path, message_id: int) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            log_event(self._logger, logging.WARNING, "cleanup_failed", message_id=message_id, error=str(exc))

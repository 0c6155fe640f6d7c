from __future__ import annotations

import asyncio
import base64
import logging
from pathlib import Path

from ..artifacts import write_result_markdown, write_sidecar
from ..config import AnalysisConfig
from ..errors import AnalysisFailed, NoCredentials, VidlensError
from ..llm.gemini import AnalysisClient, is_quota_error
from ..models import AnalysisContext
from ..utils import log_event, truncate
from .credentials import CredentialRotator

CONTEXT_HEADER = "Additional context from the page metadata (may be incomplete):"


class AnalysisService:
    """Submits a downloaded video for analysis with credential rotation.

    Each credential is tried once per call, and each configured model per
    credential. Quota failures move on to the next model or credential. Any
    other failure aborts. The first success is persisted and returned.
    """

    def __init__(
        self,
        config: AnalysisConfig,
        md_dir: str,
        rotator: CredentialRotator,
        client: AnalysisClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._md_dir = md_dir
        self._rotator = rotator
        self._client = client
        self._logger = logger or logging.getLogger("vidlens.analysis")

    async def analyze(
        self,
        video_path: Path,
        message_id: int,
        context: AnalysisContext | None = None,
    ) -> str:
        attempts = self._rotator.count
        if attempts == 0:
            raise NoCredentials()
        video_b64 = await asyncio.to_thread(_encode_video, video_path)
        context_text = build_context_text(context, self._config.max_context_description)

        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            credential = self._rotator.select()
            for model in self._config.models:
                try:
                    text = await self._client.generate(
                        api_key=credential.key,
                        model=model,
                        video_b64=video_b64,
                        context_text=context_text,
                        prompt=self._config.prompt,
                    )
                except Exception as exc:  # noqa: BLE001
                    last_error = exc
                    retryable = is_quota_error(exc)
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "analysis_attempt_failed",
                        message_id=message_id,
                        attempt=attempt,
                        model=model,
                        key_last4=credential.key_last4,
                        retryable=retryable,
                        error=str(exc)[:200],
                    )
                    if not retryable:
                        if isinstance(exc, VidlensError):
                            raise
                        raise AnalysisFailed(str(exc)) from exc
                    continue
                log_event(
                    self._logger,
                    logging.INFO,
                    "analysis_succeeded",
                    message_id=message_id,
                    attempt=attempt,
                    model=model,
                    key_last4=credential.key_last4,
                )
                self._persist(message_id, text, context, model)
                return text
            log_event(
                self._logger,
                logging.INFO,
                "analysis_credential_exhausted",
                message_id=message_id,
                attempt=attempt,
                key_last4=credential.key_last4,
            )

        if last_error is not None:
            raise last_error
        raise AnalysisFailed("all keys exhausted")

    def _persist(
        self,
        message_id: int,
        text: str,
        context: AnalysisContext | None,
        model: str,
    ) -> None:
        try:
            write_result_markdown(self._md_dir, message_id, text)
            if context is not None and not context.is_empty:
                write_sidecar(self._md_dir, message_id, context, model)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "artifact_write_failed",
                message_id=message_id,
                error=str(exc),
            )


def build_context_text(context: AnalysisContext | None, max_description: int) -> str | None:
    if context is None:
        return None
    lines: list[str] = []
    if context.url:
        lines.append(f"Source URL: {context.url}")
    if context.title:
        lines.append(f"Title: {context.title}")
    if context.description:
        lines.append(f"Description:\n{truncate(context.description, max_description)}")
    if not lines:
        return None
    return CONTEXT_HEADER + "\n" + "\n".join(lines)


def _encode_video(video_path: Path) -> str:
    try:
        data = Path(video_path).read_bytes()
    except OSError as exc:
        raise AnalysisFailed(f"video_unreadable: {exc}") from exc
    return base64.b64encode(data).decode("ascii")

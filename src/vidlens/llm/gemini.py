from __future__ import annotations

import logging
import re
import urllib.parse
from typing import Any, Protocol

import httpx

from ..config import AnalysisConfig
from ..errors import AnalysisFailed, QuotaExceeded
from ..utils import log_event

_QUOTA_RE = re.compile(r"quota|exceed|429|rate", re.IGNORECASE)


class AnalysisClient(Protocol):
    async def generate(
        self,
        *,
        api_key: str,
        model: str,
        video_b64: str,
        context_text: str | None,
        prompt: str,
    ) -> str: ...


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, QuotaExceeded):
        return True
    return bool(_QUOTA_RE.search(str(exc)))


class GeminiClient:
    def __init__(
        self,
        config: AnalysisConfig,
        http_client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._logger = logger or logging.getLogger("vidlens.llm.gemini")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def generate(
        self,
        *,
        api_key: str,
        model: str,
        video_b64: str,
        context_text: str | None,
        prompt: str,
    ) -> str:
        url = _join_url(
            self._config.base_url,
            f"/models/{urllib.parse.quote(model)}:generateContent",
        )
        parts: list[dict[str, Any]] = []
        if context_text:
            parts.append({"text": context_text})
        parts.append({"inline_data": {"mime_type": self._config.mime_type, "data": video_b64}})
        parts.append({"text": prompt})
        payload = {"contents": [{"role": "user", "parts": parts}]}
        response = await self._http_request(url, api_key, payload)
        return _read_google(response)

    async def _http_request(self, url: str, api_key: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
        try:
            response = await self._http.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise AnalysisFailed(f"timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise AnalysisFailed(f"network_error: {exc}") from exc
        if response.status_code >= 400:
            raw = response.text[:500]
            log_event(
                self._logger,
                logging.WARNING,
                "gemini_http_error",
                status=response.status_code,
                key_last4=api_key[-4:],
            )
            message = f"http_error {response.status_code}: {raw}"
            if response.status_code == 429 or _QUOTA_RE.search(raw):
                raise QuotaExceeded(message)
            raise AnalysisFailed(message)
        try:
            return response.json()
        except ValueError as exc:
            raise AnalysisFailed("google_invalid_json") from exc


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        feedback = response.get("promptFeedback") or {}
        reason = feedback.get("blockReason")
        if reason:
            raise AnalysisFailed(f"google_blocked: {reason}")
        raise AnalysisFailed("google_missing_candidates")
    parts = candidates[0].get("content", {}).get("parts", [])
    texts = [part.get("text") for part in parts if isinstance(part, dict) and part.get("text")]
    if not texts:
        raise AnalysisFailed("google_missing_parts")
    return "".join(texts)


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path

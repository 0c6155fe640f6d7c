from __future__ import annotations

import re

import telegramify_markdown

from .models import VideoMetadata
from .utils import truncate

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*", re.DOTALL)
_FENCE_OPEN_RE = re.compile(r"^\s*```(?:markdown|md)?[ \t]*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def strip_code_fence(text: str) -> str:
    if not _FENCE_OPEN_RE.match(text):
        return text
    text = _FENCE_OPEN_RE.sub("", text, count=1)
    return _FENCE_CLOSE_RE.sub("", text)


def to_markdown_v2(text: str) -> str:
    """Render model-style markdown as Telegram MarkdownV2.

    A wrapping code fence is dropped first, then telegramify-markdown does the
    conversion and escaping.
    """
    return telegramify_markdown.markdownify(strip_code_fence(text)).rstrip()


def to_plain_text(text: str) -> str:
    text = strip_code_fence(text)
    return _BOLD_RE.sub(lambda match: match.group(1), text)


def source_context_block(url: str | None, metadata: VideoMetadata | None, description_limit: int) -> str:
    metadata = metadata or VideoMetadata()
    lines = ["", "**Source Context**"]
    if metadata.title:
        lines.append(f"**Title:** {metadata.title}")
    if url:
        lines.append(f"**URL:** {url}")
    if metadata.description:
        lines.append(f"**Description:**\n{truncate(metadata.description, description_limit)}")
    return "\n".join(lines)


def compose_final_text(
    analysis: str,
    url: str | None,
    metadata: VideoMetadata | None,
    description_limit: int,
) -> str:
    if not url and (metadata is None or metadata.is_empty):
        return analysis
    return analysis + "\n\n" + source_context_block(url, metadata, description_limit)

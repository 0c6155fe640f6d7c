from __future__ import annotations

import os
from pathlib import Path

import jsonschema

from .errors import ArtifactMergeFailed
from .models import AnalysisContext
from .utils import json_dumps, utc_now_iso

ARTIFACT_EXTENSIONS = (".md", ".json")

SIDECAR_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "url": {"type": ["string", "null"]},
        "title": {"type": ["string", "null"]},
        "description": {"type": ["string", "null"]},
        "analyzed_at": {"type": "string"},
        "model": {"type": "string"},
    },
    "required": ["url", "title", "description", "analyzed_at", "model"],
    "additionalProperties": False,
}


def result_path(md_dir: str, artifact_id: str | int) -> Path:
    return Path(md_dir) / f"{artifact_id}.md"


def sidecar_path(md_dir: str, artifact_id: str | int) -> Path:
    return Path(md_dir) / f"{artifact_id}.json"


def combined_id(prior_message_id: int, new_message_id: int) -> str:
    return f"{prior_message_id}-{new_message_id}"


def write_result_markdown(md_dir: str, message_id: int, text: str) -> str:
    os.makedirs(md_dir, exist_ok=True)
    path = result_path(md_dir, message_id)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)
    return str(path)


def write_sidecar(md_dir: str, message_id: int, context: AnalysisContext, model: str) -> str:
    payload = {
        "url": context.url,
        "title": context.title,
        "description": context.description,
        "analyzed_at": utc_now_iso(),
        "model": model,
    }
    jsonschema.validate(payload, SIDECAR_SCHEMA)
    os.makedirs(md_dir, exist_ok=True)
    path = sidecar_path(md_dir, message_id)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(json_dumps(payload, indent=2))
    return str(path)


def merge_rerun_artifacts(md_dir: str, prior_message_id: int, new_message_id: int) -> list[str]:
    """Rename the re-run's artifacts to ``<prior>-<new>``.

    The prior run's files are left in place so neither result overwrites the
    other.
    """
    merged: list[str] = []
    target_id = combined_id(prior_message_id, new_message_id)
    for ext in ARTIFACT_EXTENSIONS:
        source = Path(md_dir) / f"{new_message_id}{ext}"
        if not source.exists():
            continue
        target = Path(md_dir) / f"{target_id}{ext}"
        try:
            os.replace(source, target)
        except OSError as exc:
            raise ArtifactMergeFailed(f"rename_failed {source} -> {target}: {exc}") from exc
        merged.append(str(target))
    return merged

from __future__ import annotations

from dataclasses import dataclass

JOB_DOWNLOADING = "downloading"
JOB_DONE = "done"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class Job:
    id: int
    message_id: int
    url: str
    file_path: str
    status: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Credential:
    id: int
    key: str
    key_last4: str
    usage_count: int
    last_used: str | None


@dataclass(frozen=True)
class VideoMetadata:
    title: str | None = None
    description: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.title or self.description)


@dataclass(frozen=True)
class AnalysisContext:
    url: str | None = None
    title: str | None = None
    description: str | None = None

    @classmethod
    def from_metadata(cls, url: str | None, metadata: VideoMetadata | None) -> "AnalysisContext":
        metadata = metadata or VideoMetadata()
        return cls(url=url, title=metadata.title, description=metadata.description)

    @property
    def is_empty(self) -> bool:
        return not (self.url or self.title or self.description)

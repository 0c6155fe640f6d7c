from __future__ import annotations


class VidlensError(Exception):
    pass


class NoCredentials(VidlensError):
    def __init__(self, message: str = "no_credentials_configured") -> None:
        super().__init__(message)


class DownloadFailed(VidlensError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"download_failed url={url} reason={reason}")
        self.url = url
        self.reason = reason


class QuotaExceeded(VidlensError):
    """Retryable inside the analysis step only."""


class AnalysisFailed(VidlensError):
    pass


class ArtifactMergeFailed(VidlensError):
    pass


class TransportSendFailed(VidlensError):
    pass

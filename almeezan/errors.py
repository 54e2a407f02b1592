from __future__ import annotations

from typing import List, Optional


class IngestError(RuntimeError):
    pass


class FetchError(IngestError):
    """Terminal fetch failure. `reasons` holds one entry per transport tried."""

    def __init__(self, message: str, *, url: str = "", reasons: Optional[List[str]] = None):
        super().__init__(message)
        self.url = url
        self.reasons: List[str] = list(reasons or [])


class TransientFetchError(FetchError):
    pass


class ChallengeDetectedError(FetchError):
    pass


class TlsVerificationError(FetchError):
    pass


class UnreadableSourceError(IngestError):
    pass


class EmptyExtractionError(IngestError):
    pass


class CorpusDiscoveryError(IngestError):
    pass


class ZeroOutputError(IngestError):
    pass


def truncate_error(message: str, limit: int = 500) -> str:
    msg = (message or "").strip()
    if len(msg) <= limit:
        return msg
    return msg[: limit - 3] + "..."

"""Error taxonomy for the update pipeline.

Only ``RateLimitExceeded`` and a total ``SourceUnavailable`` reach callers of
``UpdateOrchestrator.get_current``; the others are absorbed into a degraded
but valid result. ``http_status`` lets a route layer pick a response code.
"""

from typing import Optional


class VigieError(Exception):
    http_status = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RateLimitExceeded(VigieError):
    """Registry rate limit hit or breaker open; retry after a backoff."""

    http_status = 429
    retryable = True

    def __init__(self, message: str = "rate limit exceeded", details: Optional[dict] = None):
        super().__init__(message, details)


class SourceUnavailable(VigieError):
    http_status = 503

    def __init__(self, source: str, message: str, details: Optional[dict] = None):
        super().__init__(f"{source} unavailable: {message}", details)
        self.source = source


class PartialItemFailure(VigieError):
    def __init__(self, item_id: str, message: str, conclusive: bool = False):
        super().__init__(f"check failed for {item_id}: {message}")
        self.item_id = item_id
        self.conclusive = conclusive


class SchemaDrift(VigieError):
    def __init__(self, key: str, reason: str):
        super().__init__(f"cached {key} needs backfill: {reason}")
        self.key = key
        self.reason = reason


class RunStateError(VigieError):
    pass

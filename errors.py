"""
errors.py — Failure taxonomy for the card-processing pipeline.

Retryable errors are things that may go away on their own (network,
rate limits, a flaky save).  Non-retryable errors mean the card itself
is the problem and the practical remedy is to recapture it.
DuplicateContent is not a failure at all: it signals that the same
image bytes were already processed for this organization.
"""

import asyncio

import httpx


class CardPipelineError(Exception):
    """Catch-all parent of all pipeline exceptions."""

    kind = "unexpected"
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or ERROR_MESSAGES[self.kind])

    @property
    def message(self):
        return str(self)


class TransientNetworkError(CardPipelineError):
    """Connection dropped, timed out, or the service answered 5xx."""

    kind = "network"
    retryable = True


class RateLimited(TransientNetworkError):
    kind = "rate_limited"

    def __init__(self, message=None, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class UploadError(CardPipelineError):
    """The upload service refused the image (authorization, size)."""

    kind = "upload"
    retryable = True


class ExtractionValidationError(CardPipelineError):
    """The image is unusable for extraction."""

    kind = "unreadable"


class PersistenceError(CardPipelineError):
    """Saving the record failed.  Safe to retry: upload and extraction are
    idempotent against the content hash."""

    kind = "persistence"
    retryable = True


class DuplicateContent(CardPipelineError):
    kind = "duplicate"

    def __init__(self, matched_hash, message=None):
        super().__init__(message)
        self.matched_hash = matched_hash


class IllegalTransition(CardPipelineError):
    """A caller asked for a status change the status graph forbids."""

    kind = "illegal_transition"


class SessionError(CardPipelineError):
    kind = "session"


# ---------------------------------------------------------------------------
# USER-FACING MESSAGES
# ---------------------------------------------------------------------------

ERROR_MESSAGES = {
    "network": "Network problem, check the connection and retry",
    "rate_limited": "Too many cards at once, wait a moment and retry",
    "upload": "Image upload was refused",
    "unreadable": "Card could not be read, please recapture it",
    "persistence": "Card could not be saved, retry",
    "duplicate": "This card was already scanned",
    "timeout": "The service took too long to answer, retry",
    "illegal_transition": "That action is not allowed for this card right now",
    "session": "Resolve the previous scanning session first",
    "interrupted": "Session interrupted - please recapture this card",
    "unexpected": "Processing failed",
}

RETRYABLE_KINDS = {"network", "rate_limited", "upload", "persistence", "timeout", "unexpected"}


def is_retryable(kind):
    return kind in RETRYABLE_KINDS


def classify_error(exc):
    """Map any exception raised inside a stage to (kind, message)."""
    if isinstance(exc, CardPipelineError):
        return exc.kind, exc.message
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout", ERROR_MESSAGES["timeout"]
    if isinstance(exc, httpx.TimeoutException):
        return "timeout", ERROR_MESSAGES["timeout"]
    if isinstance(exc, httpx.TransportError):
        return "network", f"{ERROR_MESSAGES['network']} ({exc.__class__.__name__})"
    detail = str(exc) or exc.__class__.__name__
    return "unexpected", f"{ERROR_MESSAGES['unexpected']}: {detail}"

"""
queue_stats.py — Counts and flags the scanning page shows.
Always derived from the current queue, never stored.
"""

from dataclasses import dataclass

PENDING = "pending"
UPLOADING = "uploading"
EXTRACTING = "extracting"
SAVING = "saving"
COMPLETE = "complete"
DUPLICATE = "duplicate"
FAILED = "failed"

ALL_STATUSES = (PENDING, UPLOADING, EXTRACTING, SAVING, COMPLETE, DUPLICATE, FAILED)
IN_FLIGHT_STATUSES = (UPLOADING, EXTRACTING, SAVING)
# Statuses the worker leaves a card in. Only complete and duplicate are final;
# failed waits for retry or removal.
SETTLED_STATUSES = (COMPLETE, DUPLICATE, FAILED)


@dataclass(frozen=True)
class ProcessingStats:
    pending: int = 0
    uploading: int = 0
    extracting: int = 0
    saving: int = 0
    complete: int = 0
    duplicate: int = 0
    failed: int = 0

    @property
    def processing(self):
        return self.uploading + self.extracting + self.saving

    @property
    def total(self):
        return self.pending + self.processing + self.complete + self.duplicate + self.failed

    @property
    def is_processing(self):
        return self.processing > 0

    @property
    def can_finish(self):
        return self.pending == 0 and not self.is_processing


def compute_stats(items):
    counts = dict.fromkeys(ALL_STATUSES, 0)
    for item in items:
        counts[item.status] += 1
    return ProcessingStats(**counts)


def format_session_summary(stats, cards_scanned=None):
    """One-line end-of-session summary."""
    parts = [f"{stats.complete} saved"]
    if stats.duplicate:
        parts.append(f"{stats.duplicate} duplicate{'s' if stats.duplicate != 1 else ''}")
    if stats.failed:
        parts.append(f"{stats.failed} failed")
    if stats.pending or stats.is_processing:
        parts.append(f"{stats.pending + stats.processing} still in progress")
    summary = ", ".join(parts)
    if cards_scanned is not None:
        summary = f"{cards_scanned} card{'s' if cards_scanned != 1 else ''} scanned: {summary}"
    return summary

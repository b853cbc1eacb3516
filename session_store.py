"""
session_store.py — Scan session metadata, persisted so a reload can recover it.

The session (card type, location, running count, batch, and a snapshot of
the queue without image bytes) is written as one JSON blob under a single
well-known key on every change. Stale data found at startup is never resumed
automatically: partial uploads and batch membership are ambiguous after a
crash, so the user picks Resume or Discard.

Storage is best-effort. Read, write and delete failures are logged and
scanning carries on.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from errors import SessionError

SINGLE = "single"
DOUBLE = "double"
CARD_TYPES = (SINGLE, DOUBLE)


@dataclass
class ScanSession:
    card_type: str
    location_id: Optional[str]
    cards_scanned: int = 0
    batch_id: Optional[str] = None
    batch_name: Optional[str] = None
    items: list = field(default_factory=list)  # queue item snapshots, oldest first

    def to_dict(self):
        data = {
            "cardType": self.card_type,
            "locationId": self.location_id,
            "cardsScanned": self.cards_scanned,
        }
        if self.batch_id:
            data["batchId"] = self.batch_id
            data["batchName"] = self.batch_name
        if self.items:
            data["items"] = self.items
        return data

    def summary(self):
        return {k: v for k, v in self.to_dict().items() if k != "items"}

    @classmethod
    def from_dict(cls, data):
        card_type = data["cardType"]
        if card_type not in CARD_TYPES:
            raise ValueError(f"Unknown card type: {card_type!r}")
        items = data.get("items", [])
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise ValueError("Queue items must be a list of objects")
        return cls(
            card_type=card_type,
            location_id=data.get("locationId"),
            cards_scanned=int(data.get("cardsScanned", 0)),
            batch_id=data.get("batchId"),
            batch_name=data.get("batchName"),
            items=items,
        )


# ---------------------------------------------------------------------------
# DURABLE STORAGE
# ---------------------------------------------------------------------------


class SessionStore:
    """One JSON blob under one key, kept in a client-local directory."""

    def __init__(self, storage_dir, key):
        self.path = Path(storage_dir) / f"{key}.json"

    @classmethod
    def from_config(cls, config):
        return cls(config["session"]["storage_dir"], config["session"]["session_key"])

    def load(self):
        """Stale session data, or None when there is none or it cannot be read."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return ScanSession.from_dict(json.load(f))
        except (ValueError, KeyError, TypeError) as exc:
            logging.warning(f"[session] Ignoring unreadable session data in {self.path}: {exc}")
        except OSError as exc:
            logging.warning(f"[session] Could not read {self.path}: {exc}")
        return None

    def save(self, session):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f)
        os.replace(tmp_path, self.path)
        logging.debug(f"[session] Saved {session.summary()} ({len(session.items)} items) -> {self.path}")

    def clear(self):
        if not self.path.exists():
            return
        try:
            self.path.unlink()
        except OSError as exc:
            logging.warning(f"[session] Could not clear {self.path}: {exc}")
            return
        logging.info(f"[session] Cleared {self.path}")


# ---------------------------------------------------------------------------
# SESSION LIFECYCLE
# ---------------------------------------------------------------------------


class SessionTracker:
    """Owns the live ScanSession and keeps the store in step with it."""

    def __init__(self, store, card_type=SINGLE, location_id=None):
        self.store = store
        self.card_type = card_type
        self.location_id = location_id
        self.session = None
        self.recovered = store.load()
        if self.recovered is not None:
            logging.info(
                f"[session] Found unfinished session: {self.recovered.summary()} "
                f"with {len(self.recovered.items)} queued cards"
            )

    @property
    def needs_decision(self):
        return self.recovered is not None

    @property
    def active(self):
        return self.session is not None

    def _persist(self):
        if self.session is None:
            return
        try:
            self.store.save(self.session)
        except OSError as exc:
            logging.warning(f"[session] Could not persist session: {exc}")

    def configure(self, card_type, location_id):
        if card_type not in CARD_TYPES:
            raise ValueError(f"Unknown card type: {card_type!r}")
        self.card_type = card_type
        self.location_id = location_id
        if self.session is not None:
            self.session.card_type = card_type
            self.session.location_id = location_id
            self._persist()

    def record_card(self):
        """Count one accepted card, starting the session on the first one."""
        if self.needs_decision:
            raise SessionError("An unfinished session must be resumed or discarded first")
        if self.session is None:
            self.session = ScanSession(card_type=self.card_type, location_id=self.location_id)
            logging.info(f"[session] Started session: {self.card_type} cards at {self.location_id}")
        self.session.cards_scanned += 1
        self._persist()
        return self.session

    def record_items(self, snapshots):
        """Replace the persisted queue snapshot."""
        if self.session is None:
            return
        self.session.items = list(snapshots)
        self._persist()

    def set_batch(self, batch_id, batch_name):
        if self.session is None:
            return
        self.session.batch_id = batch_id
        self.session.batch_name = batch_name
        self._persist()
        logging.info(f"[session] Cards are going to batch {batch_name!r} ({batch_id})")

    def resume(self):
        if self.recovered is None:
            raise SessionError("There is no unfinished session to resume")
        self.session = self.recovered
        self.recovered = None
        self.card_type = self.session.card_type
        self.location_id = self.session.location_id
        logging.info(
            f"[session] Resumed session with {self.session.cards_scanned} cards scanned, "
            f"{len(self.session.items)} in the queue"
        )
        return self.session

    def discard(self):
        self.recovered = None
        self.session = None
        self.store.clear()
        logging.info("[session] Discarded unfinished session")

    def finish(self):
        finished = self.session
        self.session = None
        self.recovered = None
        self.store.clear()
        if finished is not None:
            logging.info(f"[session] Finished session: {finished.summary()}")
        return finished

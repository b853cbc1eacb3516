"""
card_queue.py — Background queue that turns captured cards into saved records.

Cards are appended by the capture flow and processed strictly one at a time,
oldest first:

    pending -> uploading -> extracting -> saving -> complete
                    |            |           |
                    +------------+-----------+--> failed  (retry -> pending)
                                 +--------------> duplicate

Every queue mutation posts a "check for work" signal. A single consumer
takes the semaphore, advances one pending card through all stages, releases,
and looks again. Nothing a stage raises escapes the worker: it is classified
and parked on the card as status=failed.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Optional

import httpx

from capture import CapturedImage
from card_quality import format_phone_number, format_validation_summary, validate_card_data
from card_services import (
    CardContext,
    extract_card,
    fetch_active_batch,
    save_card,
    sync_contact_quietly,
    upload_image,
)
from errors import ERROR_MESSAGES, DuplicateContent, IllegalTransition, classify_error
from normalization import normalize_card_fields
from queue_stats import (
    COMPLETE,
    DUPLICATE,
    EXTRACTING,
    FAILED,
    IN_FLIGHT_STATUSES,
    PENDING,
    SAVING,
    SETTLED_STATUSES,
    UPLOADING,
    compute_stats,
)

TRANSITIONS = {
    PENDING: (UPLOADING,),
    UPLOADING: (EXTRACTING, FAILED),
    EXTRACTING: (SAVING, DUPLICATE, FAILED),
    SAVING: (COMPLETE, FAILED),
    COMPLETE: (),
    DUPLICATE: (),
    FAILED: (PENDING,),
}

PROGRESS = {
    PENDING: 0,
    UPLOADING: 10,
    EXTRACTING: 50,
    SAVING: 80,
    COMPLETE: 100,
    DUPLICATE: 100,
}
BACK_UPLOAD_PROGRESS = 30

REMOVABLE_STATUSES = (FAILED, DUPLICATE)


# ---------------------------------------------------------------------------
# DATA TYPES
# ---------------------------------------------------------------------------


@dataclass
class QueueItem:
    front_image: CapturedImage
    back_image: Optional[CapturedImage] = None
    location_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = PENDING
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retry_count: int = 0
    progress: int = 0
    storage_keys: dict = field(default_factory=dict)
    content_hash: Optional[str] = None
    back_content_hash: Optional[str] = None
    record_id: Optional[str] = None
    validation_issues: tuple = ()

    @property
    def short_id(self):
        return self.id[:8]

    @property
    def settled(self):
        return self.status in SETTLED_STATUSES

    @property
    def in_flight(self):
        return self.status in IN_FLIGHT_STATUSES

    def snapshot(self):
        """JSON-safe copy for the persisted session, without image bytes."""
        data = {
            "id": self.id,
            "status": self.status,
            "error": self.error,
            "errorKind": self.error_kind,
            "retryCount": self.retry_count,
            "locationId": self.location_id,
            "preview": self.front_image.preview,
            "contentHash": self.content_hash,
            "recordId": self.record_id,
        }
        if self.back_image is not None:
            data["backPreview"] = self.back_image.preview
        return data

    @classmethod
    def from_snapshot(cls, data):
        """Rebuild a card from a persisted snapshot.

        Image bytes do not survive a reload, so a card that had not ended
        complete or duplicate comes back failed and can only be removed.
        """
        back = CapturedImage(b"", preview=data["backPreview"]) if "backPreview" in data else None
        item = cls(
            front_image=CapturedImage(b"", preview=data.get("preview")),
            back_image=back,
            location_id=data.get("locationId"),
            id=data.get("id") or str(uuid.uuid4()),
            retry_count=data.get("retryCount", 0),
            content_hash=data.get("contentHash"),
            record_id=data.get("recordId"),
        )
        if data.get("status") in (COMPLETE, DUPLICATE):
            item.status = data["status"]
            item.progress = PROGRESS[item.status]
        else:
            item.status = FAILED
            item.error_kind = "interrupted"
            item.error = ERROR_MESSAGES["interrupted"]
        return item


@dataclass(frozen=True)
class QueueEvent:
    item_id: str
    status: str
    previous: str
    error: Optional[str] = None

    @property
    def settled(self):
        return self.status in SETTLED_STATUSES


# ---------------------------------------------------------------------------
# QUEUE MANAGER
# ---------------------------------------------------------------------------


class QueueManager:
    """Owns the queue, its worker semaphore and the work-signal channel.

    All methods must be called from the event loop the manager runs on.
    """

    def __init__(self, config, tracker, client=None, organization_slug=None):
        self.config = config
        self.tracker = tracker
        self.organization_slug = organization_slug or config["organization"]["slug"]
        self.items = []
        self.semaphore = asyncio.Semaphore(1)
        self._signals = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._listeners = []
        self._client = client
        self._owns_client = client is None
        self._consumer = None
        self._background = set()

    @property
    def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    @property
    def stats(self):
        return compute_stats(self.items)

    # --- observers ---------------------------------------------------------

    def subscribe(self, listener):
        """Call listener(QueueEvent) on every status change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logging.exception(f"[queue] Listener failed on {event}")

    # --- lookups -----------------------------------------------------------

    def get(self, item_id):
        for item in self.items:
            if item.id == item_id:
                return item
        raise KeyError(item_id)

    def snapshot(self):
        return [replace(item) for item in self.items]

    def _next_pending(self):
        for item in self.items:
            if item.status == PENDING:
                return item
        return None

    # --- mutations ---------------------------------------------------------

    def add_card(self, front_image, back_image=None, location_id=None):
        """Accept a captured card at the tail of the queue."""
        session = self.tracker.record_card()
        item = QueueItem(
            front_image=front_image,
            back_image=back_image,
            location_id=location_id or session.location_id,
        )
        self.items.append(item)
        logging.info(
            f"[queue] Queued card {item.short_id} "
            f"({'front+back' if back_image is not None else 'front'}), "
            f"{session.cards_scanned} scanned this session"
        )
        self._save_items()
        self._signal()
        return item

    def resume_session(self):
        """Resume the stale session and put its cards back at the head of the queue."""
        session = self.tracker.resume()
        restored = [QueueItem.from_snapshot(data) for data in session.items]
        self.items[:0] = restored
        interrupted = sum(1 for item in restored if item.status == FAILED)
        logging.info(f"[queue] Restored {len(restored)} cards, {interrupted} interrupted")
        self._save_items()
        return session

    def retry(self, item_id):
        item = self.get(item_id)
        if item.status != FAILED:
            raise IllegalTransition(f"Only failed cards can be retried (card is {item.status})")
        if item.front_image.released:
            raise IllegalTransition("The photo of this card is gone, remove it and scan the card again")
        item.error = None
        item.error_kind = None
        item.retry_count += 1
        self._set_status(item, PENDING)
        self._signal()
        return item

    def remove(self, item_id):
        item = self.get(item_id)
        if item.status not in REMOVABLE_STATUSES:
            raise IllegalTransition(f"Only failed or duplicate cards can be removed (card is {item.status})")
        self.items.remove(item)
        logging.info(f"[queue] Removed card {item.short_id} ({item.status})")
        self._save_items()
        self._signal()
        return item

    def reset(self):
        if any(item.in_flight for item in self.items):
            raise IllegalTransition("Cannot clear the queue while a card is processing")
        for item in self.items:
            self._abandon_uploads(item)
        self.items.clear()
        self._save_items()
        self._idle.set()
        logging.info("[queue] Queue cleared")

    def _set_status(self, item, status, error=None):
        previous = item.status
        if status not in TRANSITIONS[previous]:
            raise IllegalTransition(f"Card {item.short_id}: {previous} -> {status} is not allowed")
        item.status = status
        if status in PROGRESS:
            item.progress = PROGRESS[status]
        logging.info(f"[queue] Card {item.short_id}: {previous} -> {status}")
        self._save_items()
        self._emit(QueueEvent(item.id, status, previous, error))

    def _save_items(self):
        self.tracker.record_items([item.snapshot() for item in self.items])

    # --- scheduling --------------------------------------------------------

    def _signal(self):
        if self._next_pending() is not None:
            self._idle.clear()
        if self._signals.empty():
            self._signals.put_nowait(None)

    def start(self):
        """Start the signal consumer on the running loop."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self.run())
        self._signal()

    async def run(self):
        while True:
            await self._signals.get()
            await self._advance()

    async def _advance(self):
        while True:
            if self.semaphore.locked():
                return
            async with self.semaphore:
                item = self._next_pending()
                if item is None:
                    self._idle.set()
                    return
                await self._process(item)

    async def drain(self):
        """Wait until no pending card is left (runs the worker inline when not started)."""
        if self._consumer is None or self._consumer.done():
            await self._advance()
        await self._idle.wait()

    async def wait_background(self):
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self):
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        await self.wait_background()
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # --- stage pipeline ----------------------------------------------------

    async def _process(self, item):
        context = CardContext(self.organization_slug, item.location_id)
        timeout = self.config["pipeline"]["stage_timeout_seconds"]
        try:
            self._set_status(item, UPLOADING)
            await asyncio.wait_for(self._upload(item, context), timeout)

            self._set_status(item, EXTRACTING)
            extraction = await asyncio.wait_for(
                extract_card(
                    self.client, item.front_image, item.back_image, item.storage_keys, context, self.config
                ),
                timeout,
            )
            item.content_hash = extraction.front_hash
            item.back_content_hash = extraction.back_hash
            fields = normalize_card_fields(extraction.fields)

            self._set_status(item, SAVING)
            record_id = await asyncio.wait_for(
                save_card(self.client, self._build_record(item, fields), context, self.config),
                timeout,
            )
        except DuplicateContent as dup:
            item.content_hash = dup.matched_hash
            self._abandon_uploads(item)
            self._set_status(item, DUPLICATE)
            self._release_images(item)
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(item, exc)
            return

        item.record_id = record_id
        self._set_status(item, COMPLETE)
        self._release_images(item)
        self._after_save(item, fields, context)

    async def _upload(self, item, context):
        item.storage_keys = {}
        item.storage_keys["front"] = await upload_image(self.client, item.front_image, "front", context, self.config)
        if item.back_image is not None:
            item.progress = BACK_UPLOAD_PROGRESS
            item.storage_keys["back"] = await upload_image(self.client, item.back_image, "back", context, self.config)

    def _build_record(self, item, fields):
        validation = validate_card_data(fields)
        item.validation_issues = validation.issues
        if validation.needs_review:
            logging.info(f"[save] Card {item.short_id}: {format_validation_summary(validation)}")
        return {
            "imageKey": item.storage_keys["front"],
            "imageHash": item.content_hash,
            "backImageKey": item.storage_keys.get("back"),
            "backImageHash": item.back_content_hash,
            "extractedData": {**fields, "phone": format_phone_number(fields["phone"])},
            "validationIssues": [issue.to_dict() for issue in validation.issues],
        }

    def _fail(self, item, exc):
        kind, message = classify_error(exc)
        if kind == "unexpected":
            logging.error(f"[queue] Card {item.short_id} hit an unexpected error", exc_info=exc)
        else:
            logging.warning(f"[queue] Card {item.short_id} failed ({kind}): {message}")
        self._abandon_uploads(item)
        item.error = message
        item.error_kind = kind
        self._set_status(item, FAILED, error=message)

    def _abandon_uploads(self, item):
        if item.storage_keys and item.record_id is None:
            keys = ", ".join(item.storage_keys.values())
            logging.warning(f"[upload] Card {item.short_id} left unsaved uploads: {keys}")
        if item.record_id is None:
            item.storage_keys = {}

    def _release_images(self, item):
        item.front_image = item.front_image.without_payload()
        if item.back_image is not None:
            item.back_image = item.back_image.without_payload()

    def _after_save(self, item, fields, context):
        if self.config["pipeline"].get("crm_sync_enabled", True):
            self._spawn(sync_contact_quietly(self.client, item.record_id, fields, context, self.config))
        session = self.tracker.session
        if session is not None and not session.batch_id:
            self._spawn(self._refresh_batch(context))

    async def _refresh_batch(self, context):
        try:
            batch = await fetch_active_batch(self.client, context, self.config)
        except Exception as exc:
            logging.warning(f"[session] Could not look up the active batch: {exc}")
            return
        session = self.tracker.session
        if batch is not None and session is not None and not session.batch_id:
            self.tracker.set_batch(batch["id"], batch["name"])


# ===========================================================================
#  CLI: feed card images from disk through the pipeline
# ===========================================================================
#
#  python card_queue.py front1.jpg front2.jpg ...
#  python card_queue.py --double front1.jpg back1.jpg front2.jpg back2.jpg
#  python card_queue.py --location north-campus card.jpg
#


def ask_resume_or_discard(manager):
    stale = manager.tracker.recovered
    print(
        f"Unfinished session found: {stale.cards_scanned} {stale.card_type}-sided cards at "
        f"{stale.location_id}, {len(stale.items)} still in the queue"
    )
    while True:
        answer = input("Resume it or discard it? [r/d] ").strip().lower()
        if answer in ("r", "resume"):
            return manager.resume_session()
        if answer in ("d", "discard"):
            manager.tracker.discard()
            return None


async def run_headless(image_paths, card_type, location_id, config):
    from capture import load_captured_image
    from queue_stats import format_session_summary
    from session_store import DOUBLE, SessionStore, SessionTracker

    tracker = SessionTracker(SessionStore.from_config(config), card_type, location_id)
    manager = QueueManager(config, tracker)
    resumed = ask_resume_or_discard(manager) if tracker.needs_decision else None
    if resumed is None:
        tracker.configure(card_type, location_id)

    images = [load_captured_image(p, config) for p in image_paths]
    if tracker.card_type == DOUBLE:
        if len(images) % 2:
            raise SystemExit("Two-sided cards need an even number of images (front, back, ...)")
        cards = list(zip(images[0::2], images[1::2]))
    else:
        cards = [(img, None) for img in images]

    def report(event):
        if event.settled:
            print(f"  {event.item_id[:8]}: {event.status}{' - ' + event.error if event.error else ''}")

    manager.subscribe(report)
    for front, back in cards:
        manager.add_card(front, back)

    await manager.drain()
    await manager.wait_background()
    stats = manager.stats
    session = tracker.finish()
    print(format_session_summary(stats, session.cards_scanned if session else None))
    await manager.aclose()
    return stats


if __name__ == "__main__":
    import sys

    from settings import CONFIG, setup_logging

    setup_logging(CONFIG)
    args = sys.argv[1:]

    if not args or args[0] in ("-h", "--help"):
        print("Usage:")
        print("  python card_queue.py <front.jpg> [...]                       # single-sided cards")
        print("  python card_queue.py --double <front.jpg> <back.jpg> [...]   # two-sided cards")
        print("  python card_queue.py --location <id> <front.jpg> [...]       # scan for a location")
        sys.exit(0)

    card_type = "single"
    if "--double" in args:
        card_type = "double"
        args.remove("--double")

    location_id = CONFIG["organization"]["default_location_id"]
    if "--location" in args:
        idx = args.index("--location")
        location_id = args[idx + 1]
        del args[idx:idx + 2]

    final_stats = asyncio.run(run_headless(args, card_type, location_id, CONFIG))
    sys.exit(1 if final_stats.failed else 0)

"""
conftest.py — Shared fixtures: a stateful fake of the card API served through
httpx.MockTransport, synthetic card photos, and per-test config copies.
"""

import asyncio
import base64
import hashlib
import json

import cv2
import httpx
import numpy as np
import pytest

from session_store import SessionStore, SessionTracker
from settings import CONFIG

STORAGE_HOST = "https://storage.test"

DEFAULT_FIELDS = {
    "name": "Jordan Smith",
    "email": "jordan@example.com",
    "phone": "555-123-4567",
    "prayer_request": None,
    "visit_status": "I'm new here",
    "first_time_visitor": True,
    "interests": ["serving", "Bible Study", "Coffee team"],
    "keywords": ["Impacted "],
    "address": None,
    "age_group": None,
    "family_info": None,
    "additional_notes": None,
}


# ---------------------------------------------------------------------------
# TEST HELPERS
# ---------------------------------------------------------------------------


def make_card_bytes(seed, h=120, w=200):
    """A small JPEG that differs per seed."""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 255, size=(h, w, 3), dtype=np.uint8)
    cv2.putText(img, str(seed), (10, 60), cv2.FONT_HERSHEY_SIMPLEX, 1.5, (255, 255, 255), 2)
    ok, encoded = cv2.imencode(".jpg", img)
    assert ok
    return encoded.tobytes()


def make_config(tmp_path, **pipeline):
    return {
        **CONFIG,
        "session": {**CONFIG["session"], "storage_dir": str(tmp_path / "session")},
        "pipeline": {**CONFIG["pipeline"], **pipeline},
    }


def sha256_hex(data):
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# FAKE CARD API
# ---------------------------------------------------------------------------


class FakeCardApi:
    """In-memory stand-in for upload, storage, extraction, save, batch and CRM endpoints.

    Extraction hashes the submitted bytes with SHA-256 and answers 409 for
    hashes that already belong to a saved record.
    """

    def __init__(self, config):
        self.config = config
        self.uploads = {}
        self.records = []
        self.saved_hashes = {}
        self.crm_calls = []
        self.batch_lookups = 0
        self.active_batch = {"id": "batch-1", "name": "Sunday Service"}
        self.fields_by_hash = {}
        self.failures = {}
        self.delays = {}
        self.log = []
        self._next_key = 0

    # --- knobs -------------------------------------------------------------

    def fail_next(self, endpoint, status, times=1, body=None):
        self.failures.setdefault(endpoint, []).extend([(status, body)] * times)

    def set_fields(self, image_bytes, fields):
        self.fields_by_hash[sha256_hex(image_bytes)] = fields

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    # --- routing -----------------------------------------------------------

    def _path(self, key):
        return self.config["api"][key]

    async def handler(self, request):
        endpoint = self._endpoint(request)
        self.log.append(endpoint)

        delay = self.delays.get(endpoint)
        if delay:
            await asyncio.sleep(delay)

        queued = self.failures.get(endpoint)
        if queued:
            status, body = queued.pop(0)
            if isinstance(status, type) and issubclass(status, Exception):
                raise status("injected", request=request)
            return httpx.Response(status, json=body or {"error": f"injected {status}"})

        return getattr(self, f"_{endpoint}")(request)

    def _endpoint(self, request):
        url = str(request.url)
        if url.startswith(STORAGE_HOST):
            return "storage"
        path = request.url.path
        for endpoint, key in (
            ("upload", "upload_path"),
            ("extract", "extract_path"),
            ("batch", "active_batch_path"),
            ("crm", "crm_sync_path"),
            ("save", "save_path"),
        ):
            if path == self._path(key):
                return endpoint
        raise AssertionError(f"Unexpected request: {request.method} {url}")

    # --- endpoints ---------------------------------------------------------

    def _upload(self, request):
        body = json.loads(request.content)
        self._next_key += 1
        key = f"{body['organizationSlug']}/connect-cards/{body['cardSide']}-{self._next_key}.jpg"
        return httpx.Response(200, json={"presignedUrl": f"{STORAGE_HOST}/{key}", "key": key})

    def _storage(self, request):
        key = request.url.path.lstrip("/")
        self.uploads[key] = request.content
        return httpx.Response(200)

    def _extract(self, request):
        body = json.loads(request.content)
        front = base64.b64decode(body.get("imageData") or body["frontImageData"])
        front_hash = sha256_hex(front)
        if front_hash in self.saved_hashes:
            return httpx.Response(
                409,
                json={"duplicate": True, "matchedHash": front_hash, "message": "Duplicate image detected"},
            )
        back_hash = sha256_hex(base64.b64decode(body["backImageData"])) if body.get("backImageData") else None
        fields = self.fields_by_hash.get(front_hash, DEFAULT_FIELDS)
        return httpx.Response(
            200,
            json={"success": True, "data": fields, "imageHash": front_hash, "backImageHash": back_hash},
        )

    def _save(self, request):
        body = json.loads(request.content)
        record_id = f"card-{len(self.records) + 1}"
        self.records.append({"id": record_id, **body})
        self.saved_hashes[body["imageHash"]] = record_id
        return httpx.Response(200, json={"status": "success", "data": {"id": record_id}})

    def _batch(self, request):
        self.batch_lookups += 1
        return httpx.Response(200, json={"status": "success", "data": self.active_batch})

    def _crm(self, request):
        self.crm_calls.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "success"})


# ---------------------------------------------------------------------------
# FIXTURES
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setenv(CONFIG["api"]["api_key_env"], "test-key")


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path, stage_timeout_seconds=5)


@pytest.fixture
def api(config):
    return FakeCardApi(config)


@pytest.fixture
def tracker(config):
    return SessionTracker(SessionStore.from_config(config), location_id="main-campus")

"""
card_services.py — HTTP clients for the services the card pipeline talks to.

  - Image upload   : presigned URL request, then a raw PUT of the bytes
  - Extraction     : vision model pulls fields + content hash, flags duplicates
  - Persistence    : saves the connect card record
  - Active batch   : which review batch the session's cards landed in
  - CRM sync       : fire-and-forget contact push after a save

Every call takes an httpx.AsyncClient and the config dict. Non-2xx answers
are translated into the errors.py taxonomy here, so stages never look at
status codes.
"""

import asyncio
import base64
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from errors import (
    DuplicateContent,
    ExtractionValidationError,
    PersistenceError,
    RateLimited,
    TransientNetworkError,
    UploadError,
)


@dataclass(frozen=True)
class CardContext:
    """Organization/location scope sent with every request."""

    organization_slug: str
    location_id: Optional[str] = None


@dataclass(frozen=True)
class ExtractionResult:
    fields: dict
    front_hash: str
    back_hash: Optional[str] = None


# ---------------------------------------------------------------------------
# REQUEST HELPERS
# ---------------------------------------------------------------------------


def encode_image_base64(data):
    return base64.b64encode(data).decode("utf-8")


def _get_api_key(config):
    key = os.getenv(config["api"]["api_key_env"], "")
    if not key:
        logging.error(f"{config['api']['api_key_env']} not set!")
    return key


def _api_headers(config):
    headers = {"Content-Type": "application/json"}
    key = _get_api_key(config)
    if key:
        headers["Authorization"] = f"Bearer {key}"
    return headers


def _url(config, path_key):
    return config["api"]["base_url"].rstrip("/") + config["api"][path_key]


def _json_body(response):
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _retry_after(response):
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def raise_for_service_status(response, service, error_cls):
    """Translate a non-2xx response into the pipeline error taxonomy."""
    if response.is_success:
        return

    status = response.status_code
    body = _json_body(response)
    detail = body.get("error") or body.get("message") or response.reason_phrase
    logging.debug(f"[{service}] HTTP {status}: {body}")

    if status == 429:
        raise RateLimited(
            f"{service} is rate limited (HTTP 429), wait a moment and retry",
            retry_after=_retry_after(response),
        )
    if status == 408 or status >= 500:
        raise TransientNetworkError(f"{service} unavailable (HTTP {status}): {detail}")
    if status in (401, 403):
        raise error_cls(f"{service} refused the request: not authorized (HTTP {status})")
    if status == 413:
        raise error_cls(f"{service} refused the request: image too large (HTTP 413)")
    raise error_cls(f"{service} failed (HTTP {status}): {detail}")


# ---------------------------------------------------------------------------
# IMAGE UPLOAD
# ---------------------------------------------------------------------------


async def request_upload_url(client, file_name, content_type, size, side, context, config):
    """Ask for a write-capable temporary destination. Returns (upload_url, storage_key)."""
    payload = {
        "fileName": file_name,
        "contentType": content_type,
        "size": size,
        "isImage": True,
        "fileType": "connect-card",
        "organizationSlug": context.organization_slug,
        "locationId": context.location_id,
        "cardSide": side,
    }
    response = await client.post(
        _url(config, "upload_path"),
        json=payload,
        headers=_api_headers(config),
        timeout=config["api"]["api_timeout_seconds"],
    )
    raise_for_service_status(response, "upload", UploadError)
    body = _json_body(response)
    if not body.get("presignedUrl") or not body.get("key"):
        raise UploadError("Upload service returned no destination")
    return body["presignedUrl"], body["key"]


async def transfer_bytes(client, upload_url, data, content_type, config):
    response = await client.put(
        upload_url,
        content=data,
        headers={"Content-Type": content_type},
        timeout=config["api"]["api_timeout_seconds"],
    )
    raise_for_service_status(response, "storage", UploadError)


async def upload_image(client, image, side, context, config):
    """Upload one side of a card. Returns its storage key."""
    max_bytes = config["pipeline"]["max_upload_bytes"]
    if image.size > max_bytes:
        raise UploadError(f"{side} image is {image.size} bytes, limit is {max_bytes}")

    t0 = time.time()
    file_name = f"connect-card-{side}-{int(t0 * 1000)}.jpg"
    upload_url, storage_key = await request_upload_url(
        client, file_name, image.content_type, image.size, side, context, config
    )
    await transfer_bytes(client, upload_url, image.data, image.content_type, config)
    logging.info(f"[upload] {side} -> {storage_key} ({image.size} bytes) in {time.time() - t0:.2f}s")
    return storage_key


# ---------------------------------------------------------------------------
# EXTRACTION
# ---------------------------------------------------------------------------


def build_extraction_payload(front, back, storage_keys, context):
    payload = {
        "organizationSlug": context.organization_slug,
        "locationId": context.location_id,
        "imageRefs": [storage_keys[side] for side in ("front", "back") if side in storage_keys],
    }
    if back is not None:
        payload["frontImageData"] = encode_image_base64(front.data)
        payload["frontMediaType"] = front.content_type
        payload["backImageData"] = encode_image_base64(back.data)
        payload["backMediaType"] = back.content_type
    else:
        payload["imageData"] = encode_image_base64(front.data)
        payload["mediaType"] = front.content_type
    return payload


async def extract_card(client, front, back, storage_keys, context, config):
    """Run vision extraction. Raises DuplicateContent when the service has seen these bytes."""
    logging.info(f"[extract] Extracting {'two-sided' if back is not None else 'single-sided'} card")
    t0 = time.time()

    response = await client.post(
        _url(config, "extract_path"),
        json=build_extraction_payload(front, back, storage_keys, context),
        headers=_api_headers(config),
        timeout=config["api"]["api_timeout_seconds"],
    )
    body = _json_body(response)

    if response.status_code == 409 and body.get("duplicate"):
        matched = body.get("matchedHash") or body.get("imageHash")
        logging.info(f"[extract] Duplicate image, matches hash {matched}")
        raise DuplicateContent(matched, body.get("message"))
    if response.status_code in (401, 403):
        raise TransientNetworkError(f"extraction refused the request: not authorized (HTTP {response.status_code})")
    raise_for_service_status(response, "extraction", ExtractionValidationError)

    if not isinstance(body.get("data"), dict) or not body.get("imageHash"):
        raise ExtractionValidationError("Extraction returned no card data")

    logging.info(f"[extract] Done in {time.time() - t0:.2f}s hash={body['imageHash']}")
    logging.debug(f"[extract] Raw fields: {body['data']}")
    return ExtractionResult(
        fields=body["data"],
        front_hash=body["imageHash"],
        back_hash=body.get("backImageHash"),
    )


# ---------------------------------------------------------------------------
# PERSISTENCE
# ---------------------------------------------------------------------------


async def save_card(client, record, context, config):
    """Persist a connect card. Returns the new record id."""
    payload = {
        "organizationSlug": context.organization_slug,
        "locationId": context.location_id,
        **record,
    }
    response = await client.post(
        _url(config, "save_path"),
        json=payload,
        headers=_api_headers(config),
        timeout=config["api"]["api_timeout_seconds"],
    )
    raise_for_service_status(response, "save", PersistenceError)

    body = _json_body(response)
    if body.get("status") == "error":
        raise PersistenceError(body.get("message") or "Failed to save connect card")
    record_id = (body.get("data") or {}).get("id") or body.get("recordId")
    if not record_id:
        raise PersistenceError("Save returned no record id")
    logging.info(f"[save] Saved connect card {record_id}")
    return record_id


async def fetch_active_batch(client, context, config):
    """Returns {"id", "name"} of the batch new cards land in, or None."""
    response = await client.get(
        _url(config, "active_batch_path"),
        params={"organizationSlug": context.organization_slug},
        headers=_api_headers(config),
        timeout=config["api"]["api_timeout_seconds"],
    )
    raise_for_service_status(response, "batch", PersistenceError)
    batch = _json_body(response).get("data")
    if not batch or not batch.get("id"):
        return None
    return {"id": batch["id"], "name": batch.get("name") or batch["id"]}


# ---------------------------------------------------------------------------
# CRM SYNC
# ---------------------------------------------------------------------------


async def sync_contact(client, record_id, fields, context, config):
    payload = {
        "organizationSlug": context.organization_slug,
        "connectCardId": record_id,
        "contact": {key: fields.get(key) for key in ("name", "email", "phone", "address")},
    }
    response = await client.post(
        _url(config, "crm_sync_path"),
        json=payload,
        headers=_api_headers(config),
        timeout=config["api"]["api_timeout_seconds"],
    )
    raise_for_service_status(response, "crm", TransientNetworkError)
    logging.info(f"[crm] Synced contact for card {record_id}")


async def sync_contact_quietly(client, record_id, fields, context, config):
    """Best-effort wrapper: CRM problems are logged and never reach the pipeline."""
    try:
        await sync_contact(client, record_id, fields, context, config)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logging.warning(f"[crm] Sync failed for card {record_id}: {exc}")


# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------


def check_api_health(config):
    url = _url(config, "health_path")
    logging.info(f"Checking card API health at {url}")
    try:
        response = httpx.get(url, headers=_api_headers(config), timeout=5.0)
    except httpx.HTTPError as exc:
        return False, f"Card API unreachable at {url}: {exc}"
    if not response.is_success:
        return False, f"Card API answered HTTP {response.status_code} at {url}"
    return True, f"Card API OK at {config['api']['base_url']}"


# ===========================================================================
#  CLI
# ===========================================================================
#
#  python card_services.py --check     # API reachability
#

if __name__ == "__main__":
    import sys

    from settings import CONFIG, setup_logging

    setup_logging(CONFIG)
    args = sys.argv[1:]

    if not args or args[0] in ("-h", "--help"):
        print("Usage:")
        print("  python card_services.py --check   # API health check")
        sys.exit(0)

    if args[0] == "--check":
        ok, msg = check_api_health(CONFIG)
        print(f"{'OK' if ok else 'FAIL'} {msg}")
        sys.exit(0 if ok else 1)

    print(f"Unknown option: {args[0]}")
    sys.exit(2)

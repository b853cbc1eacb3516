"""
capture.py — Captured card images handed from the capture flow to the queue.
Each CapturedImage owns its bytes plus a small JPEG preview for the queue drawer.
No quality checks here: whether a card is readable is decided by extraction.
"""

import base64
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


@dataclass(frozen=True)
class CapturedImage:
    data: bytes
    content_type: str = "image/jpeg"
    preview: Optional[str] = None  # data URL, None when the bytes could not be decoded

    @property
    def size(self):
        return len(self.data)

    @property
    def released(self):
        return not self.data

    def without_payload(self):
        return replace(self, data=b"")


def make_preview(data, config):
    """Downscale the image to a JPEG data URL. Returns None for undecodable bytes."""
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
    if img is None:
        logging.debug(f"[capture] Could not decode {len(data)} bytes for preview")
        return None

    max_w = config["capture"]["preview_max_width"]
    h, w = img.shape[:2]
    if w > max_w:
        img = cv2.resize(img, (max_w, int(h * max_w / w)), interpolation=cv2.INTER_AREA)

    quality = config["capture"]["preview_jpeg_quality"]
    ok, encoded = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        return None
    return "data:image/jpeg;base64," + base64.b64encode(encoded.tobytes()).decode("utf-8")


def make_captured_image(data, config, content_type=None):
    content_type = content_type or config["pipeline"]["image_content_type"]
    return CapturedImage(data=bytes(data), content_type=content_type, preview=make_preview(data, config))


def load_captured_image(path, config):
    path = Path(path)
    content_type = CONTENT_TYPES.get(path.suffix.lower(), config["pipeline"]["image_content_type"])
    with open(path, "rb") as f:
        data = f.read()
    logging.info(f"[capture] Loaded {path} ({len(data)} bytes, {content_type})")
    return make_captured_image(data, config, content_type)

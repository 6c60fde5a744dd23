"""Product photo preparation and upload to the image host."""
from __future__ import annotations

import logging
import os
from io import BytesIO
from typing import Optional, Tuple

import requests
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

from storefront.errors import UploadError, ValidationError


log = logging.getLogger(__name__)

ALLOWED_EXT = {".png", ".jpg", ".jpeg", ".webp", ".gif"}
MAX_UPLOAD_BYTES = 16 * 1024 * 1024

MAX_SIDE = 1600
CARD_W = 900
CARD_H = 560


def fit_cover(img: Image.Image, w: int, h: int) -> Image.Image:
    iw, ih = img.size
    scale = max(w / iw, h / ih)
    nw, nh = int(iw * scale), int(ih * scale)
    img = img.resize((nw, nh), Image.LANCZOS)
    left = (nw - w) // 2
    top = (nh - h) // 2
    return img.crop((left, top, left + w, top + h))


def fit_within(img: Image.Image, max_side: int) -> Image.Image:
    iw, ih = img.size
    if max(iw, ih) <= max_side:
        return img
    scale = max_side / max(iw, ih)
    return img.resize((max(1, int(iw * scale)), max(1, int(ih * scale))), Image.LANCZOS)


def upload_name(filename: str) -> Tuple[str, str]:
    """Sanitised (stem, ext) for an uploaded file; rejects non-image extensions."""
    safe = secure_filename(filename or "") or "photo.jpg"
    stem, ext = os.path.splitext(safe)
    ext = ext.lower()
    if ext not in ALLOWED_EXT:
        raise ValidationError("Unsupported image type")
    return stem or "photo", ext


def prepare_image(data: bytes, max_side: int = MAX_SIDE, cover: Optional[Tuple[int, int]] = None) -> bytes:
    """Decode, convert to RGB, shrink (or crop to `cover`) and re-encode as JPEG."""
    if not data:
        raise ValidationError("Empty upload")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError("Image is too large")
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("File is not a readable image") from e

    img = img.convert("RGB")
    if cover:
        img = fit_cover(img, cover[0], cover[1])
    else:
        img = fit_within(img, max_side)

    out = BytesIO()
    img.save(out, "JPEG", quality=88, optimize=True)
    return out.getvalue()


class ImageHost:
    def __init__(self, api_key: str, url: str = "https://api.imgbb.com/1/upload", timeout: int = 30, session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def upload(self, data: bytes, filename: str, cover: Optional[Tuple[int, int]] = None) -> str:
        """POST one image; returns its hosted URL."""
        if not self.api_key:
            raise UploadError("Image hosting is not configured")
        stem, _ = upload_name(filename)
        payload = prepare_image(data, cover=cover)

        try:
            r = self.session.post(
                self.url,
                data={"key": self.api_key, "name": stem},
                files={"image": (f"{stem}.jpg", payload, "image/jpeg")},
                timeout=self.timeout,
            )
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as e:
            log.error("Image upload failed: %s", e)
            raise UploadError("Image upload failed, please try again") from e

        if not body.get("success"):
            message = (body.get("error") or {}).get("message") or "Upload failed"
            log.error("Image host rejected upload: %s", message)
            raise UploadError(message)

        url = (body.get("data") or {}).get("url")
        if not url:
            raise UploadError("Image host returned no URL")
        log.info("Uploaded %s to %s", stem, url)
        return url

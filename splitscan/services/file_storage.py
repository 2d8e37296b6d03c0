"""Local blob store for receipt images and OCR audit artifacts.

Receipts only ever hold a *reference* (``/uploads/<uuid>.jpg``); this class
turns references into paths, so swapping the backend means changing this
file only.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path
from typing import Any
from uuid import uuid4

from PIL import Image, ImageOps, UnidentifiedImageError

from splitscan.core.config import Settings, settings

logger = logging.getLogger(__name__)

UPLOAD_PREFIX = "/uploads/"

# claimed content type -> detected type it must match
ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/png": "png",
    "image/webp": "webp",
}


class FileValidationError(ValueError):
    pass


def detect_image_type(head: bytes) -> str | None:
    """Identify the file from its magic bytes."""
    if head[:3] == b"\xff\xd8\xff":
        return "jpeg"
    if head[:8] == b"\x89PNG\r\n\x1a\n":
        return "png"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    return None


class FileStorage:
    def __init__(
        self,
        upload_dir: str | Path,
        artifact_dir: str | Path,
        max_bytes: int = 10 * 1024 * 1024,
        max_width: int = 2000,
        jpeg_quality: int = 85,
    ):
        self.upload_dir = Path(upload_dir)
        self.artifact_dir = Path(artifact_dir)
        self.max_bytes = max_bytes
        self.max_width = max_width
        self.jpeg_quality = jpeg_quality

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "FileStorage":
        return cls(
            upload_dir=cfg.UPLOAD_DIR,
            artifact_dir=cfg.OCR_ARTIFACT_DIR,
            max_bytes=cfg.MAX_UPLOAD_BYTES,
            max_width=cfg.MAX_IMAGE_WIDTH,
            jpeg_quality=cfg.JPEG_QUALITY,
        )

    # ---- uploads ----

    def validate(self, data: bytes, content_type: str | None) -> None:
        if not data:
            raise FileValidationError("File is empty")

        if len(data) > self.max_bytes:
            logger.warning("Upload rejected: %d bytes exceeds limit", len(data))
            raise FileValidationError(
                f"File size exceeds maximum allowed size of {self.max_bytes // 1024 // 1024}MB"
            )

        claimed = (content_type or "").lower()
        expected = ALLOWED_CONTENT_TYPES.get(claimed)
        if expected is None:
            logger.warning("Upload rejected: content type %r", content_type)
            raise FileValidationError(
                f"File type '{content_type}' is not allowed. "
                f"Allowed types: image/jpeg, image/png, image/webp"
            )

        actual = detect_image_type(data[:12])
        if actual is None:
            raise FileValidationError(
                "Unable to determine file type from file content. The file may be corrupted or unsupported."
            )
        if actual != expected:
            logger.warning("Upload rejected: claimed %s but content is %s", claimed, actual)
            raise FileValidationError(
                f"File content does not match claimed type '{content_type}'. Actual file type: {actual}"
            )

    def save_image(self, data: bytes) -> str:
        """Store an already validated image as JPEG (downscaled to max_width) and return its reference."""
        try:
            with Image.open(BytesIO(data)) as img:
                img = ImageOps.exif_transpose(img)
                if img.mode != "RGB":
                    img = img.convert("RGB")
                if img.width > self.max_width:
                    new_height = int(img.height * self.max_width / img.width)
                    logger.info("Resizing image from %dx%d to %dx%d", img.width, img.height, self.max_width, new_height)
                    img = img.resize((self.max_width, new_height), Image.Resampling.LANCZOS)

                self.upload_dir.mkdir(parents=True, exist_ok=True)
                name = f"{uuid4().hex}.jpg"
                img.save(self.upload_dir / name, "JPEG", quality=self.jpeg_quality, optimize=True)
        except (UnidentifiedImageError, OSError) as e:
            raise FileValidationError(f"The file could not be read as an image: {e}") from e

        logger.info("Receipt image saved: %s%s", UPLOAD_PREFIX, name)
        return f"{UPLOAD_PREFIX}{name}"

    def resolve(self, ref: str) -> Path:
        # only the file name is trusted, never directories from the reference
        return self.upload_dir / Path(ref or "").name

    def delete(self, ref: str | None) -> bool:
        if not ref or not ref.strip():
            return False
        path = self.resolve(ref)
        if not path.is_file():
            logger.warning("File not found for deletion: %s", ref)
            return False
        path.unlink()
        logger.info("File deleted: %s", ref)
        return True

    # ---- OCR audit artifacts ----

    def _artifact_path(self, receipt_id: int) -> Path:
        return self.artifact_dir / f"{int(receipt_id)}.json"

    def save_ocr_artifact(self, receipt_id: int, payload: dict[str, Any]) -> Path:
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        path = self._artifact_path(receipt_id)
        path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        return path

    def load_ocr_artifact(self, receipt_id: int) -> dict[str, Any] | None:
        path = self._artifact_path(receipt_id)
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def delete_ocr_artifact(self, receipt_id: int) -> bool:
        path = self._artifact_path(receipt_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def cleanup_old_ocr_artifacts(self, older_than_days: int, now: datetime | None = None) -> int:
        if not self.artifact_dir.is_dir():
            return 0

        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=older_than_days)).timestamp()

        deleted = 0
        for path in self.artifact_dir.glob("*.json"):
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                deleted += 1
        return deleted

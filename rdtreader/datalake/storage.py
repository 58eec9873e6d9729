from __future__ import annotations

import contextlib
import io
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from PIL import Image, ImageOps

from ..errors import TransientStoreError
from ..intake.quality import to_eight_bit

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".jpg"


@dataclass(frozen=True)
class StoredImage:
    ref: str
    path: Path
    metadata: dict[str, Any] = field(default_factory=dict)


class FileSystemImageStore:
    """Store normalised test images on the local filesystem.

    Images are re-encoded as progressive JPEG, EXIF orientation applied and
    scaled to fit ``max_side`` without enlargement. References are POSIX paths
    relative to the store root (``YYYY/MM/DD/<name>.jpg``).
    """

    def __init__(self, root: Path, *, max_side: int = 1024, jpeg_quality: int = 85) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._max_side = max_side
        self._jpeg_quality = jpeg_quality

    @property
    def root(self) -> Path:
        return self._root

    def store(
        self,
        image_bytes: bytes,
        *,
        owner_id: str,
        uploaded_at: datetime | None = None,
    ) -> StoredImage:
        upload_time = (uploaded_at or datetime.now(tz=timezone.utc)).astimezone(timezone.utc)
        processed, metadata = self._normalise(image_bytes)

        relative = Path(upload_time.strftime("%Y/%m/%d")) / (
            _build_image_name(owner_id, upload_time) + IMAGE_SUFFIX
        )
        path = self._root / relative
        tmp_path = path.with_suffix(".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(processed)
            os.replace(tmp_path, path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            logger.error("Failed to write image %s: %s", path, exc)
            raise TransientStoreError("Failed to store test image") from exc

        metadata["processed_size"] = len(processed)
        logger.debug("Stored image ref=%s bytes=%d", relative.as_posix(), len(processed))
        return StoredImage(ref=relative.as_posix(), path=path, metadata=metadata)

    def fetch(self, ref: str) -> bytes:
        path = self.path_for(ref)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise TransientStoreError("Failed to read test image") from exc

    def delete(self, ref: str) -> bool:
        """Remove a stored image; returns False when it was already gone."""
        path = self.path_for(ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def exists(self, ref: str) -> bool:
        try:
            return self.path_for(ref).is_file()
        except ValueError:
            return False

    def path_for(self, ref: str) -> Path:
        candidate = (self._root / ref).resolve()
        root = self._root.resolve()
        if root not in candidate.parents:
            raise ValueError(f"Image reference {ref!r} escapes the image store")
        return candidate

    def iter_images(self) -> Iterator[tuple[str, Path]]:
        for path in sorted(self._root.rglob(f"*{IMAGE_SUFFIX}")):
            yield path.relative_to(self._root).as_posix(), path

    def count(self) -> int:
        return sum(1 for _ in self.iter_images())

    def _normalise(self, image_bytes: bytes) -> tuple[bytes, dict[str, Any]]:
        with Image.open(io.BytesIO(image_bytes)) as img:
            metadata: dict[str, Any] = {
                "original_size": len(image_bytes),
                "width": img.width,
                "height": img.height,
                "format": (img.format or "").lower() or None,
            }
            oriented = ImageOps.exif_transpose(img)
            rgb = to_eight_bit(oriented).convert("RGB")
        rgb.thumbnail((self._max_side, self._max_side))
        buffer = io.BytesIO()
        rgb.save(buffer, format="JPEG", quality=self._jpeg_quality, progressive=True)
        return buffer.getvalue(), metadata


def _build_image_name(owner_id: Optional[str], upload_time: datetime) -> str:
    label = str(owner_id or "user").strip().lower()
    sanitized = re.sub(r"[^a-z0-9]+", "-", label).strip("-") or "user"
    if len(sanitized) > 48:
        sanitized = sanitized[:48].rstrip("-") or "user"
    timestamp_fragment = upload_time.strftime("%Y%m%dT%H%M%S%fZ")
    return f"test_{sanitized}_{timestamp_fragment}_{uuid.uuid4().hex[:8]}"


__all__ = ["FileSystemImageStore", "StoredImage"]

"""Image intake checks run before any submission reaches the classifier.

Format and size checks happen before decoding. Decoded images then get a
quality pass: minimum dimensions, mean brightness band and an edge-strength
blur measure (mean response of a 3x3 Laplacian kernel over the grayscale raster).
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field

from PIL import Image, ImageFilter, ImageStat, UnidentifiedImageError

from ..errors import QualityRejection, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")

# Reason codes raised as ValidationError; everything else is a quality issue.
UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
TOO_LARGE = "TOO_LARGE"
EMPTY_IMAGE = "EMPTY_IMAGE"
UNDECODABLE = "UNDECODABLE"

TOO_SMALL = "TOO_SMALL"
TOO_DARK = "TOO_DARK"
TOO_BRIGHT = "TOO_BRIGHT"
TOO_BLURRY = "TOO_BLURRY"

# Camera JPEGs carrying a Multi-Picture segment decode as MPO.
_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}
_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}
_LAPLACIAN = ImageFilter.Kernel((3, 3), [-1, -1, -1, -1, 8, -1, -1, -1, -1], scale=1, offset=0)
_ANALYSIS_MAX_SIDE = 1024
_WIDE_INT_MODES = frozenset({"I", "I;16", "I;16B", "I;16L", "I;16N"})


@dataclass(frozen=True)
class QualityIssue:
    code: str
    message: str


@dataclass
class QualityPolicy:
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_mime_types: tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES
    min_width: int = 200
    min_height: int = 200
    brightness_min: float = 30.0
    brightness_max: float = 225.0
    blur_threshold: float = 10.0
    # Issue codes reported back to the caller without rejecting the image.
    advisory_issues: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class IntakeReport:
    accepted: bool
    rejection: QualityIssue | None = None
    issues: tuple[QualityIssue, ...] = ()
    advisories: tuple[QualityIssue, ...] = ()
    mime_type: str | None = None
    width: int | None = None
    height: int | None = None
    brightness: float | None = None
    edge_strength: float | None = None

    def raise_for_rejection(self) -> None:
        if self.rejection is not None:
            raise ValidationError(self.rejection.message, self.rejection.code, field="image")
        if self.issues:
            messages = ", ".join(issue.message for issue in self.issues)
            raise QualityRejection(f"Image quality issues: {messages}", list(self.issues))


def to_eight_bit(img: Image.Image) -> Image.Image:
    """Scale 16-bit and 32-bit integer rasters into the 0-255 range.

    Pillow clips these modes when converting to ``L`` or ``RGB``, so a
    mid-grey 16-bit PNG would otherwise read as pure white.
    """
    if img.mode not in _WIDE_INT_MODES:
        return img
    return img.convert("I").point(lambda value: value * (1 / 256))


def validate_submission(
    image_bytes: bytes,
    declared_mime_type: str | None,
    size_bytes: int | None = None,
    policy: QualityPolicy | None = None,
) -> IntakeReport:
    policy = policy or QualityPolicy()
    mime = _normalize_mime(declared_mime_type)
    allowed = {_normalize_mime(value) for value in policy.allowed_mime_types}

    if mime not in allowed:
        return _rejected(
            UNSUPPORTED_TYPE,
            f"Invalid file type {declared_mime_type or 'unknown'!s}. "
            f"Allowed types: {', '.join(sorted(allowed))}.",
        )
    if not image_bytes:
        return _rejected(EMPTY_IMAGE, "Test image is empty")
    size = max(int(size_bytes or 0), len(image_bytes))
    if size > policy.max_upload_bytes:
        return _rejected(
            TOO_LARGE,
            f"Image is {size} bytes; the maximum upload size is {policy.max_upload_bytes} bytes",
        )

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            detected = _FORMAT_MIME.get(img.format or "")
            width, height = img.size
            gray = to_eight_bit(img).convert("L")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.info("Rejecting undecodable upload declared=%s error=%s", mime, exc)
        return _rejected(UNDECODABLE, "Image could not be decoded")

    if detected not in allowed:
        return _rejected(UNSUPPORTED_TYPE, "Image content is not a JPEG, PNG or WebP image")
    if detected != mime:
        logger.debug("Declared type %s differs from decoded type %s", mime, detected)

    issues: list[QualityIssue] = []
    if width < policy.min_width:
        issues.append(
            QualityIssue(TOO_SMALL, f"Image width is too small (minimum {policy.min_width}px)")
        )
    if height < policy.min_height:
        issues.append(
            QualityIssue(TOO_SMALL, f"Image height is too small (minimum {policy.min_height}px)")
        )

    if max(gray.size) > _ANALYSIS_MAX_SIDE:
        gray.thumbnail((_ANALYSIS_MAX_SIDE, _ANALYSIS_MAX_SIDE))
    brightness = float(ImageStat.Stat(gray).mean[0])
    if brightness < policy.brightness_min:
        issues.append(QualityIssue(TOO_DARK, "Image appears too dark"))
    elif brightness > policy.brightness_max:
        issues.append(QualityIssue(TOO_BRIGHT, "Image appears too bright"))

    edge_strength = _edge_strength(gray)
    if edge_strength is not None and edge_strength < policy.blur_threshold:
        issues.append(QualityIssue(TOO_BLURRY, "Image appears too blurry"))

    fatal = tuple(issue for issue in issues if issue.code not in policy.advisory_issues)
    advisories = tuple(issue for issue in issues if issue.code in policy.advisory_issues)
    return IntakeReport(
        accepted=not fatal,
        issues=fatal,
        advisories=advisories,
        mime_type=detected,
        width=width,
        height=height,
        brightness=round(brightness, 2),
        edge_strength=None if edge_strength is None else round(edge_strength, 2),
    )


def _edge_strength(gray: Image.Image) -> float | None:
    width, height = gray.size
    if width < 3 or height < 3:
        return None
    # Kernel filters copy border pixels unchanged, so measure the interior only.
    edges = gray.filter(_LAPLACIAN).crop((1, 1, width - 1, height - 1))
    return float(ImageStat.Stat(edges).mean[0])


def _normalize_mime(value: str | None) -> str:
    text = str(value or "").split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(text, text)


def _rejected(code: str, message: str) -> IntakeReport:
    return IntakeReport(accepted=False, rejection=QualityIssue(code, message))


__all__ = [
    "IntakeReport",
    "QualityIssue",
    "QualityPolicy",
    "to_eight_bit",
    "validate_submission",
    "UNSUPPORTED_TYPE",
    "TOO_LARGE",
    "EMPTY_IMAGE",
    "UNDECODABLE",
    "TOO_SMALL",
    "TOO_DARK",
    "TOO_BRIGHT",
    "TOO_BLURRY",
]

from __future__ import annotations

from dataclasses import dataclass

from aigateway.app.core.errors import ValidationError

SUPPORTED_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")

_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


@dataclass(frozen=True)
class UploadedImage:
    data: bytes
    declared_type: str | None
    verified_type: str
    size: int
    filename: str | None = None


def detect_image_type(data: bytes) -> str | None:
    """Content type from the leading signature bytes, or None when unrecognised."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def normalize_content_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    base = content_type.split(";", 1)[0].strip().lower()
    if not base or base == "application/octet-stream":
        return None
    return _TYPE_ALIASES.get(base, base)


def validate_image(
    data: bytes,
    declared_type: str | None,
    max_bytes: int,
    filename: str | None = None,
) -> UploadedImage:
    """Check size and signature; the bytes decide the type, never the header."""
    if not data:
        raise ValidationError("empty", "Uploaded file is empty")
    if len(data) > max_bytes:
        raise ValidationError(
            "too_large", f"Uploaded file is {len(data)} bytes; the limit is {max_bytes} bytes"
        )
    verified = detect_image_type(data)
    if verified is None:
        raise ValidationError(
            "unsupported_format", "Unsupported image format; upload PNG, JPEG, GIF or WEBP"
        )
    declared = normalize_content_type(declared_type)
    if declared is not None and declared != verified:
        raise ValidationError(
            "type_mismatch", f"File declared as {declared} but its content is {verified}"
        )
    return UploadedImage(
        data=data,
        declared_type=declared,
        verified_type=verified,
        size=len(data),
        filename=filename,
    )

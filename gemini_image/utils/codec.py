"""Helpers for base64 image payloads, data URIs and file extensions."""

import base64
import binascii
import re

from gemini_image.models import ImageData, InvalidArgumentError

DATA_URI_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")

MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/png": "png",
}


def parse_image_uri(value: str | None) -> ImageData | None:
    """Parse a `data:<mime>;base64,<payload>` URI. Returns None when it is not one."""
    if not isinstance(value, str):
        return None
    match = DATA_URI_RE.match(value)
    if not match:
        return None
    mime_type = match.group(1).strip() or "application/octet-stream"
    return ImageData(base64=match.group(2), mime_type=mime_type)


def to_data_uri(image: ImageData) -> str:
    return f"data:{image.mime_type};base64,{image.base64}"


def strip_data_uri_prefix(value: str) -> str:
    parsed = parse_image_uri(value)
    return parsed.base64 if parsed else value


def is_plausible_base64(value: str | None) -> bool:
    """True when decoding then re-encoding reproduces the input and the payload is non-empty."""
    if not isinstance(value, str) or not value.strip():
        return False
    compact = _WHITESPACE_RE.sub("", value)
    try:
        decoded = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(decoded) > 0 and base64.b64encode(decoded).decode("ascii") == compact


def extension_for_mime(mime_type: str | None) -> str:
    return MIME_EXTENSIONS.get((mime_type or "").strip().lower(), "png")


def decode_input_image(value: str) -> ImageData:
    """Interpret a caller-supplied image as a data URI, falling back to raw base64."""
    if parsed := parse_image_uri(value.strip()):
        return parsed
    if is_plausible_base64(value):
        return ImageData(base64=_WHITESPACE_RE.sub("", value), mime_type="image/png")
    raise InvalidArgumentError("Input image must be a data URI or a base64-encoded payload")


def encode_bytes(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_payload(payload: str) -> bytes:
    """Decode a base64 payload, tolerating embedded whitespace and missing padding."""
    compact = _WHITESPACE_RE.sub("", payload)
    return base64.b64decode(compact + "=" * (-len(compact) % 4))

"""Request shapes and response parsers for the three upstream protocols.

Everything here is pure: builders turn history and options into JSON bodies,
matchers pull image payloads (or URLs still to be fetched) out of JSON responses.
"""

import re
from collections.abc import Callable, Iterable
from typing import Any

from gemini_image.models import ImageData, ImagePart, Message, TextPart
from gemini_image.utils.codec import parse_image_uri, strip_data_uri_prefix, to_data_uri
from gemini_image.utils.config import DEFAULT_BASE_URL

ASPECT_RATIOS: tuple[tuple[float, str], ...] = (
    (1.0, "1:1"),
    (16 / 9, "16:9"),
    (9 / 16, "9:16"),
    (4 / 3, "4:3"),
    (3 / 4, "3:4"),
    (3 / 2, "3:2"),
    (2 / 3, "2:3"),
)
ASPECT_RATIO_TOLERANCE = 0.1
_SIZE_RE = re.compile(r"^(\d+)x(\d+)$", re.IGNORECASE)

# An extracted image is either a decoded payload or a URL that still has to be fetched.
ImageSource = ImageData | str
ShapeMatcher = Callable[[Any], list[ImageSource]]


# --- URLs ---


def normalize_base_url(raw: str | None) -> str:
    trimmed = (raw or "").strip()
    if not trimmed:
        return DEFAULT_BASE_URL
    return trimmed.rstrip("/")


def to_v1_base_url(raw: str | None) -> str:
    normalized = normalize_base_url(raw)
    return normalized if normalized.endswith("/v1") else f"{normalized}/v1"


def size_to_aspect_ratio(size: str | None) -> str:
    """Map a `WxH` size onto the nearest supported aspect ratio, defaulting to 1:1."""
    match = _SIZE_RE.match((size or "").strip())
    if not match:
        return "1:1"
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        return "1:1"

    ratio = width / height
    distance, label = min((abs(ratio - r), value) for r, value in ASPECT_RATIOS)
    return label if distance < ASPECT_RATIO_TOLERANCE else "1:1"


# --- Request builders ---


def _native_parts(message: Message) -> list[dict[str, Any]]:
    if isinstance(message.content, str):
        return [{"text": message.content}]

    parts: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            parts.append({"text": part.text})
        elif isinstance(part, ImagePart) and part.data:
            parts.append({"inline_data": {"data": part.data, "mime_type": part.mime_type}})
    return parts or [{"text": ""}]


def build_native_body(
    history: Iterable[Message],
    prompt: str,
    input_image: ImageData | None,
    size: str | None,
) -> dict[str, Any]:
    contents = [
        {"role": "model" if msg.role == "assistant" else "user", "parts": _native_parts(msg)}
        for msg in history
    ]

    current_parts: list[dict[str, Any]] = [{"text": prompt}]
    if input_image is not None:
        current_parts.append(
            {"inline_data": {"data": input_image.base64, "mime_type": input_image.mime_type}}
        )
    contents.append({"role": "user", "parts": current_parts})

    return {
        "contents": contents,
        "generationConfig": {
            "responseModalities": ["TEXT", "IMAGE"],
            "imageConfig": {"aspectRatio": size_to_aspect_ratio(size)},
        },
    }


def build_images_body(model: str, prompt: str, size: str, count: int) -> dict[str, Any]:
    return {
        "model": model,
        "prompt": prompt,
        "size": size,
        "n": count,
        "response_format": "b64_json",
    }


def _chat_content(message: Message) -> str | list[dict[str, Any]]:
    if isinstance(message.content, str):
        return message.content

    items: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, TextPart):
            items.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart) and (image := part.to_image()):
            items.append({"type": "image_url", "image_url": {"url": to_data_uri(image)}})
    return items


def build_chat_body(
    model: str,
    history: Iterable[Message],
    prompt: str,
    input_image: ImageData | None,
    size: str,
) -> dict[str, Any]:
    messages: list[dict[str, Any]] = [
        {"role": msg.role, "content": _chat_content(msg)} for msg in history
    ]

    current: str | list[dict[str, Any]] = prompt
    if input_image is not None:
        current = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": to_data_uri(input_image)}},
        ]
    messages.append({"role": "user", "content": current})

    return {
        "model": model,
        "messages": messages,
        "stream": False,
        "modalities": ["text", "image"],
        "extra_body": {
            "google": {
                "response_modalities": ["TEXT", "IMAGE"],
                "image_config": {"image_size": size},
            }
        },
        "image_config": {"image_size": size},
    }


# --- Response shape matchers ---


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _from_url(url: Any) -> ImageSource | None:
    """Classify a URL-ish value as an embedded image, a fetchable URL, or nothing."""
    if not isinstance(url, str) or not url.strip():
        return None
    if parsed := parse_image_uri(url):
        return parsed
    if url.startswith("http"):
        return url
    return None


def _inline_data(part: dict[str, Any]) -> ImageData | None:
    if (inline := _as_dict(part.get("inlineData"))).get("data"):
        return ImageData(base64=inline["data"], mime_type=inline.get("mimeType") or "image/png")
    if (inline := _as_dict(part.get("inline_data"))).get("data"):
        return ImageData(base64=inline["data"], mime_type=inline.get("mime_type") or "image/png")
    return None


def _choice_messages(payload: Any) -> list[dict[str, Any]]:
    choices = _as_list(_as_dict(payload).get("choices"))
    return [msg for choice in choices if (msg := _as_dict(_as_dict(choice).get("message")))]


def match_candidate_parts(payload: Any) -> list[ImageSource]:
    """`candidates[].content.parts[].inlineData|inline_data` (native generateContent shape)."""
    found: list[ImageSource] = []
    for candidate in _as_list(_as_dict(payload).get("candidates")):
        parts = _as_dict(_as_dict(candidate).get("content")).get("parts")
        for part in _as_list(parts):
            if image := _inline_data(_as_dict(part)):
                found.append(image)
    return found


def match_message_content(payload: Any) -> list[ImageSource]:
    """`choices[].message.content[]` items carrying inline data or `image_url` parts."""
    found: list[ImageSource] = []
    for message in _choice_messages(payload):
        for item in _as_list(message.get("content")):
            item = _as_dict(item)
            if image := _inline_data(item):
                found.append(image)
            elif item.get("type") == "image_url":
                if source := _from_url(_as_dict(item.get("image_url")).get("url")):
                    found.append(source)
    return found


def match_message_images(payload: Any) -> list[ImageSource]:
    """`choices[].message.images[]`, the list some proxies attach to the message."""
    found: list[ImageSource] = []
    for message in _choice_messages(payload):
        for img in _as_list(message.get("images")):
            img = _as_dict(img)
            url = (
                _as_dict(img.get("image_url")).get("url")
                or img.get("url")
                or img.get("imageUrl")
                or img.get("image_url")
            )
            if source := _from_url(url):
                found.append(source)
    return found


def match_images_data(payload: Any) -> list[ImageSource]:
    """`data[].b64_json|url` (images/generations shape)."""
    found: list[ImageSource] = []
    for item in _as_list(_as_dict(payload).get("data")):
        item = _as_dict(item)
        b64 = item.get("b64_json")
        if isinstance(b64, str) and b64.strip():
            parsed = parse_image_uri(b64)
            found.append(
                ImageData(
                    base64=strip_data_uri_prefix(b64),
                    mime_type=parsed.mime_type if parsed else "image/png",
                )
            )
            continue
        url = item.get("url")
        if isinstance(url, str) and url.strip():
            found.append(url)
    return found


NATIVE_MATCHERS: tuple[ShapeMatcher, ...] = (match_candidate_parts,)
IMAGES_MATCHERS: tuple[ShapeMatcher, ...] = (match_images_data,)
CHAT_MATCHERS: tuple[ShapeMatcher, ...] = (
    match_candidate_parts,
    match_message_content,
    match_message_images,
)


def extract_images(payload: Any, matchers: Iterable[ShapeMatcher]) -> list[ImageSource]:
    """Run every matcher in priority order and concatenate what they find."""
    found: list[ImageSource] = []
    for matcher in matchers:
        found.extend(matcher(payload))
    return found

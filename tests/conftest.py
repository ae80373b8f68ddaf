import base64
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

# Keep the module-level config away from the developer's home directory
os.environ["CONFIG_SESSION__PERSIST"] = "false"
os.environ.setdefault("CONFIG_PATH", "tests/missing-config.yaml")

import httpx
import orjson
import pytest

from gemini_image.models import ImageData
from gemini_image.services import (
    EndpointConfig,
    FileSessionStorage,
    HttpTransport,
    SessionStore,
    UpstreamClient,
)
from gemini_image.utils.config import SessionConfig

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24
PNG_B64 = base64.b64encode(PNG_BYTES).decode("ascii")
JPEG_B64 = base64.b64encode(b"\xff\xd8\xff\xe0" + b"\x01" * 24).decode("ascii")

MODEL = "test-image-model"
BASE_URL = "http://upstream.test"


class FakeClock:
    """Controllable replacement for the store's wall clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingUpstream:
    """httpx handler that routes by path and records every request it sees."""

    def __init__(self) -> None:
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, suffix: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[suffix] = responder

    def calls(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    def bodies(self, suffix: str) -> list[Any]:
        return [orjson.loads(r.content) for r in self.calls(suffix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, responder in self.routes.items():
            if request.url.path.endswith(suffix):
                return responder(request)
        return httpx.Response(404, text="no route")


def native_response(*payloads: str, mime_type: str = "image/png") -> dict[str, Any]:
    return {
        "candidates": [
            {
                "content": {
                    "parts": [{"text": "here you go"}]
                    + [{"inlineData": {"data": p, "mimeType": mime_type}} for p in payloads]
                }
            }
        ]
    }


def chat_response(*payloads: str, mime_type: str = "image/png") -> dict[str, Any]:
    return {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": "done",
                    "images": [
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{p}"}}
                        for p in payloads
                    ],
                }
            }
        ]
    }


def images_response(*payloads: str) -> dict[str, Any]:
    return {"data": [{"b64_json": p} for p in payloads]}


@pytest.fixture
def png_image() -> ImageData:
    return ImageData(base64=PNG_B64, mime_type="image/png")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_config(tmp_path) -> SessionConfig:
    return SessionConfig(
        ttl=3600,
        max_history_turns=3,
        persist=True,
        storage_dir=tmp_path / "sessions",
        images_dir=tmp_path / "images",
    )


@pytest.fixture
def store(session_config, clock) -> SessionStore:
    return SessionStore(session_config, clock=clock)


@pytest.fixture
def fake_upstream() -> RecordingUpstream:
    return RecordingUpstream()


@pytest.fixture
async def transport(fake_upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_upstream))
    transport = HttpTransport(client)
    yield transport
    await transport.aclose()


@pytest.fixture
def endpoint() -> EndpointConfig:
    return EndpointConfig(base_url=BASE_URL, model=MODEL, api_key="sk-test", timeout=5)


@pytest.fixture
def upstream(transport, endpoint) -> UpstreamClient:
    return UpstreamClient(transport, endpoint, mode="auto")


def reload_store(session_config: SessionConfig, clock: FakeClock) -> SessionStore:
    """A fresh store over the same directories, as after a process restart."""
    storage = FileSessionStorage(session_config.storage_dir, session_config.images_dir)
    return SessionStore(session_config, storage=storage, clock=clock)

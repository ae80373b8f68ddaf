from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from gemini_image.models import (
    GenerationMode,
    ImageData,
    Message,
    NoImagesProducedError,
    UpstreamRejectedError,
)
from gemini_image.utils.config import DEFAULT_SIZE, UpstreamConfig

from .protocols import (
    CHAT_MATCHERS,
    IMAGES_MATCHERS,
    NATIVE_MATCHERS,
    ImageSource,
    ShapeMatcher,
    build_chat_body,
    build_images_body,
    build_native_body,
    extract_images,
    normalize_base_url,
    size_to_aspect_ratio,
    to_v1_base_url,
)
from .transport import HttpTransport

# Status codes from images/generations that mean "this endpoint does not speak that protocol"
FALLBACK_STATUSES = frozenset({400, 404})


@dataclass(frozen=True)
class EndpointConfig:
    """Connection settings for the upstream endpoint."""

    base_url: str
    model: str
    api_key: str | None = None
    timeout: float = 120.0
    default_size: str = DEFAULT_SIZE

    @classmethod
    def from_config(cls, config: UpstreamConfig) -> "EndpointConfig":
        return cls(
            base_url=config.base_url,
            model=config.model,
            api_key=config.api_key,
            timeout=config.timeout,
            default_size=config.default_size,
        )

    def auth_headers(self) -> dict[str, str]:
        return {"authorization": f"Bearer {self.api_key}"} if self.api_key else {}


class UpstreamClient:
    """Talks to the upstream endpoint over one of three protocols, falling back under `auto`."""

    def __init__(
        self,
        transport: HttpTransport,
        endpoint: EndpointConfig,
        mode: GenerationMode = "auto",
    ) -> None:
        self.transport = transport
        self.endpoint = endpoint
        self.mode = mode

    async def generate_images(
        self,
        prompt: str,
        *,
        size: str | None = None,
        count: int = 1,
        history: Sequence[Message] = (),
        input_image: ImageData | None = None,
        mode: GenerationMode | None = None,
    ) -> list[ImageData]:
        """Return between 1 and `count` images, or raise a typed error."""
        mode = mode or self.mode
        size = size or self.endpoint.default_size

        async def native() -> list[ImageData]:
            return await self.generate_native(prompt, size, history, input_image)

        async def chat() -> list[ImageData]:
            return await self.generate_chat(prompt, size, history, input_image)

        if mode == "images":
            images = await self.generate_via_images_api(prompt, size, count)
            return images[:count]
        if mode == "native":
            return await self._repeat(native, count)
        if mode == "chat":
            return await self._repeat(chat, count)

        # auto: images -> native -> chat
        try:
            images = await self.generate_via_images_api(prompt, size, count)
            return images[:count]
        except UpstreamRejectedError as e:
            # A dead download link in an accepted response is not a protocol mismatch
            if e.status not in FALLBACK_STATUSES or e.url != self.images_url:
                raise
            logger.warning(
                f"images/generations rejected with HTTP {e.status}, falling back to native generateContent"
            )

        try:
            return await self._repeat(native, count)
        except Exception as e:
            logger.warning(f"Native generateContent failed ({e}), falling back to chat/completions")

        return await self._repeat(chat, count)

    @property
    def images_url(self) -> str:
        return f"{to_v1_base_url(self.endpoint.base_url)}/images/generations"

    # --- Strategies ---

    async def generate_native(
        self,
        prompt: str,
        size: str,
        history: Sequence[Message],
        input_image: ImageData | None,
    ) -> list[ImageData]:
        """One generateContent call. The api key travels as the `key` query parameter."""
        url = f"{normalize_base_url(self.endpoint.base_url)}/models/{self.endpoint.model}:generateContent"
        params = {"key": self.endpoint.api_key} if self.endpoint.api_key else None
        body = build_native_body(history, prompt, input_image, size)

        logger.debug(
            f"POST {url} (native) model={self.endpoint.model} "
            f"aspectRatio={size_to_aspect_ratio(size)} historyLen={len(history)} "
            f"hasInputImage={input_image is not None} hasApiKey={bool(params)}"
        )
        payload = await self._post(url, body, headers={}, params=params)
        return await self._collect(payload, NATIVE_MATCHERS, "native generateContent")

    async def generate_via_images_api(self, prompt: str, size: str, count: int) -> list[ImageData]:
        """One images/generations call requesting `count` images."""
        url = self.images_url
        body = build_images_body(self.endpoint.model, prompt, size, count)

        logger.debug(
            f"POST {url} (images) model={self.endpoint.model} size={size} n={count} "
            f"hasApiKey={bool(self.endpoint.api_key)}"
        )
        payload = await self._post(url, body, headers=self.endpoint.auth_headers())
        return await self._collect(payload, IMAGES_MATCHERS, "images/generations")

    async def generate_chat(
        self,
        prompt: str,
        size: str,
        history: Sequence[Message],
        input_image: ImageData | None,
    ) -> list[ImageData]:
        """One chat/completions call. The image may come back in several shapes."""
        url = f"{to_v1_base_url(self.endpoint.base_url)}/chat/completions"
        body = build_chat_body(self.endpoint.model, history, prompt, input_image, size)

        logger.debug(
            f"POST {url} (chat) model={self.endpoint.model} image_size={size} "
            f"historyLen={len(history)} hasInputImage={input_image is not None} "
            f"hasApiKey={bool(self.endpoint.api_key)}"
        )
        payload = await self._post(url, body, headers=self.endpoint.auth_headers())
        return await self._collect(payload, CHAT_MATCHERS, "chat/completions")

    # --- Helpers ---

    @staticmethod
    async def _repeat(call: Callable[[], Awaitable[list[ImageData]]], count: int) -> list[ImageData]:
        """Call serially, at most `count` times, until `count` images are collected."""
        images: list[ImageData] = []
        for _ in range(count):
            images.extend(await call())
            if len(images) >= count:
                break
        return images[:count]

    async def _post(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        params: dict[str, str] | None = None,
    ) -> Any:
        response = await self.transport.post_json(
            url, headers, body, self.endpoint.timeout, params=params
        )
        if not response.is_success:
            raise UpstreamRejectedError(response.status_code, response.text, url)
        return self.transport.read_json(response)

    async def _collect(
        self, payload: Any, matchers: Sequence[ShapeMatcher], label: str
    ) -> list[ImageData]:
        sources: list[ImageSource] = extract_images(payload, matchers)
        images: list[ImageData] = []
        for source in sources:
            if isinstance(source, str):
                images.append(await self.transport.fetch_image(source, self.endpoint.timeout))
            else:
                images.append(source)

        if not images:
            keys = list(payload) if isinstance(payload, dict) else type(payload).__name__
            raise NoImagesProducedError(f"{label} returned no image data (response keys: {keys})")
        return images

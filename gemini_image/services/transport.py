from typing import Any

import httpx
import orjson
from loguru import logger

from gemini_image.models import (
    ImageData,
    NoImagesProducedError,
    UpstreamNetworkError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
)
from gemini_image.utils.codec import encode_bytes


class HttpTransport:
    """Bounded-timeout HTTP calls against the upstream endpoint."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def post_json(
        self,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        timeout: float,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """POST a JSON body. Non-2xx responses are returned as-is for the caller to classify."""
        request_headers = {"content-type": "application/json", **headers}
        return await self._send(
            "POST",
            url,
            timeout,
            headers=request_headers,
            content=orjson.dumps(body),
            params=params,
        )

    async def fetch_image(self, url: str, timeout: float) -> ImageData:
        """Download an image referenced by URL in an upstream response."""
        response = await self._send("GET", url, timeout)
        if not response.is_success:
            raise UpstreamRejectedError(response.status_code, response.text, url)

        content_type = response.headers.get("content-type") or "image/png"
        mime_type = content_type.split(";")[0].strip() or "image/png"
        logger.debug(f"Fetched image from {url} ({len(response.content)} bytes, {mime_type})")
        return ImageData(base64=encode_bytes(response.content), mime_type=mime_type)

    @staticmethod
    def read_json(response: httpx.Response) -> Any:
        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise NoImagesProducedError(
                f"Upstream returned a non-JSON body (HTTP {response.status_code})"
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, timeout: float, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(_redact(url), timeout) from e
        except httpx.TransportError as e:
            raise UpstreamNetworkError(_redact(url), e) from e


def _redact(url: str) -> str:
    return url.split("?", 1)[0]

from typing import Any


class ImageGenError(Exception):
    """Base error for every failure surfaced to callers."""

    kind = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class InvalidArgumentError(ImageGenError):
    """Bad caller input: empty prompt, count out of range, undecodable image."""

    kind = "invalid_argument"


class UpstreamUnavailableError(ImageGenError):
    """The upstream endpoint could not be reached."""

    kind = "upstream_unavailable"


class UpstreamTimeoutError(UpstreamUnavailableError):
    def __init__(self, url: str, timeout: float) -> None:
        super().__init__(f"Request to {url} timed out after {timeout:g}s")
        self.url = url
        self.timeout = timeout

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "timeout": self.timeout}


class UpstreamNetworkError(UpstreamUnavailableError):
    def __init__(self, url: str, cause: BaseException) -> None:
        super().__init__(f"Network error calling {url}: {cause!r}")
        self.url = url
        self.cause = cause


class UpstreamRejectedError(ImageGenError):
    """Non-2xx response from the upstream endpoint."""

    kind = "upstream_rejected"

    def __init__(self, status: int, body: str, url: str) -> None:
        hint = " (an API key looks required or invalid)" if status in (401, 403) else ""
        super().__init__(f"Upstream returned HTTP {status}{hint}: {body[:500]}")
        self.status = status
        self.body = body
        self.url = url

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "status": self.status, "body": self.body, "url": self.url}


class NoImagesProducedError(ImageGenError):
    """The upstream call succeeded but no recognizable image came back."""

    kind = "no_images_produced"


class StorageUnavailableError(ImageGenError):
    """Durable session or image storage failed. Never fatal to the in-memory path."""

    kind = "storage_unavailable"

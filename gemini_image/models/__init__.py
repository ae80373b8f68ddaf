from .errors import (
    ImageGenError,
    InvalidArgumentError,
    NoImagesProducedError,
    StorageUnavailableError,
    UpstreamNetworkError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from .models import (
    ContentPart,
    GeneratedImage,
    GenerateImagesRequest,
    GenerateImagesResponse,
    GenerationMode,
    GenerationRequest,
    GenerationResult,
    HealthCheckResponse,
    ImageData,
    ImagePart,
    ImageRef,
    Message,
    Session,
    SessionListResponse,
    SessionRecord,
    SessionSummary,
    TextPart,
)

__all__ = [
    "ContentPart",
    "GenerateImagesRequest",
    "GenerateImagesResponse",
    "GeneratedImage",
    "GenerationMode",
    "GenerationRequest",
    "GenerationResult",
    "HealthCheckResponse",
    "ImageData",
    "ImageGenError",
    "ImagePart",
    "ImageRef",
    "InvalidArgumentError",
    "Message",
    "NoImagesProducedError",
    "Session",
    "SessionListResponse",
    "SessionRecord",
    "SessionSummary",
    "StorageUnavailableError",
    "TextPart",
    "UpstreamNetworkError",
    "UpstreamRejectedError",
    "UpstreamTimeoutError",
    "UpstreamUnavailableError",
]

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

GenerationMode = Literal["auto", "images", "native", "chat"]


class _CamelModel(BaseModel):
    """Models persisted to disk use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageData(_CamelModel):
    """A generated or supplied image. Immutable once produced."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    base64: str
    mime_type: str = Field(default="image/png")


class ImageRef(_CamelModel):
    """Pointer to an image blob stored on disk."""

    path: str
    mime_type: str = Field(default="image/png")


class TextPart(_CamelModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(_CamelModel):
    """Image content inside a message, either inline, a file reference, or both."""

    type: Literal["image"] = "image"
    mime_type: str = Field(default="image/png")
    data: str | None = Field(default=None)
    path: str | None = Field(default=None)

    @model_validator(mode="after")
    def _require_payload(self) -> ImagePart:
        if self.data is None and self.path is None:
            raise ValueError("Image part needs inline data or a file path")
        return self

    @classmethod
    def from_image(cls, image: ImageData) -> ImagePart:
        return cls(mime_type=image.mime_type, data=image.base64)

    def to_image(self) -> ImageData | None:
        if self.data is None:
            return None
        return ImageData(base64=self.data, mime_type=self.mime_type)


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]


class Message(_CamelModel):
    """Message model"""

    role: Literal["user", "assistant"]
    content: str | list[ContentPart]

    def image_parts(self) -> list[ImagePart]:
        if isinstance(self.content, str):
            return []
        return [part for part in self.content if isinstance(part, ImagePart)]


class Session(BaseModel):
    """Conversation state held in memory."""

    id: str = Field(..., frozen=True)
    messages: list[Message] = Field(default_factory=list)
    last_image: ImageData | None = Field(default=None)
    created_at: datetime
    last_used_at: datetime


class SessionRecord(_CamelModel):
    """Durable form of a session. Image payloads are always file references."""

    id: str
    messages: list[Message] = Field(default_factory=list)
    last_image_ref: ImageRef | None = Field(default=None)
    created_at: datetime
    last_used_at: datetime


class SessionSummary(BaseModel):
    """Session summary model"""

    id: str
    message_count: int
    has_image: bool
    created_at: datetime
    last_used_at: datetime
    source: Literal["memory", "file"]


class GenerationRequest(BaseModel):
    """Normalized options for one generate call."""

    prompt: str
    session_id: str | None = Field(default=None)
    input_image: ImageData | None = Field(default=None)
    size: str | None = Field(default=None)
    count: int = Field(default=1)
    mode: GenerationMode | None = Field(default=None)


class GenerationResult(BaseModel):
    images: list[ImageData]
    session_id: str
    is_new_session: bool


class GenerateImagesRequest(BaseModel):
    """Image generation request model"""

    prompt: str
    session_id: str | None = Field(default=None)
    image: str | None = Field(
        default=None, description="Input image as a data URI or raw base64 string"
    )
    size: str | None = Field(default=None)
    n: int = Field(default=1, description="Number of images, 1 to 4")
    mode: GenerationMode | None = Field(default=None)


class GeneratedImage(BaseModel):
    b64_json: str
    mime_type: str


class GenerateImagesResponse(BaseModel):
    """Image generation response model"""

    session_id: str
    is_new_session: bool
    images: list[GeneratedImage]


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]


class HealthCheckResponse(BaseModel):
    """Health check response model"""

    ok: bool
    sessions: dict[str, Any] | None = Field(default=None)
    error: str | None = Field(default=None)

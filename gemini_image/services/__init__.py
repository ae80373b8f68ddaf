from .generator import ImageGenerator
from .sessions import SessionStore, build_user_content
from .storage import FileSessionStorage
from .transport import HttpTransport
from .upstream import EndpointConfig, UpstreamClient

__all__ = [
    "EndpointConfig",
    "FileSessionStorage",
    "HttpTransport",
    "ImageGenerator",
    "SessionStore",
    "UpstreamClient",
    "build_user_content",
]

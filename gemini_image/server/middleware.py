from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from gemini_image.models import (
    ImageGenError,
    InvalidArgumentError,
    NoImagesProducedError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
)
from gemini_image.services import ImageGenerator
from gemini_image.utils import g_config

ERROR_STATUS: dict[type[ImageGenError], int] = {
    InvalidArgumentError: status.HTTP_400_BAD_REQUEST,
    UpstreamUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    UpstreamRejectedError: status.HTTP_502_BAD_GATEWAY,
    NoImagesProducedError: status.HTTP_502_BAD_GATEWAY,
}


def status_for_error(exc: ImageGenError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def image_gen_exception_handler(request: Request, exc: ImageGenError):
    return JSONResponse(status_code=status_for_error(exc), content={"error": exc.to_dict()})


def global_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": exc.detail}},
        )

    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"kind": "internal", "message": str(exc)}},
    )


def get_generator(request: Request) -> ImageGenerator:
    """Return the generator built once in the application lifespan."""
    return request.app.state.generator


def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Depends(HTTPBearer(auto_error=False)),
):
    if not g_config.server.api_key:
        return ""

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing token")

    api_key = credentials.credentials
    if api_key != g_config.server.api_key:
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Wrong API key")

    return api_key


def add_exception_handler(app: FastAPI):
    app.add_exception_handler(ImageGenError, image_gen_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)


def add_cors_middleware(app: FastAPI):
    if g_config.cors.enabled:
        cors = g_config.cors
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors.allow_origins,
            allow_credentials=cors.allow_credentials,
            allow_methods=cors.allow_methods,
            allow_headers=cors.allow_headers,
        )

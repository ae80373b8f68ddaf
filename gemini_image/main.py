import asyncio
import contextlib
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI
from loguru import logger

from gemini_image.models import HealthCheckResponse
from gemini_image.server import images_router, sessions_router
from gemini_image.server.middleware import add_cors_middleware, add_exception_handler, get_generator
from gemini_image.services import (
    EndpointConfig,
    HttpTransport,
    ImageGenerator,
    SessionStore,
    UpstreamClient,
)
from gemini_image.utils import g_config, setup_logging

setup_logging(g_config.logging.level)


def build_generator(transport: HttpTransport) -> ImageGenerator:
    """Wire the store and upstream client from configuration, once per process."""
    store = SessionStore(g_config.session)
    upstream = UpstreamClient(
        transport,
        EndpointConfig.from_config(g_config.upstream),
        mode=g_config.upstream.mode,
    )
    return ImageGenerator(store, upstream)


@asynccontextmanager
async def lifespan(app: FastAPI):
    transport = HttpTransport()
    generator = build_generator(transport)
    app.state.generator = generator

    upstream = g_config.upstream
    logger.info(
        f"Upstream {upstream.base_url} model={upstream.model} mode={upstream.mode} "
        f"persist={g_config.session.persist}"
    )

    generator.sweep_expired()
    cleanup_task = asyncio.create_task(generator.run_cleanup(g_config.session.cleanup_interval))
    try:
        yield
    finally:
        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        await transport.aclose()
        logger.info("Transport closed.")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Gemini Image Sessions",
        description="Multi-turn image generation and editing over several upstream protocols",
        lifespan=lifespan,
    )

    add_cors_middleware(app)
    add_exception_handler(app)

    app.include_router(images_router)
    app.include_router(sessions_router)

    @app.get("/health", response_model=HealthCheckResponse, tags=["Health"])
    async def health(generator: ImageGenerator = Depends(get_generator)):
        return HealthCheckResponse(ok=True, sessions=generator.store.stats())

    return app


app = create_app()


def run() -> None:
    uvicorn.run(app, host=g_config.server.host, port=g_config.server.port)


if __name__ == "__main__":
    run()

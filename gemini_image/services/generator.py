import asyncio

from loguru import logger

from gemini_image.models import (
    GenerationRequest,
    GenerationResult,
    InvalidArgumentError,
    SessionSummary,
)

from .sessions import SessionStore, build_user_content
from .upstream import UpstreamClient

MIN_COUNT = 1
MAX_COUNT = 4


class ImageGenerator:
    """Runs one generation turn: resolve session, call upstream, record the turn."""

    def __init__(self, store: SessionStore, upstream: UpstreamClient) -> None:
        self.store = store
        self.upstream = upstream
        # Turns on the same session run one at a time
        self._session_locks: dict[str, asyncio.Lock] = {}

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        prompt = request.prompt.strip()
        if not prompt:
            raise InvalidArgumentError("Prompt must not be empty")
        if not MIN_COUNT <= request.count <= MAX_COUNT:
            raise InvalidArgumentError(
                f"Image count must be between {MIN_COUNT} and {MAX_COUNT}, got {request.count}"
            )

        if not request.session_id:
            return await self._generate(prompt, request)

        lock = self._session_locks.setdefault(request.session_id, asyncio.Lock())
        try:
            async with lock:
                return await self._generate(prompt, request)
        finally:
            # Unknown ids never become live sessions, so their lock is dead weight
            if request.session_id not in self.store and not lock.locked():
                self._session_locks.pop(request.session_id, None)

    async def _generate(self, prompt: str, request: GenerationRequest) -> GenerationResult:
        session = self.store.get_or_create(request.session_id)
        is_new = not request.session_id or session.id != request.session_id

        input_image = request.input_image
        if input_image is None and not is_new and session.last_image is not None:
            input_image = session.last_image
            logger.debug(f"Continuing session {session.id} from its last image")

        # Upstream failures propagate before the session is touched
        images = await self.upstream.generate_images(
            prompt,
            size=request.size,
            count=request.count,
            history=self.store.history(session),
            input_image=input_image,
            mode=request.mode,
        )

        self.store.update(session, build_user_content(prompt, input_image), images)
        logger.info(f"Generated {len(images)} image(s) for session {session.id}")
        return GenerationResult(images=images, session_id=session.id, is_new_session=is_new)

    def list_sessions(self) -> list[SessionSummary]:
        return self.store.list_sessions()

    def sweep_expired(self) -> list[str]:
        removed = self.store.sweep_expired()
        for session_id in removed:
            lock = self._session_locks.get(session_id)
            if lock is not None and not lock.locked():
                del self._session_locks[session_id]
        return removed

    async def run_cleanup(self, interval: float) -> None:
        """Sweep expired sessions forever, every `interval` seconds."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_expired()
            except Exception:
                logger.exception("Session cleanup failed")

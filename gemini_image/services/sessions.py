import secrets
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from loguru import logger

from gemini_image.models import (
    ContentPart,
    ImageData,
    ImagePart,
    Message,
    Session,
    SessionSummary,
    StorageUnavailableError,
    TextPart,
)
from gemini_image.utils.config import SessionConfig

from .storage import FileSessionStorage, is_valid_session_id


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def build_user_content(prompt: str, input_image: ImageData | None) -> str | list[ContentPart]:
    """User message content as kept in history: plain text, or text plus the input image."""
    if input_image is None:
        return prompt
    return [TextPart(text=prompt), ImagePart.from_image(input_image)]


class SessionStore:
    """Conversation sessions held in memory, optionally mirrored to disk.

    Memory is authoritative for loaded sessions; the disk mirror is the source of
    truth across restarts. Storage failures are logged and never propagate.
    """

    def __init__(
        self,
        settings: SessionConfig,
        storage: FileSessionStorage | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.ttl = timedelta(seconds=settings.ttl)
        self.max_messages = settings.max_messages
        self._clock = clock
        self._sessions: dict[str, Session] = {}

        if storage is None and settings.persist:
            storage = FileSessionStorage(settings.storage_dir, settings.images_dir)
        self.storage = storage if settings.persist else None

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _expired(self, last_used_at: datetime, now: datetime) -> bool:
        return now - last_used_at > self.ttl

    def get_or_create(self, session_id: str | None) -> Session:
        """Return the live session for `session_id`, or a brand-new one."""
        now = self._clock()

        if session_id and (session := self._sessions.get(session_id)):
            if not self._expired(session.last_used_at, now):
                session.last_used_at = max(session.last_used_at, now)
                return session
            logger.debug(f"Session {session_id} expired in memory")
            self.delete(session_id)

        elif session_id and (session := self._load(session_id)):
            if not self._expired(session.last_used_at, now):
                session.last_used_at = max(session.last_used_at, now)
                self._sessions[session.id] = session
                logger.debug(f"Reloaded session {session_id} from disk")
                return session
            logger.debug(f"Session {session_id} on disk has expired")
            self.delete(session_id)

        session = Session(id=secrets.token_hex(8), created_at=now, last_used_at=now)
        self._sessions[session.id] = session
        self._persist(session)
        logger.debug(f"Created session {session.id}")
        return session

    def update(self, session: Session, user_content: str | list[ContentPart], images: Sequence[ImageData]) -> None:
        """Record one successful turn, trim history and persist."""
        session.messages.append(Message(role="user", content=user_content))

        if images:
            first = images[0]
            session.last_image = first
            noun = "image" if len(images) == 1 else "images"
            session.messages.append(
                Message(
                    role="assistant",
                    content=[
                        TextPart(text=f"[generated {len(images)} {noun}]"),
                        ImagePart.from_image(first),
                    ],
                )
            )

        session.last_used_at = max(session.last_used_at, self._clock())
        if len(session.messages) > self.max_messages:
            del session.messages[: len(session.messages) - self.max_messages]

        self._sessions[session.id] = session
        self._persist(session)
        logger.debug(f"Session {session.id} updated, {len(session.messages)} messages")

    def history(self, session: Session) -> list[Message]:
        """Messages with every file-referenced image loaded inline.

        Parts reloaded from disk are materialized on first use and cached on the session.
        """
        for message in session.messages:
            for part in message.image_parts():
                if part.data is not None or part.path is None:
                    continue
                try:
                    part.data = FileSessionStorage.read_image(part.path, part.mime_type).base64
                except StorageUnavailableError as e:
                    logger.warning(f"Image missing from history of session {session.id}: {e}")
        return [msg.model_copy(deep=True) for msg in session.messages]

    def sweep_expired(self) -> list[str]:
        """Remove every session unused for longer than the TTL, in memory and on disk."""
        now = self._clock()
        removed: list[str] = []

        for session_id, session in list(self._sessions.items()):
            if self._expired(session.last_used_at, now):
                self.delete(session_id)
                removed.append(session_id)

        if self.storage is not None:
            for record in self.storage.iter_records():
                # Loaded sessions are authoritative, their disk copy may lag behind
                if record.id in self._sessions:
                    continue
                if self._expired(record.last_used_at, now):
                    self.delete(record.id)
                    removed.append(record.id)

        if removed:
            logger.info(f"Cleaned up {len(removed)} expired sessions.")
        return removed

    def list_sessions(self) -> list[SessionSummary]:
        """Summaries of loaded sessions plus those only on disk. Touches nothing."""
        summaries = [
            SessionSummary(
                id=s.id,
                message_count=len(s.messages),
                has_image=s.last_image is not None,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                source="memory",
            )
            for s in self._sessions.values()
        ]

        if self.storage is not None:
            seen = set(self._sessions)
            for record in self.storage.iter_records():
                if record.id in seen:
                    continue
                seen.add(record.id)
                summaries.append(
                    SessionSummary(
                        id=record.id,
                        message_count=len(record.messages),
                        has_image=record.last_image_ref is not None,
                        created_at=record.created_at,
                        last_used_at=record.last_used_at,
                        source="file",
                    )
                )
        return summaries

    def delete(self, session_id: str) -> bool:
        """Drop a session from memory and disk. Returns whether it existed anywhere."""
        existed = self._sessions.pop(session_id, None) is not None
        if self.storage is not None:
            try:
                existed = existed or (
                    is_valid_session_id(session_id) and self.storage.record_path(session_id).exists()
                )
                self.storage.delete(session_id)
            except StorageUnavailableError as e:
                logger.warning(f"Failed to delete stored session {session_id}: {e}")
        return existed

    def stats(self) -> dict[str, Any]:
        return {
            "count": len(self._sessions),
            "ids": list(self._sessions),
            "persist_enabled": self.storage is not None,
            "storage_dir": str(self.settings.storage_dir),
            "images_dir": str(self.settings.images_dir),
        }

    def _load(self, session_id: str) -> Session | None:
        if self.storage is None:
            return None
        try:
            return self.storage.load(session_id)
        except StorageUnavailableError as e:
            logger.warning(f"Could not reload session {session_id}, starting fresh: {e}")
            return None

    def _persist(self, session: Session) -> None:
        if self.storage is None:
            return
        try:
            self.storage.save(session)
        except StorageUnavailableError as e:
            logger.warning(f"Session {session.id} kept in memory only: {e}")

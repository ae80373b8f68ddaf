"""On-disk mirror of sessions.

Layout::

    <storage_dir>/<id>.json                 session record
    <images_dir>/<id>_last.<ext>            last generated image
    <images_dir>/<id>_msg_<sha256>.<ext>    images embedded in message history

Records never carry inline image data; every image part is rewritten to a file path.
"""

import hashlib
import os
import re
import tempfile
from collections.abc import Iterator
from pathlib import Path

import orjson
from loguru import logger
from pydantic import ValidationError

from gemini_image.models import (
    ImageData,
    ImagePart,
    ImageRef,
    Message,
    Session,
    SessionRecord,
    StorageUnavailableError,
)
from gemini_image.utils.codec import decode_payload, encode_bytes, extension_for_mime

SESSION_ID_RE = re.compile(r"^[0-9a-f]{16}$")


def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_RE.match(session_id))


def _write_atomic(path: Path, data: bytes) -> None:
    """Write to a sibling temp file, then rename over the target."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileSessionStorage:
    """JSON record per session plus separate image blobs."""

    def __init__(self, storage_dir: Path | str, images_dir: Path | str) -> None:
        self.storage_dir = Path(storage_dir).expanduser()
        self.images_dir = Path(images_dir).expanduser()

    def record_path(self, session_id: str) -> Path:
        return self.storage_dir / f"{session_id}.json"

    # --- Writing ---

    def save(self, session: Session) -> None:
        """Persist a session, moving every image payload into its own file."""
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self.images_dir.mkdir(parents=True, exist_ok=True)

            keep: set[Path] = set()
            messages = [self._externalize(session.id, msg, keep) for msg in session.messages]

            last_ref = None
            if session.last_image is not None:
                last_path = (
                    self.images_dir
                    / f"{session.id}_last.{extension_for_mime(session.last_image.mime_type)}"
                )
                _write_atomic(last_path, decode_payload(session.last_image.base64))
                keep.add(last_path)
                last_ref = ImageRef(path=str(last_path), mime_type=session.last_image.mime_type)

            record = SessionRecord(
                id=session.id,
                messages=messages,
                last_image_ref=last_ref,
                created_at=session.created_at,
                last_used_at=session.last_used_at,
            )
            _write_atomic(
                self.record_path(session.id),
                orjson.dumps(record.model_dump(mode="json", by_alias=True), option=orjson.OPT_INDENT_2),
            )
            self._prune_images(session.id, keep)
        except (OSError, ValueError) as e:
            raise StorageUnavailableError(f"Failed to persist session {session.id}: {e}") from e

        logger.debug(f"Saved session {session.id} ({len(messages)} messages)")

    def _externalize(self, session_id: str, message: Message, keep: set[Path]) -> Message:
        if isinstance(message.content, str):
            return message

        content = []
        for part in message.content:
            if isinstance(part, ImagePart):
                part = self._store_part(session_id, part)
                keep.add(Path(part.path))
            content.append(part)
        return Message(role=message.role, content=content)

    def _store_part(self, session_id: str, part: ImagePart) -> ImagePart:
        if part.data is None:
            # Already on disk, loaded lazily and never materialized
            return ImagePart(mime_type=part.mime_type, path=part.path)

        raw = decode_payload(part.data)
        digest = hashlib.sha256(raw).hexdigest()[:16]
        path = self.images_dir / f"{session_id}_msg_{digest}.{extension_for_mime(part.mime_type)}"
        if not path.exists():
            _write_atomic(path, raw)
        return ImagePart(mime_type=part.mime_type, path=str(path))

    def _prune_images(self, session_id: str, keep: set[Path]) -> None:
        """Drop image files no longer referenced, e.g. after history trimming."""
        for path in self._image_files(session_id):
            if path not in keep:
                path.unlink(missing_ok=True)
                logger.debug(f"Removed unreferenced image {path.name}")

    # --- Reading ---

    def load(self, session_id: str) -> Session | None:
        """Load a session, or None when no record exists. The last image is read eagerly."""
        if not is_valid_session_id(session_id):
            return None
        record = self.read_record(session_id)
        if record is None:
            return None

        last_image = None
        if record.last_image_ref is not None:
            try:
                last_image = self.read_image(record.last_image_ref.path, record.last_image_ref.mime_type)
            except StorageUnavailableError as e:
                logger.warning(f"Session {session_id} lost its last image: {e}")

        return Session(
            id=record.id,
            messages=record.messages,
            last_image=last_image,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
        )

    def read_record(self, session_id: str) -> SessionRecord | None:
        path = self.record_path(session_id)
        if not path.is_file():
            return None
        try:
            return SessionRecord.model_validate(orjson.loads(path.read_bytes()))
        except (OSError, orjson.JSONDecodeError, ValidationError) as e:
            raise StorageUnavailableError(f"Failed to read session record {path.name}: {e}") from e

    def iter_records(self) -> Iterator[SessionRecord]:
        """Yield every readable record. Unreadable files are skipped."""
        if not self.storage_dir.is_dir():
            return
        for path in sorted(self.storage_dir.glob("*.json")):
            try:
                record = self.read_record(path.stem)
            except StorageUnavailableError as e:
                logger.debug(f"Skipping unreadable session file: {e}")
                continue
            if record is not None:
                yield record

    @staticmethod
    def read_image(path: str, mime_type: str) -> ImageData:
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read image {path}: {e}") from e
        return ImageData(base64=encode_bytes(data), mime_type=mime_type or "image/png")

    # --- Deleting ---

    def delete(self, session_id: str) -> None:
        """Remove the record and every image file belonging to the session."""
        if not is_valid_session_id(session_id):
            return
        try:
            self.record_path(session_id).unlink(missing_ok=True)
            for path in self._image_files(session_id):
                path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to delete session {session_id}: {e}") from e
        logger.debug(f"Deleted stored session {session_id}")

    def _image_files(self, session_id: str) -> list[Path]:
        if not self.images_dir.is_dir():
            return []
        return [p for p in self.images_dir.glob(f"{session_id}_*") if p.is_file()]

import orjson
import pytest

from gemini_image.models import ImageData, ImagePart, TextPart
from gemini_image.services import SessionStore, build_user_content
from gemini_image.services.storage import FileSessionStorage, is_valid_session_id
from gemini_image.utils.config import SessionConfig
from tests.conftest import JPEG_B64, PNG_B64, reload_store


def _images(*payloads: str, mime_type: str = "image/png") -> list[ImageData]:
    return [ImageData(base64=p, mime_type=mime_type) for p in payloads]


def test_new_session_gets_hex_id_and_record(store, session_config):
    session = store.get_or_create(None)

    assert is_valid_session_id(session.id)
    assert session.messages == []
    assert session.last_image is None
    assert (session_config.storage_dir / f"{session.id}.json").is_file()


def test_unknown_id_yields_fresh_session(store):
    session = store.get_or_create("0123456789abcdef")
    assert session.id != "0123456789abcdef"


def test_get_refreshes_last_used_monotonically(store, clock):
    session = store.get_or_create(None)
    first = session.last_used_at

    clock.advance(10)
    again = store.get_or_create(session.id)
    assert again is session
    refreshed = again.last_used_at
    assert refreshed > first

    clock.advance(-60)
    store.get_or_create(session.id)
    assert session.last_used_at == refreshed


def test_expired_session_is_replaced(store, clock, session_config):
    old = store.get_or_create(None)
    clock.advance(session_config.ttl + 1)

    fresh = store.get_or_create(old.id)

    assert fresh.id != old.id
    assert old.id not in store
    assert not (session_config.storage_dir / f"{old.id}.json").exists()


def test_update_records_turn_and_last_image(store):
    session = store.get_or_create(None)

    store.update(session, "a red circle", _images(PNG_B64, JPEG_B64))

    assert session.last_image == ImageData(base64=PNG_B64)
    user, assistant = session.messages
    assert user.role == "user" and user.content == "a red circle"
    assert assistant.role == "assistant"
    assert assistant.content[0] == TextPart(text="[generated 2 images]")
    assert assistant.content[1].data == PNG_B64


def test_update_without_images_keeps_last_image(store, png_image):
    session = store.get_or_create(None)
    store.update(session, "first", [png_image])

    store.update(session, "second", [])

    assert session.last_image == png_image
    assert [m.role for m in session.messages] == ["user", "assistant", "user"]


def test_history_is_trimmed_to_twice_the_turn_limit(store, session_config):
    session = store.get_or_create(None)
    for i in range(session_config.max_history_turns + 2):
        store.update(session, f"turn {i}", _images(PNG_B64))

    assert len(session.messages) == session_config.max_messages == 6
    assert session.messages[0].content == "turn 2"


def test_user_content_with_input_image():
    image = ImageData(base64=JPEG_B64, mime_type="image/jpeg")

    assert build_user_content("hi", None) == "hi"
    text, part = build_user_content("hi", image)
    assert text == TextPart(text="hi")
    assert part == ImagePart(mime_type="image/jpeg", data=JPEG_B64)


def test_record_on_disk_references_image_files(store, session_config):
    session = store.get_or_create(None)
    user_content = build_user_content("edit", ImageData(base64=JPEG_B64, mime_type="image/jpeg"))
    store.update(session, user_content, _images(PNG_B64))

    raw = orjson.loads((session_config.storage_dir / f"{session.id}.json").read_bytes())

    assert raw["id"] == session.id
    assert set(raw) == {"id", "messages", "lastImageRef", "createdAt", "lastUsedAt"}
    assert raw["lastImageRef"]["mimeType"] == "image/png"
    assert raw["lastImageRef"]["path"].endswith(f"{session.id}_last.png")
    for message in raw["messages"]:
        if isinstance(message["content"], list):
            for part in message["content"]:
                if part["type"] == "image":
                    assert part["data"] is None
                    assert part["path"]
    assert PNG_B64 not in orjson.dumps(raw).decode()

    names = sorted(p.name for p in session_config.images_dir.iterdir())
    assert f"{session.id}_last.png" in names
    assert any(n.startswith(f"{session.id}_msg_") and n.endswith(".jpg") for n in names)


def test_reload_after_restart(store, session_config, clock):
    session = store.get_or_create(None)
    store.update(session, "a red circle", _images(JPEG_B64, mime_type="image/jpeg"))

    clock.advance(60)
    restarted = reload_store(session_config, clock)
    reloaded = restarted.get_or_create(session.id)

    assert reloaded.id == session.id
    assert len(reloaded.messages) == len(session.messages)
    assert reloaded.last_image == ImageData(base64=JPEG_B64, mime_type="image/jpeg")
    assert reloaded.created_at == session.created_at


def test_history_loads_image_parts_lazily(store, session_config, clock):
    session = store.get_or_create(None)
    store.update(session, "a red circle", _images(PNG_B64))

    restarted = reload_store(session_config, clock)
    reloaded = restarted.get_or_create(session.id)
    part = reloaded.messages[1].content[1]
    assert part.data is None and part.path

    history = restarted.history(reloaded)

    assert history[1].content[1].data == PNG_B64
    history[1].content[1].data = "mutated"
    assert reloaded.messages[1].content[1].data == PNG_B64


def test_trimming_prunes_unreferenced_message_images(store, session_config):
    session = store.get_or_create(None)
    payloads = [ImageData(base64=PNG_B64[:-4] + suffix) for suffix in ("AAAA", "BBBB", "CCCC", "DDDD")]
    for image in payloads:
        store.update(session, "turn", [image])

    msg_files = list(session_config.images_dir.glob(f"{session.id}_msg_*"))
    assert len(msg_files) == 3


def test_sweep_removes_expired_from_memory_and_disk(store, session_config, clock):
    stale = store.get_or_create(None)
    store.update(stale, "old", _images(PNG_B64))
    clock.advance(session_config.ttl - 10)
    live = store.get_or_create(None)

    # Only on disk, as if left behind by a previous process
    orphan_store = reload_store(session_config, clock)
    clock.advance(20)

    removed = orphan_store.sweep_expired()

    assert removed == [stale.id]
    assert not (session_config.storage_dir / f"{stale.id}.json").exists()
    assert not list(session_config.images_dir.glob(f"{stale.id}_*"))
    assert (session_config.storage_dir / f"{live.id}.json").exists()

    removed = store.sweep_expired()
    assert removed == [stale.id]
    assert stale.id not in store
    assert live.id in store


def test_list_merges_memory_and_disk(store, session_config, clock):
    on_disk = store.get_or_create(None)
    store.update(on_disk, "a", _images(PNG_B64))

    fresh = reload_store(session_config, clock)
    in_memory = fresh.get_or_create(None)

    summaries = {s.id: s for s in fresh.list_sessions()}

    assert summaries[in_memory.id].source == "memory"
    assert summaries[on_disk.id].source == "file"
    assert summaries[on_disk.id].message_count == 2
    assert summaries[on_disk.id].has_image is True
    assert on_disk.id not in fresh


def test_delete(store, session_config):
    session = store.get_or_create(None)
    store.update(session, "a", _images(PNG_B64))

    assert store.delete(session.id) is True
    assert store.delete(session.id) is False
    assert store.delete("../../etc/passwd") is False
    assert not list(session_config.images_dir.iterdir())


def test_storage_failure_degrades_to_memory(tmp_path, clock):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    config = SessionConfig(ttl=3600, storage_dir=blocker / "sessions", images_dir=blocker / "images")
    store = SessionStore(config, clock=clock)

    session = store.get_or_create(None)
    store.update(session, "a", _images(PNG_B64))

    assert store.get_or_create(session.id) is session
    assert session.last_image is not None


def test_corrupt_record_starts_fresh(store, session_config, clock):
    session = store.get_or_create(None)
    (session_config.storage_dir / f"{session.id}.json").write_text("{not json")

    reloaded = reload_store(session_config, clock).get_or_create(session.id)

    assert reloaded.id != session.id


def test_memory_only_store_writes_nothing(tmp_path, clock):
    config = SessionConfig(persist=False, storage_dir=tmp_path / "s", images_dir=tmp_path / "i")
    store = SessionStore(config, clock=clock)

    session = store.get_or_create(None)
    store.update(session, "a", _images(PNG_B64))

    assert store.storage is None
    assert not (tmp_path / "s").exists()
    assert store.stats()["persist_enabled"] is False


@pytest.mark.parametrize("session_id", ["", "ABCDEF0123456789", "abc", "0123456789abcdef0"])
def test_invalid_ids_are_never_loaded(tmp_path, session_id):
    storage = FileSessionStorage(tmp_path / "s", tmp_path / "i")
    assert storage.load(session_id) is None


def test_unpadded_payload_survives_reload(store, session_config, clock):
    unpadded = PNG_B64.rstrip("=")
    session = store.get_or_create(None)

    store.update(session, "a red circle", _images(unpadded))

    raw = orjson.loads((session_config.storage_dir / f"{session.id}.json").read_bytes())
    assert len(raw["messages"]) == 2
    assert raw["lastImageRef"] is not None

    reloaded = reload_store(session_config, clock).get_or_create(session.id)
    assert reloaded.id == session.id
    assert reloaded.last_image == ImageData(base64=PNG_B64, mime_type="image/png")

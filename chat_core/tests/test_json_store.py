import json
import tempfile
import time
from pathlib import Path

import pytest

from chat_core.domain.exceptions import StoreError, ValidationError
from chat_core.domain.models import GenerationSettings, Message
from chat_core.infrastructure.storage.json_store import JsonSessionStore
from chat_core.infrastructure.storage.settings_store import JsonSettingsStore


def test_json_store_insert_and_messages():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonSessionStore(root=root)
        conv = store.insert_session("first", [Message("user", "hi")])
        store.update_messages(conv.id, [Message("user", "hi"), Message("assistant", "hello")])
        store.update_token_counts(conv.id, 5, 3)

        loaded = store.get_session(conv.id)
        assert loaded.name == "first"
        assert [m.content for m in loaded.messages] == ["hi", "hello"]
        assert (loaded.prompt_token_count, loaded.completion_token_count) == (5, 3)
        assert loaded.created_at == conv.created_at
        # 原子写入不应残留临时文件
        assert list((root / "sessions").glob("*.tmp")) == []


def test_json_store_delete_session():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonSessionStore(root=root)
        conv = store.insert_session("temp", [])
        store.set_active_session_id(conv.id)
        path = root / "sessions" / f"{conv.id}.json"
        assert path.exists()

        store.delete_session(conv.id)
        assert not path.exists()
        assert conv.id not in {c.id for c in store.list_sessions()}
        assert store.get_active_session_id() is None


def test_json_store_missing_session():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))
        with pytest.raises(StoreError) as exc:
            store.get_session("s-missing")
        assert exc.value.code == "SESSION_NOT_FOUND"
        with pytest.raises(StoreError):
            store.update_messages("s-missing", [])


def test_json_store_lists_most_recent_first_and_skips_corrupt_files():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        store = JsonSessionStore(root=root)
        assert store.get_most_recent_session() is None

        older = store.insert_session("older", [])
        time.sleep(0.01)
        newer = store.insert_session("newer", [])
        (root / "sessions" / "broken.json").write_text("{not json", encoding="utf-8")

        assert [c.id for c in store.list_sessions()] == [newer.id, older.id]
        assert store.get_most_recent_session().id == newer.id

        store.rename_session(older.id, "renamed")
        assert store.get_session(older.id).name == "renamed"


def test_settings_store_defaults_and_update():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSettingsStore(root=Path(d))
        defaults = GenerationSettings(model="gpt-x", max_tokens=100)
        assert store.get_settings(defaults) is defaults

        store.update_settings(GenerationSettings(model="gpt-y", max_tokens=50, temperature=0.2))
        loaded = store.get_settings(defaults)
        assert loaded.model == "gpt-y"
        assert loaded.temperature == 0.2


def test_settings_store_merges_partial_file():
    with tempfile.TemporaryDirectory() as d:
        (Path(d) / "settings.json").write_text(json.dumps({"temperature": 1.5}), encoding="utf-8")
        store = JsonSettingsStore(root=Path(d))
        loaded = store.get_settings(GenerationSettings(model="gpt-x", max_tokens=100))
        assert (loaded.model, loaded.max_tokens, loaded.temperature) == ("gpt-x", 100, 1.5)


def test_settings_store_rejects_invalid_settings():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSettingsStore(root=Path(d))
        with pytest.raises(ValidationError) as exc:
            store.update_settings(GenerationSettings(model="m", max_tokens=-1))
        assert exc.value.code == "INVALID_SETTINGS"
        assert not (Path(d) / "settings.json").exists()

from __future__ import annotations

import json

from session.storage import JsonFileStore, MemoryStore


async def test_json_store_round_trips_keys(tmp_path) -> None:
    path = tmp_path / "state" / "device_state.json"
    store = JsonFileStore(str(path))

    assert await store.get("@ds:lastBaseUrl") is None

    await store.set("@ds:lastBaseUrl", "http://192.168.43.27:80")
    await store.set("other", "value")

    assert json.loads(path.read_text()) == {
        "@ds:lastBaseUrl": "http://192.168.43.27:80",
        "other": "value",
    }
    assert await JsonFileStore(str(path)).get("@ds:lastBaseUrl") == "http://192.168.43.27:80"


async def test_json_store_remove_keeps_other_keys(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"a": "1", "b": "2"}))
    store = JsonFileStore(str(path))

    await store.remove("a")
    await store.remove("missing")

    assert json.loads(path.read_text()) == {"b": "2"}
    assert not (tmp_path / "state.json.tmp").exists()


async def test_json_store_ignores_non_string_and_non_object_content(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"key": 42}))
    assert await JsonFileStore(str(path)).get("key") is None

    path.write_text(json.dumps(["not", "a", "mapping"]))
    assert await JsonFileStore(str(path)).get("key") is None


async def test_memory_store() -> None:
    store = MemoryStore({"key": "value"})

    assert await store.get("key") == "value"
    await store.remove("key")
    await store.remove("key")
    assert await store.get("key") is None

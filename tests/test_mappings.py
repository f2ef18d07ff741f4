import asyncio
import json
import time

import pytest

from core.mappings import MappingSource, MappingStore, NameMapping


def test_missing_file_is_created_with_seed(tmp_path):
    path = tmp_path / "data" / "character-mappings.json"
    store = MappingStore(path, seed={"أيرين": "Eren Yeager"})

    assert path.exists()
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert set(payload) == {"staticMappings", "learnedMappings", "lastUpdated"}
    assert payload["staticMappings"] == {"ايرين": "Eren Yeager"}
    assert store.lookup_static("ايرين").display_name == "Eren Yeager"


def test_round_trip_keeps_both_tables(tmp_path):
    path = tmp_path / "mappings.json"
    path.write_text(
        json.dumps(
            {
                "staticMappings": {"غوكو": "Son Goku"},
                "learnedMappings": {
                    "ليفاي": {"name": "Levi Ackerman", "confidence": 0.9, "origin": "AniList"}
                },
                "lastUpdated": "2024-01-01T00:00:00Z",
            },
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )
    store = MappingStore(path)

    static = store.lookup_static("غوكو")
    assert static.source is MappingSource.LOCAL
    assert static.confidence == 1.0
    learned = store.lookup_learned("ليفاي")
    assert learned.display_name == "Levi Ackerman"
    assert learned.confidence == pytest.approx(0.9)
    assert learned.source is MappingSource.LEARNED


def test_corrupt_file_starts_empty(tmp_path, caplog):
    path = tmp_path / "mappings.json"
    path.write_text("{not json", encoding="utf-8")
    store = MappingStore(path)
    assert store.static == {}
    assert store.learned == {}
    assert "failed to load" in caplog.text


def test_failed_save_keeps_previous_file(tmp_path, monkeypatch):
    path = tmp_path / "mappings.json"
    store = MappingStore(path, seed={"غوكو": "Son Goku"})
    before = path.read_text(encoding="utf-8")

    def boom(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("core.mappings.os.replace", boom)
    store.static["لوفي"] = "Monkey D. Luffy"
    assert store.save() is False
    assert path.read_text(encoding="utf-8") == before


@pytest.mark.asyncio
async def test_learn_persists_in_background(tmp_path):
    path = tmp_path / "mappings.json"
    store = MappingStore(path)
    store.learn(
        "كيلوا",
        NameMapping(display_name="Killua Zoldyck", confidence=0.8, source=MappingSource.EXTERNAL, origin="kitsu.io"),
    )
    await store.wait_pending()

    reloaded = MappingStore(path)
    entry = reloaded.lookup_learned("كيلوا")
    assert entry.display_name == "Killua Zoldyck"
    assert entry.origin == "kitsu.io"


@pytest.mark.asyncio
async def test_overlapping_saves_keep_newest_entry(tmp_path, monkeypatch):
    path = tmp_path / "mappings.json"
    store = MappingStore(path)
    write = store._write
    calls = []

    def slow_first_write(payload):
        calls.append(payload)
        if len(calls) == 1:
            time.sleep(0.2)
        return write(payload)

    monkeypatch.setattr(store, "_write", slow_first_write)
    store.learn(
        "كيلوا",
        NameMapping(display_name="Killua Zoldyck", confidence=0.8, source=MappingSource.EXTERNAL),
    )
    await asyncio.sleep(0.01)
    store.learn(
        "غون",
        NameMapping(display_name="Gon Freecss", confidence=0.8, source=MappingSource.EXTERNAL),
    )
    await store.wait_pending()

    assert len(calls) == 2
    on_disk = json.loads(path.read_text(encoding="utf-8"))["learnedMappings"]
    assert set(on_disk) == set(store.learned)
    assert len(on_disk) == 2

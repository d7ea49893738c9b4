import json
import threading
from dataclasses import replace

import pytest

from context_cache.errors import StorageError
from context_cache.store.backend import JsonDirectoryBackend
from context_cache.store.record_store import RecordStore


def _open(root) -> RecordStore:
    return RecordStore(JsonDirectoryBackend(root))


def test_records_survive_reopen_in_storage_order(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("b", tags=["q4"], type="workflow_summary"))
    store.put(make_record("a", tags=["q4", "retention"], type="conversation_summary"))
    store.put(make_record("c", tags=["retention"], source_token_cost=900, type="workflow_summary"))

    reopened = _open(tmp_path)

    assert [r.id for r in reopened.all_records()] == ["b", "a", "c"]
    assert reopened.get_by_id("c") == store.get_by_id("c")
    assert reopened.list_tag_counts() == {"q4": 2, "retention": 2}


def test_layout_partitions_records_by_type(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("a", tags=["q4"], type="workflow_summary"))

    locations = json.loads((tmp_path / "locations.json").read_text(encoding="utf-8"))
    index = json.loads((tmp_path / "types" / "workflow_summary" / "index.json").read_text(encoding="utf-8"))

    assert locations == {"a": "types/workflow_summary/records/a.json"}
    assert index == {"q4": ["a"]}
    assert (tmp_path / "types" / "workflow_summary" / "records" / "a.json").exists()


def test_type_change_moves_record_between_namespaces(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("a", tags=["q4"], type="draft"))
    store.put(replace(store.get_by_id("a"), type="workflow_summary"))

    assert not (tmp_path / "types" / "draft" / "records" / "a.json").exists()
    assert json.loads((tmp_path / "types" / "draft" / "index.json").read_text(encoding="utf-8")) == {}

    reopened = _open(tmp_path)
    assert reopened.get_by_id("a").type == "workflow_summary"
    assert len(reopened) == 1


def test_stale_index_artifacts_are_rebuilt_on_open(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("a", tags=["q4"]))
    store.put(make_record("b", tags=["q4", "retention"]))

    index_path = tmp_path / "types" / "workflow_summary" / "index.json"
    index_path.write_text(json.dumps({"q4": ["a", "ghost"]}), encoding="utf-8")
    (tmp_path / "locations.json").unlink()

    reopened = _open(tmp_path)

    assert {r.id for r in reopened.query_by_tags({"q4"})} == {"a", "b"}
    assert json.loads(index_path.read_text(encoding="utf-8")) == {
        "q4": ["a", "b"],
        "retention": ["b"],
    }
    assert set(json.loads((tmp_path / "locations.json").read_text(encoding="utf-8"))) == {"a", "b"}


def test_unreadable_record_file_is_skipped(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("a", tags=["q4"]))
    store.put(make_record("b", tags=["q4"]))
    (tmp_path / "types" / "workflow_summary" / "records" / "b.json").write_text("{not json", encoding="utf-8")

    reopened = _open(tmp_path)

    assert [r.id for r in reopened.all_records()] == ["a"]
    assert reopened.list_tag_counts() == {"q4": 1}


def test_unsafe_ids_get_hashed_file_names(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("../escape/me", tags=["q4"]))

    files = list((tmp_path / "types" / "workflow_summary" / "records").glob("*.json"))
    assert len(files) == 1
    assert files[0].name.startswith("h-")
    assert _open(tmp_path).get_by_id("../escape/me").tags == frozenset({"q4"})


def test_type_named_like_the_location_map_persists(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("a", tags=["q4"], type="locations.json"))
    store.put(make_record("b", tags=["q4"], type="workflow_summary"))

    assert (tmp_path / "locations.json").is_file()
    assert (tmp_path / "types" / "locations.json" / "records" / "a.json").is_file()

    reopened = _open(tmp_path)
    assert reopened.get_by_id("a").type == "locations.json"
    assert [r.id for r in reopened.all_records()] == ["a", "b"]


def test_same_type_and_tags_replacement_rewrites_only_the_record_file(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("a", tags=["q4"]))
    locations = tmp_path / "locations.json"
    index = tmp_path / "types" / "workflow_summary" / "index.json"
    locations_inode, index_inode = locations.stat().st_ino, index.stat().st_ino

    store.put(replace(store.get_by_id("a"), summary="Revised summary of a."))

    assert (locations.stat().st_ino, index.stat().st_ino) == (locations_inode, index_inode)
    assert _open(tmp_path).get_by_id("a").summary == "Revised summary of a."


def test_tag_change_rewrites_namespace_index(tmp_path, make_record) -> None:
    store = _open(tmp_path)
    store.put(make_record("a", tags=["q4"]))
    store.put(replace(store.get_by_id("a"), tags=frozenset({"retention"})))

    index = json.loads((tmp_path / "types" / "workflow_summary" / "index.json").read_text(encoding="utf-8"))
    assert index == {"retention": ["a"]}


class _FailingBackend:
    def load(self):
        return []

    def write(self, record, previous) -> None:
        raise OSError("disk full")


def test_backend_write_failure_raises_storage_error(make_record) -> None:
    store = RecordStore(_FailingBackend())

    with pytest.raises(StorageError) as excinfo:
        store.put(make_record("a", tags=["q4"]))

    assert excinfo.value.to_dict()["error"]["code"] == "storage_error"
    assert "a" not in store
    assert store.list_tag_counts() == {}


class _SlowBackend:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def load(self):
        return []

    def write(self, record, previous) -> None:
        if record.id == "slow":
            self.entered.set()
            self.release.wait(5.0)


def test_reads_are_not_blocked_by_an_in_flight_backend_write(make_record) -> None:
    backend = _SlowBackend()
    store = RecordStore(backend)
    store.put(make_record("a", tags=["q4"]))
    writer = threading.Thread(target=store.put, args=(make_record("slow", tags=["q4"]),))
    writer.start()
    try:
        assert backend.entered.wait(5.0)
        assert [r.id for r in store.query_by_tags({"q4"})] == ["a"]
        assert store.get_by_id("a").id == "a"
    finally:
        backend.release.set()
        writer.join(5.0)

    assert {r.id for r in store.query_by_tags({"q4"})} == {"a", "slow"}

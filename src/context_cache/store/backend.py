"""Record persistence backends."""

from __future__ import annotations

import json
import os
import re
from hashlib import sha1
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from context_cache.errors import IndexCorruption
from context_cache.store.codec import decode_record, encode_record
from context_cache.types import Record

_SAFE_NAME = re.compile(r"^[\w.-]{1,120}$")
_TYPES_DIR = "types"


class RecordBackend(Protocol):
    """Minimal persistence contract used by `RecordStore`."""

    def load(self) -> list[Record]:
        """Return every persisted record in storage order."""

    def write(self, record: Record, previous: Record | None) -> None:
        """Persist `record`, replacing `previous` when it exists."""


class JsonDirectoryBackend:
    """One JSON file per record, partitioned by record type.

    Layout::

        <root>/locations.json                         id -> relative record path
        <root>/types/<namespace>/index.json           tag -> ids in that namespace
        <root>/types/<namespace>/records/<name>.json  one record

    Namespaces live under their own directory so no record type can collide
    with the root-level location map.

    The index artifacts are derived data. `load` always rescans the record
    files and rewrites any artifact that disagrees with them.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._locations: dict[str, str] = {}
        self._indexes: dict[str, dict[str, list[str]]] = {}

    @property
    def locations_path(self) -> Path:
        return self.root / "locations.json"

    def index_path(self, namespace: str) -> Path:
        return self.root / _TYPES_DIR / namespace / "index.json"

    def load(self) -> list[Record]:
        scanned = self._scan()
        stored_locations = self._read_artifact(self.locations_path)
        ordered = self._storage_order(scanned, stored_locations)
        records = [scanned[record_id][1] for record_id in ordered]

        self._locations = {record_id: scanned[record_id][0] for record_id in ordered}
        self._indexes = _namespace_indexes(records)
        try:
            self._verify(stored_locations)
        except IndexCorruption as exc:
            logger.warning(f"Rebuilding index artifacts under {self.root}: {exc}")
            self._write_artifacts(set(self._indexes) | self._artifact_namespaces())

        logger.debug(f"Loaded {len(records)} records from {self.root}")
        return records

    def write(self, record: Record, previous: Record | None) -> None:
        """Write the record file, then only the artifacts the change affects.

        Replacing a record with the same type and tags rewrites the record
        file alone; the location map is rewritten only when an id is new or
        moves between namespaces.
        """
        namespace = _namespace(record.type)
        relative = f"{_TYPES_DIR}/{namespace}/records/{_file_name(record.id)}.json"
        _write_json(self.root / relative, encode_record(record))

        touched: set[str] = set()
        if previous is None:
            touched.add(namespace)
        elif _namespace(previous.type) != namespace or previous.tags != record.tags:
            old_namespace = _namespace(previous.type)
            _remove_from_index(self._indexes.get(old_namespace, {}), previous)
            touched.update({namespace, old_namespace})
        if touched:
            _add_to_index(self._indexes.setdefault(namespace, {}), record)
            self._write_indexes(touched)

        old_relative = self._locations.get(record.id)
        if old_relative != relative:
            self._locations[record.id] = relative
            _write_json(self.locations_path, self._locations)
            if old_relative:
                (self.root / old_relative).unlink(missing_ok=True)

    def _scan(self) -> dict[str, tuple[str, Record]]:
        found: dict[str, tuple[str, Record]] = {}
        for path in sorted(self.root.glob(f"{_TYPES_DIR}/*/records/*.json")):
            relative = path.relative_to(self.root).as_posix()
            try:
                record = decode_record(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as exc:
                logger.error(f"Skipping unreadable record file {relative}: {exc}")
                continue
            if record.id in found:
                logger.warning(f"Record {record.id} stored twice: {found[record.id][0]}, {relative}")
            found[record.id] = (relative, record)
        return found

    def _storage_order(
        self,
        scanned: dict[str, tuple[str, Record]],
        stored_locations: dict[str, Any] | None,
    ) -> list[str]:
        ordered: list[str] = []
        if stored_locations:
            for record_id, relative in stored_locations.items():
                if record_id not in scanned:
                    continue
                if scanned[record_id][0] != relative and (self.root / str(relative)).exists():
                    # A type move was interrupted; the mapped file wins.
                    try:
                        record = decode_record(
                            json.loads((self.root / str(relative)).read_text(encoding="utf-8"))
                        )
                    except (OSError, ValueError):
                        pass
                    else:
                        stale = scanned[record_id][0]
                        scanned[record_id] = (str(relative), record)
                        (self.root / stale).unlink(missing_ok=True)
                ordered.append(record_id)
        seen = set(ordered)
        remaining = sorted(
            (item for item in scanned.items() if item[0] not in seen),
            key=lambda item: (item[1][1].created_at, item[0]),
        )
        ordered.extend(record_id for record_id, _ in remaining)
        return ordered

    def _verify(self, stored_locations: dict[str, Any] | None) -> None:
        if stored_locations is None:
            if self._locations:
                raise IndexCorruption("location map missing or unreadable")
            return
        if stored_locations != self._locations:
            raise IndexCorruption("location map disagrees with record files")
        for namespace in set(self._indexes) | self._artifact_namespaces():
            stored = self._read_artifact(self.index_path(namespace))
            expected = self._indexes.get(namespace, {})
            if stored is None and expected:
                raise IndexCorruption(f"tag index for namespace {namespace!r} missing")
            if stored is not None and stored != expected:
                raise IndexCorruption(f"tag index for namespace {namespace!r} is stale")

    def _artifact_namespaces(self) -> set[str]:
        return {path.parent.name for path in self.root.glob(f"{_TYPES_DIR}/*/index.json")}

    def _write_artifacts(self, namespaces: set[str]) -> None:
        self._write_indexes(namespaces)
        _write_json(self.locations_path, self._locations)

    def _write_indexes(self, namespaces: set[str]) -> None:
        for namespace in namespaces:
            index = self._indexes.get(namespace, {})
            _write_json(self.index_path(namespace), {tag: index[tag] for tag in sorted(index)})

    @staticmethod
    def _read_artifact(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return payload if isinstance(payload, dict) else None


def _namespace(record_type: str) -> str:
    name = re.sub(r"[^\w.-]+", "_", record_type).strip("._")
    return name or "_untyped"


def _file_name(record_id: str) -> str:
    if _SAFE_NAME.match(record_id) and not record_id.startswith("."):
        return record_id
    return "h-" + sha1(record_id.encode("utf-8")).hexdigest()


def _namespace_indexes(records: list[Record]) -> dict[str, dict[str, list[str]]]:
    indexes: dict[str, dict[str, list[str]]] = {}
    for record in records:
        _add_to_index(indexes.setdefault(_namespace(record.type), {}), record)
    return indexes


def _add_to_index(index: dict[str, list[str]], record: Record) -> None:
    for tag in record.tags:
        ids = index.setdefault(tag, [])
        if record.id not in ids:
            ids.append(record.id)
            ids.sort()


def _remove_from_index(index: dict[str, list[str]], record: Record) -> None:
    for tag in record.tags:
        ids = index.get(tag)
        if not ids:
            continue
        if record.id in ids:
            ids.remove(record.id)
        if not ids:
            del index[tag]


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp, path)

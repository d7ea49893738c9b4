"""Keyed record storage with tag and text indexes."""

from __future__ import annotations

import itertools
import re
import threading
from collections.abc import Iterable
from dataclasses import replace
from datetime import timezone

from loguru import logger

from context_cache.config import StoreConfig
from context_cache.errors import IndexCorruption, NotFoundError, StorageError, ValidationError
from context_cache.store.backend import RecordBackend
from context_cache.store.locks import ReadWriteLock
from context_cache.types import Record

_WORD_PATTERN = re.compile(r"\w+", flags=re.UNICODE)


class RecordStore:
    """Durable keyed collection of records.

    All index state is private to the instance. Writers are serialized by a
    mutex and do their backend I/O while holding only that mutex; the
    read/write lock is taken for the in-memory index update alone, so
    lookups are never blocked on disk. A backend write happens before the
    in-memory indexes change, so a failed write leaves both the indexes and
    the previously stored record untouched.

    Storage order is first-insertion order; replacing a record keeps its
    position.
    """

    def __init__(
        self,
        backend: RecordBackend | None = None,
        config: StoreConfig | None = None,
    ) -> None:
        self.config = config or StoreConfig()
        self._backend = backend
        self._lock = ReadWriteLock()
        self._writer = threading.Lock()
        self._records: dict[str, Record] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._word_index: dict[str, set[str]] = {}
        self._sequence = itertools.count(1)

        if backend is not None:
            for record in backend.load():
                self._records[record.id] = record
                self._index(record)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        with self._lock.read():
            return record_id in self._records

    def put(self, record: Record) -> Record:
        """Insert or replace `record` by id."""
        _validate(record)
        with self._writer:
            self._put_serialized(record)
        return record

    def add(self, record: Record) -> Record:
        """Assign a fresh id to `record` and insert it."""
        _validate(replace(record, id=record.id or "pending"))
        with self._writer:
            stored = replace(record, id=self._next_id(record))
            self._put_serialized(stored)
        return stored

    def get_by_id(self, record_id: str) -> Record:
        with self._lock.read():
            record = self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Record not found: {record_id}")
        return record

    def query_by_tags(self, tags: Iterable[str]) -> list[Record]:
        """Return records sharing at least one tag, in storage order.

        An empty tag set matches nothing rather than the whole corpus.
        """
        with self._lock.read():
            return self._tag_matches(tags)

    def query_by_text(self, text: str | None) -> list[Record]:
        """Case-insensitive substring match on summaries, in storage order."""
        with self._lock.read():
            return self._text_matches(text)

    def query(self, tags: Iterable[str], text: str | None = None) -> list[Record]:
        """Tag matches followed by text-only matches, read from one snapshot."""
        with self._lock.read():
            merged = {record.id: record for record in self._tag_matches(tags)}
            for record in self._text_matches(text):
                merged.setdefault(record.id, record)
        return list(merged.values())

    def _tag_matches(self, tags: Iterable[str]) -> list[Record]:
        wanted = set(tags)
        if not wanted:
            return []
        ids: set[str] = set()
        for tag in wanted:
            ids |= self._tag_index.get(tag, set())
        return [record for record_id, record in self._records.items() if record_id in ids]

    def _text_matches(self, text: str | None) -> list[Record]:
        if not text or not text.strip():
            return []
        needle = text.lower()
        if len(self._records) <= self.config.text_scan_threshold:
            pool: Iterable[Record] = self._records.values()
        else:
            pool = self._indexed_text_candidates(needle)
        return [record for record in pool if needle in record.summary.lower()]

    def list_tag_counts(self) -> dict[str, int]:
        with self._lock.read():
            return {tag: len(self._tag_index[tag]) for tag in sorted(self._tag_index)}

    def all_records(self) -> list[Record]:
        with self._lock.read():
            return list(self._records.values())

    def retire_tag(self, record_ids: Iterable[str], tag: str) -> list[Record]:
        """Remove `tag` from each named record; unknown ids are skipped."""
        retired: list[Record] = []
        with self._writer:
            for record_id in record_ids:
                record = self._records.get(record_id)
                if record is None:
                    logger.debug(f"Cannot retire tag {tag!r}: record {record_id} not found")
                    continue
                if tag not in record.tags:
                    continue
                updated = replace(record, tags=record.tags - {tag})
                self._put_serialized(updated)
                retired.append(updated)
        return retired

    def verify_indexes(self) -> bool:
        """Check indexes against records, rebuilding them on mismatch."""
        with self._lock.write():
            try:
                self._check_indexes()
            except IndexCorruption as exc:
                logger.warning(f"Rebuilding in-memory indexes: {exc}")
                self._rebuild_locked()
                return False
        return True

    def rebuild_indexes(self) -> None:
        with self._lock.write():
            self._rebuild_locked()

    def _put_serialized(self, record: Record) -> None:
        # Caller holds the writer mutex; only writers mutate `_records`.
        previous = self._records.get(record.id)
        if self._backend is not None:
            try:
                self._backend.write(record, previous)
            except OSError as exc:
                raise StorageError(f"Could not persist record {record.id}: {exc}") from exc
        with self._lock.write():
            if previous is not None:
                self._unindex(previous)
            self._records[record.id] = record
            self._index(record)
        logger.debug(
            f"Stored record {record.id} type={record.type} tokens={record.token_estimate} "
            f"replaced={previous is not None}"
        )

    def _next_id(self, record: Record) -> str:
        slug = re.sub(r"[^\w]+", "_", record.type.lower()).strip("_") or "record"
        stamp = record.created_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        while True:
            candidate = f"{slug}-{stamp}-{next(self._sequence):04d}"
            if candidate not in self._records:
                return candidate

    def _indexed_text_candidates(self, needle: str) -> list[Record]:
        words = _WORD_PATTERN.findall(needle)
        if not words:
            return list(self._records.values())
        ids: set[str] | None = None
        for word in words:
            matches: set[str] = set()
            for indexed_word, postings in self._word_index.items():
                if word in indexed_word:
                    matches |= postings
            ids = matches if ids is None else ids & matches
            if not ids:
                return []
        return [record for record_id, record in self._records.items() if record_id in (ids or set())]

    def _index(self, record: Record) -> None:
        for tag in record.tags:
            self._tag_index.setdefault(tag, set()).add(record.id)
        for word in set(_WORD_PATTERN.findall(record.summary.lower())):
            self._word_index.setdefault(word, set()).add(record.id)

    def _unindex(self, record: Record) -> None:
        for tag in record.tags:
            _discard(self._tag_index, tag, record.id)
        for word in set(_WORD_PATTERN.findall(record.summary.lower())):
            _discard(self._word_index, word, record.id)

    def _check_indexes(self) -> None:
        expected_tags: dict[str, set[str]] = {}
        for record in self._records.values():
            for tag in record.tags:
                expected_tags.setdefault(tag, set()).add(record.id)
        if expected_tags != self._tag_index:
            raise IndexCorruption("tag index disagrees with stored records")
        for word, postings in self._word_index.items():
            if not postings <= self._records.keys():
                raise IndexCorruption(f"text index word {word!r} references missing records")

    def _rebuild_locked(self) -> None:
        self._tag_index = {}
        self._word_index = {}
        for record in self._records.values():
            self._index(record)
        logger.info(f"Rebuilt indexes over {len(self._records)} records")


def _validate(record: Record) -> None:
    if not record.id or not record.id.strip():
        raise ValidationError("Record id must be a non-empty string")
    if not record.type or not record.type.strip():
        raise ValidationError(f"Record {record.id} has an empty type")
    if record.token_estimate is not None and record.token_estimate < 0:
        raise ValidationError(f"Record {record.id} has a negative token estimate")
    if record.source_token_cost is not None and record.source_token_cost <= 0:
        raise ValidationError(f"Record {record.id} has a non-positive source token cost")


def _discard(index: dict[str, set[str]], key: str, record_id: str) -> None:
    postings = index.get(key)
    if postings is None:
        return
    postings.discard(record_id)
    if not postings:
        del index[key]

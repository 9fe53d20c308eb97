"""Persistence interface and document-store backends.

The dedup engine talks to storage only through :class:`Database`. Filters use a
small MongoDB-style query algebra: plain equality, ``$in``, ``$ne``, ``$exists``,
``$gt``/``$gte``/``$lt``/``$lte`` and the recursive ``$or``/``$nor``/``$and``.
List-valued document fields match when any element matches, as in MongoDB.

Two backends are provided:
- MemoryDatabase: process-local dicts, used by tests and one-shot runs
- JsonDatabase: MemoryDatabase persisted to a JSON file with atomic writes
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from typing import Any

from bibdedup.models import DedupGroup, Record

Filter = dict[str, Any]
Options = dict[str, Any]

DEFAULT_PAGE_SIZE = 1000

_MISSING = object()

# ------------- Filter Algebra -------------


def _field_value(doc: dict[str, Any], name: str) -> Any:
    value: Any = doc
    for part in name.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _candidates(value: Any) -> list[Any]:
    """Values an operator is tested against: list elements or the value itself."""
    if value is _MISSING:
        return [None]
    if isinstance(value, list):
        return value or [None]
    return [value]


def _compare(value: Any, op: str, operand: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    try:
        if op == "$gt":
            return value > operand
        if op == "$gte":
            return value >= operand
        if op == "$lt":
            return value < operand
        return value <= operand
    except TypeError:
        return False


def _match_operators(value: Any, ops: dict[str, Any]) -> bool:
    for op, operand in ops.items():
        if op == "$in":
            allowed = list(operand)
            if not any(v in allowed for v in _candidates(value)):
                return False
        elif op == "$nin":
            excluded = list(operand)
            if any(v in excluded for v in _candidates(value)):
                return False
        elif op == "$ne":
            if operand in _candidates(value):
                return False
        elif op == "$exists":
            exists = value is not _MISSING and value is not None
            if exists != bool(operand):
                return False
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if isinstance(value, list):
                if not any(_compare(v, op, operand) for v in value):
                    return False
            elif not _compare(value, op, operand):
                return False
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
    return True


def match_filter(doc: dict[str, Any], query: Filter) -> bool:
    """Return True if ``doc`` satisfies ``query``."""
    for name, cond in query.items():
        if name == "$or":
            if not any(match_filter(doc, sub) for sub in cond):
                return False
            continue
        if name == "$nor":
            if any(match_filter(doc, sub) for sub in cond):
                return False
            continue
        if name == "$and":
            if not all(match_filter(doc, sub) for sub in cond):
                return False
            continue
        value = _field_value(doc, name)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            if not _match_operators(value, cond):
                return False
        elif cond not in _candidates(value) and value != cond:
            return False
    return True


def _sort_documents(docs: list[dict[str, Any]], sort: dict[str, int] | None) -> list[dict[str, Any]]:
    if not sort:
        return docs
    # Stable sorts applied from the least significant key
    for name, direction in reversed(list(sort.items())):

        def key(doc: dict[str, Any], name: str = name) -> tuple[bool, Any]:
            value = _field_value(doc, name)
            missing = value is _MISSING or value is None
            return (missing, "" if missing else value)

        docs = sorted(docs, key=key, reverse=direction < 0)
    return docs


# ------------- Persistence Interface -------------


class Database(ABC):
    """Storage interface consumed by the dedup engine.

    Implementations must return detached copies: mutating a returned Record or
    DedupGroup never changes stored state until it is saved.
    """

    page_size: int = DEFAULT_PAGE_SIZE

    @abstractmethod
    def get_timestamp(self, unix_time: float | None = None) -> Any:
        """Return a store-native timestamp for ``unix_time`` (now if None)."""

    # Records

    @abstractmethod
    def get_record(self, record_id: str) -> Record | None: ...

    @abstractmethod
    def find_records(self, query: Filter, options: Options | None = None) -> Iterator[Record]:
        """Find records; options may contain ``sort`` ({field: 1|-1}), ``skip`` and ``limit``."""

    @abstractmethod
    def count_records(self, query: Filter) -> int: ...

    @abstractmethod
    def save_record(self, record: Record) -> Record: ...

    @abstractmethod
    def update_records(self, query: Filter, fields: dict[str, Any], remove: tuple[str, ...] | list[str] = ()) -> int:
        """Set ``fields`` and unset ``remove`` on every matching record; returns the count."""

    @abstractmethod
    def delete_record(self, record_id: str) -> None: ...

    # Dedup groups

    @abstractmethod
    def get_dedup(self, dedup_id: str) -> DedupGroup | None: ...

    @abstractmethod
    def find_dedups(self, query: Filter, options: Options | None = None) -> Iterator[DedupGroup]: ...

    @abstractmethod
    def count_dedups(self, query: Filter) -> int: ...

    @abstractmethod
    def save_dedup(self, group: DedupGroup) -> DedupGroup:
        """Insert or replace a dedup group; assigns an id to new groups."""

    @abstractmethod
    def delete_dedup(self, dedup_id: str) -> None: ...

    # Shared helpers

    def find_record(self, query: Filter, options: Options | None = None) -> Record | None:
        opts = dict(options or {})
        opts["limit"] = 1
        return next(iter(self.find_records(query, opts)), None)

    def update_record(self, record_id: str, fields: dict[str, Any], remove: tuple[str, ...] | list[str] = ()) -> None:
        self.update_records({"_id": record_id}, fields, remove)

    def find_dedup(self, query: Filter, options: Options | None = None) -> DedupGroup | None:
        opts = dict(options or {})
        opts["limit"] = 1
        return next(iter(self.find_dedups(query, opts)), None)

    def iterate_records(self, query: Filter, options: Options | None = None) -> Iterator[Record]:
        """Lazily iterate matching records in id order, one page at a time.

        Consumers stop early simply by breaking out of the loop.
        """
        return self._iterate(self.find_records, query, options, lambda r: r.id)

    def iterate_dedups(self, query: Filter, options: Options | None = None) -> Iterator[DedupGroup]:
        return self._iterate(self.find_dedups, query, options, lambda g: g.id)

    def _iterate(
        self,
        find: Callable[[Filter, Options], Iterator[Any]],
        query: Filter,
        options: Options | None,
        get_id: Callable[[Any], Any],
    ) -> Iterator[Any]:
        id_cond = query.get("_id")
        # Plain id equality selects at most one document
        single = "_id" in query and not isinstance(id_cond, dict)
        last_id = None
        while True:
            current = dict(query)
            if last_id is not None:
                current["_id"] = {**id_cond, "$gt": last_id} if isinstance(id_cond, dict) else {"$gt": last_id}
            opts = dict(options or {})
            opts.update({"skip": 0, "limit": self.page_size, "sort": {"_id": 1}})
            last_id = None
            for item in find(current, opts):
                last_id = get_id(item)
                yield item
            if last_id is None or single:
                return


# ------------- In-Memory Backend -------------


class MemoryDatabase(Database):
    """Thread-safe in-memory document store."""

    def __init__(
        self,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.lock = threading.RLock()
        self.records: dict[str, dict[str, Any]] = {}
        self.dedups: dict[str, dict[str, Any]] = {}
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self.clock = clock
        self.page_size = page_size

    def get_timestamp(self, unix_time: float | None = None) -> Any:
        if unix_time is None:
            if self.clock is not None:
                unix_time = self.clock()
            else:
                return datetime.now(timezone.utc)
        return datetime.fromtimestamp(unix_time, tz=timezone.utc)

    def _find(self, collection: dict[str, dict[str, Any]], query: Filter, options: Options | None) -> list[dict]:
        options = options or {}
        with self.lock:
            docs = [doc for doc in collection.values() if match_filter(doc, query)]
            docs = _sort_documents(docs, options.get("sort"))
            skip = options.get("skip") or 0
            limit = options.get("limit")
            docs = docs[skip:] if limit is None else docs[skip : skip + limit]
            return copy.deepcopy(docs)

    def _changed(self) -> None:
        """Hook for persistent subclasses."""

    def get_record(self, record_id: str) -> Record | None:
        with self.lock:
            doc = self.records.get(record_id)
            return Record.from_dict(copy.deepcopy(doc)) if doc is not None else None

    def find_records(self, query: Filter, options: Options | None = None) -> Iterator[Record]:
        return iter([Record.from_dict(d) for d in self._find(self.records, query, options)])

    def count_records(self, query: Filter) -> int:
        with self.lock:
            return sum(1 for doc in self.records.values() if match_filter(doc, query))

    def save_record(self, record: Record) -> Record:
        with self.lock:
            self.records[record.id] = copy.deepcopy(record.to_dict())
            self._changed()
        return record

    def update_records(self, query: Filter, fields: dict[str, Any], remove: tuple[str, ...] | list[str] = ()) -> int:
        count = 0
        with self.lock:
            for doc in self.records.values():
                if not match_filter(doc, query):
                    continue
                doc.update(copy.deepcopy(fields))
                for name in remove:
                    doc.pop(name, None)
                count += 1
            if count:
                self._changed()
        return count

    def delete_record(self, record_id: str) -> None:
        with self.lock:
            if self.records.pop(record_id, None) is not None:
                self._changed()

    def get_dedup(self, dedup_id: str) -> DedupGroup | None:
        with self.lock:
            doc = self.dedups.get(dedup_id)
            return DedupGroup.from_dict(copy.deepcopy(doc)) if doc is not None else None

    def find_dedups(self, query: Filter, options: Options | None = None) -> Iterator[DedupGroup]:
        return iter([DedupGroup.from_dict(d) for d in self._find(self.dedups, query, options)])

    def count_dedups(self, query: Filter) -> int:
        with self.lock:
            return sum(1 for doc in self.dedups.values() if match_filter(doc, query))

    def save_dedup(self, group: DedupGroup) -> DedupGroup:
        with self.lock:
            if group.id is None:
                group.id = self.id_factory()
            self.dedups[group.id] = copy.deepcopy(group.to_dict())
            self._changed()
        return group

    def delete_dedup(self, dedup_id: str) -> None:
        with self.lock:
            if self.dedups.pop(dedup_id, None) is not None:
                self._changed()


# ------------- JSON File Backend -------------


class JsonDatabase(MemoryDatabase):
    """MemoryDatabase persisted to a single JSON file.

    Timestamps are stored as ISO 8601 UTC strings, which sort chronologically.
    With ``autosave`` disabled, call :meth:`flush` to write changes.
    """

    def __init__(self, path: str, autosave: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = path
        self.autosave = autosave
        self.dirty = False
        if os.path.exists(path):
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            self.records = data.get("records", {})
            self.dedups = data.get("dedups", {})

    def get_timestamp(self, unix_time: float | None = None) -> Any:
        if unix_time is None and self.clock is not None:
            unix_time = self.clock()
        if unix_time is None:
            ts = datetime.now(timezone.utc)
        else:
            ts = datetime.fromtimestamp(unix_time, tz=timezone.utc)
        return ts.strftime("%Y-%m-%dT%H:%M:%SZ")

    def _changed(self) -> None:
        self.dirty = True
        if self.autosave:
            self.flush()

    def flush(self) -> None:
        """Save the store to disk atomically."""
        with self.lock:
            if not self.dirty:
                return
            directory = os.path.dirname(os.path.abspath(self.path))
            tmp = tempfile.NamedTemporaryFile(
                "w", delete=False, encoding="utf-8", suffix=".json", prefix=".tmp_dedup_db_", dir=directory
            )
            try:
                json.dump({"records": self.records, "dedups": self.dedups}, tmp, default=str)
                tmp.flush()
                os.fsync(tmp.fileno())
            finally:
                tmp.close()
            os.replace(tmp.name, self.path)
            self.dirty = False

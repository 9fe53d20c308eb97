"""Shared fixtures for bibdedup tests."""

from __future__ import annotations

import itertools
from typing import Any

import pytest

from bibdedup import (
    DataSourceConfig,
    DedupConfig,
    DedupGroup,
    DedupHandler,
    JsonMetadataRecord,
    MemoryDatabase,
    Record,
    RecordStore,
)


@pytest.fixture
def config():
    """Three dedup-enabled JSON sources and one source without deduplication."""
    return DedupConfig(
        datasources={
            "a": DataSourceConfig("a", dedup=True),
            "b": DataSourceConfig("b", dedup=True),
            "c": DataSourceConfig("c", dedup=True),
            "nodedup": DataSourceConfig("nodedup", dedup=False),
        }
    )


@pytest.fixture
def db():
    """In-memory store with predictable group ids and an advancing clock."""
    group_ids = itertools.count(1)
    clock = itertools.count(1_700_000_000)
    return MemoryDatabase(id_factory=lambda: f"g{next(group_ids)}", clock=lambda: next(clock))


@pytest.fixture
def handler(db, config):
    return DedupHandler(db, config)


@pytest.fixture
def store(db, config, handler):
    return RecordStore(db, config, handler)


@pytest.fixture
def make_payload():
    """Factory fixture for JSON record payloads."""

    def _make_payload(local_id: str = "1", **kwargs) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": local_id,
            "title": "Example Title",
            "authors": ["Doe, Jane"],
            "year": "2020",
            "format": "Book",
        }
        payload.update(kwargs)
        return {k: v for k, v in payload.items() if v is not None}

    return _make_payload


@pytest.fixture
def make_record(db, handler, make_payload):
    """Factory fixture storing a JSON record with fresh candidate keys.

    Fields other than the Record flags go into the payload, e.g.
    ``make_record("a", "1", isbn="9789513148362")``.
    """

    def _make_record(
        source: str = "a",
        local_id: str = "1",
        deleted: bool = False,
        suppressed: bool | None = None,
        update_needed: bool = True,
        **fields,
    ) -> Record:
        payload = make_payload(local_id, **fields)
        metadata = JsonMetadataRecord(payload, source)
        record = Record(
            id=f"{source}.{local_id}",
            source_id=source,
            format="json",
            original_data=payload,
            deleted=deleted,
            suppressed=suppressed,
            update_needed=update_needed,
            linking_id=metadata.get_linking_ids(),
            host_record_id=metadata.get_host_record_ids() or None,
            created=db.get_timestamp(),
        )
        handler.update_dedup_candidate_keys(record, metadata)
        db.save_record(record)
        return db.get_record(record.id)

    return _make_record


@pytest.fixture
def make_group(db):
    """Factory fixture linking existing records into a dedup group."""

    def _make_group(*record_ids: str) -> str:
        group = db.save_dedup(DedupGroup(ids=list(record_ids), changed=db.get_timestamp()))
        for record_id in record_ids:
            db.update_record(record_id, {"dedup_id": group.id, "update_needed": False})
        return group.id

    return _make_group

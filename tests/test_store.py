"""Tests for record ingestion."""

from __future__ import annotations

import json

import pytest

from bibdedup.config import DataSourceConfig

ISBN = "9789513148362"

BIB_TEXT = """
@book{essays2001,
  title = {Collected Essays},
  author = {Jane Doe},
  year = {2001},
  isbn = {951-31-4836-0}
}

@book{other2001,
  title = {Another Book},
  author = {John Smith},
  year = {2001}
}
"""


class TestStoreRecord:
    """Test storing records and their dedup state."""

    def test_new_record(self, store, db, make_payload):
        record = store.store_record("a", None, make_payload("1", isbn=ISBN))
        assert record.id == "a.1"
        stored = db.get_record("a.1")
        assert stored.format == "json"
        assert stored.created is not None
        assert stored.linking_id == ["1"]
        assert stored.isbn_keys == [ISBN]
        assert stored.title_keys == ["exampletitle doe"]
        assert stored.update_needed

    def test_unchanged_update_needs_no_dedup(self, store, db, make_payload):
        store.store_record("a", "1", make_payload("1", isbn=ISBN))
        created = db.get_record("a.1").created
        store.store_record("a", "1", make_payload("1", isbn=ISBN))
        stored = db.get_record("a.1")
        assert not stored.update_needed
        assert stored.created == created

    def test_changed_keys_need_dedup(self, store, db, make_payload):
        store.store_record("a", "1", make_payload("1", isbn=ISBN))
        db.update_record("a.1", {"update_needed": False})
        store.store_record("a", "1", make_payload("1", isbn="9780262033848"))
        assert db.get_record("a.1").update_needed

    def test_component_part_flags_host(self, store, db, make_payload):
        store.store_record("a", "h", make_payload("h"))
        db.update_record("a.h", {"update_needed": False})

        store.store_record("a", "c1", make_payload("c1", host_record_id="h"))
        component = db.get_record("a.c1")
        assert component.host_record_id == ["h"]
        assert not component.update_needed
        assert db.get_record("a.h").update_needed

    def test_host_link_removed(self, store, db, make_payload):
        store.store_record("a", "c1", make_payload("c1", host_record_id="h"))
        store.store_record("a", "c1", make_payload("c1"))
        assert db.get_record("a.c1").host_record_id is None
        assert "host_record_id" not in db.records["a.c1"]

    def test_deleted_record_leaves_group(self, store, db, make_record, make_group):
        make_record("a", "1")
        make_record("b", "1")
        group_id = make_group("a.1", "b.1")

        store.store_record("a", "1", None, deleted=True)
        assert db.get_record("a.1").deleted
        assert db.get_record("a.1").dedup_id is None
        assert db.get_dedup(group_id).deleted
        assert db.get_record("b.1").update_needed

    def test_delete_unknown_record(self, store):
        assert store.store_record("a", "404", None, deleted=True) is None

    def test_source_without_dedup(self, store, db, make_payload):
        store.store_record("nodedup", "1", make_payload("1", isbn=ISBN))
        stored = db.records["nodedup.1"]
        assert "isbn_keys" not in stored
        assert "title_keys" not in stored
        assert not stored["update_needed"]

    def test_unknown_source(self, store, make_payload):
        with pytest.raises(ValueError):
            store.store_record("zzz", "1", make_payload())

    def test_missing_id(self, store, make_payload):
        with pytest.raises(ValueError):
            store.store_record("a", None, make_payload(None))


class TestMarkDeleted:
    """Test deleting records."""

    def test_component_part_flags_host(self, store, db, make_payload):
        store.store_record("a", "h", make_payload("h"))
        store.store_record("a", "c1", make_payload("c1", host_record_id="h"))
        db.update_record("a.h", {"update_needed": False})

        store.mark_record_deleted(db.get_record("a.c1"), defer_host_update=True)
        assert db.get_record("a.c1").deleted
        assert db.get_record("a.h").update_needed

    def test_mark_source_deleted(self, store, db, make_payload):
        for local_id in ("1", "2"):
            store.store_record("a", local_id, make_payload(local_id))
        store.store_record("b", "1", make_payload("1"))

        assert store.mark_source_deleted("a") == 2
        assert db.count_records({"source_id": "a", "deleted": True}) == 2
        assert not db.get_record("b.1").deleted


class TestLoadFile:
    """Test importing files."""

    def test_json_lines(self, store, db, tmp_path, make_payload):
        path = tmp_path / "records.jsonl"
        lines = [json.dumps(make_payload("1", isbn=ISBN)), "", json.dumps(make_payload("2"))]
        path.write_text("\n".join(lines), encoding="utf-8")

        assert store.load_file("a", path) == 2
        assert db.get_record("a.1").isbn_keys == [ISBN]
        assert db.get_record("a.2") is not None

    def test_invalid_json_line(self, store, tmp_path):
        path = tmp_path / "records.jsonl"
        path.write_text("{not json}\n", encoding="utf-8")
        with pytest.raises(ValueError):
            store.load_file("a", path)

    def test_bibtex(self, store, db, config, tmp_path):
        config.datasources["bib"] = DataSourceConfig("bib", dedup=True, format="bibtex")
        path = tmp_path / "records.bib"
        path.write_text(BIB_TEXT, encoding="utf-8")

        assert store.load_file("bib", path) == 2
        record = db.get_record("bib.essays2001")
        assert record.format == "bibtex"
        assert record.isbn_keys == [ISBN]
        assert record.title_keys == ["collectedessays doe"]

    def test_missing_file(self, store, tmp_path):
        with pytest.raises(FileNotFoundError):
            store.load_file("a", tmp_path / "missing.jsonl")

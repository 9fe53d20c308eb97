"""Tests for the batch driver and command line interface."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from bibdedup.cli import dedup_cli
from bibdedup.database import JsonDatabase
from bibdedup.pipeline import DedupPipeline, DedupStats, main

ISBN = "9789513148362"

CONFIG_YAML = """
datasources:
  a:
    dedup: true
    format: json
  bib:
    dedup: true
    format: bibtex
"""

BIB_TEXT = """
@book{essays2001,
  title = {Collected Essays},
  author = {Jane Doe},
  year = {2001},
  isbn = {951-31-4836-0}
}
"""


@pytest.fixture
def pipeline(db, config, handler):
    return DedupPipeline(db, config, handler)


class TestDeduplicate:
    """Test batch deduplication."""

    def test_processes_flagged_records(self, pipeline, db, make_record):
        make_record("a", "1", isbn=ISBN)
        make_record("b", "1", isbn=ISBN)
        make_record("c", "1", title="Unrelated", update_needed=False)

        stats = pipeline.deduplicate()
        assert stats == DedupStats(processed=1, deduplicated=1)
        assert db.get_record("a.1").dedup_id == db.get_record("b.1").dedup_id is not None
        assert db.count_records({"update_needed": True}) == 0

    def test_source_filter(self, pipeline, db, make_record):
        make_record("a", "1", isbn=ISBN)
        make_record("b", "1", isbn=ISBN)

        stats = pipeline.deduplicate("b")
        assert stats.processed == 1
        assert db.get_record("b.1").dedup_id is not None

    def test_single_record(self, pipeline, db, make_record):
        make_record("a", "1", isbn=ISBN, update_needed=False)
        make_record("b", "1", isbn=ISBN, update_needed=False)

        stats = pipeline.deduplicate(single_id="b.1")
        assert stats == DedupStats(processed=1, deduplicated=1)

    def test_mark_only(self, pipeline, db, make_record):
        make_record("a", "1", update_needed=False)
        make_record("a", "c1", host_record_id="1", update_needed=False)
        make_record("a", "2", deleted=True, update_needed=False)

        stats = pipeline.deduplicate(mark_only=True)
        assert stats == DedupStats()
        assert db.get_record("a.1").update_needed
        assert not db.get_record("a.c1").update_needed
        assert not db.get_record("a.2").update_needed

    def test_all_records(self, pipeline, db, make_record):
        make_record("a", "1", isbn=ISBN, update_needed=False)
        make_record("b", "1", isbn=ISBN, update_needed=False)

        stats = pipeline.deduplicate(all_records=True)
        assert stats.deduplicated == 1

    def test_errors_propagate(self, pipeline, handler, make_record):
        make_record("a", "1")
        with patch.object(handler, "dedup_record", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                pipeline.deduplicate()


class TestChecks:
    """Test batch consistency checks."""

    def test_check_dedup_groups(self, pipeline, db, make_record, make_group):
        for source, local_id in (("a", "1"), ("a", "2"), ("b", "1")):
            make_record(source, local_id)
        make_group("a.1", "a.2", "b.1")
        make_record("c", "1")
        make_group("c.1")

        assert pipeline.check_dedup_groups() == 2
        assert pipeline.check_dedup_groups() == 0

    def test_check_single_record_group(self, pipeline, db, make_record, make_group):
        for source, local_id in (("a", "1"), ("a", "2"), ("b", "1")):
            make_record(source, local_id)
        make_group("a.1", "a.2", "b.1")
        assert pipeline.check_dedup_groups(single_id="b.1") == 1
        assert pipeline.check_dedup_groups(single_id="c.404") == 0

    def test_check_record_links(self, pipeline, db, make_record):
        make_record("a", "1")
        db.update_record("a.1", {"dedup_id": "g404"})
        assert pipeline.check_record_links() == 1
        assert pipeline.check_record_links() == 0

    def test_counts(self, pipeline, make_record, make_group):
        make_record("a", "1")
        make_record("b", "1")
        make_group("a.1", "b.1")
        assert pipeline.count_records() == 2
        assert pipeline.count_records({"source_id": "a"}) == 1
        assert pipeline.count_dedups({"deleted": False}) == 1


class TestMain:
    """Test the command line interface."""

    @pytest.fixture
    def paths(self, tmp_path):
        config = tmp_path / "dedup.yaml"
        config.write_text(CONFIG_YAML, encoding="utf-8")
        records = tmp_path / "records.jsonl"
        records.write_text(
            json.dumps({"id": "1", "title": "Collected Essays", "authors": ["Doe, Jane"], "isbn": ISBN, "format": "Book"})
            + "\n",
            encoding="utf-8",
        )
        bib = tmp_path / "records.bib"
        bib.write_text(BIB_TEXT, encoding="utf-8")
        return {"config": str(config), "db": str(tmp_path / "db.json"), "records": str(records), "bib": str(bib)}

    def run(self, paths, *args):
        return main(["--config", paths["config"], "--db", paths["db"], *args])

    def test_import_and_deduplicate(self, paths, capsys):
        assert self.run(paths, "import", "a", paths["records"]) == 0
        assert self.run(paths, "import", "bib", paths["bib"]) == 0
        assert self.run(paths, "deduplicate") == 0
        assert "Deduplicated: 1" in capsys.readouterr().out

        db = JsonDatabase(paths["db"])
        assert db.get_record("a.1").dedup_id == db.get_record("bib.essays2001").dedup_id is not None

        assert self.run(paths, "check-dedup", "--strict") == 0
        assert "Fixed: 0" in capsys.readouterr().out

    def test_mark_deleted_and_stats(self, paths, capsys):
        self.run(paths, "import", "a", paths["records"])
        assert self.run(paths, "mark-deleted", "a") == 0
        assert self.run(paths, "stats") == 0
        assert "Records:       0" in capsys.readouterr().out

    def test_missing_config(self, paths, tmp_path):
        assert main(["--config", str(tmp_path / "none.yaml"), "--db", paths["db"], "stats"]) == 1

    def test_missing_input(self, paths, tmp_path):
        assert self.run(paths, "import", "a", str(tmp_path / "none.jsonl")) == 1

    def test_unknown_source(self, paths):
        assert self.run(paths, "import", "zzz", paths["records"]) == 1

    def test_entry_point_exit_code(self, paths):
        argv = ["bibdedup", "--config", paths["config"], "--db", paths["db"], "stats"]
        with patch("sys.argv", argv), pytest.raises(SystemExit) as exc:
            dedup_cli.main()
        assert exc.value.code == 0

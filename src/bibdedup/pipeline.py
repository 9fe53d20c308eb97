"""Batch deduplication driver.

Runs the dedup handler over the records of configured data sources and runs
the consistency checks over all dedup groups and record links.
"""

from __future__ import annotations

import argparse
import logging
import time
from dataclasses import dataclass
from typing import Any

from bibdedup.config import DedupConfig
from bibdedup.database import Database, JsonDatabase
from bibdedup.dedup import LIVE_FILTER, DedupHandler
from bibdedup.store import RecordStore

PROGRESS_INTERVAL = 1000


@dataclass
class DedupStats:
    """Counters of a deduplication run."""

    processed: int = 0
    deduplicated: int = 0


class _Progress:
    def __init__(self) -> None:
        self.start = time.monotonic()

    def speed(self, count: int) -> float:
        elapsed = time.monotonic() - self.start
        return count / elapsed if elapsed > 0 else 0.0


class DedupPipeline:
    """Process records that need deduplication and verify stored groups."""

    def __init__(
        self,
        db: Database,
        config: DedupConfig,
        handler: DedupHandler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.handler = handler or DedupHandler(db, config, logger=self.logger)

    def _sources(self, source_id: str | None) -> list[str]:
        """Configured sources, optionally restricted by a comma-separated list ("*" for all)."""
        included = [s.strip() for s in (source_id or "").split(",") if s.strip()]
        if "*" in included:
            included = []
        return [s for s in self.config.datasources if not included or s in included]

    def mark_for_processing(self, source_id: str | None = None) -> int:
        """Flag every live host record of the selected sources for deduplication.

        Returns:
            Number of records flagged
        """
        total = 0
        for source in self._sources(source_id):
            self.logger.info("Marking all records for processing in '%s'", source)
            query = {"source_id": source, "host_record_id": {"$exists": False}, **LIVE_FILTER}
            progress = _Progress()
            count = 0
            for record in self.db.iterate_records(query):
                self.db.update_record(record.id, {"update_needed": True})
                count += 1
                if count % PROGRESS_INTERVAL == 0:
                    self.logger.info(
                        "%d records marked for processing in '%s', %.0f records/sec",
                        count,
                        source,
                        progress.speed(count),
                    )
            self.logger.info("Completed with %d records marked for processing in '%s'", count, source)
            total += count
        return total

    def deduplicate(
        self,
        source_id: str | None = None,
        all_records: bool = False,
        single_id: str | None = None,
        mark_only: bool = False,
    ) -> DedupStats:
        """Deduplicate records flagged with update_needed (or a single record).

        Args:
            source_id: Comma-separated list of sources to process; all when None
            all_records: Flag every host record for processing first
            single_id: Process only the record with this id
            mark_only: Only flag records, leaving processing to a later run

        Returns:
            Totals over all processed sources
        """
        stats = DedupStats()
        self.logger.info("Deduplication started")
        if all_records or mark_only:
            self.mark_for_processing(source_id)
            if mark_only:
                return stats

        for source in self._sources(source_id):
            try:
                self._deduplicate_source(source, single_id, stats)
            except Exception:
                self.logger.exception("Deduplication of '%s' failed", source)
                raise
        self.logger.info("Deduplication completed")
        return stats

    def _deduplicate_source(self, source: str, single_id: str | None, stats: DedupStats) -> None:
        query: dict[str, Any] = {"source_id": source}
        if single_id:
            query["_id"] = single_id
        else:
            query["update_needed"] = True
        self.logger.info("Processing %d records for '%s'", self.db.count_records(query), source)

        progress = _Progress()
        count = 0
        deduped = 0
        for listed in self.db.iterate_records(query):
            # Earlier merges in this run may have processed the record already
            record = self.db.get_record(listed.id)
            if record is None or (not single_id and not record.update_needed):
                continue
            record_start = time.monotonic()
            if self.handler.dedup_record(record):
                deduped += 1
            elapsed = time.monotonic() - record_start
            if elapsed > 0.7:
                self.logger.debug("Deduplication of %s took %.3f", record.id, elapsed)
            count += 1
            if count % PROGRESS_INTERVAL == 0:
                self.logger.info(
                    "%d records processed for '%s', %d deduplicated, %.0f records/sec",
                    count,
                    source,
                    deduped,
                    progress.speed(count),
                )
        self.logger.info("Total %d records processed for '%s', %d deduplicated", count, source, deduped)
        stats.processed += count
        stats.deduplicated += deduped

    def check_dedup_groups(self, strict: bool = False, single_id: str | None = None) -> int:
        """Check every dedup group (or the group of a single record).

        Returns:
            Number of fixes made
        """
        self.logger.info(
            "Checking dedup record consistency %s member record compatibility",
            "including" if strict else "excluding",
        )
        query: dict[str, Any] = {}
        if single_id:
            record = self.db.get_record(single_id)
            if record is None or not record.dedup_id:
                self.logger.info("Record %s not deduplicated", single_id)
                return 0
            query["_id"] = record.dedup_id

        progress = _Progress()
        count = 0
        fixed = 0
        for listed in self.db.iterate_dedups(query):
            group = self.db.get_dedup(listed.id)
            if group is None:
                continue
            for result in self.handler.check_dedup_record(group, strict):
                self.logger.info(result)
                fixed += 1
            count += 1
            if count % PROGRESS_INTERVAL == 0:
                self.logger.info(
                    "%d records checked with %d links fixed, %.0f records/sec", count, fixed, progress.speed(count)
                )
        self.logger.info("Completed dedup check with %d records checked, %d links fixed", count, fixed)
        return fixed

    def check_record_links(self, single_id: str | None = None) -> int:
        """Check that every grouped record is listed by its group.

        Returns:
            Number of fixes made
        """
        self.logger.info("Checking record links")
        query: dict[str, Any] = {"_id": single_id} if single_id else {"dedup_id": {"$exists": True}}
        progress = _Progress()
        count = 0
        fixed = 0
        for listed in self.db.iterate_records(query):
            record = self.db.get_record(listed.id)
            if record is None:
                continue
            result = self.handler.check_record_links(record)
            if result:
                self.logger.info(result)
                fixed += 1
            count += 1
            if count % PROGRESS_INTERVAL == 0:
                self.logger.info(
                    "%d links checked with %d links fixed, %.0f records/sec", count, fixed, progress.speed(count)
                )
        self.logger.info("Completed link check with %d records checked, %d links fixed", count, fixed)
        return fixed

    def count_records(self, query: dict[str, Any] | None = None) -> int:
        return self.db.count_records(query or {})

    def count_dedups(self, query: dict[str, Any] | None = None) -> int:
        return self.db.count_dedups(query or {})


# ------------- CLI -------------
def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bibdedup",
        description="Find duplicate bibliographic records across data sources and link them into dedup groups.",
    )
    p.add_argument("--config", required=True, help="YAML configuration file")
    p.add_argument("--db", required=True, help="JSON database file (created if missing)")
    p.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = p.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Store records from files into a data source")
    imp.add_argument("source", help="Data source id")
    imp.add_argument("inputs", nargs="+", help="Input files (JSON lines or .bib, per the source format)")

    dedup = sub.add_parser("deduplicate", help="Deduplicate records that need processing")
    dedup.add_argument("--source", default="*", help="Comma-separated list of data sources (default: all)")
    dedup.add_argument("--all", action="store_true", help="Process all records regardless of their status")
    dedup.add_argument("--mark", action="store_true", help="Only mark records to be deduplicated")
    dedup.add_argument("--single", help="Process only the specified record")

    check = sub.add_parser("check-dedup", help="Check consistency of dedup groups and record links")
    check.add_argument("--strict", action="store_true", help="Also check that group members match each other")
    check.add_argument("--single", help="Check only the specified record and its group")

    deleted = sub.add_parser("mark-deleted", help="Mark all records of a data source deleted")
    deleted.add_argument("source", help="Data source id")

    sub.add_parser("stats", help="Print record and dedup group counts")
    return p


def init_logging(verbose: bool) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    return logging.getLogger("bibdedup")


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the record deduplication tool.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code: 0=success, 1=error.
    """
    args = build_arg_parser().parse_args(argv)
    logger = init_logging(args.verbose)

    try:
        config = DedupConfig.from_yaml(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Cannot load configuration: %s", e)
        return 1

    db = JsonDatabase(args.db, autosave=False)
    handler = DedupHandler(db, config, logger=logger)
    try:
        if args.command == "import":
            store = RecordStore(db, config, handler, logger)
            for path in args.inputs:
                store.load_file(args.source, path)
        elif args.command == "deduplicate":
            pipeline = DedupPipeline(db, config, handler, logger)
            stats = pipeline.deduplicate(args.source, args.all, args.single, args.mark)
            print(f"Processed:    {stats.processed}")
            print(f"Deduplicated: {stats.deduplicated}")
        elif args.command == "check-dedup":
            pipeline = DedupPipeline(db, config, handler, logger)
            fixed = pipeline.check_dedup_groups(args.strict, args.single)
            fixed += pipeline.check_record_links(args.single)
            print(f"Fixed: {fixed}")
        elif args.command == "mark-deleted":
            RecordStore(db, config, handler, logger).mark_source_deleted(args.source)
        else:
            pipeline = DedupPipeline(db, config, handler, logger)
            print(f"Records:       {pipeline.count_records({'deleted': False})}")
            print(f"Deduplicated:  {pipeline.count_records({'dedup_id': {'$exists': True}})}")
            print(f"Dedup groups:  {pipeline.count_dedups({'deleted': False})}")
    except (FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return 1
    finally:
        db.flush()
    return 0

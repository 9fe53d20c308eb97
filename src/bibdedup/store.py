"""Record ingestion.

Stores incoming metadata records and keeps their deduplication state in step:
candidate keys are refreshed for host records, component parts flag their host
records for another pass, and deleted records leave their dedup group.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from bibdedup.config import DataSourceConfig, DedupConfig
from bibdedup.database import Database
from bibdedup.dedup import DedupHandler
from bibdedup.metadata import BibLoader, create_metadata_record
from bibdedup.models import KEY_FIELDS, Record


class RecordStore:
    """Create, update and delete records of configured data sources."""

    def __init__(
        self,
        db: Database,
        config: DedupConfig,
        dedup_handler: DedupHandler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.dedup_handler = dedup_handler or DedupHandler(db, config, logger=self.logger)

    def _settings(self, source_id: str) -> DataSourceConfig:
        settings = self.config.get_source(source_id)
        if settings is None:
            raise ValueError(f"Unknown data source: {source_id}")
        return settings

    def store_record(self, source_id: str, local_id: str | None, payload: Any, deleted: bool = False) -> Record | None:
        """Insert or update a record.

        Args:
            source_id: Data source of the record
            local_id: Id of the record within its source; taken from the
                payload when empty
            payload: Raw metadata in the source's format
            deleted: Whether the record has been deleted at the source

        Returns:
            The stored record, or None when deleting a record that is not stored

        Raises:
            ValueError: If the source is unknown or the record has no id
        """
        settings = self._settings(source_id)

        if deleted and local_id:
            record = self.db.get_record(f"{source_id}.{local_id}")
            if record is None:
                self.logger.debug("Deleted record %s.%s not found", source_id, local_id)
                return None
            self.mark_record_deleted(record)
            return record

        metadata = create_metadata_record(settings.format, payload, source_id)
        local_id = local_id or metadata.get_id()
        if not local_id:
            raise ValueError(f"Empty id for record in source {source_id}")
        record_id = f"{source_id}.{local_id}"

        timestamp = self.db.get_timestamp()
        record = self.db.get_record(record_id)
        if record is not None:
            self.logger.debug("Updating record %s", record_id)
        else:
            self.logger.debug("Adding record %s", record_id)
            record = Record(id=record_id, source_id=source_id, created=timestamp)
        record.updated = timestamp
        record.deleted = deleted
        record.format = settings.format
        record.original_data = payload
        record.linking_id = metadata.get_linking_ids()
        host_ids = metadata.get_host_record_ids()
        record.host_record_id = host_ids or None

        host_query = {"source_id": {"$in": settings.get_host_sources()}, "linking_id": {"$in": host_ids}}
        if settings.dedup:
            if record.deleted:
                if record.dedup_id:
                    self.dedup_handler.remove_from_dedup_record(record.dedup_id, record.id)
                    record.dedup_id = None
                record.update_needed = False
            elif not host_ids:
                record.update_needed = self.dedup_handler.update_dedup_candidate_keys(record, metadata)
            else:
                # Component parts are deduplicated through their host record
                self.db.update_records(host_query, {"update_needed": True})
                record.update_needed = False
        else:
            for key_field in KEY_FIELDS:
                setattr(record, key_field, [])
            record.update_needed = False
            if host_ids:
                self.db.update_records(host_query, {"updated": timestamp})

        self.db.save_record(record)
        return record

    def mark_record_deleted(self, record: Record, defer_host_update: bool = False) -> None:
        """Mark a record deleted and detach it from its dedup group."""
        dedup_id = record.dedup_id
        record.dedup_id = None
        record.deleted = True
        record.updated = self.db.get_timestamp()
        record.update_needed = False
        self.db.save_record(record)

        # Group is updated only after the record no longer points to it
        if dedup_id is not None:
            self.dedup_handler.remove_from_dedup_record(dedup_id, record.id)

        if record.is_component_part:
            settings = self._settings(record.source_id)
            self.db.update_records(
                {
                    "source_id": {"$in": settings.get_host_sources()},
                    "linking_id": {"$in": list(record.host_record_id)},
                    "deleted": False,
                },
                {"update_needed": True} if defer_host_update else {"updated": self.db.get_timestamp()},
            )

    def mark_source_deleted(self, source_id: str) -> int:
        """Mark every record of a source deleted.

        Host records of the source's component parts are flagged for another
        deduplication pass instead of being touched one by one.

        Returns:
            Number of records marked deleted
        """
        self._settings(source_id)
        count = 0
        for record in self.db.iterate_records({"source_id": source_id, "deleted": False}):
            self.mark_record_deleted(record, defer_host_update=True)
            count += 1
            if count % 1000 == 0:
                self.logger.info("%d records marked deleted from '%s'", count, source_id)
        self.logger.info("Completed with %d records marked deleted from '%s'", count, source_id)
        return count

    # ------------- File Import -------------

    def load_file(self, source_id: str, path: str | Path) -> int:
        """Store every record of a file in the source's format.

        JSON sources read one JSON object per line; BibTeX sources read every
        entry of a .bib file.

        Returns:
            Number of records stored
        """
        settings = self._settings(source_id)
        count = 0
        for local_id, payload in self._read_payloads(settings, Path(path)):
            self.store_record(source_id, local_id, payload)
            count += 1
            if count % 1000 == 0:
                self.logger.info("%d records stored from %s", count, path)
        self.logger.info("Stored %d records from %s into %s", count, path, source_id)
        return count

    def _read_payloads(self, settings: DataSourceConfig, path: Path) -> Iterator[tuple[str | None, Any]]:
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")
        if settings.format == "bibtex":
            for entry in BibLoader().load_file(str(path)).entries:
                yield entry.get("ID"), dict(entry)
        elif settings.format == "json":
            with open(path, encoding="utf-8") as f:
                for line_no, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise ValueError(f"{path}:{line_no}: invalid JSON: {e}") from e
                    yield None, data
        else:
            raise ValueError(f"Cannot import files of format: {settings.format}")

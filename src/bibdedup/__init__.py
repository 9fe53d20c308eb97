"""bibdedup - Deduplication of bibliographic records across data sources.

This package provides tools for:
- Extracting title, ISBN and identifier candidate keys from metadata records
- Finding duplicate candidates and matching them with a fixed rule chain
- Maintaining dedup groups that link records of different sources
- Checking and repairing dedup group consistency

Example usage:
    from bibdedup import DedupConfig, DedupHandler, MemoryDatabase, RecordStore

    config = DedupConfig.from_yaml("dedup.yaml")
    db = MemoryDatabase()
    handler = DedupHandler(db, config)

    # Store records, then deduplicate those that need it
    store = RecordStore(db, config, handler)
    record = store.store_record("library", "123", {"title": "...", "isbn": "..."})
    handler.dedup_record(db.get_record(record.id))
"""

from bibdedup._version import __version__

# Configuration
from bibdedup.config import DataSourceConfig, DedupConfig

# Persistence
from bibdedup.database import Database, JsonDatabase, MemoryDatabase, match_filter

# Deduplication core
from bibdedup.dedup import DedupHandler
from bibdedup.matching import FormatMapper, IdFilter, RecordMatcher, is_hidden_component_part

# Metadata adapters
from bibdedup.metadata import (
    BibtexMetadataRecord,
    JsonMetadataRecord,
    MetadataRecord,
    create_metadata_record,
    create_metadata_record_from_db,
)
from bibdedup.models import DedupGroup, Record
from bibdedup.pipeline import DedupPipeline, DedupStats
from bibdedup.store import RecordStore

__all__ = [
    "__version__",
    # Configuration
    "DataSourceConfig",
    "DedupConfig",
    # Persistence
    "Database",
    "JsonDatabase",
    "MemoryDatabase",
    "match_filter",
    # Data model
    "DedupGroup",
    "Record",
    # Metadata adapters
    "BibtexMetadataRecord",
    "JsonMetadataRecord",
    "MetadataRecord",
    "create_metadata_record",
    "create_metadata_record_from_db",
    # Deduplication core
    "DedupHandler",
    "FormatMapper",
    "IdFilter",
    "RecordMatcher",
    "is_hidden_component_part",
    # Batch processing
    "DedupPipeline",
    "DedupStats",
    "RecordStore",
]

"""Record and dedup group data model.

The persistence layer stores plain documents (dicts keyed by ``_id``); these
dataclasses give the dedup engine typed access with explicit optional fields.
Empty candidate key lists and unset optional fields are omitted from the
document form so that ``$exists`` filters stay meaningful.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

_RECORD_FIELDS = (
    "source_id",
    "format",
    "original_data",
    "deleted",
    "suppressed",
    "dedup_id",
    "update_needed",
    "title_keys",
    "isbn_keys",
    "id_keys",
    "host_record_id",
    "linking_id",
    "created",
    "updated",
)

KEY_FIELDS = ("title_keys", "isbn_keys", "id_keys")


@dataclass
class Record:
    """A stored metadata record as seen by the dedup engine.

    Attributes:
        id: Source-qualified record id ("source.local_id")
        source_id: Data source identifier
        format: Format tag of the parser that handles ``original_data``
        original_data: Raw metadata payload, opaque to the dedup engine
        deleted: Whether the record has been deleted
        suppressed: Tri-state suppression flag; None is treated as False
        dedup_id: Id of the dedup group the record belongs to, if any
        update_needed: Whether deduplication should run on the next pass
        title_keys: Title+author candidate keys
        isbn_keys: ISBN candidate keys
        id_keys: Other unique identifier candidate keys
        host_record_id: Linking ids of the host record(s) for component parts
        linking_id: Ids component parts use to refer to this record
        created: Store-native creation timestamp
        updated: Store-native modification timestamp
        extra: Any further document fields, preserved on round-trip
    """

    id: str
    source_id: str
    format: str = ""
    original_data: Any = None
    deleted: bool = False
    suppressed: bool | None = None
    dedup_id: str | None = None
    update_needed: bool = False
    title_keys: list[str] = field(default_factory=list)
    isbn_keys: list[str] = field(default_factory=list)
    id_keys: list[str] = field(default_factory=list)
    host_record_id: list[str] | None = None
    linking_id: list[str] = field(default_factory=list)
    created: Any = None
    updated: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_suppressed(self) -> bool:
        return bool(self.suppressed)

    @property
    def is_component_part(self) -> bool:
        return bool(self.host_record_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        """Create a record from a stored document."""
        extra = {k: v for k, v in data.items() if k != "_id" and k not in _RECORD_FIELDS}
        host = data.get("host_record_id")
        if host is not None and not isinstance(host, list):
            host = [host]
        linking = data.get("linking_id") or []
        if not isinstance(linking, list):
            linking = [linking]
        return cls(
            id=data["_id"],
            source_id=data.get("source_id", ""),
            format=data.get("format", ""),
            original_data=data.get("original_data"),
            deleted=bool(data.get("deleted", False)),
            suppressed=data.get("suppressed"),
            dedup_id=data.get("dedup_id"),
            update_needed=bool(data.get("update_needed", False)),
            title_keys=list(data.get("title_keys") or []),
            isbn_keys=list(data.get("isbn_keys") or []),
            id_keys=list(data.get("id_keys") or []),
            host_record_id=host or None,
            linking_id=list(linking),
            created=data.get("created"),
            updated=data.get("updated"),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a document, leaving out unset optional fields."""
        doc: dict[str, Any] = {
            "_id": self.id,
            "source_id": self.source_id,
            "format": self.format,
            "original_data": self.original_data,
            "deleted": self.deleted,
            "update_needed": self.update_needed,
            "linking_id": list(self.linking_id),
            "created": self.created,
            "updated": self.updated,
        }
        if self.suppressed is not None:
            doc["suppressed"] = self.suppressed
        if self.dedup_id is not None:
            doc["dedup_id"] = self.dedup_id
        if self.host_record_id:
            doc["host_record_id"] = list(self.host_record_id)
        for key_field in KEY_FIELDS:
            keys = getattr(self, key_field)
            if keys:
                doc[key_field] = list(keys)
        doc.update(self.extra)
        return doc


@dataclass
class DedupGroup:
    """A cluster of records that describe the same work.

    A live group holds at least two ids, at most one per data source. A deleted
    group keeps its id for reference but has no members.
    """

    id: str | None = None
    ids: list[str] = field(default_factory=list)
    deleted: bool = False
    changed: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DedupGroup:
        return cls(
            id=data.get("_id"),
            ids=list(data.get("ids") or []),
            deleted=bool(data.get("deleted", False)),
            changed=data.get("changed"),
        )

    def to_dict(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "ids": list(self.ids),
            "deleted": self.deleted,
            "changed": self.changed,
        }
        if self.id is not None:
            doc["_id"] = self.id
        return doc

"""Metadata record interface and format adapters.

The dedup engine reads record payloads only through :class:`MetadataRecord`.
Two formats are provided:
- "json": a flat normalized dictionary (or its JSON text)
- "bibtex": a single BibTeX entry, parsed with bibtexparser
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

import bibtexparser
from bibtexparser.bparser import BibTexParser

from bibdedup.models import Record
from bibdedup.utils import (
    doi_normalize,
    latex_to_plain,
    normalize_isbn,
    normalize_issn,
    safe_lower,
    split_authors_bibtex,
    unique_list,
)

_YEAR_RE = re.compile(r"(\d{4})")
_ID_SPLIT_RE = re.compile(r"[,;\s]+")


class MetadataRecord(ABC):
    """Read-only view of a parsed metadata record."""

    source_id: str = ""

    @abstractmethod
    def get_id(self) -> str: ...

    @abstractmethod
    def get_title(self, main_only: bool = False) -> str: ...

    @abstractmethod
    def get_full_title(self) -> str: ...

    @abstractmethod
    def get_main_author(self) -> str:
        """Main author in inverted 'Family, Given' form, or ''."""

    @abstractmethod
    def get_isbns(self) -> list[str]: ...

    @abstractmethod
    def get_issns(self) -> list[str]: ...

    @abstractmethod
    def get_unique_ids(self) -> list[str]:
        """Identifiers other than ISBN/ISSN that identify the work (NBN, DOI, ...)."""

    @abstractmethod
    def get_format(self) -> str: ...

    @abstractmethod
    def get_publication_year(self) -> str: ...

    @abstractmethod
    def get_page_count(self) -> int: ...

    @abstractmethod
    def get_series_issn(self) -> str: ...

    @abstractmethod
    def get_series_numbering(self) -> str: ...

    @abstractmethod
    def get_access_restrictions(self) -> list[str]: ...

    def get_linking_ids(self) -> list[str]:
        """Ids by which component parts refer to this record."""
        return [self.get_id()] if self.get_id() else []

    def get_host_record_ids(self) -> list[str]:
        return []

    def get_full_title_for_debugging(self) -> str:
        return f"{self.get_full_title()} / {self.get_main_author()} ({self.get_publication_year()})"


# ------------- JSON Records -------------


class JsonMetadataRecord(MetadataRecord):
    """Record in a flat JSON layout.

    Recognized keys: id, title, subtitle, authors (list of 'Family, Given'),
    isbn, issn, ids, doi, format, year, pages, series_issn, series_numbering,
    access_restrictions, linking_id, host_record_id.
    """

    def __init__(self, data: dict[str, Any] | str, source_id: str = "") -> None:
        if isinstance(data, str):
            data = json.loads(data)
        if not isinstance(data, dict):
            raise ValueError("JSON record must be an object")
        self.data = data
        self.source_id = source_id

    def _list(self, key: str) -> list[str]:
        value = self.data.get(key)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value if v not in (None, "")]
        return [str(value)] if value != "" else []

    def get_id(self) -> str:
        return str(self.data.get("id") or "")

    def get_title(self, main_only: bool = False) -> str:
        if main_only:
            return str(self.data.get("title") or "").strip()
        return self.get_full_title()

    def get_full_title(self) -> str:
        parts = [str(self.data.get("title") or "").strip(), str(self.data.get("subtitle") or "").strip()]
        return " : ".join(p for p in parts if p)

    def get_main_author(self) -> str:
        authors = self._list("authors")
        return authors[0].strip() if authors else ""

    def get_isbns(self) -> list[str]:
        return unique_list(normalize_isbn(v) for v in self._list("isbn"))

    def get_issns(self) -> list[str]:
        return unique_list(normalize_issn(v) for v in self._list("issn"))

    def get_unique_ids(self) -> list[str]:
        ids = self._list("ids")
        doi = doi_normalize(self.data.get("doi"))
        if doi:
            ids.append(doi)
        return unique_list(ids)

    def get_format(self) -> str:
        return str(self.data.get("format") or "")

    def get_publication_year(self) -> str:
        m = _YEAR_RE.search(str(self.data.get("year") or ""))
        return m.group(1) if m else ""

    def get_page_count(self) -> int:
        try:
            return int(self.data.get("pages") or 0)
        except (TypeError, ValueError):
            return 0

    def get_series_issn(self) -> str:
        return normalize_issn(self.data.get("series_issn"))

    def get_series_numbering(self) -> str:
        return str(self.data.get("series_numbering") or "").strip()

    def get_access_restrictions(self) -> list[str]:
        return sorted(self._list("access_restrictions"))

    def get_linking_ids(self) -> list[str]:
        return self._list("linking_id") or super().get_linking_ids()

    def get_host_record_ids(self) -> list[str]:
        return self._list("host_record_id")


# ------------- BibTeX Records -------------

BIBTEX_FORMATS = {
    "article": "Article",
    "book": "Book",
    "booklet": "Book",
    "inbook": "BookSection",
    "incollection": "BookSection",
    "inproceedings": "ConferencePaper",
    "conference": "ConferencePaper",
    "proceedings": "Proceedings",
    "phdthesis": "Thesis",
    "mastersthesis": "Thesis",
    "techreport": "Report",
    "manual": "Manual",
    "unpublished": "Manuscript",
}


class BibLoader:
    def __init__(self) -> None:
        self.parser = BibTexParser(common_strings=True)
        self.parser.customization = None
        self.parser.ignore_nonstandard_types = False

    def load_file(self, path: str) -> bibtexparser.bibdatabase.BibDatabase:
        with open(path, encoding="utf-8") as f:
            return bibtexparser.load(f, parser=self.parser)

    def loads(self, text: str) -> bibtexparser.bibdatabase.BibDatabase:
        return bibtexparser.loads(text, parser=self.parser)


def _person_inverted(name: str) -> str:
    """Return a person name in 'Family, Given' form."""
    name = latex_to_plain(name)
    if "," in name or " " not in name:
        return name
    given, family = name.rsplit(" ", 1)
    return f"{family}, {given}"


class BibtexMetadataRecord(MetadataRecord):
    """Record backed by a single BibTeX entry.

    ``crossref`` is treated as the host record link, so an ``@inproceedings``
    with ``crossref = {proc2020}`` is a component part of ``@proceedings{proc2020}``.
    """

    def __init__(self, data: dict[str, Any] | str, source_id: str = "") -> None:
        if isinstance(data, str):
            db = BibLoader().loads(data)
            if not db.entries:
                raise ValueError("No BibTeX entry found in record data")
            data = db.entries[0]
        self.entry = {safe_lower(k) if k not in ("ID", "ENTRYTYPE") else k: v for k, v in data.items()}
        self.source_id = source_id

    def _field(self, name: str) -> str:
        return latex_to_plain(str(self.entry.get(name) or ""))

    def _ids(self, name: str) -> list[str]:
        return [p for p in _ID_SPLIT_RE.split(self.entry.get(name) or "") if p]

    def get_id(self) -> str:
        return str(self.entry.get("ID") or "")

    def get_title(self, main_only: bool = False) -> str:
        title = self._field("title")
        if main_only:
            return title.split(": ", 1)[0].strip()
        return title

    def get_full_title(self) -> str:
        return self._field("title")

    def get_main_author(self) -> str:
        authors = split_authors_bibtex(self.entry.get("author") or self.entry.get("editor") or "")
        return _person_inverted(authors[0]) if authors else ""

    def get_isbns(self) -> list[str]:
        return unique_list(normalize_isbn(v) for v in self._ids("isbn"))

    def get_issns(self) -> list[str]:
        return unique_list(normalize_issn(v) for v in self._ids("issn"))

    def get_unique_ids(self) -> list[str]:
        doi = doi_normalize(self.entry.get("doi"))
        return [doi] if doi else []

    def get_format(self) -> str:
        entry_type = safe_lower(self.entry.get("ENTRYTYPE"))
        return BIBTEX_FORMATS.get(entry_type, "Other")

    def get_publication_year(self) -> str:
        m = _YEAR_RE.search(self._field("year") or self._field("date"))
        return m.group(1) if m else ""

    def get_page_count(self) -> int:
        total = self._field("pagetotal")
        if not total and safe_lower(self.entry.get("ENTRYTYPE")) == "book":
            total = self._field("pages")
        return int(total) if total.isdigit() else 0

    def get_series_issn(self) -> str:
        return ""

    def get_series_numbering(self) -> str:
        if not self._field("series"):
            return ""
        return self._field("number") or self._field("volume")

    def get_access_restrictions(self) -> list[str]:
        return []

    def get_host_record_ids(self) -> list[str]:
        host = self._field("crossref")
        return [host] if host else []


# ------------- Format Registry -------------

RECORD_FORMATS: dict[str, type[MetadataRecord]] = {
    "json": JsonMetadataRecord,
    "bibtex": BibtexMetadataRecord,
}


def create_metadata_record(record_format: str, data: Any, source_id: str = "") -> MetadataRecord:
    """Create a metadata record for the given format.

    Raises:
        ValueError: If the format is not registered
    """
    cls = RECORD_FORMATS.get(record_format)
    if cls is None:
        raise ValueError(f"Unknown record format: {record_format}")
    return cls(data, source_id)


def create_metadata_record_from_db(record: Record) -> MetadataRecord:
    return create_metadata_record(record.format, record.original_data, record.source_id)

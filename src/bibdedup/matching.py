"""Pairwise record matching for deduplication.

This module provides:
- FormatMapper: per-source format value mapping
- IdFilter: removal of configured "ignored" identifiers
- is_hidden_component_part: component part visibility rule
- RecordMatcher: the ordered rule chain deciding whether two records match
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from rapidfuzz.distance import OSA

from bibdedup.config import DataSourceConfig, DedupConfig
from bibdedup.metadata import MetadataRecord, create_metadata_record_from_db
from bibdedup.models import Record
from bibdedup.utils import author_match, create_title_key, normalize_key

__all__ = [
    "FormatMapper",
    "IdFilter",
    "RecordMatcher",
    "is_hidden_component_part",
    "title_distance_percentage",
    "author_distance_percentage",
    "MAX_COMPARED_LENGTH",
    "TITLE_DISTANCE_LIMIT",
    "AUTHOR_DISTANCE_LIMIT",
    "PAGE_COUNT_TOLERANCE",
]

MAX_COMPARED_LENGTH = 255
TITLE_DISTANCE_LIMIT = 10
AUTHOR_DISTANCE_LIMIT = 20
PAGE_COUNT_TOLERANCE = 10

EMPTY_FORMAT_KEY = "##empty"
DEFAULT_FORMAT_KEY = "##default"


class FormatMapper:
    """Map record formats through each source's ``format_mapping``."""

    def __init__(self, config: DedupConfig) -> None:
        self.config = config

    def map_format(self, source_id: str, formats: Iterable[str]) -> list[str]:
        formats = [f for f in formats if f]
        settings = self.config.get_source(source_id)
        mapping = settings.format_mapping if settings else {}
        if not mapping:
            return formats
        if not formats:
            empty = mapping.get(EMPTY_FORMAT_KEY)
            return self._as_list(empty) if empty is not None else formats
        result: list[str] = []
        for value in formats:
            mapped = mapping.get(value, mapping.get(DEFAULT_FORMAT_KEY, value))
            result.extend(self._as_list(mapped))
        return result

    @staticmethod
    def _as_list(value: object) -> list[str]:
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        return [str(value)]


class IdFilter:
    """Drop identifiers listed in the ``ignored_ids`` setting.

    An entry is either a bare identifier or "identifier|title". With a title,
    the identifier is ignored only for records having a title key that starts
    with the title key of that title.
    """

    def __init__(self, config: DedupConfig, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.rules: list[tuple[str, str]] = []
        for ignored in config.ignored_ids:
            ident, _, title = str(ignored).partition("|")
            title_key = ""
            if title:
                title_key = create_title_key(
                    title, config.unicode_normalization_form, preserve=config.preserved_characters
                )
            self.rules.append((ident, title_key))
        self.ignored = {ident for ident, _ in self.rules}

    def filter(self, ids: list[str], title_keys: list[str]) -> list[str]:
        if not self.ignored or not self.ignored.intersection(ids):
            return ids
        result = list(ids)
        for ident, title_key in self.rules:
            if ident not in result:
                continue
            if not title_key or any(k.startswith(title_key) for k in title_keys):
                result.remove(ident)
                if not result:
                    break
        if result != ids:
            self.logger.debug("ID ignored: %s", ",".join(i for i in ids if i not in result))
        return result


def is_hidden_component_part(
    settings: DataSourceConfig | None, record: Record, metadata: MetadataRecord, config: DedupConfig
) -> bool:
    """Whether a component part is merged into its host and hidden on its own."""
    if not record.is_component_part or settings is None:
        return False
    mode = settings.component_parts
    if mode == "merge_all":
        return True
    if mode in ("merge_non_articles", "merge_non_earticles"):
        # Both modes keep only e-articles visible
        record_format = metadata.get_format()
        if record_format not in config.article_formats + config.earticle_formats:
            return True
        return record_format in config.article_formats
    return False


def title_distance_percentage(title1: str, title2: str) -> float:
    """Edit distance of two normalized titles relative to the first title's length.

    Both are counted in characters. Adjacent transpositions count as a single edit.
    """
    distance = OSA.distance(title1[:MAX_COMPARED_LENGTH], title2[:MAX_COMPARED_LENGTH])
    return distance / len(title1) * 100


def author_distance_percentage(author1: str, author2: str) -> float:
    """Edit distance of two normalized authors relative to the first author's length."""
    distance = OSA.distance(author1[:MAX_COMPARED_LENGTH], author2[:MAX_COMPARED_LENGTH])
    return distance / len(author1) * 100


class RecordMatcher:
    """Decide whether two records describe the same work.

    Rules are evaluated in a fixed order and the first decisive rule wins:
    component part visibility, access restrictions and format must agree; a
    shared ISBN or other unique id is a match; ISSN, year, page count and series
    conflicts are mismatches; finally the titles and main authors must be close
    enough by edit distance.
    """

    def __init__(
        self,
        config: DedupConfig,
        format_mapper: FormatMapper | None = None,
        id_filter: IdFilter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.format_mapper = format_mapper or FormatMapper(config)
        self.id_filter = id_filter or IdFilter(config, self.logger)
        self.form = config.unicode_normalization_form

    def _key(self, value: str) -> str:
        return normalize_key(value, self.form, self.config.preserved_characters)

    def _formats(self, source_id: str, metadata: MetadataRecord) -> tuple[list[str], list[str]]:
        raw = [metadata.get_format()] if metadata.get_format() else []
        return sorted(raw), sorted(self.format_mapper.map_format(source_id, raw))

    def match_records(self, record: Record, orig: MetadataRecord, candidate: Record) -> bool:
        """Match ``record`` (with its parsed metadata ``orig``) against ``candidate``."""
        self.logger.debug("Check candidate %s", candidate.id)
        try:
            cand = create_metadata_record_from_db(candidate)
        except ValueError as e:
            self.logger.warning("Cannot parse candidate %s: %s", candidate.id, e)
            return False

        record_hidden = is_hidden_component_part(self.config.get_source(record.source_id), record, orig, self.config)
        candidate_hidden = is_hidden_component_part(
            self.config.get_source(candidate.source_id), candidate, cand, self.config
        )
        if record_hidden != candidate_hidden:
            if candidate_hidden:
                self.logger.debug("--Candidate is a hidden component part")
            else:
                self.logger.debug("--Candidate is not a hidden component part")
            return False

        if cand.get_access_restrictions() != orig.get_access_restrictions():
            self.logger.debug("--Candidate has different access restrictions")
            return False

        orig_format, orig_mapped = self._formats(record.source_id, orig)
        cand_format, cand_mapped = self._formats(candidate.source_id, cand)
        if orig_format != cand_format and orig_mapped != cand_mapped:
            self.logger.debug(
                "--Format mismatch: %s != %s and %s != %s",
                ",".join(orig_format),
                ",".join(cand_format),
                ",".join(orig_mapped),
                ",".join(cand_mapped),
            )
            return False

        orig_isbns = self.id_filter.filter(orig.get_isbns(), record.title_keys)
        cand_isbns = self.id_filter.filter(cand.get_isbns(), candidate.title_keys)
        if set(orig_isbns) & set(cand_isbns):
            self.logger.debug(
                "++ISBN match: %s / %s\n%s\n%s",
                orig_isbns,
                cand_isbns,
                orig.get_full_title_for_debugging(),
                cand.get_full_title_for_debugging(),
            )
            return True

        orig_ids = self.id_filter.filter(orig.get_unique_ids(), record.title_keys)
        cand_ids = self.id_filter.filter(cand.get_unique_ids(), candidate.title_keys)
        if set(orig_ids) & set(cand_ids):
            self.logger.debug(
                "++ID match: %s / %s\n%s\n%s",
                orig_ids,
                cand_ids,
                orig.get_full_title_for_debugging(),
                cand.get_full_title_for_debugging(),
            )
            return True

        orig_issns = self.id_filter.filter(orig.get_issns(), record.title_keys)
        cand_issns = self.id_filter.filter(cand.get_issns(), candidate.title_keys)
        if orig_issns and cand_issns and not set(orig_issns) & set(cand_issns):
            self.logger.debug("--ISSN mismatch: %s != %s", orig_issns, cand_issns)
            return False

        orig_year = orig.get_publication_year()
        cand_year = cand.get_publication_year()
        if orig_year and cand_year and orig_year != cand_year:
            self.logger.debug("--Year mismatch: %s != %s", orig_year, cand_year)
            return False

        pages = orig.get_page_count()
        cand_pages = cand.get_page_count()
        if pages and cand_pages and abs(pages - cand_pages) > PAGE_COUNT_TOLERANCE:
            self.logger.debug("--Pages mismatch (%d != %d)", pages, cand_pages)
            return False

        if orig.get_series_issn() != cand.get_series_issn():
            self.logger.debug("--Series ISSN mismatch")
            return False
        if orig.get_series_numbering() != cand.get_series_numbering():
            self.logger.debug("--Series numbering mismatch")
            return False

        orig_title = self._key(orig.get_title(True))
        cand_title = self._key(cand.get_title(True))
        if not orig_title or not cand_title:
            self.logger.debug("--No title - no further matching")
            return False
        title_pct = title_distance_percentage(orig_title, cand_title)
        if title_pct >= TITLE_DISTANCE_LIMIT:
            self.logger.debug(
                "--Title distance discard: %.2f\nOriginal:  %s\nCandidate: %s", title_pct, orig_title, cand_title
            )
            return False

        orig_author = self._key(orig.get_main_author())
        cand_author = self._key(cand.get_main_author())
        author_pct = 0.0
        if orig_author or cand_author:
            if not orig_author or not cand_author:
                self.logger.debug("--Author discard:\nOriginal:  %s\nCandidate: %s", orig_author, cand_author)
                return False
            if not author_match(orig_author, cand_author):
                author_pct = author_distance_percentage(orig_author, cand_author)
                if author_pct > AUTHOR_DISTANCE_LIMIT:
                    self.logger.debug(
                        "--Author distance discard: %.2f\nOriginal:  %s\nCandidate: %s",
                        author_pct,
                        orig_author,
                        cand_author,
                    )
                    return False

        self.logger.debug(
            "++Title match (distance: %.2f, author distance: %.2f):\n%s\n   %s - %s\n%s\n   %s - %s",
            title_pct,
            author_pct,
            orig.get_full_title_for_debugging(),
            orig_author,
            orig_title,
            cand.get_full_title_for_debugging(),
            cand_author,
            cand_title,
        )
        return True

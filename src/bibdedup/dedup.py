"""Deduplication handler.

Finds duplicates for a record among other data sources and maintains the dedup
groups that tie matching records together.

Search proceeds in stages, stopping at the first stage that yields a match:
  1) ISBN keys among already grouped records,
  2) other id keys among already grouped records,
  3) ISBN keys among ungrouped records,
  4) other id keys among ungrouped records,
  5) title keys among already grouped records,
  6) title keys among ungrouped records.

Notes
-----
* Records and groups are updated with independent single-document writes. A
  group never holds two records from the same source; conflicts are resolved by
  creating a new group, and any leftover divergence is repaired by
  :meth:`DedupHandler.check_dedup_record` and :meth:`DedupHandler.check_record_links`.
* Persistence errors propagate to the caller; data irregularities are logged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from bibdedup.config import DedupConfig
from bibdedup.database import Database
from bibdedup.matching import FormatMapper, IdFilter, RecordMatcher
from bibdedup.metadata import MetadataRecord, create_metadata_record_from_db
from bibdedup.models import DedupGroup, Record
from bibdedup.utils import (
    ID_KEY_MAX_LENGTH,
    author_key_part,
    create_id_sort_key,
    create_title_key,
    get_source_from_id,
    normalize_key,
)

LIVE_FILTER = {"deleted": False, "suppressed": {"$in": [None, False]}}


@dataclass(frozen=True)
class SearchRule:
    key_type: str
    grouped: bool


SEARCH_RULES = (
    SearchRule("isbn_keys", True),
    SearchRule("id_keys", True),
    SearchRule("isbn_keys", False),
    SearchRule("id_keys", False),
    SearchRule("title_keys", True),
    SearchRule("title_keys", False),
)


def _keys_changed(old: list[str], new: list[str]) -> bool:
    return len(old) != len(new) or bool(set(old) - set(new))


class DedupHandler:
    """Candidate search, matching and dedup group maintenance."""

    def __init__(
        self,
        db: Database,
        config: DedupConfig,
        matcher: RecordMatcher | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.form = config.unicode_normalization_form
        self.full_title_prefixes = [
            normalize_key(p, self.form, config.preserved_characters) for p in config.full_title_prefixes
        ]
        self.id_filter = IdFilter(config, self.logger)
        self.matcher = matcher or RecordMatcher(config, FormatMapper(config), self.id_filter, self.logger)

    # ------------- Candidate Keys -------------

    def update_dedup_candidate_keys(self, record: Record, metadata: MetadataRecord) -> bool:
        """Refresh the title, ISBN and id keys of ``record`` in place.

        Returns:
            True if any of the key lists changed
        """
        changed = False

        title = metadata.get_title(True)
        author = metadata.get_main_author()
        if title and author:
            keys = [
                create_title_key(title, self.form, self.full_title_prefixes, self.config.preserved_characters)
                + " "
                + normalize_key(author_key_part(author), self.form, self.config.preserved_characters)
            ]
        else:
            keys = []
        if _keys_changed(record.title_keys, keys):
            record.title_keys = keys
            changed = True

        keys = metadata.get_isbns()
        if _keys_changed(record.isbn_keys, keys):
            record.isbn_keys = keys
            changed = True

        # Bad metadata must not produce overly long keys
        keys = [k[:ID_KEY_MAX_LENGTH] for k in metadata.get_unique_ids()]
        if _keys_changed(record.id_keys, keys):
            record.id_keys = keys
            changed = True

        return changed

    def _rule_keys(self, record: Record, key_type: str) -> list[str]:
        keys = [k for k in getattr(record, key_type) if k]
        if key_type == "title_keys":
            return keys
        return self.id_filter.filter(keys, record.title_keys)

    # ------------- Candidate Search -------------

    def match_records(self, record: Record, metadata: MetadataRecord, candidate: Record) -> bool:
        return self.matcher.match_records(record, metadata, candidate)

    def _create_metadata(self, record: Record) -> MetadataRecord | None:
        try:
            return create_metadata_record_from_db(record)
        except ValueError as e:
            self.logger.error("Cannot parse record %s: %s", record.id, e)
            return None

    def dedup_record(self, record: Record) -> bool:
        """Find a duplicate for ``record`` and link both into a dedup group.

        Returns:
            Whether a duplicate was found
        """
        if record.deleted or record.is_suppressed or not self.config.is_dedup_enabled(record.source_id):
            if record.dedup_id:
                self.remove_from_dedup_record(record.dedup_id, record.id)
                record.dedup_id = None
            record.updated = self.db.get_timestamp()
            record.update_needed = False
            self.db.save_record(record)
            return False

        start = time.monotonic()
        self.logger.debug("Deduplicating %s", record.id)

        orig: MetadataRecord | None = None
        matches: list[Record] = []
        no_match_ids: set[str] = set()
        candidate_count = 0
        unparseable = False

        for rule in SEARCH_RULES:
            keys = self._rule_keys(record, rule.key_type)
            if not keys:
                continue
            self.logger.debug("Search: %s => [%s]", rule.key_type, ", ".join(keys))
            query = {
                rule.key_type: {"$in": keys},
                **LIVE_FILTER,
                "source_id": {"$ne": record.source_id},
                "dedup_id": {"$exists": rule.grouped},
            }
            candidates = self.db.find_records(query, {"sort": {"created": 1}, "limit": self.config.candidate_limit})
            processed = 0
            for candidate in candidates:
                if not self.config.is_dedup_enabled(candidate.source_id):
                    continue
                if candidate.id in no_match_ids:
                    continue
                candidate_count += 1

                if candidate.dedup_id:
                    if any(m.dedup_id == candidate.dedup_id for m in matches):
                        continue
                    existing = self.db.find_record(
                        {
                            "dedup_id": candidate.dedup_id,
                            "source_id": record.source_id,
                            "_id": {"$ne": record.id},
                        }
                    )
                    if existing is not None:
                        self.logger.debug("Candidate %s already deduplicated with %s", candidate.id, existing.id)
                        continue

                processed += 1
                if processed > self.config.max_processed_candidates:
                    self.logger.debug(
                        "Too many candidates for record %s with %s => [%s]",
                        record.id,
                        rule.key_type,
                        ", ".join(keys),
                    )
                    break

                if orig is None:
                    orig = self._create_metadata(record)
                    if orig is None:
                        unparseable = True
                        break
                if self.match_records(record, orig, candidate):
                    self.logger.debug(
                        "Found match %s with candidate %d in %0.5f", rule.key_type, processed, time.monotonic() - start
                    )
                    matches.append(candidate)
                else:
                    no_match_ids.add(candidate.id)
            if matches or unparseable:
                break

        self.logger.debug(
            "Candidate search among %d records (%d matches) completed in %0.5f",
            candidate_count,
            len(matches),
            time.monotonic() - start,
        )

        if matches:
            best = self._select_best_match(matches)
            self.mark_duplicates(record.id, best.id)
            return True

        if record.dedup_id or record.update_needed:
            old_dedup_id = record.dedup_id
            record.dedup_id = None
            record.updated = self.db.get_timestamp()
            record.update_needed = False
            self.db.save_record(record)
            # Group is updated only after the record no longer points to it
            if old_dedup_id:
                self.remove_from_dedup_record(old_dedup_id, record.id)

        self.logger.debug("No match found in %0.5f among %d candidates", time.monotonic() - start, candidate_count)
        return False

    def _select_best_match(self, matches: list[Record]) -> Record:
        """Prefer the match whose group has most members, then the smallest group id."""
        by_group: dict[str, Record] = {}
        for match in matches:
            if match.dedup_id and match.dedup_id not in by_group:
                by_group[match.dedup_id] = match
        if len(by_group) > 1:
            best_id = ""
            best_count = 0
            for group in self.db.iterate_dedups({"_id": {"$in": list(by_group)}, "deleted": False}):
                count = len(group.ids)
                if not best_id or count > best_count or (count == best_count and group.id < best_id):
                    best_id = group.id
                    best_count = count
            if best_id:
                self.logger.debug("Match with %d existing members selected from %d matches", best_count, len(matches))
                return by_group[best_id]
        return matches[0]

    # ------------- Dedup Group Mutation -------------

    def mark_duplicates(self, id1: str, id2: str) -> None:
        """Put records ``id1`` and ``id2`` into the same dedup group.

        Both records are re-read so that the decision uses current state.
        """
        rec1 = self.db.get_record(id1)
        rec2 = self.db.get_record(id2)
        for rec_id, rec in ((id1, rec1), (id2, rec2)):
            if rec is None:
                self.logger.warning("Record %s is no longer available", rec_id)
                return
            if rec.deleted or rec.is_suppressed:
                self.logger.warning("Record %s has been deleted or suppressed in the meanwhile", rec_id)
                return
        assert rec1 is not None and rec2 is not None

        # Removals run after the records are updated so that no group is read mid-change
        pending_removals: list[tuple[str, str]] = []
        if rec2.dedup_id:
            if not self.add_to_dedup_record(rec2.dedup_id, rec1.id):
                pending_removals.append((rec2.dedup_id, rec2.id))
                rec2.dedup_id = self.create_dedup_record(rec1.id, rec2.id)
            if rec1.dedup_id and rec1.dedup_id != rec2.dedup_id:
                pending_removals.append((rec1.dedup_id, rec1.id))
            dedup_id = rec1.dedup_id = rec2.dedup_id
        elif rec1.dedup_id:
            if not self.add_to_dedup_record(rec1.dedup_id, rec2.id):
                pending_removals.append((rec1.dedup_id, rec1.id))
                rec1.dedup_id = self.create_dedup_record(rec1.id, rec2.id)
            dedup_id = rec2.dedup_id = rec1.dedup_id
        else:
            dedup_id = rec1.dedup_id = rec2.dedup_id = self.create_dedup_record(rec1.id, rec2.id)

        self.logger.info("Marking %s as duplicate with %s with dedup id %s", rec1.id, rec2.id, dedup_id)
        self.db.update_records(
            {"_id": {"$in": [rec1.id, rec2.id]}},
            {"dedup_id": dedup_id, "updated": self.db.get_timestamp(), "update_needed": False},
        )

        for group_id, record_id in pending_removals:
            self.remove_from_dedup_record(group_id, record_id)

        if not rec1.is_component_part:
            count = self.dedup_component_parts(rec1)
            if count > 0:
                self.logger.info("Deduplicated %d component parts for %s", count, rec1.id)

    def create_dedup_record(self, id1: str, id2: str) -> str:
        group = DedupGroup(ids=[id1, id2], deleted=False, changed=self.db.get_timestamp())
        return self.db.save_dedup(group).id

    def add_to_dedup_record(self, dedup_id: str, record_id: str) -> bool:
        """Add a record to a live group unless the group has its source already."""
        group = self.db.find_dedup({"_id": dedup_id, "deleted": False})
        if group is None:
            return False
        source = get_source_from_id(record_id)
        for existing_id in group.ids:
            if existing_id != record_id and get_source_from_id(existing_id) == source:
                return False
        if record_id not in group.ids:
            group.ids.append(record_id)
            group.changed = self.db.get_timestamp()
            self.db.save_dedup(group)
        return True

    def remove_from_dedup_record(self, dedup_id: str, record_id: str) -> None:
        """Detach a record from a group, dissolving the group if one member remains."""
        group = self.db.get_dedup(dedup_id)
        if group is None:
            self.logger.error("Found dangling reference to dedup record %s in %s", dedup_id, record_id)
            return
        if group.deleted:
            self.logger.error("Found reference to deleted dedup record %s in %s", dedup_id, record_id)
            return
        if record_id not in group.ids:
            return

        group.ids = [i for i in group.ids if i != record_id]
        if len(group.ids) == 1:
            other_id = group.ids[0]
            group.ids = []
            group.deleted = True
            other = self.db.get_record(other_id)
            if other is not None:
                other.dedup_id = None
                if not other.deleted and not other.is_suppressed:
                    other.update_needed = True
                self.db.save_record(other)
        elif not group.ids:
            self.logger.warning("Dedup record %s had a single member %s", dedup_id, record_id)
            group.deleted = True
        group.changed = self.db.get_timestamp()
        self.db.save_dedup(group)

        if group.ids:
            # Remaining members may now have a better group elsewhere
            self.db.update_records({"_id": {"$in": list(group.ids)}, **LIVE_FILTER}, {"update_needed": True})

    # ------------- Consistency Checks -------------

    def check_dedup_record(self, group: DedupGroup, strict: bool = False) -> list[str]:
        """Verify a dedup group and evict inconsistent members.

        Args:
            group: Dedup group to check
            strict: Also evict members that do not match the other members

        Returns:
            One message per fix made
        """
        if not group.deleted and not group.ids:
            group.deleted = True
            group.changed = self.db.get_timestamp()
            self.db.save_dedup(group)
            return [f"Marked dedup record '{group.id}' deleted (no records in non-deleted dedup record)"]

        results: list[str] = []
        sources: set[str] = set()
        removed: list[str] = []
        cache: dict[str, Record | None] = {}

        def get_cached(record_id: str) -> Record | None:
            if record_id not in cache:
                cache[record_id] = self.db.get_record(record_id)
            return cache[record_id]

        for record_id in list(group.ids):
            record = get_cached(record_id)
            source_seen = False
            if record is not None:
                source_seen = record.source_id in sources
                sources.add(record.source_id)

            problem = ""
            if record is None:
                problem = "record does not exist"
            elif source_seen:
                problem = "already deduplicated with a record from same source"
            elif group.deleted:
                problem = "dedup record deleted"
            elif record.deleted:
                problem = "record deleted"
            elif len(group.ids) < 2:
                problem = "single record in a dedup group"
            elif not record.dedup_id:
                problem = "record is missing dedup_id"
            elif record.dedup_id != group.id:
                problem = f"record linked with dedup record '{record.dedup_id}'"
            elif strict:
                problem = self._strict_problem(record, group, removed, get_cached)

            if not problem:
                continue
            self.db.update_records({"_id": record_id, "deleted": False}, {"update_needed": True}, ["dedup_id"])
            self.remove_from_dedup_record(group.id, record_id)
            if record is not None and record.dedup_id and record.dedup_id != group.id:
                self.remove_from_dedup_record(record.dedup_id, record_id)
            results.append(f"Removed '{record_id}' from dedup record '{group.id}' ({problem})")
            removed.append(record_id)
        return results

    def _strict_problem(self, record: Record, group: DedupGroup, removed: list[str], get_cached) -> str:
        metadata = self._create_metadata(record)
        if metadata is None:
            return "record cannot be parsed"
        for other_id in group.ids:
            if other_id == record.id or other_id in removed:
                continue
            other = get_cached(other_id)
            if other is None or other.deleted:
                continue
            if not self.match_records(record, metadata, other):
                return f"record does not match '{other.id}' in dedup group"
        return ""

    def check_record_links(self, record: Record) -> str:
        """Verify that a record's dedup group exists and lists the record.

        Returns:
            Fix message, or an empty string when there is nothing to fix
        """
        if not record.dedup_id:
            return ""
        group = self.db.get_dedup(record.dedup_id)
        if group is None:
            reason = "dedup record does not exist"
        elif record.id not in group.ids:
            reason = "dedup record does not contain the id"
        else:
            return ""
        self.db.update_records({"_id": record.id, "deleted": False}, {"update_needed": True}, ["dedup_id"])
        return f"Removed dedup_id {record.dedup_id} from record {record.id} ({reason})"

    # ------------- Component Parts -------------

    def dedup_component_parts(self, host: Record) -> int:
        """Deduplicate the component parts of a host record.

        The host's component parts are compared position by position with those
        of each other host in its dedup group. The first host whose parts all
        match gets every part pair marked as duplicates.

        Returns:
            Number of component part pairs marked
        """
        if not host.linking_id:
            self.logger.error("Linking ID missing from record %s", host.id)
            return 0
        if not host.dedup_id:
            return 0
        components1 = self.get_component_parts_sorted(host.source_id, host.linking_id)
        if not components1:
            return 0

        self.logger.debug("Deduplicating component parts of %s", host.id)
        marked = 0
        for other in self.db.iterate_records({"dedup_id": host.dedup_id, **LIVE_FILTER}):
            if other.source_id == host.source_id:
                continue
            components2 = self.get_component_parts_sorted(other.source_id, other.linking_id)
            if self._components_match(components1, components2):
                self.logger.debug("All component parts match between %s and %s", host.id, other.id)
                for component1, component2 in zip(components1, components2):
                    self.mark_duplicates(component1.id, component2.id)
                    marked += 1
                break
            self.logger.debug("Not all component parts match between %s and %s", host.id, other.id)

        if marked == 0:
            # Component parts must not stay deduplicated on their own
            for component in components1:
                if component.dedup_id:
                    self.remove_from_dedup_record(component.dedup_id, component.id)
                    component.dedup_id = None
                    component.updated = self.db.get_timestamp()
                    self.db.save_record(component)
        return marked

    def _components_match(self, components1: list[Record], components2: list[Record]) -> bool:
        if len(components1) != len(components2):
            return False
        for component1, component2 in zip(components1, components2):
            self.logger.debug("Comparing %s with %s", component1.id, component2.id)
            metadata = self._create_metadata(component1)
            if metadata is None or not self.match_records(component1, metadata, component2):
                return False
        return True

    def get_component_parts_sorted(self, source_id: str, linking_ids: list[str]) -> list[Record]:
        components = self.db.iterate_records(
            {"source_id": source_id, "host_record_id": {"$in": list(linking_ids)}, **LIVE_FILTER}
        )
        return sorted(components, key=lambda c: create_id_sort_key(c.id))

"""Configuration dataclasses for deduplication."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

COMPONENT_PART_MODES = ("as_is", "merge_all", "merge_non_articles", "merge_non_earticles")
NORMALIZATION_FORMS = ("NFC", "NFD", "NFKC", "NFKD")


@dataclass
class DataSourceConfig:
    """Settings for a single data source.

    Attributes:
        source_id: Data source identifier (also the record id prefix)
        dedup: Whether records of this source take part in deduplication
        format: Format tag of the source's records ("json", "bibtex", ...)
        component_parts: How component parts are presented: "as_is",
            "merge_all", "merge_non_articles" or "merge_non_earticles"
        format_mapping: Optional format value mapping; the "##empty" key gives
            the value used for records without a format
        host_record_source: Sources that may hold the host records of this
            source's component parts (defaults to the source itself)
    """

    source_id: str
    dedup: bool = False
    format: str = "json"
    component_parts: str = "as_is"
    format_mapping: dict[str, Any] = field(default_factory=dict)
    host_record_source: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.component_parts not in COMPONENT_PART_MODES:
            raise ValueError(
                f"Invalid component_parts setting '{self.component_parts}' for source '{self.source_id}'"
            )

    def get_host_sources(self) -> list[str]:
        return self.host_record_source or [self.source_id]

    @classmethod
    def from_dict(cls, source_id: str, data: dict[str, Any] | None) -> DataSourceConfig:
        data = dict(data or {})
        hosts = data.pop("host_record_source", [])
        if isinstance(hosts, str):
            hosts = [hosts]
        try:
            return cls(source_id=source_id, host_record_source=list(hosts), **data)
        except TypeError as e:
            raise ValueError(f"Invalid settings for data source '{source_id}': {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "dedup": self.dedup,
            "format": self.format,
            "component_parts": self.component_parts,
            "format_mapping": dict(self.format_mapping),
            "host_record_source": list(self.host_record_source),
        }


@dataclass
class DedupConfig:
    """Main deduplication configuration.

    Attributes:
        datasources: Data source settings keyed by source id
        unicode_normalization_form: Normalization form applied to match keys
        full_title_prefixes: Title prefixes that allow a longer title key; the
            prefixes are normalized before use
        preserved_characters: Characters excluded from diacritic folding
        article_formats: Formats considered (printed) articles
        earticle_formats: Formats considered electronic articles
        ignored_ids: Identifiers excluded from ISBN/ID matching, either "id" or
            "id|title" to ignore the id only for records with that title
        candidate_limit: Maximum candidates fetched per candidate query
        max_processed_candidates: Maximum candidates matched per search rule
    """

    datasources: dict[str, DataSourceConfig] = field(default_factory=dict)
    unicode_normalization_form: str = "NFKC"
    full_title_prefixes: list[str] = field(default_factory=list)
    preserved_characters: list[str] = field(default_factory=list)
    article_formats: list[str] = field(default_factory=lambda: ["Article"])
    earticle_formats: list[str] = field(default_factory=lambda: ["eArticle"])
    ignored_ids: list[str] = field(default_factory=list)
    candidate_limit: int = 101
    max_processed_candidates: int = 1000

    def __post_init__(self) -> None:
        if self.unicode_normalization_form not in NORMALIZATION_FORMS:
            raise ValueError(f"Invalid unicode_normalization_form: {self.unicode_normalization_form}")

    def get_source(self, source_id: str) -> DataSourceConfig | None:
        return self.datasources.get(source_id)

    def is_dedup_enabled(self, source_id: str) -> bool:
        settings = self.datasources.get(source_id)
        return bool(settings and settings.dedup)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DedupConfig:
        """Create config from a dictionary (e.g., loaded from YAML)."""
        site = dict(data.get("site") or {})
        dedup = dict(data.get("dedup") or {})
        sources = data.get("datasources") or {}
        if not isinstance(sources, dict):
            raise ValueError("Invalid configuration: 'datasources' must be a mapping")
        datasources = {str(sid): DataSourceConfig.from_dict(str(sid), settings) for sid, settings in sources.items()}
        try:
            return cls(datasources=datasources, **site, **dedup)
        except TypeError as e:
            raise ValueError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_yaml(cls, path: str | Path) -> DedupConfig:
        """Load configuration from a YAML file.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If the file content is not a mapping
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError("Invalid configuration format: expected dict")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary for serialization."""
        return {
            "site": {
                "unicode_normalization_form": self.unicode_normalization_form,
                "full_title_prefixes": list(self.full_title_prefixes),
                "preserved_characters": list(self.preserved_characters),
                "article_formats": list(self.article_formats),
                "earticle_formats": list(self.earticle_formats),
            },
            "dedup": {
                "ignored_ids": list(self.ignored_ids),
                "candidate_limit": self.candidate_limit,
                "max_processed_candidates": self.max_processed_candidates,
            },
            "datasources": {sid: s.to_dict() for sid, s in self.datasources.items()},
        }

"""Tests for configuration loading."""

from __future__ import annotations

import pytest

from bibdedup.config import DataSourceConfig, DedupConfig

CONFIG_YAML = """
site:
  unicode_normalization_form: NFC
  full_title_prefixes: ["Deep Learning"]
  article_formats: [Article]
  earticle_formats: [eArticle]
dedup:
  ignored_ids: ["9780000000002"]
  candidate_limit: 50
datasources:
  library:
    dedup: true
    format: json
    component_parts: merge_non_articles
    format_mapping: {Book: Monograph}
  archive:
    format: bibtex
    host_record_source: library
"""


class TestDedupConfig:
    """Test DedupConfig loading and serialization."""

    def test_defaults(self):
        config = DedupConfig()
        assert config.unicode_normalization_form == "NFKC"
        assert config.candidate_limit == 101
        assert config.max_processed_candidates == 1000
        assert config.article_formats == ["Article"]

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "dedup.yaml"
        path.write_text(CONFIG_YAML, encoding="utf-8")
        config = DedupConfig.from_yaml(path)

        assert config.unicode_normalization_form == "NFC"
        assert config.candidate_limit == 50
        assert config.ignored_ids == ["9780000000002"]
        assert config.is_dedup_enabled("library")
        assert not config.is_dedup_enabled("archive")
        assert not config.is_dedup_enabled("unknown")
        assert config.get_source("library").format_mapping == {"Book": "Monograph"}
        assert config.get_source("archive").get_host_sources() == ["library"]
        assert config.get_source("library").get_host_sources() == ["library"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DedupConfig.from_yaml(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "dedup.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError):
            DedupConfig.from_yaml(path)

    def test_unknown_setting(self):
        with pytest.raises(ValueError):
            DedupConfig.from_dict({"dedup": {"no_such_setting": 1}})

    def test_invalid_normalization_form(self):
        with pytest.raises(ValueError):
            DedupConfig(unicode_normalization_form="NFX")

    def test_round_trip(self):
        config = DedupConfig.from_dict(
            {"site": {"full_title_prefixes": ["x"]}, "datasources": {"a": {"dedup": True}}}
        )
        again = DedupConfig.from_dict(config.to_dict())
        assert again == config


class TestDataSourceConfig:
    """Test per-source settings."""

    def test_invalid_component_parts(self):
        with pytest.raises(ValueError):
            DataSourceConfig("a", component_parts="merge_some")

    def test_unknown_setting(self):
        with pytest.raises(ValueError):
            DataSourceConfig.from_dict("a", {"dedupe": True})

    def test_empty_settings(self):
        settings = DataSourceConfig.from_dict("a", None)
        assert not settings.dedup
        assert settings.format == "json"

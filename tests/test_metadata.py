"""Tests for metadata record adapters."""

from __future__ import annotations

import pytest

from bibdedup.metadata import (
    BibtexMetadataRecord,
    JsonMetadataRecord,
    create_metadata_record,
    create_metadata_record_from_db,
)
from bibdedup.models import Record

BIBTEX_ENTRY = """
@inproceedings{smith2020,
  title = {Deep {Learning}: A Survey},
  author = {John Smith and Doe, Jane},
  year = {2020},
  doi = {https://doi.org/10.1000/XYZ},
  isbn = {951-31-4836-0},
  crossref = {proc2020}
}
"""


class TestJsonMetadataRecord:
    """Test the flat JSON adapter."""

    def test_fields(self, make_payload):
        record = JsonMetadataRecord(
            make_payload(
                "1",
                subtitle="A Sequel",
                isbn=["978-951-31-4836-2", "9513148360"],
                issn="1234-5679",
                doi="10.1000/ABC",
                ids=["urn:nbn:fi-1"],
                pages="250",
            ),
            "a",
        )
        assert record.get_id() == "1"
        assert record.get_title(True) == "Example Title"
        assert record.get_full_title() == "Example Title : A Sequel"
        assert record.get_main_author() == "Doe, Jane"
        assert record.get_isbns() == ["9789513148362"]
        assert record.get_issns() == ["1234-5679"]
        assert record.get_unique_ids() == ["urn:nbn:fi-1", "10.1000/abc"]
        assert record.get_publication_year() == "2020"
        assert record.get_page_count() == 250
        assert record.get_linking_ids() == ["1"]
        assert record.get_host_record_ids() == []

    def test_from_json_text(self):
        record = JsonMetadataRecord('{"id": "x", "title": "T", "host_record_id": "h"}')
        assert record.get_host_record_ids() == ["h"]
        assert record.get_main_author() == ""

    def test_bad_pages(self, make_payload):
        assert JsonMetadataRecord(make_payload(pages="xii")).get_page_count() == 0

    def test_not_an_object(self):
        with pytest.raises(ValueError):
            JsonMetadataRecord("[1, 2]")


class TestBibtexMetadataRecord:
    """Test the BibTeX adapter."""

    def test_fields(self):
        record = BibtexMetadataRecord(BIBTEX_ENTRY, "b")
        assert record.get_id() == "smith2020"
        assert record.get_title(True) == "Deep Learning"
        assert record.get_full_title() == "Deep Learning: A Survey"
        assert record.get_main_author() == "Smith, John"
        assert record.get_isbns() == ["9789513148362"]
        assert record.get_unique_ids() == ["10.1000/xyz"]
        assert record.get_format() == "ConferencePaper"
        assert record.get_publication_year() == "2020"
        assert record.get_host_record_ids() == ["proc2020"]

    def test_from_entry_dict(self):
        record = BibtexMetadataRecord({"ENTRYTYPE": "book", "ID": "k", "title": "T", "pages": "320"})
        assert record.get_format() == "Book"
        assert record.get_page_count() == 320

    def test_empty_text(self):
        with pytest.raises(ValueError):
            BibtexMetadataRecord("no entries here")


class TestRegistry:
    """Test format dispatch."""

    def test_unknown_format(self):
        with pytest.raises(ValueError):
            create_metadata_record("marc", {})

    def test_from_db_record(self, make_payload):
        record = Record(id="a.1", source_id="a", format="json", original_data=make_payload())
        metadata = create_metadata_record_from_db(record)
        assert isinstance(metadata, JsonMetadataRecord)
        assert metadata.source_id == "a"

    def test_bibtex_format(self):
        assert isinstance(create_metadata_record("bibtex", BIBTEX_ENTRY), BibtexMetadataRecord)

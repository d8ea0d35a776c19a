"""
Unit tests for the streaming CSV and WordPress parsers.
"""

from unittest.mock import Mock

import pytest

from importflow.errors import ParsingError, RowValidationError, ValidationRuleError
from importflow.parsers import (
    CsvOptions,
    CsvStreamParser,
    WordPressOptions,
    WordPressXmlStreamParser,
)
from importflow.parsers.csv_parser import count_data_lines, normalise_headers, read_first_row
from importflow.parsers.wordpress import clean_date, estimate_items, qualified_name, term_id
from importflow.records.models import ImportRecord
from importflow.sources.resolver import SourceResolver
from importflow.staging import InMemoryStagingStore


def record_for(path, **metadata):
    return ImportRecord(
        id="imp1",
        driver="csv",
        source_type="file",
        source_detail=str(path),
        metadata=metadata,
    )


@pytest.fixture
def resolver(tmp_path):
    return SourceResolver(download_dir=tmp_path / "downloads")


@pytest.fixture
def staging():
    return InMemoryStagingStore()


class TestNormaliseHeaders:
    """Tests for header clean-up."""

    def test_trims_and_fills_blanks(self):
        assert normalise_headers([" id ", "", "name"]) == ["id", "column_2", "name"]

    def test_deduplicates(self):
        assert normalise_headers(["id", "id", "id"]) == ["id", "id_2", "id_3"]


class TestCsvOptions:
    """Tests for reading CSV options from metadata."""

    def test_defaults(self):
        options = CsvOptions.from_metadata({})

        assert options.delimiter == ","
        assert options.headers_first_row is None
        assert options.target_table == "data"

    def test_tab_alias(self):
        assert CsvOptions.from_metadata({"delimiter": "tab"}).delimiter == "\t"

    def test_max_errors_falls_back_to_setting(self):
        assert CsvOptions.from_metadata({}, max_errors=5).max_errors == 5
        assert CsvOptions.from_metadata({"max_errors": 2}, max_errors=5).max_errors == 2


class TestCsvStreamParser:
    """Tests for CSV extraction into staging."""

    def test_two_rows_flushed_as_one_batch(self, csv_file, staging, resolver):
        """Header row plus two data rows with a batch size of two."""
        insert_spy = Mock(wraps=staging.insert_batch)
        staging.insert_batch = insert_spy
        parser = CsvStreamParser(CsvOptions(headers_first_row=True), batch_size=2)

        stats = parser.parse(record_for(csv_file), staging, resolver)

        assert insert_spy.call_count == 1
        assert stats.batches_flushed == 1
        assert stats.rows == 2
        assert staging.count("data") == 2
        assert staging.get_headers("data") == ["name", "email", "age"]
        assert staging.first("data") == {"name": "Alice", "email": "alice@example.com", "age": "30"}

    def test_buffer_never_exceeds_batch_size(self, tmp_path, staging, resolver):
        path = tmp_path / "many.csv"
        path.write_text("n\n" + "".join(f"{i}\n" for i in range(25)), encoding="utf-8")
        parser = CsvStreamParser(CsvOptions(headers_first_row=True), batch_size=10)

        stats = parser.parse(record_for(path), staging, resolver)

        assert staging.count() == 25
        assert stats.batches_flushed == 3
        assert stats.max_buffered_rows == 10

    def test_generated_headers_without_header_row(self, csv_file, staging, resolver):
        parser = CsvStreamParser(CsvOptions(headers_first_row=False))

        parser.parse(record_for(csv_file), staging, resolver)

        assert staging.get_headers() == ["column_1", "column_2", "column_3"]
        assert staging.count() == 3

    def test_explicit_headers_override(self, csv_file, staging, resolver):
        options = CsvOptions(headers=["n", "e", "a"], headers_first_row=True, target_table="people")
        parser = CsvStreamParser(options)

        parser.parse(record_for(csv_file), staging, resolver)

        assert staging.get_headers("people") == ["n", "e", "a"]
        assert staging.count("people") == 2

    def test_short_rows_padded(self, tmp_path, staging, resolver):
        path = tmp_path / "short.csv"
        path.write_text("a,b,c\n1\n", encoding="utf-8")

        CsvStreamParser(CsvOptions(headers_first_row=True)).parse(record_for(path), staging, resolver)

        assert staging.first() == {"a": "1", "b": "", "c": ""}

    def test_blank_lines_skipped_and_cells_trimmed(self, tmp_path, staging, resolver):
        path = tmp_path / "blank.csv"
        path.write_text("a,b\n\n  1 , 2 \n\n", encoding="utf-8")

        stats = CsvStreamParser(CsvOptions(headers_first_row=True)).parse(record_for(path), staging, resolver)

        assert stats.rows == 1
        assert staging.first() == {"a": "1", "b": "2"}

    def test_extra_cells_truncated(self, tmp_path, staging, resolver):
        path = tmp_path / "wide.csv"
        path.write_text("a,b\n1,2,\n3,4\n", encoding="utf-8")

        stats = CsvStreamParser(CsvOptions(headers_first_row=True)).parse(record_for(path), staging, resolver)

        assert stats.rows == 2
        assert stats.failed == 0
        assert stats.warnings == ["Row 2: 1 extra cell(s) dropped"]
        assert list(staging.all()) == [{"a": "1", "b": "2"}, {"a": "3", "b": "4"}]

    def test_invalid_row_is_fatal_by_default(self, tmp_path, staging, resolver):
        path = tmp_path / "typed.csv"
        path.write_text("n\n1\nx\n", encoding="utf-8")
        options = CsvOptions(headers_first_row=True, validation_rules={"n": "integer"})

        with pytest.raises(RowValidationError, match="Row 3 is invalid: n must be an integer"):
            CsvStreamParser(options).parse(record_for(path), staging, resolver)

    def test_bad_rule_parameter_fails_before_parsing(self):
        with pytest.raises(ValidationRuleError, match="invalid pattern"):
            CsvStreamParser(CsvOptions(validation_rules={"a": {"regex": "("}}))

    def test_invalid_rows_skipped_when_allowed(self, tmp_path, staging, resolver):
        path = tmp_path / "mixed.csv"
        path.write_text("name,email\nAlice,alice@example.com\nBob,not-an-email\n", encoding="utf-8")
        options = CsvOptions(
            headers_first_row=True,
            skip_invalid_rows=True,
            validation_rules={"email": "required|email"},
        )

        stats = CsvStreamParser(options).parse(record_for(path), staging, resolver)

        assert stats.rows == 1
        assert stats.failed == 1
        assert stats.skipped == 1
        assert "email must be a valid email address" in stats.errors[0]
        assert staging.count() == 1

    def test_max_errors_aborts(self, tmp_path, staging, resolver):
        path = tmp_path / "bad.csv"
        path.write_text("n\nx\ny\nz\n", encoding="utf-8")
        options = CsvOptions(
            headers_first_row=True,
            skip_invalid_rows=True,
            validation_rules={"n": "integer"},
            max_errors=2,
        )

        with pytest.raises(ParsingError, match="Too many invalid rows"):
            CsvStreamParser(options).parse(record_for(path), staging, resolver)

    def test_empty_file_warns(self, tmp_path, staging, resolver):
        path = tmp_path / "empty.csv"
        path.write_text("", encoding="utf-8")

        stats = CsvStreamParser(CsvOptions(headers=["a"])).parse(record_for(path), staging, resolver)

        assert stats.rows == 0
        assert stats.warnings == ["Source contains no rows"]
        assert staging.exists()

    def test_progress_reported_with_estimate(self, csv_file, staging, resolver):
        progress = Mock()
        parser = CsvStreamParser(CsvOptions(headers_first_row=True), progress_callback=progress)

        parser.parse(record_for(csv_file), staging, resolver)

        progress.assert_called_with(2, 2)

    def test_memory_callback_checked_periodically(self, tmp_path, staging, resolver):
        path = tmp_path / "rows.csv"
        path.write_text("n\n" + "".join(f"{i}\n" for i in range(10)), encoding="utf-8")
        memory = Mock(return_value=1024)
        parser = CsvStreamParser(
            CsvOptions(headers_first_row=True),
            memory_callback=memory,
            memory_check_interval=5,
        )

        stats = parser.parse(record_for(path), staging, resolver)

        assert memory.call_count == 2
        assert stats.memory_peak == 1024

    def test_helpers(self, csv_file):
        assert count_data_lines(csv_file) == 3
        assert read_first_row(csv_file, CsvOptions()) == ["name", "email", "age"]

    def test_rejects_zero_batch_size(self):
        with pytest.raises(ValueError):
            CsvStreamParser(CsvOptions(), batch_size=0)


class TestWordPressHelpers:
    """Tests for WXR helper functions."""

    def test_qualified_name(self):
        assert qualified_name("{http://wordpress.org/export/1.2/}post_id") == "wp:post_id"
        assert qualified_name("{http://wordpress.org/export/1.1/excerpt/}encoded") == "excerpt:encoded"
        assert qualified_name("{http://purl.org/rss/1.0/modules/content/}encoded") == "content:encoded"
        assert qualified_name("title") == "title"

    def test_clean_date(self):
        assert clean_date("0000-00-00 00:00:00") is None
        assert clean_date(" 2023-01-02 10:00:00 ") == "2023-01-02 10:00:00"
        assert clean_date(None) is None

    def test_term_id_is_stable(self):
        assert term_id("category", "news") == term_id("category", "news")
        assert term_id("category", "news") != term_id("post_tag", "news")

    def test_estimate_items(self, wxr_file):
        assert estimate_items(wxr_file) == 3


class TestWordPressXmlStreamParser:
    """Tests for WXR extraction into staging."""

    def test_extracts_all_entities(self, wxr_file, staging, resolver):
        parser = WordPressXmlStreamParser(batch_size=50)

        stats = parser.parse(record_for(wxr_file), staging, resolver)

        assert staging.count("posts") == 2
        assert staging.count("postmeta") == 1
        assert staging.count("comments") == 1
        assert staging.count("users") == 1
        assert staging.count("terms") == 2
        assert staging.count("term_relationships") == 3
        assert stats.rows == 2
        assert stats.skipped == 1
        assert stats.counts["posts"] == 2

    def test_post_fields(self, wxr_file, staging, resolver):
        WordPressXmlStreamParser().parse(record_for(wxr_file), staging, resolver)

        post = staging.first("posts")
        assert post["post_id"] == "10"
        assert post["title"] == "Hello World"
        assert post["content"] == "<p>Welcome to the blog.</p>"
        assert post["excerpt"] == "Welcome"
        assert post["author_login"] == "admin"
        assert post["post_date"] == "2023-01-02 10:00:00"
        assert post["post_date_gmt"] is None

        comment = staging.first("comments")
        assert comment["post_id"] == "10"
        assert comment["author_email"] == "reader@example.com"

    def test_options_limit_entities(self, wxr_file, staging, resolver):
        options = WordPressOptions(extract_comments=False, extract_terms=False)

        WordPressXmlStreamParser(options).parse(record_for(wxr_file), staging, resolver)

        assert staging.count("comments") == 0
        assert staging.count("terms") == 0
        assert staging.count("posts") == 2

    def test_malformed_xml_is_fatal(self, tmp_path, staging, resolver):
        path = tmp_path / "broken.xml"
        path.write_text("<rss><channel><item><title>oops</channel>", encoding="utf-8")

        with pytest.raises(ParsingError, match="not well-formed"):
            WordPressXmlStreamParser().parse(record_for(path), staging, resolver)

    def test_missing_channel_is_fatal(self, tmp_path, staging, resolver):
        path = tmp_path / "nochannel.xml"
        path.write_text("<rss><other/></rss>", encoding="utf-8")

        with pytest.raises(ParsingError, match="No <channel>"):
            WordPressXmlStreamParser().parse(record_for(path), staging, resolver)

    def test_entity_expansion_rejected(self, tmp_path, staging, resolver):
        path = tmp_path / "bomb.xml"
        path.write_text(
            '<?xml version="1.0"?>\n'
            '<!DOCTYPE rss [<!ENTITY a "aaaaaaaa">]>\n'
            "<rss><channel><title>&a;</title></channel></rss>",
            encoding="utf-8",
        )

        with pytest.raises(ParsingError):
            WordPressXmlStreamParser().parse(record_for(path), staging, resolver)

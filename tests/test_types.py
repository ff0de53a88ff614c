"""
Tests for scratchpad.types — data model and title/preview derivation.
"""

import pytest

from scratchpad.types import (
    TITLE_MAX_CHARS,
    UNTITLED,
    Buffer,
    BufferSummary,
    SearchResult,
    _generate_id,
    extract_title_preview,
)


class TestExtractTitlePreview:
    def test_first_and_second_lines(self):
        assert extract_title_preview("Title\nPreview\nRest") == ("Title", "Preview")

    def test_blank_lines_skipped(self):
        content = "\n\n   \n# Groceries\n\n\t\n- milk\n- eggs"
        assert extract_title_preview(content) == ("# Groceries", "- milk")

    def test_lines_are_stripped(self):
        assert extract_title_preview("   hello   \n  world  ") == ("hello", "world")

    def test_empty_content(self):
        assert extract_title_preview("") == (UNTITLED, "")

    def test_whitespace_only(self):
        assert extract_title_preview(" \n\t\n  ") == (UNTITLED, "")

    def test_single_line_has_empty_preview(self):
        assert extract_title_preview("only line") == ("only line", "")

    def test_title_truncated(self):
        title, _ = extract_title_preview("x" * 250)
        assert title == "x" * TITLE_MAX_CHARS

    def test_preview_truncated(self):
        _, preview = extract_title_preview("t\n" + "y" * 250)
        assert preview == "y" * TITLE_MAX_CHARS

    def test_truncation_counts_code_points(self):
        title, _ = extract_title_preview("é" * 150)
        assert len(title) == TITLE_MAX_CHARS

    def test_crlf_line_endings(self):
        assert extract_title_preview("Title\r\nPreview\r\n") == ("Title", "Preview")

    def test_deterministic(self):
        content = "# A\n\nB\nC"
        assert extract_title_preview(content) == extract_title_preview(content)


class TestDataclasses:
    def test_buffer_to_dict(self):
        b = Buffer(id="b1", content="x", title="x")
        d = b.to_dict()
        assert d["id"] == "b1"
        assert d["is_pinned"] is False
        assert d["is_archived"] is False

    def test_summary_from_dict_ignores_unknown_keys(self):
        s = BufferSummary.from_dict({"id": "s1", "title": "T", "content": "dropped"})
        assert s.id == "s1"
        assert s.title == "T"
        assert s.preview == ""

    def test_summary_roundtrip(self):
        s = BufferSummary(id="s1", title="T", preview="P", created_at=1,
                          updated_at=2, is_pinned=True, sort_order=-3)
        assert BufferSummary.from_dict(s.to_dict()) == s

    def test_search_result_to_dict(self):
        r = SearchResult(id="r1", snippet="<mark>a</mark>", updated_at=5, score=1.5)
        assert r.to_dict() == {
            "id": "r1", "snippet": "<mark>a</mark>", "updated_at": 5, "score": 1.5,
        }


class TestIds:
    def test_unique(self):
        ids = {_generate_id() for _ in range(200)}
        assert len(ids) == 200

    @pytest.mark.parametrize("_", range(3))
    def test_is_opaque_string(self, _):
        assert isinstance(_generate_id(), str)

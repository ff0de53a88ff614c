"""
Tests for BufferRepository.search — index consistency, ranking, snippets,
prefix matching and query validation against the live FTS5 index.
"""

import pytest

from scratchpad.errors import ValidationError
from scratchpad.repository import BufferRepository
from scratchpad.store import BufferStore


@pytest.fixture
def store(tmp_path):
    s = BufferStore(str(tmp_path / "search.db"))
    yield s
    s.close()


@pytest.fixture
def repo(store):
    return BufferRepository(store)


def found(repo, query):
    return [r.id for r in repo.search(query)]


def set_updated_at(store, buffer_id, value):
    with store.transaction() as conn:
        conn.execute(
            "UPDATE buffers SET updated_at = ? WHERE id = ?", (value, buffer_id)
        )


class TestIndexConsistency:
    def test_visible_after_create(self, repo):
        b = repo.create("a zephyr in the morning")
        assert found(repo, "zephyr") == [b.id]

    def test_visible_after_save(self, repo):
        b = repo.create()
        assert found(repo, "zephyr") == []
        repo.save(b.id, "zephyr arrives")
        assert found(repo, "zephyr") == [b.id]

    def test_old_content_gone_after_save(self, repo):
        b = repo.create("zephyr")
        repo.save(b.id, "calm air")
        assert found(repo, "zephyr") == []
        assert found(repo, "calm") == [b.id]

    def test_gone_after_delete(self, repo):
        b = repo.create("zephyr")
        repo.delete(b.id)
        assert found(repo, "zephyr") == []

    def test_pin_and_reorder_do_not_disturb_index(self, repo):
        a = repo.create("zephyr one")
        b = repo.create("zephyr two")
        repo.toggle_pin(a.id)
        repo.reorder([b.id])
        assert sorted(found(repo, "zephyr")) == sorted([a.id, b.id])

    def test_archived_excluded(self, repo):
        a = repo.create("zephyr archived")
        b = repo.create("zephyr live")
        repo.archive(a.id)
        assert found(repo, "zephyr") == [b.id]
        repo.restore(a.id)
        assert sorted(found(repo, "zephyr")) == sorted([a.id, b.id])

    def test_survives_rebuild(self, repo, store):
        b = repo.create("zephyr")
        store.rebuild_search_index()
        assert found(repo, "zephyr") == [b.id]


class TestMatching:
    def test_prefix(self, repo):
        b = repo.create("zephyr")
        assert found(repo, "zeph") == [b.id]

    def test_case_insensitive(self, repo):
        b = repo.create("zephyr")
        assert found(repo, "ZEPHYR") == [b.id]

    def test_all_terms_required(self, repo):
        both = repo.create("zephyr and wind")
        repo.create("zephyr alone")
        repo.create("wind alone")
        assert found(repo, "zephyr wind") == [both.id]

    def test_diacritics_folded(self, repo):
        b = repo.create("un café au lait")
        assert found(repo, "cafe") == [b.id]

    def test_hyphenated_term(self, repo):
        b = repo.create("schedule a follow-up meeting")
        repo.create("follow the road")
        assert found(repo, "follow-up") == [b.id]

    def test_operator_words_are_literal(self, repo):
        b = repo.create("do not panic")
        repo.create("keep calm")
        assert found(repo, "not") == [b.id]

    def test_no_match(self, repo):
        repo.create("zephyr")
        assert repo.search("mistral") == []

    def test_limit(self, repo):
        for i in range(5):
            repo.create(f"zephyr {i}")
        assert len(repo.search("zephyr", limit=2)) == 2

    def test_default_limit(self, store):
        repo = BufferRepository(store, search_limit=3)
        for i in range(5):
            repo.create(f"zephyr {i}")
        assert len(repo.search("zephyr")) == 3


class TestEmptyAndInvalid:
    @pytest.mark.parametrize("query", ["", "   ", "\t\n"])
    def test_empty_query(self, repo, query):
        repo.create("anything")
        assert repo.search(query) == []

    @pytest.mark.parametrize("query", [
        '"',
        'zephyr" OR "x',
        "zephyr*",
        "content:zephyr",
        "NEAR(zephyr wind)",
        "(zephyr",
        "zephyr^",
    ])
    def test_syntax_characters_rejected(self, repo, query):
        repo.create("zephyr wind")
        with pytest.raises(ValidationError):
            repo.search(query)

    def test_too_many_terms(self, store):
        repo = BufferRepository(store, max_terms=2)
        with pytest.raises(ValidationError):
            repo.search("a b c")


class TestRanking:
    def _filler(self, repo, n=5):
        for i in range(n):
            repo.create(f"unrelated note number {i}")

    def test_term_frequency(self, repo):
        self._filler(repo)
        once = repo.create("zephyr alpha beta gamma")
        thrice = repo.create("zephyr zephyr zephyr alpha")
        twice = repo.create("zephyr zephyr alpha beta")
        assert found(repo, "zephyr") == [thrice.id, twice.id, once.id]

    def test_score_higher_is_better(self, repo):
        self._filler(repo)
        repo.create("zephyr alpha beta gamma")
        repo.create("zephyr zephyr zephyr alpha")
        scores = [r.score for r in repo.search("zephyr")]
        assert scores == sorted(scores, reverse=True)

    def test_ties_broken_by_recency(self, repo, store):
        older = repo.create("identical zephyr text")
        newer = repo.create("identical zephyr text")
        set_updated_at(store, older.id, 1000)
        set_updated_at(store, newer.id, 2000)
        assert found(repo, "zephyr") == [newer.id, older.id]
        set_updated_at(store, older.id, 3000)
        assert found(repo, "zephyr") == [older.id, newer.id]

    def test_result_carries_updated_at(self, repo, store):
        b = repo.create("zephyr")
        set_updated_at(store, b.id, 1234)
        assert repo.search("zephyr")[0].updated_at == 1234


class TestSnippets:
    def test_highlighted(self, repo):
        repo.create("the quick zephyr passed")
        snippet = repo.search("zephyr")[0].snippet
        assert "<mark>zephyr</mark>" in snippet

    def test_prefix_highlight(self, repo):
        repo.create("the quick zephyr passed")
        assert "<mark>" in repo.search("zeph")[0].snippet

    def test_custom_markers(self, store):
        repo = BufferRepository(store, highlight_open="[", highlight_close="]")
        repo.create("a zephyr")
        assert "[zephyr]" in repo.search("zephyr")[0].snippet

    def test_bounded(self, repo):
        words = [f"word{i}" for i in range(400)]
        words[200] = "zephyr"
        content = " ".join(words)
        repo.create(content)
        snippet = repo.search("zephyr")[0].snippet
        assert "<mark>zephyr</mark>" in snippet
        assert len(snippet) < len(content) // 4
        assert "…" in snippet

    def test_no_content_field(self, repo):
        repo.create("zephyr")
        assert set(repo.search("zephyr")[0].to_dict()) == {
            "id", "snippet", "updated_at", "score",
        }

"""
Tests for the buffer MCP tools in scratchpad.mcp.tools.

Tests use direct function calls (not MCP protocol) via a mock FastMCP.
"""

import pytest

from scratchpad.repository import BufferRepository
from scratchpad.store import BufferStore


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


EXPECTED_TOOLS = {
    "create_buffer",
    "save_buffer",
    "get_buffer_content",
    "get_sidebar_data",
    "search_buffers",
    "delete_buffer",
    "toggle_pin",
    "reorder_buffers",
    "cleanup_empty_buffers",
    "archive_buffer",
    "get_buffer_count",
}


@pytest.fixture
def mcp_env(tmp_path):
    """Create store, repository and mock MCP, and register all tools."""
    store = BufferStore(str(tmp_path / "mcp.db"))
    repo = BufferRepository(store, page_size=2)
    mcp = MockMCP()

    from scratchpad.mcp.tools import register_buffer_tools
    register_buffer_tools(mcp, repo)

    yield {"mcp": mcp, "store": store, "repo": repo}
    store.close()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


def create(env, content=""):
    r = call(env, "create_buffer", content=content)
    assert r["status"] == "ok"
    return r["buffer"]["id"]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_tool_names(self, mcp_env):
        assert set(mcp_env["mcp"].tools) == EXPECTED_TOOLS

    def test_tools_documented(self, mcp_env):
        for name, fn in mcp_env["mcp"].tools.items():
            assert fn.__doc__, name


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


class TestBufferTools:
    def test_create_returns_summary(self, mcp_env):
        r = call(mcp_env, "create_buffer", content="Title\nPreview")
        assert r["status"] == "ok"
        assert r["buffer"]["title"] == "Title"
        assert r["buffer"]["preview"] == "Preview"
        assert r["buffer"]["is_pinned"] is False

    def test_save_and_read(self, mcp_env):
        buffer_id = create(mcp_env)
        r = call(mcp_env, "save_buffer", buffer_id=buffer_id, content="New\nText")
        assert r == {"status": "ok", "title": "New", "preview": "Text"}
        r = call(mcp_env, "get_buffer_content", buffer_id=buffer_id)
        assert r == {"status": "ok", "content": "New\nText"}

    def test_sidebar_pagination(self, mcp_env):
        for i in range(3):
            create(mcp_env, f"buffer {i}")
        first = call(mcp_env, "get_sidebar_data")
        assert len(first["buffers"]) == 2
        assert first["has_more"] is True
        rest = call(mcp_env, "get_sidebar_data", offset=2)
        assert len(rest["buffers"]) == 1
        assert rest["has_more"] is False
        assert all("content" not in b for b in first["buffers"])

    def test_search(self, mcp_env):
        buffer_id = create(mcp_env, "zephyr notes")
        r = call(mcp_env, "search_buffers", query="zeph")
        assert r["status"] == "ok"
        assert [x["id"] for x in r["results"]] == [buffer_id]
        assert "<mark>" in r["results"][0]["snippet"]

    def test_delete_returns_next_active(self, mcp_env):
        a = create(mcp_env, "a")
        b = create(mcp_env, "b")
        assert call(mcp_env, "delete_buffer", buffer_id=b) == {
            "status": "ok", "next_active_id": a,
        }
        assert call(mcp_env, "delete_buffer", buffer_id=a) == {
            "status": "ok", "next_active_id": None,
        }

    def test_toggle_pin(self, mcp_env):
        a = create(mcp_env, "a")
        assert call(mcp_env, "toggle_pin", buffer_id=a)["is_pinned"] is True
        assert call(mcp_env, "toggle_pin", buffer_id=a)["is_pinned"] is False

    def test_reorder(self, mcp_env):
        a = create(mcp_env, "a")
        b = create(mcp_env, "b")
        assert call(mcp_env, "reorder_buffers", buffer_ids=[a, b, "stale"]) == {"status": "ok"}
        page = call(mcp_env, "get_sidebar_data")["buffers"]
        assert [x["id"] for x in page] == [a, b]

    def test_cleanup_spares_active(self, mcp_env):
        active = create(mcp_env)
        create(mcp_env, " ")
        create(mcp_env, "text")
        r = call(mcp_env, "cleanup_empty_buffers", active_id=active)
        assert r == {"status": "ok", "removed": 1}

    def test_archive_and_count(self, mcp_env):
        a = create(mcp_env, "a")
        create(mcp_env, "b")
        assert call(mcp_env, "archive_buffer", buffer_id=a) == {"status": "ok"}
        assert call(mcp_env, "get_buffer_count")["count"] == 1
        assert call(mcp_env, "get_buffer_count", include_archived=True)["count"] == 2


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------


class TestErrors:
    def test_not_found(self, mcp_env):
        r = call(mcp_env, "save_buffer", buffer_id="missing", content="x")
        assert r["status"] == "error"
        assert r["error"]["kind"] == "not_found"
        assert r["error"]["buffer_id"] == "missing"

    @pytest.mark.parametrize("tool, kwargs", [
        ("get_buffer_content", {"buffer_id": "missing"}),
        ("delete_buffer", {"buffer_id": "missing"}),
        ("toggle_pin", {"buffer_id": "missing"}),
        ("archive_buffer", {"buffer_id": "missing"}),
    ])
    def test_not_found_everywhere(self, mcp_env, tool, kwargs):
        r = call(mcp_env, tool, **kwargs)
        assert r["error"]["kind"] == "not_found"

    def test_invalid_query(self, mcp_env):
        r = call(mcp_env, "search_buffers", query="zephyr*")
        assert r["status"] == "error"
        assert r["error"]["kind"] == "validation"

    def test_invalid_page(self, mcp_env):
        r = call(mcp_env, "get_sidebar_data", offset=-1)
        assert r["error"]["kind"] == "validation"

    def test_storage_error(self, mcp_env):
        mcp_env["store"].close()
        r = call(mcp_env, "get_buffer_count")
        assert r["status"] == "error"
        assert r["error"]["kind"] == "storage"
        assert r["error"]["retryable"] is False

    def test_unexpected_exception(self, mcp_env, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("kaput")

        monkeypatch.setattr(mcp_env["repo"], "count", boom)
        r = call(mcp_env, "get_buffer_count")
        assert r["error"]["kind"] == "error"
        assert "kaput" in r["error"]["message"]

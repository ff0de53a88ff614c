"""
Tests for scratchpad.mcp.server — argument parsing and server assembly.
"""

import pytest

from scratchpad.mcp.server import build_parser, create_server


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.delenv("SCRATCHPAD_DB", raising=False)
    monkeypatch.delenv("SCRATCHPAD_CONFIG", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.db is None
        assert args.config is None
        assert args.backup is True
        assert args.verbose is False

    def test_env_db(self, monkeypatch):
        monkeypatch.setenv("SCRATCHPAD_DB", "/tmp/env.db")
        assert build_parser().parse_args([]).db == "/tmp/env.db"

    def test_no_backup(self):
        assert build_parser().parse_args(["--no-backup"]).backup is False


class TestCreateServer:
    def test_assembles_server(self, tmp_path):
        pytest.importorskip("mcp")
        db_path = tmp_path / "srv.db"
        args = build_parser().parse_args(["--db", str(db_path), "--no-backup"])
        mcp, store = create_server(args)
        try:
            assert db_path.exists()
            assert store.db_path == str(db_path)
            assert not (tmp_path / "xdg" / "scratchpad" / "backups").exists()
        finally:
            store.close()

    def test_startup_backup(self, tmp_path):
        pytest.importorskip("mcp")
        args = build_parser().parse_args(["--db", str(tmp_path / "srv.db")])
        _, store = create_server(args)
        try:
            backups = tmp_path / "xdg" / "scratchpad" / "backups"
            assert len(list(backups.glob("scratchpad_*.db"))) == 1
        finally:
            store.close()

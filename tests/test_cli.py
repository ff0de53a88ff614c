"""
Tests for the scratchpad CLI via subprocess.

Every test exercises the real entry point (`python -m scratchpad.cli`)
against a temporary SQLite database so there are no side-effects on the
developer machine.
"""

import json
import os
import sqlite3
import subprocess
import sys
from pathlib import Path

import pytest


PYTHON = sys.executable
CLI = [PYTHON, "-m", "scratchpad.cli"]


def run(args, *, env=None, stdin="", db=None):
    """Run a scratchpad CLI command and return CompletedProcess."""
    merged_env = {**os.environ, **(env or {})}
    merged_env.pop("SCRATCHPAD_CONFIG", None)
    if db is not None:
        args = args + ["--db", db]
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env=merged_env,
        input=stdin,
        timeout=30,
    )


@pytest.fixture
def db(tmp_path):
    """Initialize a database and return its path."""
    db_path = str(tmp_path / "data" / "scratchpad.db")
    r = run(["init", "-q"], db=db_path, env={"XDG_DATA_HOME": str(tmp_path)})
    assert r.returncode == 0, f"init failed: {r.stderr}"
    return db_path


def new(db, content):
    r = run(["new", content], db=db)
    assert r.returncode == 0, r.stderr
    return r.stdout.strip()


def listed(db):
    r = run(["list", "--json"], db=db)
    assert r.returncode == 0, r.stderr
    return [s["id"] for s in json.loads(r.stdout)]


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_database(self, tmp_path):
        db_path = str(tmp_path / "nested" / "dir" / "scratchpad.db")
        r = run(["init"], db=db_path)
        assert r.returncode == 0
        assert os.path.isfile(db_path)
        assert f'export SCRATCHPAD_DB="{db_path}"' in r.stdout
        assert "Schema:" in r.stderr

    def test_idempotent(self, db):
        r = run(["init"], db=db)
        assert r.returncode == 0

    def test_env_var_db(self, tmp_path):
        db_path = str(tmp_path / "env.db")
        r = run(["init", "-q"], env={"SCRATCHPAD_DB": db_path})
        assert r.returncode == 0
        assert os.path.isfile(db_path)

    def test_unreadable_database(self, tmp_path):
        db_path = tmp_path / "broken.db"
        db_path.write_bytes(b"this is not a database file " * 200)
        r = run(["init"], db=str(db_path))
        assert r.returncode == 2
        assert "--recover" in r.stderr

    def test_recover(self, tmp_path):
        db_path = tmp_path / "broken.db"
        db_path.write_bytes(b"this is not a database file " * 200)
        r = run(["init", "--recover"], db=str(db_path))
        assert r.returncode == 0, r.stderr
        assert list(tmp_path.glob("broken.db.corrupt-*"))
        assert run(["list", "--json"], db=str(db_path)).stdout.strip() == "[]"

    def test_newer_schema_not_quarantined(self, db):
        conn = sqlite3.connect(db)
        with conn:
            conn.execute(
                "INSERT INTO schema_migrations (version, name, applied_at) "
                "VALUES (99, 'from_the_future', 0)"
            )
        conn.close()
        r = run(["init", "--recover"], db=db)
        assert r.returncode == 2
        assert "newer than supported" in r.stderr
        assert not list(Path(db).parent.glob("*.corrupt-*"))
        assert os.path.isfile(db)


# ---------------------------------------------------------------------------
# Buffer commands
# ---------------------------------------------------------------------------


class TestBufferCommands:
    def test_new_and_show(self, db):
        buffer_id = new(db, "hello\nworld")
        r = run(["show", buffer_id], db=db)
        assert r.returncode == 0
        assert r.stdout == "hello\nworld\n"

    def test_new_from_stdin(self, db):
        r = run(["new", "-"], db=db, stdin="from stdin")
        buffer_id = r.stdout.strip()
        assert run(["show", buffer_id], db=db).stdout == "from stdin\n"

    def test_new_json(self, db):
        r = run(["new", "Title line\nPreview line", "--json"], db=db)
        payload = json.loads(r.stdout)
        assert payload["title"] == "Title line"
        assert payload["preview"] == "Preview line"
        assert "content" not in payload

    def test_save_from_stdin(self, db):
        buffer_id = new(db, "before")
        r = run(["save", buffer_id], db=db, stdin="after")
        assert r.returncode == 0, r.stderr
        assert run(["show", buffer_id], db=db).stdout == "after\n"

    def test_save_from_file(self, db, tmp_path):
        buffer_id = new(db, "before")
        src = tmp_path / "note.md"
        src.write_text("# From file\n", encoding="utf-8")
        r = run(["save", buffer_id, "--file", str(src)], db=db)
        assert r.returncode == 0
        assert run(["show", buffer_id], db=db).stdout == "# From file\n"

    def test_show_json(self, db):
        buffer_id = new(db, "x")
        payload = json.loads(run(["show", buffer_id, "--json"], db=db).stdout)
        assert payload["id"] == buffer_id
        assert payload["content"] == "x"

    def test_list_order(self, db):
        a = new(db, "a")
        b = new(db, "b")
        assert listed(db) == [b, a]

    def test_list_text(self, db):
        new(db, "Shopping\nmilk")
        r = run(["list"], db=db)
        assert "Shopping" in r.stdout
        assert "milk" in r.stdout

    def test_list_paging(self, db):
        for i in range(3):
            new(db, f"b{i}")
        r = run(["list", "--json", "--offset", "1", "--limit", "1"], db=db)
        assert len(json.loads(r.stdout)) == 1

    def test_pin(self, db):
        a = new(db, "a")
        b = new(db, "b")
        r = run(["pin", a], db=db)
        assert r.stdout.strip() == "pinned"
        assert listed(db) == [a, b]
        r = run(["pin", a], db=db)
        assert r.stdout.strip() == "unpinned"

    def test_move(self, db):
        a = new(db, "a")
        b = new(db, "b")
        r = run(["move", b, "down", "--json"], db=db)
        assert json.loads(r.stdout)["moved"] is True
        assert listed(db) == [a, b]

    def test_reorder(self, db):
        a = new(db, "a")
        b = new(db, "b")
        c = new(db, "c")
        r = run(["reorder", a, b, c], db=db)
        assert r.returncode == 0
        assert listed(db) == [a, b, c]

    def test_delete_prints_next(self, db):
        a = new(db, "a")
        b = new(db, "b")
        r = run(["delete", b], db=db)
        assert r.returncode == 0
        assert r.stdout.strip() == a
        assert listed(db) == [a]

    def test_archive_restore(self, db):
        a = new(db, "a")
        run(["archive", a], db=db)
        assert listed(db) == []
        r = run(["list", "--archived", "--json"], db=db)
        assert [s["id"] for s in json.loads(r.stdout)] == [a]
        run(["restore", a], db=db)
        assert listed(db) == [a]

    def test_cleanup(self, db):
        keep = new(db, "text")
        empty = new(db, "   ")
        r = run(["cleanup"], db=db)
        assert r.stdout.strip() == "1"
        assert empty not in listed(db)
        assert keep in listed(db)


class TestSearch:
    def test_json(self, db):
        buffer_id = new(db, "the zephyr blows")
        new(db, "calm day")
        r = run(["search", "zeph", "--json"], db=db)
        results = json.loads(r.stdout)
        assert [x["id"] for x in results] == [buffer_id]
        assert "<mark>zephyr</mark>" in results[0]["snippet"]

    def test_no_results(self, db):
        r = run(["search", "zephyr"], db=db)
        assert r.returncode == 0
        assert "No results" in r.stderr

    def test_invalid_query_exit_1(self, db):
        r = run(["search", 'zephyr" OR x'], db=db)
        assert r.returncode == 1


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------


class TestExitCodes:
    def test_unknown_id(self, db):
        r = run(["show", "no-such-buffer"], db=db)
        assert r.returncode == 1
        assert "no-such-buffer" in r.stderr

    def test_save_unknown_id(self, db):
        r = run(["save", "no-such-buffer", "x"], db=db)
        assert r.returncode == 1

    def test_no_command(self):
        r = run([])
        assert r.returncode == 1

    def test_corrupt_database_exit_2(self, tmp_path):
        db_path = tmp_path / "broken.db"
        db_path.write_bytes(b"this is not a database file " * 200)
        r = run(["list"], db=str(db_path))
        assert r.returncode == 2


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class TestMaintenance:
    def test_stats_json(self, db):
        a = new(db, "a")
        new(db, "b")
        run(["pin", a], db=db)
        stats = json.loads(run(["stats", "--json"], db=db).stdout)
        assert stats["buffers"] == 2
        assert stats["pinned"] == 1
        assert stats["journal_mode"] == "wal"

    def test_check(self, db):
        new(db, "zephyr")
        r = run(["check", "--rebuild", "--vacuum", "--json"], db=db)
        assert r.returncode == 0, r.stderr
        payload = json.loads(r.stdout)
        assert payload["integrity"] is True
        assert payload["indexed"] == 1

    def test_backup(self, db, tmp_path):
        new(db, "x")
        target = tmp_path / "snapshots"
        r = run(["backup", "--dir", str(target)], db=db)
        assert r.returncode == 0, r.stderr
        assert len(list(target.glob("scratchpad_*.db"))) == 1

    def test_backup_if_due(self, db, tmp_path):
        target = tmp_path / "snapshots"
        run(["backup", "--dir", str(target)], db=db)
        r = run(["backup", "--dir", str(target), "--if-due", "--json"], db=db)
        assert json.loads(r.stdout)["path"] is None

"""Tests for the command line interface."""

import pytest

from shelfsync.__main__ import _parse_collections, build_parser, main
from shelfsync.config import get_settings
from shelfsync.schema import BASE_COLLECTIONS


@pytest.fixture(autouse=True)
def in_memory_environment(monkeypatch, tmp_path):
    """Run every command against the in-memory store with no proxy configured."""
    for name in (
        "QDRANT_URL",
        "GEMINI_API_KEY",
        "SUPABASE_URL",
        "QDRANT_UPSTREAM_URL",
        "QDRANT_UPSTREAM_API_KEY",
        "ENABLE_DAN",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DAN_STATE_DIR", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestParser:
    def test_setup_options(self):
        args = build_parser().parse_args(["-v", "setup", "--collections", "items", "--recreate"])

        assert args.verbose is True
        assert args.command == "setup"
        assert args.collections == "items"
        assert args.recreate is True

    def test_summary_requires_shop(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["summary"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage:" in capsys.readouterr().out


class TestParseCollections:
    def test_default_is_every_base_collection(self):
        assert _parse_collections(None) == list(BASE_COLLECTIONS)

    def test_comma_separated(self):
        assert _parse_collections(" items, batches ,") == ["items", "batches"]

    def test_unknown_name_exits(self):
        with pytest.raises(SystemExit, match="widgets"):
            _parse_collections("items,widgets")


class TestCommands:
    def test_setup_in_memory(self, capsys):
        assert main(["setup"]) == 0

        out = capsys.readouterr().out
        for name in BASE_COLLECTIONS:
            assert name in out
        assert "NOT READY" not in out

    def test_setup_recreate_selected(self, capsys):
        assert main(["setup", "--collections", "items", "--recreate"]) == 0
        assert "items" in capsys.readouterr().out

    def test_summary_of_empty_shop(self, capsys):
        assert main(["summary", "--shop-id", "shop-1"]) == 0
        assert "No available stock for shop shop-1" in capsys.readouterr().out

    def test_summary_with_seed(self, capsys):
        assert main(["summary", "--shop-id", "shop-1", "--seed"]) == 0

        out = capsys.readouterr().out
        assert "Organic Oat Milk" in out
        assert "50" in out

    def test_serve_proxy_needs_upstream(self, capsys):
        assert main(["serve-proxy"]) == 1
        assert "QDRANT_UPSTREAM_URL" in capsys.readouterr().err

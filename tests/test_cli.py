"""Tests for the command-line entry point."""

from __future__ import annotations

import json

import pytest

from notechain_rag import cli
from notechain_rag.config import AppConfig
from notechain_rag.models import EntityType


@pytest.fixture
def notes_dir(tmp_path):
    notes = tmp_path / "notes"
    notes.mkdir()
    (notes / "budget.md").write_text("# Budget review\n\nQuarterly budget review with finance.\n")
    (notes / "garden.txt").write_text("Plant tomatoes and basil in April.\n")
    (notes / "image.png").write_bytes(b"\x89PNG")
    return notes


@pytest.fixture
def config(tmp_path):
    return AppConfig(data_dir=tmp_path / "data", embedding_backend="mock", llm_backend="mock")


class TestNoteFiles:
    def test_iter_filters_suffixes(self, notes_dir):
        names = [p.name for p in cli.iter_note_files([str(notes_dir)])]
        assert names == ["budget.md", "garden.txt"]

    def test_missing_path_skipped(self, tmp_path):
        assert list(cli.iter_note_files([str(tmp_path / "nope")])) == []

    def test_heading_becomes_title(self, notes_dir):
        note = cli.note_from_file(notes_dir / "budget.md", "user-1")
        assert note.type == EntityType.NOTE
        assert note.decrypted_content.title == "Budget review"
        assert note.decrypted_content.content == "Quarterly budget review with finance.\n"

    def test_stem_is_fallback_title(self, notes_dir):
        note = cli.note_from_file(notes_dir / "garden.txt", "user-1")
        assert note.decrypted_content.title == "garden"


class TestParser:
    def test_search_args(self):
        args = cli.build_parser().parse_args(["search", "budget", "--top-k", "3", "--entity-type", "todo"])
        assert (args.command, args.query, args.top_k, args.entity_type) == ("search", "budget", 3, ["todo"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_unknown_suggestion_type(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["suggest", "note.md", "--type", "poem"])


class TestCommands:
    @pytest.mark.asyncio
    async def test_index_then_stats(self, notes_dir, config, capsys):
        parser = cli.build_parser()
        assert await cli.run(parser.parse_args(["index", str(notes_dir)]), config) == 0
        assert "Indexed 2/2 notes" in capsys.readouterr().out

        assert await cli.run(parser.parse_args(["stats"]), config) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["total_vectors"] == 2
        assert stats["persistence_active"] is True

    @pytest.mark.asyncio
    async def test_index_empty_directory(self, tmp_path, config):
        empty = tmp_path / "empty"
        empty.mkdir()
        args = cli.build_parser().parse_args(["index", str(empty)])
        assert await cli.run(args, config) == 1

    @pytest.mark.asyncio
    async def test_quick_suggest_prints_json(self, notes_dir, config, capsys):
        parser = cli.build_parser()
        await cli.run(parser.parse_args(["index", str(notes_dir)]), config)
        capsys.readouterr()

        args = parser.parse_args(["suggest", str(notes_dir / "budget.md"), "--quick"])
        assert await cli.run(args, config) == 0
        suggestions = json.loads(capsys.readouterr().out)
        assert isinstance(suggestions, list)
        assert all(s["type"] == "related" for s in suggestions)

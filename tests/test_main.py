"""Tests for the command-line driver in main.py."""

import argparse

import pytest

import main
from story_engine.config import AppConfig
from story_engine.llm import LLMError


def _play_args(story_id: str, text: str = "I open the cellar door.") -> argparse.Namespace:
    return argparse.Namespace(story_id=story_id, text=text, branch=None, events=False)


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(data_dir=tmp_path / "data")


class TestCmdNew:
    def test_prints_new_story_id(self, storage, capsys) -> None:
        code = main.cmd_new(storage, argparse.Namespace(title="Harbor Lights", genre="noir"))

        story_id = capsys.readouterr().out.strip()
        assert code == 0
        assert storage.get_story(story_id).title == "Harbor Lights"


class TestCmdPlay:
    async def test_narration_is_saved(self, storage, story, llm, config, capsys) -> None:
        llm.script_text("narrative", "The hinges groan as cold air rises.")

        code = await main.cmd_play(storage, _play_args(story.id), config, llm=llm)

        assert code == 0
        assert "The hinges groan" in capsys.readouterr().out
        entries = storage.get_entries(story.id)
        assert [e.type for e in entries] == ["user_action", "narration"]
        assert entries[1].content == "The hinges groan as cold air rises."

    async def test_failure_removes_user_action(self, storage, story, llm, config, capsys) -> None:
        llm.script_text("narrative", LLMError("backend down"))

        code = await main.cmd_play(storage, _play_args(story.id), config, llm=llm)

        assert code == 1
        assert "backend down" in capsys.readouterr().err
        assert storage.get_entries(story.id) == []

    async def test_unknown_story(self, storage, llm, config, capsys) -> None:
        code = await main.cmd_play(storage, _play_args("nope"), config, llm=llm)

        assert code == 1
        assert "No story with id nope" in capsys.readouterr().err
        assert llm.calls == []

    async def test_events_written_to_stderr(self, storage, story, llm, config, capsys) -> None:
        args = _play_args(story.id)
        args.events = True

        await main.cmd_play(storage, args, config, llm=llm)

        err = capsys.readouterr().err
        assert '"event": "phase_start", "phase": "pre_generation"' in err
        assert '"event": "phase_complete", "phase": "narrative"' in err

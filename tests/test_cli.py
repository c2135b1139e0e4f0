"""Tests for storyflow.cli: argument wiring, output and exit codes."""

import json
import signal
from unittest.mock import patch

import pytest

from conftest import FakeProvider, FakeVCS
from storyflow.agents.provider import ProviderResponse
from storyflow.cli import build_parser, install_cancel_handler, main
from storyflow.runner.context import AppContext

BREAKDOWN = {
    "developer_stories": [
        {"title": "Build API", "story_type": "implementation"},
        {"title": "Document API", "story_type": "documentation"},
    ],
    "dependencies": [{"dependent_story_index": 1, "required_story_index": 0}],
}


@pytest.fixture
def project(tmp_path):
    (tmp_path / "project.env").write_text("WORKERS=1\nPOLL_INTERVAL=0.01\nRETRY_BASE_DELAY=0\n")
    return tmp_path


@pytest.fixture
def fakes():
    return FakeProvider(refine_results=[ProviderResponse(success=True, output=json.dumps(BREAKDOWN))]), FakeVCS()


@pytest.fixture
def cli(project, fakes):
    """Run the CLI against ``project`` with the fake provider and VCS."""
    provider, vcs = fakes
    real_create = AppContext.create

    def create(project_dir):
        return real_create(project_dir, provider=provider, vcs=vcs)

    def run(*argv):
        with patch.object(AppContext, "create", side_effect=create):
            return main(["-C", str(project), *argv])
    return run


class TestParser:
    def test_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_implement_story_is_optional(self):
        args = build_parser().parse_args(["implement", "--work-item", "3"])
        assert args.story is None
        assert args.work_item == 3

    def test_rejects_unknown_type(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["create", "epic", "Title"])


class TestCommands:
    def test_create_and_list(self, cli, capsys):
        assert cli("create", "user_story", "Add checkout", "-d", "Users can pay", "-p", "2") == 0
        out = capsys.readouterr().out
        assert "Created work item 1: Add checkout" in out

        assert cli("list") == 0
        out = capsys.readouterr().out
        assert "Add checkout" in out
        assert "P2" in out

    def test_end_to_end_refine_and_run(self, cli, capsys):
        cli("create", "bug", "Crash on save")
        assert cli("refine", "1") == 0
        out = capsys.readouterr().out
        assert "Created 2 stories" in out
        assert "requires 1 (Build API)" in out

        assert cli("next", "1") == 0
        assert capsys.readouterr().out.startswith("1\tBuild API")

        assert cli("run", "1") == 0
        out = capsys.readouterr().out
        assert "Completed: 1, 2" in out
        assert "Work item 1 is completed" in out

        assert cli("log", "1") == 0
        out = capsys.readouterr().out
        assert "branch_created" in out
        assert "worktree_removed" in out

    def test_add_story_and_deps(self, cli, capsys):
        cli("create", "user_story", "Search")
        cli("add-story", "1", "Index documents")
        cli("add-story", "1", "Query API", "--type", "implementation", "-p", "1")
        assert cli("deps", "add", "2", "1", "-d", "needs the index") == 0
        assert cli("deps", "list", "1") == 0
        out = capsys.readouterr().out
        assert "2 -> 1  (needs the index)" in out

    def test_retry_and_recover_report(self, cli, capsys):
        cli("create", "user_story", "Search")
        cli("add-story", "1", "Index documents")
        assert cli("recover", "1") == 0
        assert "No interrupted stories" in capsys.readouterr().out


class TestErrors:
    def test_missing_entity(self, cli, capsys):
        assert cli("implement", "99") == 1
        assert "ERROR [entity_not_found]" in capsys.readouterr().err

    def test_cycle_reported(self, cli, capsys):
        cli("create", "user_story", "Search")
        cli("add-story", "1", "A")
        cli("add-story", "1", "B")
        cli("deps", "add", "2", "1")
        assert cli("deps", "add", "1", "2") == 1
        assert "ERROR [cycle_detected]" in capsys.readouterr().err

    def test_invalid_priority(self, cli, capsys):
        assert cli("create", "user_story", "Title", "-p", "12") == 2
        assert "ERROR [invalid_input]" in capsys.readouterr().err

    def test_retry_of_pending_story(self, cli, capsys):
        cli("create", "user_story", "Search")
        cli("add-story", "1", "A")
        assert cli("retry", "1") == 1
        assert "ERROR [invalid_state_transition]" in capsys.readouterr().err

    def test_implement_needs_target(self, cli, capsys):
        assert cli("implement") == 2
        assert "Give a story id or --work-item" in capsys.readouterr().err

    def test_unexpected_error_is_reported_as_internal(self, cli, capsys):
        with patch("storyflow.commands.list.cmd_list", side_effect=RuntimeError("disk on fire")):
            assert cli("list") == 1
        err = capsys.readouterr().err
        assert "ERROR [internal]: RuntimeError: disk on fire" in err
        assert "Traceback" not in err


class TestCancelHandler:
    def test_first_interrupt_sets_cancel_event(self, project):
        ctx = AppContext.create(project, provider=FakeProvider(), vcs=FakeVCS())
        previous = install_cancel_handler(ctx)
        try:
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
            assert ctx.cancel_event.is_set()
            # A second Ctrl-C falls through to KeyboardInterrupt
            assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
        finally:
            signal.signal(signal.SIGINT, previous)

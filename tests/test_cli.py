"""Tests for the CLI: argument parsing, the turn runner, one-shot mode and the REPL."""

import io
import json
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from qwen_local import cli
from qwen_local.agent import Agent, TurnResult
from qwen_local.cli import (
    EXIT_CODES,
    TurnRunner,
    _handle_init_config,
    _repl_cd,
    _repl_compact,
    _repl_load,
    _repl_model,
    _repl_save,
    _run_once,
    build_parser,
    repl_loop,
)
from qwen_local.config import _UNSET, PROJECT_CONFIG_NAME
from qwen_local.conversation import save_conversation
from qwen_local.prompt import build_system_prompt
from qwen_local.report import ReportCollector
from qwen_local.tools import ToolContext


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeAgent:
    """Agent stand-in whose chat() replays a script of callback events."""

    def __init__(self, events=(), result=None, exc=None):
        self.events = list(events)
        self.result = result or TurnResult("done", "ok", round_trips=1)
        self.exc = exc
        self.model = "test-model"
        self.base_url = "http://127.0.0.1:1"
        self.max_context_tokens = 1000
        self.compact_threshold = 0.75
        self.max_loops = 25
        self.cancelled = False
        self.seen = []

    def chat(self, message, callbacks):
        self.seen.append(message)
        for name, *args in self.events:
            getattr(callbacks, name)(*args)
        if self.exc is not None:
            raise self.exc
        return self.result

    def cancel(self):
        self.cancelled = True
        return True

    def get_stats(self):
        return {"used": 10, "max": 1000, "pct": 1, "message_count": 3,
                "total_tool_calls": 0, "total_turns": 1}


def _real_agent(context):
    return Agent(
        execute_tool=lambda name, args: "ok",
        system_prompt=lambda: build_system_prompt(context),
        base_url="http://127.0.0.1:1",
        model="test-model",
        max_context_tokens=100_000,
    )


@pytest.fixture
def xdg(tmp_path, monkeypatch):
    home = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    return home


# ---------------------------------------------------------------------------
# build_parser
# ---------------------------------------------------------------------------


class TestBuildParser:
    def test_defaults_are_unset(self):
        args = build_parser().parse_args([])
        assert args.question is None
        assert args.base_url is _UNSET
        assert args.model is _UNSET
        assert args.max_loops is _UNSET
        assert args.quiet is _UNSET
        assert args.plan is False
        assert args.report is None

    def test_question_and_options(self):
        args = build_parser().parse_args(
            ["--model", "m", "--max-loops", "3", "--plan", "fix the bug"]
        )
        assert args.question == "fix the bug"
        assert args.model == "m"
        assert args.max_loops == 3
        assert args.plan is True

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])

    def test_report_requires_question(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["qwen-local", "--report", "out.json"])
        with pytest.raises(SystemExit) as exc:
            cli.main()
        assert exc.value.code == 2


# ---------------------------------------------------------------------------
# TurnRunner
# ---------------------------------------------------------------------------


class TestTurnRunner:
    def test_streams_text_and_closes_line(self):
        out = io.StringIO()
        agent = FakeAgent(events=[("on_text", "Hel"), ("on_text", "lo")])
        result = TurnRunner(agent, verbose=False, out=out).run("hi")
        assert result.outcome == "done"
        assert agent.seen == ["hi"]
        assert out.getvalue() == "Hello\n"

    def test_no_extra_newline_after_complete_line(self):
        out = io.StringIO()
        agent = FakeAgent(events=[("on_text", "done\n")])
        TurnRunner(agent, verbose=False, out=out).run("hi")
        assert out.getvalue() == "done\n"

    def test_text_line_closed_before_tool_call(self):
        out = io.StringIO()
        agent = FakeAgent(
            events=[("on_text", "Looking"), ("on_tool_call", "list_files", {})]
        )
        TurnRunner(agent, verbose=False, out=out).run("hi")
        assert out.getvalue() == "Looking\n"

    def test_records_report_events(self):
        report = ReportCollector()
        agent = FakeAgent(
            events=[
                ("on_thinking", True),
                ("on_thinking", False),
                ("on_token", 3),
                ("on_tool_call", "read_file", {"path": "a"}),
                ("on_tool_result", "read_file", "error: nope"),
                ("on_compact", 20, 9),
                ("on_error", "boom"),
            ]
        )
        TurnRunner(agent, verbose=False, report=report, out=io.StringIO()).run("hi")
        assert report.llm_calls == 1
        assert report.tokens_streamed == 3
        assert report.tool_calls == 1
        assert report.tool_stats == {"read_file": {"succeeded": 0, "failed": 1}}
        assert report.compactions == 1
        assert report.errors == 1

    def test_worker_exception_propagates(self):
        agent = FakeAgent(exc=RuntimeError("kaboom"))
        with pytest.raises(RuntimeError, match="kaboom"):
            TurnRunner(agent, verbose=False, out=io.StringIO()).run("hi")

    def test_wait_idle_joins_lingering_worker(self):
        runner = TurnRunner(FakeAgent(), verbose=False, out=io.StringIO())
        release = threading.Event()
        worker = threading.Thread(target=release.wait, daemon=True)
        worker.start()
        runner._worker = worker
        release.set()
        runner.wait_idle()
        assert not worker.is_alive()
        assert runner._worker is None


# ---------------------------------------------------------------------------
# One-shot mode
# ---------------------------------------------------------------------------


def _once_args(tmp_path, **overrides):
    values = dict(
        question="what is here?",
        report=None,
        quiet=True,
        plan=False,
        command_timeout=60,
        max_tool_result_size=8000,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestRunOnce:
    @pytest.mark.parametrize("outcome", ["done", "error", "loop_limit", "cancelled"])
    def test_exit_codes(self, tmp_path, outcome):
        agent = FakeAgent(result=TurnResult(outcome))
        assert _run_once(agent, _once_args(tmp_path)) == EXIT_CODES[outcome]

    def test_writes_report(self, tmp_path):
        path = tmp_path / "report.json"
        agent = FakeAgent(
            events=[("on_tool_call", "list_files", {}), ("on_tool_result", "list_files", "a\nb")],
            result=TurnResult("done", "two files", round_trips=2, tool_calls=1),
        )
        code = _run_once(agent, _once_args(tmp_path, report=str(path)))
        assert code == 0
        data = json.loads(path.read_text())
        assert data["task"] == "what is here?"
        assert data["model"] == "test-model"
        assert data["result"] == {"outcome": "done", "answer": "two files", "exit_code": 0}
        assert data["stats"]["round_trips"] == 2
        assert data["stats"]["tool_calls_succeeded"] == 1
        assert data["settings"]["max_loops"] == 25

    def test_report_write_failure_is_not_fatal(self, tmp_path):
        path = tmp_path / "missing-dir" / "report.json"
        agent = FakeAgent()
        assert _run_once(agent, _once_args(tmp_path, report=str(path))) == 0
        assert not path.exists()


class TestInitConfig:
    def test_project_file_written_once(self, tmp_path):
        args = SimpleNamespace(project=True, cwd=str(tmp_path))
        _handle_init_config(args)
        dest = tmp_path / PROJECT_CONFIG_NAME
        assert dest.exists()
        original = dest.read_text()

        with pytest.raises(SystemExit) as exc:
            _handle_init_config(args)
        assert exc.value.code == 1
        assert dest.read_text() == original

    def test_global_file(self, xdg):
        _handle_init_config(SimpleNamespace(project=False, cwd=None))
        assert (xdg / "qwen-local" / "config.toml").exists()


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


class TestReplHelpers:
    def test_cd_changes_cwd_and_prompt(self, tmp_path):
        (tmp_path / "sub").mkdir()
        context = ToolContext(tmp_path)
        agent = _real_agent(context)
        agent.set_messages([{"role": "system", "content": "stale"}])
        _repl_cd("sub", agent, context)
        assert context.cwd == (tmp_path / "sub").resolve()
        assert str(context.cwd) in agent.get_messages()[0]["content"]

    def test_cd_missing_dir_keeps_cwd(self, tmp_path):
        context = ToolContext(tmp_path)
        _repl_cd("nope", _real_agent(context), context)
        assert context.cwd == tmp_path.resolve()

    def test_save_then_load(self, tmp_path, xdg):
        context = ToolContext(tmp_path)
        agent = _real_agent(context)
        msgs = [
            {"role": "system", "content": "old prompt"},
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi"},
        ]
        agent.set_messages(msgs)
        _repl_save("greeting", agent)
        assert (xdg / "qwen-local" / "conversations" / "greeting.json").exists()

        other = _real_agent(context)
        _repl_load("greet", other)
        loaded = other.get_messages()
        assert loaded[1:] == msgs[1:]
        # system prompt is rebuilt for the current session
        assert str(context.cwd) in loaded[0]["content"]

    def test_save_empty_does_nothing(self, tmp_path, xdg):
        _repl_save("", _real_agent(ToolContext(tmp_path)))
        assert not (xdg / "qwen-local" / "conversations").exists()

    def test_load_unknown_keeps_messages(self, tmp_path, xdg):
        save_conversation([{"role": "user", "content": "x"}], "kept")
        agent = _real_agent(ToolContext(tmp_path))
        agent.set_messages([{"role": "user", "content": "current"}])
        _repl_load("zzz", agent)
        assert agent.get_messages() == [{"role": "user", "content": "current"}]

    def test_compact(self, tmp_path):
        agent = _real_agent(ToolContext(tmp_path))
        msgs = [{"role": "system", "content": "s"}] + [
            {"role": "user", "content": f"q{i}"} for i in range(20)
        ]
        agent.set_messages(msgs)
        _repl_compact(agent)
        assert len(agent.get_messages()) < len(msgs)
        assert agent.get_messages()[-6:] == msgs[-6:]

    def test_compact_short_conversation_untouched(self, tmp_path):
        agent = _real_agent(ToolContext(tmp_path))
        msgs = [{"role": "system", "content": "s"}, {"role": "user", "content": "q"}]
        agent.set_messages(msgs)
        _repl_compact(agent)
        assert agent.get_messages() == msgs

    def test_model_switch_persists(self, tmp_path, xdg):
        agent = _real_agent(ToolContext(tmp_path))
        _repl_model("qwen-tiny", agent)
        assert agent.model == "qwen-tiny"
        saved = (xdg / "qwen-local" / "config.toml").read_text()
        assert 'model = "qwen-tiny"' in saved

    def test_model_without_arg_keeps_model(self, tmp_path, xdg):
        agent = _real_agent(ToolContext(tmp_path))
        _repl_model("", agent)
        assert agent.model == "test-model"
        assert not (xdg / "qwen-local" / "config.toml").exists()


# ---------------------------------------------------------------------------
# repl_loop
# ---------------------------------------------------------------------------


class TestReplLoop:
    def _patch_session(self, inputs):
        """Replace PromptSession with a mock whose .prompt() yields inputs."""
        session = MagicMock()
        session.prompt.side_effect = [
            v() if v in (EOFError, KeyboardInterrupt) else v for v in inputs
        ]
        return patch("prompt_toolkit.PromptSession", return_value=session)

    def _run(self, tmp_path, inputs, result=None):
        context = ToolContext(tmp_path)
        agent = _real_agent(context)
        run = MagicMock(return_value=result or TurnResult("done", "ok"))
        with (
            self._patch_session(inputs),
            patch.object(TurnRunner, "run", run),
        ):
            repl_loop(agent, context, verbose=False)
        return agent, context, run

    def test_exit_and_quit(self, tmp_path, xdg):
        for command in ("/exit", "/quit"):
            _, _, run = self._run(tmp_path, [command])
            run.assert_not_called()

    def test_eof_and_ctrl_c_exit(self, tmp_path, xdg):
        for stop in (EOFError, KeyboardInterrupt):
            _, _, run = self._run(tmp_path, [stop])
            run.assert_not_called()

    def test_empty_lines_ignored(self, tmp_path, xdg):
        _, _, run = self._run(tmp_path, ["", "   ", "  hello  ", "/exit"])
        run.assert_called_once_with("hello")

    def test_multiline_input(self, tmp_path, xdg):
        _, _, run = self._run(tmp_path, ['"""', "line one", "  line two", '"""', "/exit"])
        run.assert_called_once_with("line one\n  line two")

    def test_empty_multiline_ignored(self, tmp_path, xdg):
        _, _, run = self._run(tmp_path, ["'''", "", "'''", "/exit"])
        run.assert_not_called()

    def test_plan_toggle(self, tmp_path, xdg):
        _, context, _ = self._run(tmp_path, ["/plan", "/exit"])
        assert context.plan_mode is True
        _, context, _ = self._run(tmp_path, ["/plan", "/plan", "/exit"])
        assert context.plan_mode is False

    def test_commands_do_not_reach_model(self, tmp_path, xdg):
        _, _, run = self._run(
            tmp_path,
            ["/help", "/status", "/stats", "/config", "/clear", "/bogus", "/exit"],
        )
        run.assert_not_called()

    def test_commands_case_insensitive(self, tmp_path, xdg):
        _, _, run = self._run(tmp_path, ["/EXIT", "never reached"])
        run.assert_not_called()

    def test_cancelled_turn_keeps_loop_alive(self, tmp_path, xdg):
        _, _, run = self._run(
            tmp_path, ["first", "second", "/exit"], result=TurnResult("cancelled")
        )
        assert [c.args[0] for c in run.call_args_list] == ["first", "second"]

    def test_history_file_under_config_dir(self, tmp_path, xdg):
        self._run(tmp_path, ["/exit"])
        assert (xdg / "qwen-local").is_dir()

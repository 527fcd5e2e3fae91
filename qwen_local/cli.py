"""Command-line entry point and interactive REPL."""

import argparse
import logging
import os
import sys
import threading
import time
from importlib import metadata
from pathlib import Path

from rich.logging import RichHandler

from . import fmt
from .agent import Agent, AgentCallbacks, TurnResult
from .config import (
    PROJECT_CONFIG_NAME,
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    save_config_value,
    validate_values,
)
from .conversation import list_conversations, load_conversation, save_conversation
from .prompt import build_system_prompt
from .report import AgentError, ConfigError, ReportCollector
from .tools import TOOLS, ToolContext, ToolExecutor

logger = logging.getLogger(__name__)

EXIT_CODES = {"done": 0, "error": 1, "loop_limit": 2, "cancelled": 130}

# How long to wait for a cancelled turn to wind down before giving the prompt back
CANCEL_GRACE_SECONDS = 2.0
MULTILINE_DELIMITERS = ('"""', "'''")


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="qwen-local",
        usage="%(prog)s [options] [question]",
        description=(
            "A terminal coding assistant driving a local model through an "
            "agentic tool-use loop. Without a question, starts an interactive session."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Run a single task and exit instead of starting the REPL.",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Chat-completions server base URL (default: http://localhost:11434).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier sent to the server (default: qwen3-coder-cpu).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window size used for budgeting (default: 32768).",
    )
    parser.add_argument(
        "--compact-threshold",
        type=float,
        default=_UNSET,
        help="Fraction of the context window that triggers compaction (default: 0.75).",
    )
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=_UNSET,
        help="Timeout in seconds for run_command (default: 60).",
    )
    parser.add_argument(
        "--max-tool-result-size",
        type=int,
        default=_UNSET,
        help="Truncate individual tool outputs to this many characters (default: 8000).",
    )
    parser.add_argument(
        "--max-loops",
        type=int,
        default=_UNSET,
        help="Maximum model round trips per user message (default: 25).",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for tools (default: current directory).",
    )
    parser.add_argument(
        "--plan",
        action="store_true",
        help="Start in plan mode: read-only exploration, no file modifications.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress tool and status output; only the answer is printed.",
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force colored output.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable colored output.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging on stderr.",
    )
    parser.add_argument(
        "--report",
        metavar="FILE",
        default=None,
        help="Write a JSON run report to FILE (single-task mode only).",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a template config file and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help=f"With --init-config, write ./{PROJECT_CONFIG_NAME} instead of the global file.",
    )
    return parser


def _setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=fmt.get_console(), show_path=False)],
        force=True,
    )


def _handle_init_config(args) -> None:
    """Write a template config file; refuses to overwrite."""
    if args.project:
        dest = Path(args.cwd or ".").resolve() / PROJECT_CONFIG_NAME
    else:
        dest = global_config_dir() / "config.toml"
    if dest.exists():
        fmt.error(f"{dest} already exists, not overwriting")
        sys.exit(1)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text(generate_config(project=args.project), encoding="utf-8")
    print(dest)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("qwen-local")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.report and args.question is None:
        parser.error("--report requires a question (single-task mode)")

    if args.init_config:
        fmt.init()
        _handle_init_config(args)
        sys.exit(0)

    try:
        code = _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    sys.exit(code)


def _run_main(args) -> int:
    base_dir = Path(args.cwd).expanduser().resolve() if args.cwd else Path.cwd()
    if not base_dir.is_dir():
        raise ConfigError(f"--cwd: not a directory: {base_dir}")

    config = load_config(base_dir)
    apply_config_to_args(args, config)
    validate_values(vars(args), "command line")

    fmt.init(color=args.color, no_color=args.no_color)
    _setup_logging(args.debug)

    context = ToolContext(
        base_dir,
        plan_mode=args.plan,
        command_timeout=args.command_timeout,
        max_result_size=args.max_tool_result_size,
    )
    agent = Agent(
        execute_tool=ToolExecutor(context).execute,
        tools=TOOLS,
        system_prompt=lambda: build_system_prompt(context),
        base_url=args.base_url,
        model=args.model,
        max_context_tokens=args.max_context_tokens,
        compact_threshold=args.compact_threshold,
        max_loops=args.max_loops,
        abort_streams=False,
    )
    logger.debug(
        "agent configured: model=%s base_url=%s cwd=%s",
        args.model,
        args.base_url,
        base_dir,
    )

    if args.question is not None:
        return _run_once(agent, args)

    repl_loop(agent, context, verbose=not args.quiet)
    return 0


def _run_once(agent: Agent, args) -> int:
    report = ReportCollector() if args.report else None
    runner = TurnRunner(agent, verbose=not args.quiet, report=report)
    result = runner.run(args.question)
    code = EXIT_CODES.get(result.outcome, 1)

    if report is not None:
        data = report.build_report(
            task=args.question,
            model=agent.model,
            base_url=agent.base_url,
            settings={
                "max_context_tokens": agent.max_context_tokens,
                "compact_threshold": agent.compact_threshold,
                "max_loops": agent.max_loops,
                "command_timeout": args.command_timeout,
                "max_tool_result_size": args.max_tool_result_size,
                "plan_mode": args.plan,
            },
            outcome=result.outcome,
            answer=result.answer,
            exit_code=code,
            round_trips=result.round_trips,
            stats=agent.get_stats(),
        )
        try:
            report.write(args.report, data)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
        else:
            if not args.quiet:
                fmt.info(f"Report written to {args.report}")

    if result.outcome == "cancelled":
        fmt.warning("Interrupted.")
    return code


class TurnRunner:
    """Runs agent turns on a worker thread so Ctrl-C can cancel them.

    The main thread only waits; KeyboardInterrupt is turned into
    ``agent.cancel()``. A worker still busy after the grace period (a tool
    that ignores cancellation) is joined before the next turn starts.
    """

    def __init__(self, agent: Agent, *, verbose: bool = True, report=None, out=None):
        self.agent = agent
        self.verbose = verbose
        self.report = report
        self.out = out or sys.stdout
        self._worker: threading.Thread | None = None
        self._spinner = None
        self._request_started = 0.0
        self._tokens = 0
        self._text_open = False

    # -- callbacks -------------------------------------------------------

    def _on_text(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()
        self._text_open = not text.endswith("\n")

    def _on_thinking(self, thinking: bool) -> None:
        if thinking:
            self._request_started = time.monotonic()
            if self.verbose and self._spinner is None:
                self._spinner = fmt.thinking_spinner()
                self._spinner.start()
            return
        if self.report is not None:
            self.report.record_llm_call(time.monotonic() - self._request_started)
        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None

    def _end_text_line(self) -> None:
        if self._text_open:
            self.out.write("\n")
            self.out.flush()
            self._text_open = False

    def _on_tool_call(self, name: str, args: dict) -> None:
        self._end_text_line()
        if self.report is not None:
            self.report.record_tool_call(name, args)
        if self.verbose:
            fmt.tool_call(name, args)

    def _on_tool_result(self, name: str, result: str) -> None:
        if self.report is not None:
            self.report.record_tool_result(name, result)
        if self.verbose:
            fmt.tool_result(name, result)

    def _on_error(self, message: str) -> None:
        self._end_text_line()
        if self.report is not None:
            self.report.record_error(message)
        fmt.error(message)

    def _on_compact(self, before: int, after: int) -> None:
        if self.report is not None:
            self.report.record_compaction(before, after)
        if self.verbose:
            fmt.compacted(before, after)

    def _on_token(self, count: int) -> None:
        self._tokens += count
        if self.report is not None:
            self.report.record_tokens(count)

    def callbacks(self) -> AgentCallbacks:
        return AgentCallbacks(
            on_text=self._on_text,
            on_tool_call=self._on_tool_call,
            on_tool_result=self._on_tool_result,
            on_error=self._on_error,
            on_compact=self._on_compact,
            on_thinking=self._on_thinking,
            on_token=self._on_token,
        )

    # -- turn ------------------------------------------------------------

    def wait_idle(self) -> None:
        """Join a worker left over from a cancelled turn."""
        if self._worker is not None:
            self._worker.join()
            self._worker = None

    def run(self, message: str) -> TurnResult:
        self.wait_idle()
        self._tokens = 0
        self._text_open = False
        box: dict = {}
        done = threading.Event()

        def work():
            try:
                box["result"] = self.agent.chat(message, self.callbacks())
            except BaseException as e:
                box["exc"] = e
            finally:
                done.set()

        started = time.monotonic()
        worker = threading.Thread(target=work, name="qwen-local-turn", daemon=True)
        self._worker = worker
        worker.start()

        cancelled_at = None
        while not done.is_set():
            try:
                done.wait(0.1)
            except KeyboardInterrupt:
                if cancelled_at is None:
                    self.agent.cancel()
                    cancelled_at = time.monotonic()
                else:
                    break
            if (
                cancelled_at is not None
                and time.monotonic() - cancelled_at > CANCEL_GRACE_SECONDS
            ):
                break

        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None
        self._end_text_line()

        if not done.is_set():
            logger.debug("turn worker still busy after cancel, deferring join")
            return TurnResult("cancelled")

        self._worker = None
        worker.join()
        if "exc" in box:
            raise box["exc"]
        result = box["result"]

        if self.verbose and result.outcome in ("done", "loop_limit"):
            fmt.status_line(
                time.monotonic() - started, self.agent.get_stats(), self._tokens
            )
        return result


# -- REPL --------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info("Available commands:")
    for command, description in (
        ("/help", "Show this help message"),
        ("/clear", "Reset the conversation"),
        ("/plan", "Toggle plan mode (read-only exploration)"),
        ("/status, /stats", "Show session and context statistics"),
        ("/cd <dir>", "Change the working directory"),
        ("/save [name]", "Save the conversation"),
        ("/load [name|n]", "List saved conversations, or load one"),
        ("/compact", "Compact the conversation context now"),
        ("/model [name]", "Show or switch the model (saved to global config)"),
        ("/config", "Show the effective configuration"),
        ("/exit, /quit", "Exit the REPL"),
        ('"""', "Start or end multi-line input"),
    ):
        fmt.help_line(command, description)


def _repl_cd(arg: str, agent: Agent, context: ToolContext) -> None:
    if not arg:
        fmt.info(f"cwd: {context.cwd}")
        return
    try:
        target = context.set_cwd(arg)
    except ValueError as e:
        fmt.warning(str(e))
        return
    agent.refresh_system_prompt()
    fmt.info(f"cwd: {target}")


def _repl_save(arg: str, agent: Agent) -> None:
    messages = agent.get_messages()
    if not messages:
        fmt.warning("nothing to save yet")
        return
    try:
        path = save_conversation(messages, arg or None)
    except OSError as e:
        fmt.error(f"failed to save conversation: {e}")
        return
    fmt.info(f"saved {len(messages)} messages to {path}")


def _repl_load(arg: str, agent: Agent) -> None:
    if not arg:
        entries = list_conversations()
        if not entries:
            fmt.info("no saved conversations")
            return
        for i, entry in enumerate(entries, 1):
            fmt.info(
                f"{i:>3}. {entry['filename']}  {entry['saved_at']}  "
                f"({entry['message_count']} messages)"
            )
        return
    messages = load_conversation(arg)
    if messages is None:
        fmt.warning(f"no saved conversation matches {arg!r}")
        return
    agent.set_messages(messages)
    agent.refresh_system_prompt()
    fmt.info(f"loaded {len(messages)} messages")


def _repl_compact(agent: Agent) -> None:
    before_tokens = agent.get_stats()["used"]
    before, after = agent.compact()
    if before == after:
        fmt.info("nothing to compact")
        return
    after_tokens = agent.get_stats()["used"]
    fmt.compacted(before, after)
    fmt.info(f"~{before_tokens} -> ~{after_tokens} tokens")


def _repl_model(arg: str, agent: Agent) -> None:
    if not arg:
        fmt.info(f"model: {agent.model}")
        return
    agent.model = arg
    try:
        path = save_config_value("model", arg)
    except (OSError, ConfigError) as e:
        fmt.warning(f"model switched for this session only: {e}")
        return
    fmt.info(f"model: {arg} (saved to {path})")


def _repl_config(agent: Agent, context: ToolContext) -> None:
    for key, value in (
        ("base_url", agent.base_url),
        ("model", agent.model),
        ("max_context_tokens", agent.max_context_tokens),
        ("compact_threshold", agent.compact_threshold),
        ("command_timeout", context.command_timeout),
        ("max_tool_result_size", context.max_result_size),
        ("max_loops", agent.max_loops),
        ("config_dir", global_config_dir()),
    ):
        fmt.info(f"{key} = {value}")


def _read_multiline(session, opener: str) -> str | None:
    """Collect lines until a line equal to ``opener``. None on Ctrl-C/Ctrl-D."""
    lines = []
    while True:
        try:
            line = session.prompt("... ")
        except (EOFError, KeyboardInterrupt):
            return None
        if line.strip() == opener:
            return "\n".join(lines)
        lines.append(line)


def repl_loop(agent: Agent, context: ToolContext, *, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = global_config_dir() / "repl_history"
    os.makedirs(history_path.parent, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    runner = TurnRunner(agent, verbose=verbose)

    if verbose:
        fmt.banner(agent.model, agent.base_url, str(context.cwd), context.plan_mode)

    while True:
        style = "bold fg:ansiyellow" if context.plan_mode else "bold fg:ansigreen"
        label = "plan> " if context.plan_mode else "qwen> "
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(FormattedText([(style, label)]))
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        stripped = line.strip()
        if not stripped:
            continue

        if stripped in MULTILINE_DELIMITERS:
            text = _read_multiline(session, stripped)
            if not text or not text.strip():
                continue
            line = text
        elif stripped.startswith("/"):
            cmd_parts = stripped.split(None, 1)
            cmd = cmd_parts[0].lower()
            cmd_arg = cmd_parts[1].strip() if len(cmd_parts) > 1 else ""

            if cmd in ("/exit", "/quit"):
                break
            elif cmd == "/help":
                _repl_help()
            elif cmd == "/clear":
                runner.wait_idle()
                agent.clear_history()
                fmt.info("conversation cleared")
            elif cmd == "/plan":
                context.set_plan_mode(not context.plan_mode)
                agent.refresh_system_prompt()
                fmt.plan_mode(context.plan_mode)
            elif cmd in ("/status", "/stats"):
                fmt.stats_table(
                    agent.get_stats(),
                    model=agent.model,
                    base_url=agent.base_url,
                    cwd=str(context.cwd),
                    plan=context.plan_mode,
                )
            elif cmd == "/cd":
                _repl_cd(cmd_arg, agent, context)
            elif cmd == "/save":
                _repl_save(cmd_arg, agent)
            elif cmd == "/load":
                runner.wait_idle()
                _repl_load(cmd_arg, agent)
            elif cmd == "/compact":
                runner.wait_idle()
                _repl_compact(agent)
            elif cmd == "/model":
                _repl_model(cmd_arg, agent)
            elif cmd == "/config":
                _repl_config(agent, context)
            else:
                fmt.warning(f"unknown command {cmd}, type /help for the list")
            continue
        else:
            line = stripped

        result = runner.run(line)
        if result.outcome == "cancelled":
            fmt.warning("Interrupted.")


if __name__ == "__main__":
    main()

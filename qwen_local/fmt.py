"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

MAX_PREVIEW_LINES = 6
MAX_ARG_PREVIEW = 120


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def get_console() -> Console:
    return _console


# -- Session -----------------------------------------------------------------


def banner(model: str, base_url: str, cwd: str, plan_mode: bool = False) -> None:
    _console.print(Rule("qwen-local", style="cyan"))
    _console.print(Text(f"  model: {model}   server: {base_url}", style="dim"))
    _console.print(Text(f"  cwd:   {cwd}", style="dim"))
    if plan_mode:
        _console.print(Text("  PLAN MODE (read-only)", style="bold yellow"))
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )


def thinking_spinner(label: str = "Thinking"):
    """Return a Rich Status that spins on stderr while the model loads."""
    return _console.status(f"  {label}", spinner="dots")


def plan_mode(enabled: bool) -> None:
    if enabled:
        _console.print(
            Text("  Plan mode ON: read-only exploration, no file edits.", style="yellow")
        )
    else:
        _console.print(Text("  Plan mode OFF: full access restored.", style="green"))


# -- Tool calls --------------------------------------------------------------


def _args_summary(args: dict) -> str:
    parts = []
    for key, value in args.items():
        text = value if isinstance(value, str) else repr(value)
        text = text.replace("\n", "\\n")
        if len(text) > MAX_ARG_PREVIEW:
            text = text[:MAX_ARG_PREVIEW] + "..."
        parts.append(f"{key}={text}")
    return ", ".join(parts)


def tool_call(name: str, args: dict) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    summary = _args_summary(args)
    if summary:
        header.append(f"  {summary}", style="dim")
    _console.print(header)


def tool_result(name: str, result: str) -> None:
    if result.startswith(("error:", "Unknown tool:", "BLOCKED:", "Exit code:")):
        tool_error(name, result.split("\n", 1)[0])
        return
    lines = result.splitlines()
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {len(lines)} lines, {len(result)} chars", style="dim green")
    _console.print(header)
    for line in lines[:MAX_PREVIEW_LINES]:
        _console.print(Text(f"    {line}", style="dim"))
    if len(lines) > MAX_PREVIEW_LINES:
        _console.print(
            Text(f"    ... ({len(lines) - MAX_PREVIEW_LINES} more lines)", style="dim")
        )


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Context -----------------------------------------------------------------


def compacted(before: int, after: int) -> None:
    _console.print(
        Text(
            f"  [context compacted: {before} -> {after} messages]",
            style="yellow",
        )
    )


def context_bar(stats: dict, width: int = 20) -> Text:
    """Render ``[#####.....] 42% (1234/32768)`` coloured by usage."""
    pct = stats.get("pct", 0)
    filled = min(width, round(width * pct / 100))
    style = "green" if pct < 50 else "yellow" if pct < 75 else "red"
    bar = Text()
    bar.append("[")
    bar.append("#" * filled, style=style)
    bar.append("." * (width - filled), style="dim")
    bar.append(f"] {pct}% ({stats.get('used', 0)}/{stats.get('max', 0)})")
    return bar


def status_line(elapsed: float, stats: dict, tokens: int = 0) -> None:
    line = Text("  ", style="dim")
    line.append(f"{elapsed:.1f}s  ", style="dim")
    line.append_text(context_bar(stats))
    line.append(f"  {stats.get('message_count', 0)} msgs", style="dim")
    line.append(f"  {stats.get('total_tool_calls', 0)} tool calls", style="dim")
    if tokens and elapsed > 0:
        line.append(f"  ~{tokens / elapsed:.1f} tok/s", style="dim")
    _console.print(line)


def stats_table(stats: dict, *, model: str, base_url: str, cwd: str, plan: bool) -> None:
    rows = [
        ("model", model),
        ("server", base_url),
        ("cwd", cwd),
        ("mode", "plan" if plan else "normal"),
        ("messages", str(stats.get("message_count", 0))),
        ("turns", str(stats.get("total_turns", 0))),
        ("tool calls", str(stats.get("total_tool_calls", 0))),
    ]
    for label, value in rows:
        line = Text()
        line.append(f"  {label:<11}", style="bold")
        line.append(value)
        _console.print(line)
    line = Text()
    line.append(f"  {'context':<11}", style="bold")
    line.append_text(context_bar(stats))
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def help_line(command: str, description: str) -> None:
    _console.print(f"  [bold cyan]{escape(command):<18}[/bold cyan] {escape(description)}")

"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO

from rich.console import Console

from qwen_local import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=120)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestToolCall:
    def test_basic(self):
        out = _capture(fmt.tool_call, "read_file", {"path": "src/main.py"})
        assert "read_file" in out
        assert "path=src/main.py" in out

    def test_long_argument_truncated(self):
        out = _capture(fmt.tool_call, "write_file", {"content": "x" * 500})
        assert "x" * fmt.MAX_ARG_PREVIEW + "..." in out
        assert "x" * (fmt.MAX_ARG_PREVIEW + 1) not in out

    def test_non_string_values(self):
        out = _capture(fmt.tool_call, "read_file", {"offset": 10})
        assert "offset=10" in out


class TestToolResult:
    def test_preview(self):
        result = "\n".join(f"line {i}" for i in range(10))
        out = _capture(fmt.tool_result, "list_files", result)
        assert "list_files" in out
        assert "10 lines" in out
        assert "line 5" in out
        assert "line 6" not in out
        assert "4 more lines" in out

    def test_error_routed_to_tool_error(self):
        out = _capture(fmt.tool_result, "read_file", "error: File not found: x\ndetail")
        assert "✗ read_file" in out
        assert "File not found" in out
        assert "detail" not in out

    def test_non_zero_exit_is_error(self):
        out = _capture(fmt.tool_result, "run_command", "Exit code: 1\nboom")
        assert "✗ run_command" in out


class TestContextBar:
    def test_rendering(self):
        bar = fmt.context_bar({"used": 500, "max": 1000, "pct": 50}, width=10)
        assert bar.plain == "[#####.....] 50% (500/1000)"

    def test_full(self):
        bar = fmt.context_bar({"used": 2000, "max": 1000, "pct": 200}, width=4)
        assert bar.plain.startswith("[####]")


class TestStatus:
    def test_status_line(self):
        stats = {"used": 10, "max": 100, "pct": 10, "message_count": 4, "total_tool_calls": 2}
        out = _capture(fmt.status_line, 2.0, stats, 50)
        assert "2.0s" in out
        assert "4 msgs" in out
        assert "2 tool calls" in out
        assert "~25.0 tok/s" in out

    def test_stats_table(self):
        stats = {"used": 10, "max": 100, "pct": 10, "message_count": 4,
                 "total_tool_calls": 2, "total_turns": 1}
        out = _capture(
            fmt.stats_table, stats, model="qwen", base_url="http://h", cwd="/w", plan=True
        )
        assert "qwen" in out
        assert "plan" in out
        assert "10% (10/100)" in out


class TestDiagnostics:
    def test_warning(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")

    def test_error(self):
        assert "Error: bad" in _capture(fmt.error, "bad")

    def test_compacted(self):
        assert "20 -> 8 messages" in _capture(fmt.compacted, 20, 8)

    def test_help_line_escapes_markup(self):
        out = _capture(fmt.help_line, "/load [name|n]", "Load one")
        assert "/load [name|n]" in out
        assert "Load one" in out

    def test_plan_mode(self):
        assert "Plan mode ON" in _capture(fmt.plan_mode, True)
        assert "Plan mode OFF" in _capture(fmt.plan_mode, False)

"""Tool catalog and implementations for the coding agent."""

import fnmatch
import logging
import os
import re
import subprocess
import sys
from pathlib import Path, PurePath

logger = logging.getLogger(__name__)

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read the contents of a file. Use this before editing any file. "
                "Supports optional line range."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Absolute or relative path to the file to read",
                    },
                    "start_line": {
                        "type": "integer",
                        "description": "Optional starting line number (1-indexed)",
                    },
                    "end_line": {
                        "type": "integer",
                        "description": "Optional ending line number (1-indexed, inclusive)",
                    },
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Create a new file or completely overwrite an existing file with new content."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Absolute or relative path to the file to write",
                    },
                    "content": {
                        "type": "string",
                        "description": "The full content to write to the file",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "edit_file",
            "description": (
                "Make a surgical edit to a file by replacing a specific string with a new string. "
                "The old_string must match exactly (including whitespace and indentation)."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Absolute or relative path to the file to edit",
                    },
                    "old_string": {
                        "type": "string",
                        "description": "The exact string to find and replace. Must be unique in the file.",
                    },
                    "new_string": {
                        "type": "string",
                        "description": "The string to replace old_string with",
                    },
                },
                "required": ["path", "old_string", "new_string"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": (
                "Execute a shell command and return its stdout and stderr. "
                "Use for git, build tools, tests, etc."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The shell command to execute",
                    },
                    "cwd": {
                        "type": "string",
                        "description": (
                            "Optional working directory for the command "
                            "(defaults to current working directory)"
                        ),
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": "List files and directories. Use to understand project structure.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Directory path to list (defaults to current directory)",
                    },
                    "recursive": {
                        "type": "boolean",
                        "description": (
                            "If true, list files recursively (max 200 entries). Defaults to false."
                        ),
                    },
                },
                "required": [],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_files",
            "description": (
                "Search file contents using a regex pattern (like grep). "
                "Returns matching lines with file paths and line numbers."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Regex pattern to search for",
                    },
                    "path": {
                        "type": "string",
                        "description": "Directory or file to search in (defaults to current directory)",
                    },
                    "file_pattern": {
                        "type": "string",
                        "description": "Optional glob pattern to filter files (e.g. '*.js', '*.py')",
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "find_files",
            "description": "Find files by name using a glob pattern. Returns matching file paths.",
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Glob pattern to match (e.g. '**/*.js', 'src/**/*.ts', '*.json')",
                    },
                    "path": {
                        "type": "string",
                        "description": "Base directory to search from (defaults to current directory)",
                    },
                },
                "required": ["pattern"],
            },
        },
    },
]

TOOL_NAMES = [t["function"]["name"] for t in TOOLS]
_SCHEMAS = {t["function"]["name"]: t["function"]["parameters"] for t in TOOLS}

MAX_READ_BYTES = 1024 * 1024  # 1 MB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_ENTRIES = 200
MAX_SEARCH_RESULTS = 50
MAX_FIND_RESULTS = 100
MAX_SEARCH_FILE_BYTES = 512 * 1024
MAX_WALK_DEPTH = 10
_KILL_WAIT_TIMEOUT = 5

SKIP_DIRS = {
    "node_modules",
    ".git",
    "__pycache__",
    ".next",
    "dist",
    ".cache",
    "coverage",
    ".tox",
    "venv",
    ".venv",
}

BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".woff", ".woff2", ".ttf", ".eot",
    ".pdf", ".zip", ".tar", ".gz", ".bz2", ".xz", ".exe", ".dll", ".so",
    ".dylib", ".bin", ".obj", ".o", ".a", ".lib", ".class", ".jar", ".war",
    ".pyc", ".pyo", ".wasm",
}  # fmt: skip

# Commands allowed while plan mode is on
READ_ONLY_PREFIXES = (
    "ls", "dir", "cat", "head", "tail", "type", "find", "grep", "rg",
    "git status", "git log", "git diff", "git show", "git branch", "git remote",
    "git stash list", "git tag", "git blame",
    "npm list", "npm ls", "npm view", "npm info", "npm outdated",
    "node -v", "npm -v", "python --version", "which", "where",
    "echo", "pwd", "whoami", "date", "wc",
)  # fmt: skip

_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


class ToolContext:
    """Per-session state shared by the tools and the prompt builder."""

    def __init__(
        self,
        cwd: str | os.PathLike,
        *,
        plan_mode: bool = False,
        command_timeout: float = 60,
        max_result_size: int = 8000,
    ):
        self._cwd = Path(cwd).resolve()
        self._plan_mode = plan_mode
        self.command_timeout = command_timeout
        self.max_result_size = max_result_size

    @property
    def cwd(self) -> Path:
        return self._cwd

    def set_cwd(self, path: str | os.PathLike) -> Path:
        """Change the working directory, resolved against the current one.

        Raises:
            ValueError: If the target is not an existing directory.
        """
        target = self.resolve_path(str(path))
        if not target.is_dir():
            raise ValueError(f"Directory not found: {target}")
        self._cwd = target
        return target

    @property
    def plan_mode(self) -> bool:
        return self._plan_mode

    def set_plan_mode(self, enabled: bool) -> None:
        self._plan_mode = bool(enabled)

    def resolve_path(self, p: str | None) -> Path:
        if not p:
            return self._cwd
        path = Path(p).expanduser()
        if path.is_absolute():
            return path.resolve()
        return (self._cwd / path).resolve()


def truncate(text: str, max_len: int = 2000) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"\n... (truncated, {len(text)} chars total)"


def is_read_only_command(command: str) -> bool:
    return command.strip().lower().startswith(READ_ONLY_PREFIXES)


def validate_tool_args(name: str, args) -> str | None:
    """Check arguments against the catalog schema for ``name``.

    Returns an ``error: ...`` string, or None when the arguments are valid.
    Unknown extra keys are ignored.
    """
    schema = _SCHEMAS.get(name)
    if schema is None:
        return f"error: no schema for tool {name!r}"
    if not isinstance(args, dict):
        return f"error: arguments for {name} must be an object"

    missing = [key for key in schema.get("required", []) if key not in args]
    if missing:
        return f"error: {name} missing required argument(s): {', '.join(missing)}"

    for key, prop in schema.get("properties", {}).items():
        if key not in args or args[key] is None:
            continue
        value = args[key]
        expected = _JSON_TYPES.get(prop.get("type"))
        if expected is not None:
            # bool is a subclass of int; only accept it where a boolean is expected
            if isinstance(value, bool) and bool not in expected:
                return f"error: {name}.{key} expected {prop['type']}, got boolean"
            if not isinstance(value, expected):
                return (
                    f"error: {name}.{key} expected {prop['type']}, "
                    f"got {type(value).__name__}"
                )
        if "enum" in prop and value not in prop["enum"]:
            return f"error: {name}.{key} must be one of {prop['enum']}"
    return None


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def _read_file(ctx: ToolContext, path: str, start_line=None, end_line=None) -> str:
    resolved = ctx.resolve_path(path)
    if not resolved.exists():
        return f"error: file not found: {resolved}"
    if resolved.is_dir():
        return f"error: {resolved} is a directory, not a file. Use list_files instead."
    size = resolved.stat().st_size
    if size > MAX_READ_BYTES:
        return (
            f"error: file is too large ({size / 1024 / 1024:.1f} MB). "
            "Use start_line/end_line to read a portion."
        )

    with open(resolved, "rb") as f:
        chunk = f.read(BINARY_CHECK_BYTES)
    if b"\x00" in chunk:
        return f"error: binary file detected: {resolved}"

    text = resolved.read_text(encoding="utf-8", errors="replace")
    lines = text.split("\n")

    if start_line or end_line:
        start = max(1, start_line or 1)
        end = min(len(lines), end_line or len(lines))
        numbered = "\n".join(
            f"{i:>5}  {line}" for i, line in enumerate(lines[start - 1 : end], start)
        )
        return (
            f"{resolved} (lines {start}-{end} of {len(lines)}):\n"
            f"{truncate(numbered, ctx.max_result_size)}"
        )

    numbered = "\n".join(f"{i:>5}  {line}" for i, line in enumerate(lines, 1))
    return f"{resolved} ({len(lines)} lines):\n{truncate(numbered, ctx.max_result_size)}"


def _write_file(ctx: ToolContext, path: str, content: str) -> str:
    resolved = ctx.resolve_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    line_count = len(content.split("\n"))
    return f"File written: {resolved} ({line_count} lines, {len(content)} bytes)"


def _edit_file(ctx: ToolContext, path: str, old_string: str, new_string: str) -> str:
    resolved = ctx.resolve_path(path)
    if not resolved.is_file():
        return f"error: file not found: {resolved}"
    if not old_string:
        return "error: old_string must not be empty"

    content = resolved.read_text(encoding="utf-8")
    occurrences = content.count(old_string)
    if occurrences == 0:
        preview = old_string[:100] + ("..." if len(old_string) > 100 else "")
        return (
            f"error: old_string not found in {resolved}.\n"
            f'Searched for: "{preview}"\n'
            "Make sure it matches exactly (including whitespace and indentation). "
            "Try reading the file first."
        )
    if occurrences > 1:
        return (
            f"error: old_string found {occurrences} times in {resolved}. "
            "It must be unique. Add more surrounding context to make it unique."
        )

    new_content = content.replace(old_string, new_string, 1)
    resolved.write_text(new_content, encoding="utf-8")
    return (
        f"File edited: {resolved} "
        f"(replaced 1 occurrence, {len(new_content.split(chr(10)))} lines total)"
    )


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _run_command(ctx: ToolContext, command: str, cwd: str | None = None) -> str:
    exec_cwd = ctx.resolve_path(cwd) if cwd else ctx.cwd
    if not exec_cwd.is_dir():
        return f"error: working directory does not exist: {exec_cwd}"

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=exec_cwd,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return f"error: failed to start shell command: {e}"

    try:
        stdout, stderr = proc.communicate(timeout=ctx.command_timeout)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        stdout, stderr = proc.communicate()
        partial = stdout.decode("utf-8", errors="replace")
        return truncate(
            f"error: command timed out after {ctx.command_timeout}s\n{partial}".strip(),
            ctx.max_result_size,
        )

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        return truncate(
            f"Exit code: {proc.returncode}\n{out}\n{err}".strip(), ctx.max_result_size
        )
    output = out + (f"\n(stderr): {err}" if err else "")
    return truncate(output or "(no output)", ctx.max_result_size)


def _list_files(ctx: ToolContext, path: str | None = None, recursive: bool = False) -> str:
    resolved = ctx.resolve_path(path)
    if not resolved.exists():
        return f"error: directory not found: {resolved}"
    if not resolved.is_dir():
        return f"error: path is not a directory: {resolved}"

    entries: list[str] = []

    def walk(directory: Path, prefix: str = "", depth: int = 0):
        if len(entries) >= MAX_LIST_ENTRIES or depth > MAX_WALK_DEPTH:
            return
        try:
            items = sorted(
                directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower())
            )
        except OSError:
            return
        for item in items:
            if len(entries) >= MAX_LIST_ENTRIES:
                break
            if item.is_dir():
                if item.name in SKIP_DIRS:
                    entries.append(f"{prefix}{item.name}/  (skipped)")
                    continue
                entries.append(f"{prefix}{item.name}/")
                if recursive:
                    walk(item, prefix + "  ", depth + 1)
            else:
                entries.append(f"{prefix}{item.name}")

    walk(resolved)
    label = " (recursive)" if recursive else ""
    result = f"{resolved}{label}:\n" + "\n".join(entries)
    if len(entries) >= MAX_LIST_ENTRIES:
        result += f"\n... (truncated at {MAX_LIST_ENTRIES} entries)"
    return result


def _iter_files(root: Path):
    """Yield files under root, pruning skipped directories and deep trees."""
    root_depth = len(root.parts)
    for dirpath, dirs, files in os.walk(root):
        depth = len(Path(dirpath).parts) - root_depth
        if depth >= MAX_WALK_DEPTH:
            dirs[:] = []
        else:
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
        for filename in sorted(files):
            yield Path(dirpath) / filename


def _search_files(
    ctx: ToolContext,
    pattern: str,
    path: str | None = None,
    file_pattern: str | None = None,
) -> str:
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        return f"error: invalid regex pattern: {e}"

    resolved = ctx.resolve_path(path)
    if not resolved.exists():
        return f"error: path does not exist: {resolved}"
    candidates = [resolved] if resolved.is_file() else _iter_files(resolved)

    results: list[str] = []
    for filepath in candidates:
        if len(results) >= MAX_SEARCH_RESULTS:
            break
        if file_pattern and not fnmatch.fnmatch(filepath.name, file_pattern):
            continue
        if filepath.suffix.lower() in BINARY_EXTENSIONS:
            continue
        try:
            if filepath.stat().st_size > MAX_SEARCH_FILE_BYTES:
                continue
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        rel = os.path.relpath(filepath, ctx.cwd)
        for line_no, line in enumerate(text.split("\n"), 1):
            if len(results) >= MAX_SEARCH_RESULTS:
                break
            if regex.search(line):
                results.append(f"{rel}:{line_no}: {line.rstrip()}")

    if not results:
        return f"No matches found for pattern: {pattern}"
    result = f"Found {len(results)} match(es):\n" + "\n".join(results)
    if len(results) >= MAX_SEARCH_RESULTS:
        result += f"\n... (truncated at {MAX_SEARCH_RESULTS} results)"
    return result


def _find_files(ctx: ToolContext, pattern: str, path: str | None = None) -> str:
    resolved = ctx.resolve_path(path)
    if not resolved.is_dir():
        return f"error: directory not found: {resolved}"

    results: list[str] = []
    for filepath in _iter_files(resolved):
        if len(results) >= MAX_FIND_RESULTS:
            break
        # Match the path relative to the search root, or the bare file name
        rel = PurePath(filepath.relative_to(resolved))
        if rel.full_match(pattern) or PurePath(filepath.name).full_match(pattern):
            results.append(os.path.relpath(filepath, ctx.cwd))

    if not results:
        return f"No files found matching pattern: {pattern}"
    result = f"Found {len(results)} file(s):\n" + "\n".join(results)
    if len(results) >= MAX_FIND_RESULTS:
        result += f"\n... (truncated at {MAX_FIND_RESULTS} results)"
    return result


_HANDLERS = {
    "read_file": _read_file,
    "write_file": _write_file,
    "edit_file": _edit_file,
    "run_command": _run_command,
    "list_files": _list_files,
    "search_files": _search_files,
    "find_files": _find_files,
}


def dispatch(name: str, args: dict, context: ToolContext) -> str:
    """Route a tool call to its implementation.

    Never raises: unknown tools, blocked calls, invalid arguments and
    implementation failures all come back as result strings.
    """
    handler = _HANDLERS.get(name)
    if handler is None:
        return f"Unknown tool: {name}"

    if not isinstance(args, dict):
        return f"error: arguments for {name} must be an object"

    if context.plan_mode:
        if name in ("write_file", "edit_file"):
            return (
                "BLOCKED: Plan mode is active. File modifications are not allowed. "
                "Use /plan to exit plan mode first."
            )
        if name == "run_command" and not is_read_only_command(
            str(args.get("command", ""))
        ):
            return (
                "BLOCKED: Plan mode is active. Only read-only commands are allowed. "
                f"Command {args.get('command')!r} appears to modify state. "
                "Use /plan to exit plan mode first."
            )

    error = validate_tool_args(name, args)
    if error:
        return error

    known = _SCHEMAS[name]["properties"]
    kwargs = {k: v for k, v in args.items() if k in known and v is not None}
    try:
        return handler(context, **kwargs)
    except Exception as e:
        logger.debug("tool %s failed", name, exc_info=True)
        return f"error: {e}"


class ToolExecutor:
    """Binds ``dispatch`` to one ``ToolContext``."""

    def __init__(self, context: ToolContext):
        self.context = context

    def execute(self, name: str, args: dict) -> str:
        return dispatch(name, args, self.context)

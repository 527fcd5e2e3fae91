"""Configuration file loading and merging for qwen-local.

Reads TOML config from ~/.config/qwen-local/config.toml (global) and
<base_dir>/qwen-local.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import json
import os
import re
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG_NAME = "qwen-local.toml"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "base_url": str,
    "model": str,
    "max_context_tokens": int,
    "compact_threshold": (int, float),
    "command_timeout": (int, float),
    "max_tool_result_size": int,
    "max_loops": int,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "base_url": "http://localhost:11434",
    "model": "qwen3-coder-cpu",
    "max_context_tokens": 32768,
    "compact_threshold": 0.75,
    "command_timeout": 60,
    "max_tool_result_size": 8000,
    "max_loops": 25,
    "color": False,
    "no_color": False,
    "quiet": False,
}

_POSITIVE_KEYS = (
    "max_context_tokens",
    "command_timeout",
    "max_tool_result_size",
    "max_loops",
)


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "qwen-local"
    return Path.home() / ".config" / "qwen-local"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    validate_values(config, source)


def validate_values(values: dict, source: str) -> None:
    """Range checks shared by config files and CLI flags."""
    threshold = values.get("compact_threshold")
    if threshold is not None and not 0 < threshold <= 1:
        raise ConfigError(
            f"{source}: 'compact_threshold' must be in (0, 1], got {threshold}"
        )
    for key in _POSITIVE_KEYS:
        value = values.get(key)
        if value is not None and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files
    (no defaults injected), plus ``config_dir``, the resolved global
    config directory.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = _load_single(project_path, str(project_path))

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Keys still holding _UNSET after the config pass get the hardcoded
    defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def _toml_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    # JSON string escapes are valid TOML basic-string escapes
    return json.dumps(str(value))


def save_config_value(key: str, value, path: Path | None = None) -> Path:
    """Set one key in a config file, keeping the rest of the file intact.

    Defaults to the global config file. Returns the path written.
    """
    if key not in CONFIG_KEYS:
        raise ConfigError(f"unknown config key {key!r}")
    if path is None:
        path = global_config_dir() / "config.toml"

    line = f"{key} = {_toml_value(value)}"
    pattern = re.compile(rf"^\s*{re.escape(key)}\s*=")

    lines = path.read_text(encoding="utf-8").splitlines() if path.is_file() else []
    for i, existing in enumerate(lines):
        if pattern.match(existing):
            lines[i] = line
            break
    else:
        lines.append(line)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    location = (
        f"<project>/{PROJECT_CONFIG_NAME}"
        if project
        else "~/.config/qwen-local/config.toml"
    )
    lines = [
        "# qwen-local configuration file",
        f"# {'Project' if project else 'Global'} config: {location}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Server / model ---",
        '# base_url = "http://localhost:11434"',
        '# model = "qwen3-coder-cpu"',
        "",
        "# --- Context ---",
        "# max_context_tokens = 32768",
        "# compact_threshold = 0.75     # compact once usage reaches this fraction",
        "",
        "# --- Tools ---",
        "# command_timeout = 60          # seconds",
        "# max_tool_result_size = 8000   # characters",
        "# max_loops = 25",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)

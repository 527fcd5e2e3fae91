"""Save and restore conversation transcripts as JSON files."""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from .config import global_config_dir

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
MAX_NAME_LENGTH = 50


def conversations_dir() -> Path:
    return global_config_dir() / "conversations"


def sanitize_name(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", name)[:MAX_NAME_LENGTH]


def save_conversation(
    messages: list[dict], name: str | None = None, directory: Path | None = None
) -> Path:
    """Write the transcript to ``<directory>/<name>.json`` and return its path."""
    directory = Path(directory) if directory is not None else conversations_dir()
    now = datetime.now(timezone.utc)
    if name:
        filename = f"{sanitize_name(name)}.json"
    else:
        filename = f"conversation-{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}.json"

    data = {
        "saved_at": now.isoformat(),
        "message_count": len(messages),
        "messages": messages,
    }
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


def list_conversations(directory: Path | None = None) -> list[dict]:
    """Saved conversations, newest first.

    Each entry has ``filename``, ``saved_at`` and ``message_count``.
    Unreadable files are listed with ``saved_at="unknown"``.
    """
    directory = Path(directory) if directory is not None else conversations_dir()
    if not directory.is_dir():
        return []

    entries = []
    for path in directory.glob("*.json"):
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            saved_at = data.get("saved_at") or datetime.fromtimestamp(
                path.stat().st_mtime, timezone.utc
            ).isoformat()
            entries.append(
                {
                    "filename": path.name,
                    "saved_at": saved_at,
                    "message_count": data.get("message_count", 0),
                }
            )
        except (OSError, ValueError, AttributeError):
            logger.debug("unreadable conversation file %s", path, exc_info=True)
            entries.append(
                {"filename": path.name, "saved_at": "unknown", "message_count": 0}
            )
    entries.sort(key=lambda e: e["saved_at"], reverse=True)
    return entries


def load_conversation(
    name_or_index: str | int, directory: Path | None = None
) -> list[dict] | None:
    """Load messages by 1-based list index or filename substring.

    Returns None when nothing matches or the file cannot be parsed.
    """
    directory = Path(directory) if directory is not None else conversations_dir()
    entries = list_conversations(directory)

    key = str(name_or_index)
    if key.isdigit():
        idx = int(key) - 1
        if not 0 <= idx < len(entries):
            return None
        match = entries[idx]
    else:
        lowered = key.lower()
        match = next((e for e in entries if lowered in e["filename"].lower()), None)
        if match is None:
            return None

    try:
        data = json.loads((directory / match["filename"]).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    messages = data.get("messages") if isinstance(data, dict) else None
    return messages if isinstance(messages, list) else []

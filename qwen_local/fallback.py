"""Recover tool calls that a model wrote into plain text.

Some local models describe a tool call as JSON in their reply instead of
using the structured ``tool_calls`` channel. Two scans are tried in order:
fenced code blocks, then bare ``{"name": ...}`` objects found by brace
matching. Only names present in the tool catalog are accepted.
"""

import json
import re
import uuid

_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_OPENING_RE = re.compile(r'\{\s*"name"\s*:\s*"([\w-]+)"')


def _make_call(name: str, arguments) -> dict:
    if isinstance(arguments, str):
        encoded = arguments
    else:
        encoded = json.dumps(arguments if arguments is not None else {})
    return {
        "id": f"call_text_{uuid.uuid4().hex[:12]}",
        "type": "function",
        "function": {"name": name, "arguments": encoded},
    }


def find_matching_brace(text: str, start: int) -> int | None:
    """Return the index of the brace closing the one at ``start``.

    Braces inside JSON string literals (including escaped quotes) are
    ignored. Returns None when the object is never closed.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _from_fences(content: str, tool_names) -> list[dict]:
    calls = []
    for match in _FENCE_RE.finditer(content):
        body = match.group(1).strip()
        if not body:
            continue
        try:
            obj = json.loads(body)
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue
        name = obj.get("name")
        if not isinstance(name, str) or name not in tool_names:
            continue
        calls.append(_make_call(name, obj.get("arguments", {})))
    return calls


def _from_bare_objects(content: str, tool_names) -> list[dict]:
    calls = []
    pos = 0
    while True:
        match = _OPENING_RE.search(content, pos)
        if match is None:
            break
        if match.group(1) not in tool_names:
            pos = match.end()
            continue
        end = find_matching_brace(content, match.start())
        if end is None:
            pos = match.end()
            continue
        try:
            obj = json.loads(content[match.start() : end + 1])
        except json.JSONDecodeError:
            pos = match.end()
            continue
        if (
            isinstance(obj, dict)
            and obj.get("name") in tool_names
            and "arguments" in obj
        ):
            calls.append(_make_call(obj["name"], obj["arguments"]))
            pos = end + 1
        else:
            pos = match.end()
    return calls


def extract_text_tool_calls(content: str | None, tool_names) -> list[dict]:
    """Extract tool calls embedded in assistant text.

    Returns a (possibly empty) list of tool-call dicts in wire shape.
    """
    if not content:
        return []
    names = set(tool_names)
    if not names:
        return []
    calls = _from_fences(content, names)
    if calls:
        return calls
    return _from_bare_objects(content, names)

"""Server-sent-event decoding for streamed chat completions.

Two layers:

- ``iter_sse_chunks`` turns a byte stream into parsed JSON chunks,
  dropping anything that is not a ``data: {json}`` line.
- ``iter_stream_events`` turns those chunks into typed events
  (``TextFragment``, ``ToolCallFragment``, ``StreamEnd``).

Both are lazy, finite and not restartable.
"""

import http.client
import json
import logging
from dataclasses import dataclass

from .report import StreamReadError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
READ_SIZE = 4096


@dataclass
class TextFragment:
    text: str


@dataclass
class ToolCallFragment:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamEnd:
    pass


def _parse_line(raw: bytes) -> dict | None:
    """Parse one SSE line. Returns None for anything that isn't a JSON chunk."""
    line = raw.decode("utf-8", errors="replace").strip()
    if not line or not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :]
    if data == DONE_SENTINEL:
        return None
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("skipping malformed SSE payload: %.200s", data)
        return None
    if not isinstance(chunk, dict):
        return None
    return chunk


def iter_sse_chunks(stream, *, cancel=None, read_size: int = READ_SIZE):
    """Yield parsed JSON chunks from a readable byte stream.

    ``stream`` only needs a ``read(n)`` method returning bytes (b"" at EOF);
    ``read1(n)`` is preferred when present.
    Lines split across reads are reassembled before decoding. Stops early,
    without raising, once ``cancel`` is set.

    Raises:
        StreamReadError: If a read fails with a transport error, or with
            anything at all once ``cancel`` is set.
    """
    # read1 returns whatever has arrived instead of waiting for read_size bytes
    read = getattr(stream, "read1", None) or stream.read
    buf = b""
    while True:
        if cancel is not None and cancel.cancelled:
            return
        try:
            data = read(read_size)
        except (OSError, ValueError, http.client.HTTPException) as e:
            raise StreamReadError(f"stream read failed: {e}") from e
        except Exception as e:
            if cancel is None or not cancel.cancelled:
                raise
            raise StreamReadError(f"stream read failed after cancel: {e}") from e
        if cancel is not None and cancel.cancelled:
            return
        if not data:
            break
        buf += data
        while b"\n" in buf:
            line, buf = buf.split(b"\n", 1)
            chunk = _parse_line(line)
            if chunk is not None:
                yield chunk
                if cancel is not None and cancel.cancelled:
                    return

    # Unterminated final line
    if buf:
        chunk = _parse_line(buf)
        if chunk is not None:
            yield chunk


def _delta_of(chunk: dict) -> dict | None:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    return delta if isinstance(delta, dict) else None


def iter_stream_events(chunks):
    """Translate completion chunks into stream events, ending with StreamEnd."""
    for chunk in chunks:
        delta = _delta_of(chunk)
        if delta is None:
            continue

        content = delta.get("content")
        if isinstance(content, str) and content:
            yield TextFragment(content)

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for tc in tool_calls:
                if not isinstance(tc, dict):
                    continue
                fn = tc.get("function") or {}
                index = tc.get("index")
                yield ToolCallFragment(
                    index=index if isinstance(index, int) else 0,
                    id=tc.get("id") or None,
                    name=fn.get("name") or None,
                    arguments=fn.get("arguments") or None,
                )
    yield StreamEnd()

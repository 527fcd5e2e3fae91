"""Agent session: drives one user message through repeated model round trips.

A turn streams a completion, appends the assistant message, runs any tool
calls it asked for, appends their results and repeats until the model
answers in plain text, the turn is cancelled, a request fails or the
round-trip limit is hit. Nothing in that path raises out of ``Agent.chat``.
"""

import functools
import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable

from .accumulator import ToolCallAccumulator
from .cancel import CancelToken
from .context import compact_messages, context_stats, should_compact
from .fallback import extract_text_tool_calls
from .report import StreamReadError
from .sse import (
    StreamEnd,
    TextFragment,
    ToolCallFragment,
    iter_sse_chunks,
    iter_stream_events,
)

logger = logging.getLogger(__name__)

MAX_LOOPS = 25
MAX_TOOL_RESULT_CHARS = 50_000
DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "qwen3-coder-cpu"
DEFAULT_MAX_CONTEXT_TOKENS = 32768
DEFAULT_COMPACT_THRESHOLD = 0.75
COMPLETIONS_PATH = "/v1/chat/completions"
SKIPPED_RESULT = "error: cancelled before execution"


@dataclass
class AgentCallbacks:
    """Optional observers for one turn. Return values are ignored."""

    on_text: Callable[[str], None] | None = None
    on_tool_call: Callable[[str, dict], None] | None = None
    on_tool_result: Callable[[str, str], None] | None = None
    on_error: Callable[[str], None] | None = None
    on_compact: Callable[[int, int], None] | None = None
    on_thinking: Callable[[bool], None] | None = None
    on_token: Callable[[int], None] | None = None


@dataclass
class TurnResult:
    """How a turn ended.

    outcome is one of "done", "cancelled", "loop_limit" or "error".
    """

    outcome: str
    answer: str | None = None
    round_trips: int = 0
    tool_calls: int = 0


def _emit(callback, *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.warning("callback %r raised", callback, exc_info=True)


def estimate_fragment_tokens(text: str) -> int:
    """Token estimate for one streamed fragment, rounded half up, at least 1."""
    return max(1, int(len(text) / 4 + 0.5))


def parse_tool_arguments(raw) -> dict:
    """Parse JSON-encoded tool arguments. Anything but a JSON object becomes {}."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.debug("unparseable tool arguments: %.200r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def cap_tool_result(result) -> str:
    text = result if isinstance(result, str) else str(result)
    if len(text) <= MAX_TOOL_RESULT_CHARS:
        return text
    return (
        text[:MAX_TOOL_RESULT_CHARS]
        + f"\n... (truncated, {len(text)} chars total)"
    )


class _Cancelled(Exception):
    pass


class _RequestFailed(Exception):
    pass


class Agent:
    """One conversation with a chat-completions server.

    ``execute_tool(name, args) -> str`` runs a tool; it should not raise,
    but an exception is still turned into an ``error:`` result.
    ``system_prompt`` is a string or a zero-argument callable returning one;
    the callable form lets ``refresh_system_prompt`` pick up state changes.

    The transcript is not locked. While a turn runs only its thread touches
    it; callers wait for the turn to finish before clearing or replacing it.
    """

    def __init__(
        self,
        *,
        execute_tool: Callable[[str, dict], str],
        tools: list | None = None,
        system_prompt: str | Callable[[], str] = "",
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        compact_threshold: float = DEFAULT_COMPACT_THRESHOLD,
        max_loops: int = MAX_LOOPS,
        request_timeout: float | None = None,
        abort_streams: bool = False,
    ):
        self.execute_tool = execute_tool
        self.tools = list(tools or [])
        self.tool_names = {t["function"]["name"] for t in self.tools}
        self.system_prompt = system_prompt
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_context_tokens = max_context_tokens
        self.compact_threshold = compact_threshold
        self.max_loops = max_loops
        self.request_timeout = request_timeout
        self.abort_streams = abort_streams

        self.cancel_token = CancelToken()
        self.messages: list[dict] = []
        self.total_tool_calls = 0
        self.total_turns = 0

    # -- session control -------------------------------------------------

    def cancel(self) -> bool:
        """Request cancellation of the running turn. Safe from any thread."""
        return self.cancel_token.cancel()

    def clear_history(self) -> None:
        self.messages = []
        self.total_tool_calls = 0
        self.total_turns = 0

    def get_messages(self) -> list[dict]:
        return self.messages

    def set_messages(self, messages: list[dict]) -> None:
        """Replace the transcript, e.g. with a loaded conversation."""
        self.messages = list(messages)

    def refresh_system_prompt(self) -> None:
        """Rebuild the system message in place after cwd or mode changes."""
        prompt = self._render_system_prompt()
        if self.messages and self.messages[0].get("role") == "system":
            self.messages[0] = {"role": "system", "content": prompt}

    def get_stats(self) -> dict:
        stats = context_stats(self.messages, self.max_context_tokens)
        stats.update(
            message_count=len(self.messages),
            total_tool_calls=self.total_tool_calls,
            total_turns=self.total_turns,
        )
        return stats

    def compact(self) -> tuple[int, int]:
        """Compact the transcript now. Returns (before, after) message counts."""
        before = len(self.messages)
        self.messages = compact_messages(self.messages)
        return before, len(self.messages)

    # -- turn ------------------------------------------------------------

    def chat(self, message: str, callbacks: AgentCallbacks | None = None) -> TurnResult:
        """Run one user turn to completion, cancellation or failure."""
        cb = callbacks or AgentCallbacks()
        self.cancel_token.reset()

        if not self.messages:
            self.messages.append(
                {"role": "system", "content": self._render_system_prompt()}
            )
        self.messages.append({"role": "user", "content": message})
        self.total_turns += 1
        self._maybe_compact(cb)

        round_trips = 0
        tool_calls_run = 0

        def result(outcome, answer=None):
            return TurnResult(outcome, answer, round_trips, tool_calls_run)

        while round_trips < self.max_loops:
            if self.cancel_token.cancelled:
                return result("cancelled")
            round_trips += 1

            try:
                assistant = self._stream_response(cb)
            except _Cancelled:
                return result("cancelled")
            except _RequestFailed:
                return result("error")

            # A message received after cancellation is dropped so the
            # transcript never ends with unanswered tool calls.
            if self.cancel_token.cancelled:
                return result("cancelled")

            if assistant is None:
                logger.debug("empty response from model, ending turn")
                return result("done", "")

            self.messages.append(assistant)
            calls = assistant.get("tool_calls") or []
            if not calls:
                return result("done", assistant.get("content") or "")

            for i, call in enumerate(calls):
                if self.cancel_token.cancelled:
                    self._skip_calls(calls[i:])
                    return result("cancelled")

                fn = call.get("function") or {}
                name = fn.get("name", "")
                args = parse_tool_arguments(fn.get("arguments"))

                self.total_tool_calls += 1
                tool_calls_run += 1
                _emit(cb.on_tool_call, name, args)
                try:
                    output = self.execute_tool(name, args)
                except Exception as e:
                    logger.debug("tool %s raised", name, exc_info=True)
                    output = f"error: {e}"
                output = cap_tool_result(output)

                self.messages.append(
                    {"role": "tool", "tool_call_id": call["id"], "content": output}
                )
                _emit(cb.on_tool_result, name, output)

                if self.cancel_token.cancelled:
                    self._skip_calls(calls[i + 1 :])
                    return result("cancelled")

            self._maybe_compact(cb)

        _emit(
            cb.on_error,
            f"Agent loop hit safety limit ({self.max_loops} iterations). "
            "Stopping to prevent runaway.",
        )
        return result("loop_limit")

    # -- internals -------------------------------------------------------

    def _render_system_prompt(self) -> str:
        if callable(self.system_prompt):
            return self.system_prompt()
        return self.system_prompt

    def _maybe_compact(self, cb: AgentCallbacks) -> None:
        if not should_compact(
            self.messages, self.max_context_tokens, self.compact_threshold
        ):
            return
        before, after = self.compact()
        if after != before:
            _emit(cb.on_compact, before, after)

    def _skip_calls(self, calls: list) -> None:
        for call in calls:
            self.messages.append(
                {"role": "tool", "tool_call_id": call["id"], "content": SKIPPED_RESULT}
            )

    def open_completion_stream(self):
        """POST the transcript and return the streaming HTTP response."""
        body = {
            "model": self.model,
            "messages": self.messages,
            "stream": True,
        }
        if self.tools:
            body["tools"] = self.tools
        req = urllib.request.Request(
            self.base_url + COMPLETIONS_PATH,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
            },
            method="POST",
        )
        return urllib.request.urlopen(req, timeout=self.request_timeout)

    def _stream_response(self, cb: AgentCallbacks) -> dict | None:
        """Stream one completion into an assistant message.

        Returns None when the model produced neither text nor tool calls.

        Raises:
            _Cancelled: The token was set and the stream was cut short.
            _RequestFailed: Connection, HTTP or read failure.
        """
        thinking = True
        _emit(cb.on_thinking, True)

        def stop_thinking():
            nonlocal thinking
            if thinking:
                thinking = False
                _emit(cb.on_thinking, False)

        try:
            resp = self.open_completion_stream()
        except urllib.error.HTTPError as e:
            stop_thinking()
            detail = _read_error_body(e)
            _emit(cb.on_error, f"API error ({e.code}): {detail}")
            raise _RequestFailed from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            stop_thinking()
            if self.cancel_token.cancelled:
                raise _Cancelled from e
            reason = getattr(e, "reason", e)
            _emit(
                cb.on_error,
                f"Failed to connect to {self.base_url}. Is the server running? ({reason})",
            )
            raise _RequestFailed from e

        abort = functools.partial(_shutdown_read, resp)
        if self.abort_streams:
            self.cancel_token.add_abort_callback(abort)

        parts: list[str] = []
        acc = ToolCallAccumulator()
        try:
            chunks = iter_sse_chunks(resp, cancel=self.cancel_token)
            for event in iter_stream_events(chunks):
                if isinstance(event, TextFragment):
                    stop_thinking()
                    parts.append(event.text)
                    _emit(cb.on_text, event.text)
                    _emit(cb.on_token, estimate_fragment_tokens(event.text))
                elif isinstance(event, ToolCallFragment):
                    stop_thinking()
                    acc.add_fragment(event)
                    if event.arguments:
                        _emit(cb.on_token, estimate_fragment_tokens(event.arguments))
                elif isinstance(event, StreamEnd):
                    stop_thinking()
        except StreamReadError as e:
            stop_thinking()
            if self.cancel_token.cancelled:
                raise _Cancelled from e
            logger.debug("stream read failed, dropping partial response: %s", e)
            raise _RequestFailed from e
        finally:
            if self.abort_streams:
                self.cancel_token.remove_abort_callback(abort)
            resp.close()

        if self.cancel_token.cancelled:
            raise _Cancelled

        content = "".join(parts)
        tool_calls = acc.tool_calls()
        if not tool_calls and content:
            tool_calls = extract_text_tool_calls(content, self.tool_names)

        if not content and not tool_calls:
            return None
        msg: dict = {"role": "assistant"}
        if content:
            msg["content"] = content
        if tool_calls:
            msg["tool_calls"] = tool_calls
        return msg


def _read_error_body(e: urllib.error.HTTPError) -> str:
    try:
        return e.read().decode("utf-8", errors="replace").strip() or str(e.reason)
    except (OSError, AttributeError):
        return str(e.reason)


def _shutdown_read(resp) -> None:
    """Wake a reader blocked on ``resp`` by shutting down the socket's read side.

    The response stays open; only the thread reading it closes it.
    """
    raw = getattr(getattr(resp, "fp", None), "raw", None)
    sock = getattr(raw, "_sock", None)
    if not isinstance(sock, socket.socket):
        return
    try:
        sock.shutdown(socket.SHUT_RD)
    except OSError:
        logger.debug("socket shutdown failed", exc_info=True)

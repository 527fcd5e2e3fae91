"""Context window budgeting and conversation compaction.

Token counts are a characters / 4 approximation, not a real tokenizer.
"""

import math

MESSAGE_OVERHEAD = 4
MIN_MESSAGES_TO_COMPACT = 5
MIN_KEEP = 6
KEEP_RATIO = 0.3
PREVIEW_CHARS = 150

COMPACT_ACK = (
    "Understood. I have the context from our earlier conversation. "
    "How can I continue helping you?"
)


def estimate_text_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_message_tokens(msg: dict) -> int:
    tokens = MESSAGE_OVERHEAD + estimate_text_tokens(msg.get("content"))
    for tc in msg.get("tool_calls") or []:
        fn = tc.get("function") or {}
        tokens += estimate_text_tokens(fn.get("name"))
        tokens += estimate_text_tokens(fn.get("arguments"))
    return tokens


def count_context_tokens(messages: list) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


def should_compact(
    messages: list, max_context_tokens: int, compact_threshold: float
) -> bool:
    """True once estimated usage reaches ``max_context_tokens * compact_threshold``."""
    return count_context_tokens(messages) >= max_context_tokens * compact_threshold


def _summary_line(msg: dict) -> str | None:
    role = msg.get("role")
    if role == "user":
        return f"- User asked: {(msg.get('content') or '')[:PREVIEW_CHARS]}"
    if role == "assistant" and msg.get("tool_calls"):
        names = ", ".join(
            (tc.get("function") or {}).get("name", "") for tc in msg["tool_calls"]
        )
        return f"- Assistant used tools: {names}"
    if role == "assistant" and msg.get("content"):
        return f"- Assistant responded: {msg['content'][:PREVIEW_CHARS]}"
    # tool results are left out of the summary
    return None


def compact_messages(messages: list) -> list:
    """Summarize older messages, keeping the system message and recent tail.

    Returns a new list; ``messages`` is not modified. Returns ``messages``
    itself when there is nothing to compact.
    """
    if len(messages) < MIN_MESSAGES_TO_COMPACT:
        return messages

    system_msg = messages[0] if messages[0].get("role") == "system" else None
    start = 1 if system_msg is not None else 0

    keep_count = max(MIN_KEEP, math.floor(len(messages) * KEEP_RATIO))
    cutoff = len(messages) - keep_count
    if cutoff <= start:
        return messages

    older = messages[start:cutoff]
    summary_parts = [line for line in map(_summary_line, older) if line is not None]
    summary_text = (
        "[Context compacted: earlier conversation summarized]\n\n"
        f"Previous conversation summary ({len(older)} messages compressed):\n"
        + "\n".join(summary_parts)
    )

    compacted = []
    if system_msg is not None:
        compacted.append(system_msg)
    compacted.append({"role": "user", "content": summary_text})
    compacted.append({"role": "assistant", "content": COMPACT_ACK})
    compacted.extend(messages[cutoff:])
    return compacted


def context_stats(messages: list, max_context_tokens: int) -> dict:
    used = count_context_tokens(messages)
    pct = round(used / max_context_tokens * 100) if max_context_tokens else 0
    return {"used": used, "max": max_context_tokens, "pct": pct}

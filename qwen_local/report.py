"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad types, out-of-range values)."""


class StreamReadError(AgentError):
    """Raised when reading the completion response body fails mid-stream."""


class ReportCollector:
    """Accumulates events during a one-shot run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.compactions = 0
        self.errors = 0
        self.tool_calls = 0
        self.tokens_streamed = 0

    def record_llm_call(self, latency: float):
        """Record one completion request and its time to first data."""
        self.llm_calls += 1
        self.events.append({"type": "llm_call", "latency": round(latency, 3)})

    def record_tool_call(self, name: str, arguments: dict | None):
        self.tool_calls += 1
        self.events.append({"type": "tool_call", "name": name, "arguments": arguments})

    def record_tool_result(self, name: str, result: str):
        succeeded = not result.startswith(("error:", "Unknown tool:", "BLOCKED:"))
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "type": "tool_result",
            "name": name,
            "succeeded": succeeded,
            "result_length": len(result),
        }
        if not succeeded:
            event["error"] = result.split("\n", 1)[0]
        self.events.append(event)

    def record_compaction(self, before: int, after: int):
        self.compactions += 1
        self.events.append(
            {"type": "compaction", "messages_before": before, "messages_after": after}
        )

    def record_error(self, message: str):
        self.errors += 1
        self.events.append({"type": "error", "message": message})

    def record_tokens(self, count: int):
        self.tokens_streamed += count

    def build_report(
        self,
        *,
        task: str,
        model: str,
        base_url: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        round_trips: int,
        stats: dict,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "base_url": base_url,
            "settings": settings,
            "result": {
                "outcome": outcome,
                "answer": answer,
                "exit_code": exit_code,
            },
            "stats": {
                "round_trips": round_trips,
                "llm_calls": self.llm_calls,
                "tool_calls_total": self.tool_calls,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "compactions": self.compactions,
                "errors": self.errors,
                "tokens_streamed_est": self.tokens_streamed,
                "context_tokens_est": stats.get("used", 0),
                "message_count": stats.get("message_count", 0),
            },
            "timeline": self.events,
        }

    def write(self, path: str, report: dict):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
            f.write("\n")

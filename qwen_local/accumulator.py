"""Reassembly of streamed, index-keyed tool-call fragments."""

import uuid


class ToolCallAccumulator:
    """Builds complete tool calls from fragments of one streamed response.

    Each index gets a fallback id on first sight; a server-issued id
    replaces it. Name and argument fragments are appended in arrival order.
    """

    def __init__(self, stream_id: str | None = None):
        self.stream_id = stream_id or uuid.uuid4().hex[:12]
        self._calls: dict[int, dict] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def add(
        self,
        index: int,
        id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> dict:
        call = self._calls.get(index)
        if call is None:
            call = {
                "id": f"call_{index}_{self.stream_id}",
                "type": "function",
                "function": {"name": "", "arguments": ""},
            }
            self._calls[index] = call
        if id:
            call["id"] = id
        if name:
            call["function"]["name"] += name
        if arguments:
            call["function"]["arguments"] += arguments
        return call

    def add_fragment(self, fragment) -> dict:
        """Add a ``ToolCallFragment``."""
        return self.add(
            fragment.index,
            id=fragment.id,
            name=fragment.name,
            arguments=fragment.arguments,
        )

    def tool_calls(self) -> list[dict]:
        """Completed tool calls, ordered by ascending index."""
        return [self._calls[i] for i in sorted(self._calls)]

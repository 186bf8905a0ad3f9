"""Reconstruction of streamed chat completions.

A server streams a completion as ``data: <json>`` frames terminated by
``data: [DONE]``. Each frame is normalised into a :class:`DeltaChunk`; the
:class:`StreamAccumulator` merges the chunks into one logical message and the
:class:`ToolCallAccumulator` reassembles tool calls whose arguments arrive in
fragments across many chunks, interleaved with fragments of other calls.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass, field

from pydantic import ValidationError

from servetest.errors import StreamDecodeError
from servetest.types import (
    ChatCompletionChunk,
    ResponseMessage,
    ToolCall,
    ToolCallFunction,
    Usage,
)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    type: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class DeltaChunk:
    """Normalised delta carried by one ``data:`` frame."""

    content_delta: str | None = None
    reasoning_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None

    @classmethod
    def from_chunk(cls, chunk: ChatCompletionChunk) -> DeltaChunk:
        """Build a delta from the first (and only) choice of a wire chunk."""
        delta = cls(usage=chunk.usage)
        if not chunk.choices:
            return delta
        choice = chunk.choices[0]
        delta.content_delta = choice.delta.content
        delta.reasoning_delta = choice.delta.reasoning_content
        delta.finish_reason = choice.finish_reason
        for tc in choice.delta.tool_calls or []:
            fn = tc.function
            delta.tool_call_fragments.append(ToolCallFragment(
                index=tc.index,
                call_id=tc.id,
                type=tc.type,
                name=fn.name if fn else None,
                arguments_delta=fn.arguments if fn else None,
            ))
        return delta


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    ``id``, ``type`` and ``name`` keep the most recent non-empty value seen
    for an index. Argument fragments are only ever concatenated.
    """

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = ToolCall(
                type="", function=ToolCallFunction(),
            )
        tc = self._pending[fragment.index]
        if fragment.call_id:
            tc.id = fragment.call_id
        if fragment.type:
            tc.type = fragment.type
        if fragment.name:
            tc.function.name = fragment.name
        if fragment.arguments_delta:
            tc.function.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order.

        Indexes need not be contiguous: every index observed is emitted.
        """
        return [self._pending[i] for i in sorted(self._pending)]


@dataclass
class StreamResult:
    """The reconstructed message of one streamed completion.

    Args:
        content: Concatenated content fragments.
        reasoning_content: Concatenated reasoning fragments.
        tool_calls: Completed tool calls ordered by index.
        usage: The last usage snapshot seen, if any.
        finish_reason: The last finish reason seen, if any.
        chunks: Every decoded chunk, in stream order.
        raw: Every line read from the stream, newline terminated.
    """

    content: str = ""
    reasoning_content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None
    chunks: list[ChatCompletionChunk] = field(default_factory=list)
    raw: str = ""

    def message(self) -> ResponseMessage:
        """View the result as the assistant message of a blocking response."""
        return ResponseMessage(
            content=self.content,
            reasoning_content=self.reasoning_content,
            tool_calls=self.tool_calls or None,
        )

    def chunks_jsonl(self) -> str:
        """Serialize the decoded chunks one JSON object per line for replay."""
        return "".join(
            chunk.model_dump_json(exclude_none=True) + "\n"
            for chunk in self.chunks
        )


class StreamAccumulator:
    """Per-stream state merging frames into a :class:`StreamResult`.

    One accumulator belongs to exactly one reconstruction; it is never
    shared between streams.
    """

    def __init__(self) -> None:
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self._tool_calls = ToolCallAccumulator()
        self._usage: Usage | None = None
        self._finish_reason: str | None = None
        self._chunks: list[ChatCompletionChunk] = []
        self._raw: list[str] = []

    @property
    def raw(self) -> str:
        return "".join(self._raw)

    def feed_line(self, line: str | bytes) -> bool:
        """Consume one line of the event stream.

        Returns ``False`` once the ``[DONE]`` sentinel has been read.

        Raises:
            StreamDecodeError: If a ``data:`` payload is not a valid chunk.
        """
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        line = line.rstrip("\r\n")
        self._raw.append(line + "\n")

        if not line.startswith(DATA_PREFIX):
            return True

        payload = line[len(DATA_PREFIX):]
        if payload == DONE_SENTINEL:
            return False

        try:
            chunk = ChatCompletionChunk.model_validate_json(payload)
        except ValidationError as e:
            raise StreamDecodeError(f"unmarshal chunk: {e}", raw=self.raw) from e

        self._chunks.append(chunk)
        self.feed(DeltaChunk.from_chunk(chunk))
        return True

    def feed(self, delta: DeltaChunk) -> None:
        if delta.usage is not None:
            self._usage = delta.usage
        if delta.finish_reason:
            self._finish_reason = delta.finish_reason
        if delta.content_delta:
            self._content.append(delta.content_delta)
        if delta.reasoning_delta:
            self._reasoning.append(delta.reasoning_delta)
        for fragment in delta.tool_call_fragments:
            self._tool_calls.feed(fragment)

    def result(self) -> StreamResult:
        return StreamResult(
            content="".join(self._content),
            reasoning_content="".join(self._reasoning),
            tool_calls=self._tool_calls.finalize(),
            usage=self._usage,
            finish_reason=self._finish_reason,
            chunks=list(self._chunks),
            raw=self.raw,
        )


def parse_sse_stream(lines: Iterable[str | bytes]) -> StreamResult:
    """Reconstruct a completion from an iterable of event-stream lines."""
    acc = StreamAccumulator()
    for line in lines:
        if not acc.feed_line(line):
            break
    return acc.result()


async def aparse_sse_stream(lines: AsyncIterable[str | bytes]) -> StreamResult:
    """Reconstruct a completion from an async iterable of event-stream lines."""
    acc = StreamAccumulator()
    async for line in lines:
        if not acc.feed_line(line):
            break
    return acc.result()

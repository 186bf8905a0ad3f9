"""Wire models for the OpenAI-compatible chat completions API.

Only the fields the evals inspect are modelled. Unknown fields sent by a
server are ignored, so extensions such as llama.cpp timings or vLLM
``stop_reason`` do not break decoding.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ToolFunction(BaseModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class Tool(BaseModel):
    type: str = "function"
    function: ToolFunction


class ToolCallFunction(BaseModel):
    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    id: str = ""
    type: str = "function"
    function: ToolCallFunction = Field(default_factory=ToolCallFunction)


class Message(BaseModel):
    role: str
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None


class JSONSchema(BaseModel):
    name: str
    description: str | None = None
    schema_: dict[str, Any] = Field(alias="schema", serialization_alias="schema")
    strict: bool | None = None

    model_config = {"populate_by_name": True}


class ResponseFormat(BaseModel):
    type: str
    json_schema: JSONSchema | None = None


class StreamOptions(BaseModel):
    include_usage: bool = True


class ChatCompletionRequest(BaseModel):
    """A chat completion request.

    ``model`` and ``stream`` are filled in by the client. ``extra`` holds
    fields merged into the root of the request body.
    """

    messages: list[Message]
    tools: list[Tool] | None = None
    tool_choice: str | dict[str, Any] | None = None
    parallel_tool_calls: bool | None = None
    response_format: ResponseFormat | None = None
    stream_options: StreamOptions | None = None
    max_tokens: int | None = None
    extra: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def body(self) -> dict[str, Any]:
        """Serialize to request-body keyword arguments, omitting unset fields."""
        return self.model_dump(exclude_none=True, by_alias=True)


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ResponseMessage(BaseModel):
    role: str = "assistant"
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCall] | None = None

    def to_message(self) -> Message:
        """Turn a response into an assistant message for the next turn."""
        return Message(
            role="assistant",
            content=self.content or None,
            reasoning_content=self.reasoning_content or None,
            tool_calls=self.tool_calls or None,
        )


class Choice(BaseModel):
    index: int = 0
    message: ResponseMessage = Field(default_factory=ResponseMessage)
    finish_reason: str | None = None


class ChatCompletionResponse(BaseModel):
    id: str = ""
    object: str = ""
    created: int = 0
    model: str = ""
    choices: list[Choice] = Field(default_factory=list)
    usage: Usage | None = None


class ToolCallFunctionDelta(BaseModel):
    name: str | None = None
    arguments: str | None = None


class ToolCallDelta(BaseModel):
    index: int = 0
    id: str | None = None
    type: str | None = None
    function: ToolCallFunctionDelta | None = None


class ChunkDelta(BaseModel):
    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallDelta] | None = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    id: str = ""
    object: str = ""
    created: int = 0
    model: str = ""
    choices: list[ChunkChoice] = Field(default_factory=list)
    usage: Usage | None = None

import json
from collections.abc import Callable

import httpx
import pytest

from servetest.client import Client
from servetest.config import ClientConfig, Tier
from servetest.evals.base import EvalCase
from servetest.evallog import RunLogger


# ---------------------------------------------------------------------------
# Wire payload builders (mirror the OpenAI response shape)
# ---------------------------------------------------------------------------

def tool_call_delta(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
    type: str | None = None,
) -> dict:
    """One tool-call fragment as it appears in a streamed delta."""
    delta: dict = {"index": index}
    if call_id is not None:
        delta["id"] = call_id
    if type is not None:
        delta["type"] = type
    fn = {}
    if name is not None:
        fn["name"] = name
    if arguments is not None:
        fn["arguments"] = arguments
    if fn:
        delta["function"] = fn
    return delta


def make_chunk(
    content: str | None = None,
    reasoning: str | None = None,
    tool_calls: list[dict] | None = None,
    finish_reason: str | None = None,
    usage: dict | None = None,
    choices: bool = True,
) -> dict:
    """A ``chat.completion.chunk`` payload."""
    chunk: dict = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1,
        "model": "mock-model",
        "choices": [],
    }
    if choices:
        delta: dict = {}
        if content is not None:
            delta["content"] = content
        if reasoning is not None:
            delta["reasoning_content"] = reasoning
        if tool_calls is not None:
            delta["tool_calls"] = tool_calls
        chunk["choices"] = [
            {"index": 0, "delta": delta, "finish_reason": finish_reason},
        ]
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def sse_lines(*chunks: dict, done: bool = True) -> list[str]:
    """Event-stream lines for *chunks*, blank-line separated."""
    lines = []
    for chunk in chunks:
        lines += [f"data: {json.dumps(chunk)}", ""]
    if done:
        lines += ["data: [DONE]", ""]
    return lines


def sse_body(*chunks: dict, done: bool = True) -> bytes:
    return "\n".join(sse_lines(*chunks, done=done)).encode() + b"\n"


def make_tool_call(name: str, args: dict, call_id: str = "call_1") -> dict:
    return {
        "id": call_id,
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(args)},
    }


def make_completion(
    content: str | None = None,
    reasoning: str | None = None,
    tool_calls: list[dict] | None = None,
    usage: dict | None = None,
) -> dict:
    """A blocking ``chat.completion`` payload with one choice."""
    message: dict = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning_content"] = reasoning
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1,
        "model": "mock-model",
        "choices": [{
            "index": 0,
            "message": message,
            "finish_reason": "tool_calls" if tool_calls else "stop",
        }],
        "usage": usage or {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12},
    }


def stream_chunks_for(completion: dict) -> list[dict]:
    """Split a blocking payload into the chunks a server would stream."""
    message = completion["choices"][0]["message"]
    chunks = []
    if message.get("reasoning_content"):
        text = message["reasoning_content"]
        half = len(text) // 2
        chunks += [make_chunk(reasoning=text[:half]), make_chunk(reasoning=text[half:])]
    if message.get("content"):
        text = message["content"]
        half = len(text) // 2
        chunks += [make_chunk(content=text[:half]), make_chunk(content=text[half:])]
    for i, tc in enumerate(message.get("tool_calls") or []):
        args = tc["function"]["arguments"]
        half = len(args) // 2
        chunks.append(make_chunk(tool_calls=[tool_call_delta(
            i, call_id=tc["id"], type="function",
            name=tc["function"]["name"], arguments=args[:half],
        )]))
        chunks.append(make_chunk(tool_calls=[tool_call_delta(i, arguments=args[half:])]))
    chunks.append(make_chunk(finish_reason=completion["choices"][0]["finish_reason"]))
    chunks.append(make_chunk(choices=False, usage=completion["usage"]))
    return chunks


# ---------------------------------------------------------------------------
# Mock server
# ---------------------------------------------------------------------------

class MockServer:
    """In-process chat completions server behind ``httpx.MockTransport``.

    ``responder`` maps a decoded request body to a blocking completion
    payload; streaming requests get the same payload split into chunks.
    Set ``status`` to fail every request, or ``stream_body`` to send raw
    bytes for streaming requests.
    """

    def __init__(self, responder: Callable[[dict], dict] | None = None):
        self.responder = responder or (lambda body: make_completion(content="Hello!"))
        self.requests: list[dict] = []
        self.paths: list[str] = []
        self.status = 200
        self.error_body = '{"error": {"message": "boom"}}'
        self.stream_body: bytes | None = None
        self.template = "<rendered>"

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append(body)
        self.paths.append(request.url.path)

        if self.status != 200:
            return httpx.Response(
                self.status, content=self.error_body.encode(),
                headers={"content-type": "application/json"},
            )

        if request.url.path.endswith("/apply-template"):
            return httpx.Response(200, json={"prompt": self.template})

        completion = self.responder(body)
        if not body.get("stream"):
            return httpx.Response(200, json=completion)

        content = self.stream_body
        if content is None:
            content = sse_body(*stream_chunks_for(completion))
        return httpx.Response(
            200, content=content, headers={"content-type": "text/event-stream"},
        )

    def client(self, **config) -> Client:
        config.setdefault("base_url", "http://test/v1")
        config.setdefault("model", "mock-model")
        config.setdefault("api_key", "sk-test")
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return Client(ClientConfig(**config), http_client=http_client)


def last_user_content(body: dict) -> str:
    users = [m for m in body.get("messages", []) if m.get("role") == "user"]
    return users[-1].get("content", "") if users else ""


# ---------------------------------------------------------------------------
# Fake cases
# ---------------------------------------------------------------------------

class FakeCase(EvalCase):
    """Case double with configurable metadata and outcome.

    ``outcome`` is a result-producing callable ``(case, ctx, client)``; the
    default passes. Each run is recorded as ``(name, mode)``.
    """

    def __init__(
        self,
        name: str,
        category: str = "Fake",
        tier: Tier = Tier.STANDARD,
        default_disabled: bool = False,
        supports_modes: bool = True,
        outcome=None,
        calls: list | None = None,
    ):
        super().__init__()
        self.name = name
        self.category = category
        self.tier = tier
        self.default_disabled = default_disabled
        self.supports_modes = supports_modes
        self.outcome = outcome
        self.calls = calls if calls is not None else []

    async def run(self, ctx, client):
        self.calls.append((self.name, self.mode))
        if self.outcome is None:
            return self.ok()
        return await self.outcome(self, ctx, client)


@pytest.fixture
def mock_server():
    return MockServer()


@pytest.fixture
def run_logger(tmp_path):
    return RunLogger("org/mock-model", root=tmp_path)


@pytest.fixture
def make_case():
    """Factory fixture for :class:`FakeCase` instances."""
    def _make(name="fake", **kwargs):
        return FakeCase(name, **kwargs)
    return _make

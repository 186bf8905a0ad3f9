from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from servetest.config import DEFAULT_MODE, Mode, Tier
from servetest.types import ChatCompletionRequest, ResponseMessage, Tool, ToolCall, ToolFunction

if TYPE_CHECKING:
    from servetest.client import Client
    from servetest.evallog import EvalLog


@dataclass(frozen=True)
class Result:
    """Outcome of one eval in one delivery mode.

    ``name``, ``category``, ``duration`` and ``mode`` are stamped by the
    runner; case bodies only decide ``passed`` and ``message``.
    """

    name: str = ""
    category: str = ""
    passed: bool = False
    message: str = ""
    duration: float = 0.0
    mode: Mode | None = None


@dataclass
class EvalContext:
    """Per-job execution context handed to a case body.

    Args:
        mode: Delivery mode this job runs in.
        log: The job's own log handle, or ``None`` when logging is off.
    """

    mode: Mode = DEFAULT_MODE
    log: EvalLog | None = None


class EvalFailure(Exception):
    """Raised from case helpers when an assertion fails.

    The runner reports the message verbatim as a failed result.
    """


class EvalCase(ABC):
    """A single check against the server.

    Subclasses set the class attributes and implement :meth:`run`.
    Cases that set ``supports_modes`` read ``self.mode`` to decide between
    a blocking and a streaming request; the runner hands each job its own
    copy via :meth:`with_mode`, so a case instance is never shared by two
    concurrent jobs.

    Example::

        class Hello(EvalCase):
            name = "hello"
            category = "Basic"
            supports_modes = True

            async def run(self, ctx, client):
                message = await self.complete(client, ChatCompletionRequest(
                    messages=[Message(role="user", content="Say hello.")],
                ))
                if not (message.content or "").strip():
                    return self.fail("content is empty")
                return self.ok()
    """

    name: str = ""
    category: str = ""
    tier: Tier = Tier.STANDARD
    default_disabled: bool = False
    supports_modes: bool = False

    def __init__(self) -> None:
        self.mode = DEFAULT_MODE

    def set_mode(self, mode: Mode) -> None:
        self.mode = mode

    def with_mode(self, mode: Mode) -> EvalCase:
        case = copy.copy(self)
        case.set_mode(mode)
        return case

    @property
    def streaming(self) -> bool:
        return self.mode is Mode.STREAMING

    @abstractmethod
    async def run(self, ctx: EvalContext, client: Client) -> Result:
        ...

    def ok(self) -> Result:
        return Result(name=self.name, category=self.category, passed=True)

    def fail(self, message: str) -> Result:
        return Result(
            name=self.name, category=self.category,
            passed=False, message=message,
        )

    async def complete(
        self, client: Client, request: ChatCompletionRequest,
    ) -> ResponseMessage:
        """Send ``request`` in this case's mode and return the assistant message.

        Raises:
            EvalFailure: If a blocking response carries no choices.
        """
        if self.streaming:
            result = await client.chat_completion_stream(request)
            return result.message()

        response = await client.chat_completion(request)
        if not response.choices:
            raise EvalFailure("no choices in response")
        return response.choices[0].message

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} mode={self.mode.value}>"


def function_tool(name: str, description: str, parameters: dict[str, Any]) -> Tool:
    return Tool(function=ToolFunction(
        name=name, description=description, parameters=parameters,
    ))


def parse_arguments(tool_call: ToolCall) -> dict[str, Any]:
    """Decode a tool call's JSON arguments.

    Raises:
        EvalFailure: If the arguments are not a JSON object.
    """
    try:
        args = json.loads(tool_call.function.arguments)
    except json.JSONDecodeError as e:
        raise EvalFailure(f"tool arguments are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise EvalFailure("tool arguments are not a JSON object")
    return args

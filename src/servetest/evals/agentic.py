"""Multi-turn evals.

These replay the model's own assistant turn (including its reasoning) to the
server, the way an agent loop does.
"""

import json

from servetest.config import Tier
from servetest.errors import ClientError
from servetest.evals.base import EvalCase, EvalFailure, function_tool
from servetest.evals.tools import WEATHER_TOOL, weather_request
from servetest.types import ChatCompletionRequest, Message, ResponseMessage

CATEGORY = "Agentic"

WEATHER_QUESTION = "What's the weather in San Francisco?"
WEATHER_RESULT = '{"temperature": 72, "conditions": "sunny"}'


class AgenticToolCallEval(EvalCase):
    """Tool call, tool result, then a final answer with reasoning sent back."""

    name = "agentic_tool_call"
    category = CATEGORY
    tier = Tier.INTERLEAVED
    supports_modes = True

    async def run(self, ctx, client):
        try:
            first = await self.complete(client, weather_request(WEATHER_QUESTION))
        except ClientError as e:
            return self.fail(f"turn 1 request failed: {e}")

        if not first.tool_calls:
            return self.fail("turn 1: expected tool call, got none")
        tc = first.tool_calls[0]
        if tc.function.name != "get_weather":
            return self.fail(
                f"turn 1: expected tool 'get_weather', got {tc.function.name!r}"
            )

        try:
            second = await self.complete(client, ChatCompletionRequest(
                messages=[
                    Message(role="user", content=WEATHER_QUESTION),
                    first.to_message(),
                    Message(role="tool", tool_call_id=tc.id, content=WEATHER_RESULT),
                ],
                tools=[WEATHER_TOOL],
                tool_choice="auto",
            ))
        except ClientError as e:
            return self.fail(f"turn 2 request failed: {e}")

        if not (second.content or "").strip():
            return self.fail("turn 2: expected content in response, got empty")
        return self.ok()


class _TemplateEval(EvalCase):
    """Base for checks of reasoning placement in llama.cpp's rendered prompt."""

    category = CATEGORY
    tier = Tier.INTERLEAVED
    default_disabled = True

    async def _first_turn(self, client) -> ResponseMessage:
        response = await client.chat_completion(weather_request(WEATHER_QUESTION))
        if not response.choices:
            raise EvalFailure("no choices in response")
        message = response.choices[0].message
        if not (message.reasoning_content or "").strip():
            raise EvalFailure(
                "model did not return reasoning_content, cannot test template"
            )
        if not message.tool_calls:
            raise EvalFailure("model did not return tool calls, cannot test template")
        return message

    def _conversation(self, first: ResponseMessage) -> list[Message]:
        return [
            Message(role="user", content=WEATHER_QUESTION),
            first.to_message(),
            Message(
                role="tool",
                tool_call_id=first.tool_calls[0].id,
                content=WEATHER_RESULT,
            ),
        ]


class AgenticReasoningInTemplateEval(_TemplateEval):
    """Reasoning is rendered when the conversation ends with a tool result."""

    name = "agentic_reasoning_in_template"

    async def run(self, ctx, client):
        first = await self._first_turn(client)
        prompt = await client.apply_template(self._conversation(first))
        if first.reasoning_content not in prompt:
            return self.fail("reasoning_content not found in rendered template")
        return self.ok()


class AgenticReasoningNotInUserTemplateEval(_TemplateEval):
    """Reasoning is dropped once a new user message follows."""

    name = "agentic_reasoning_not_in_user_template"

    async def run(self, ctx, client):
        first = await self._first_turn(client)
        messages = self._conversation(first)
        messages.append(Message(role="user", content="Thanks, what about New York?"))
        prompt = await client.apply_template(messages)
        if first.reasoning_content in prompt:
            return self.fail(
                "reasoning_content found in template when it should not be "
                "(ends with user message)"
            )
        return self.ok()


INCIDENT_TOOLS = [
    function_tool(
        "search_logs",
        "Search application logs for a service within a time range",
        {
            "type": "object",
            "properties": {
                "service": {"type": "string", "description": "The service name to search logs for"},
                "query": {"type": "string", "description": "Search query or filter expression"},
            },
            "required": ["service"],
        },
    ),
    function_tool(
        "get_service_status",
        "Get the current health status and dependency information for a service",
        {
            "type": "object",
            "properties": {
                "service": {"type": "string", "description": "The service name"},
            },
            "required": ["service"],
        },
    ),
    function_tool(
        "list_recent_deployments",
        "List deployments made to a service in the last 24 hours",
        {
            "type": "object",
            "properties": {
                "service": {"type": "string", "description": "The service name"},
            },
            "required": ["service"],
        },
    ),
]

INCIDENT_RESPONSES = {
    "search_logs": json.dumps({"entries": [
        {"time": "14:32:05Z", "level": "ERROR", "service": "checkout-service",
         "message": "payment-service call failed: 500 PaymentV2Client: unknown field 'currency_code'"},
        {"time": "14:32:09Z", "level": "ERROR", "service": "checkout-service",
         "message": "order 88121 aborted: payment authorization error"},
    ]}),
    "get_service_status": json.dumps({
        "service": "checkout-service", "status": "degraded", "error_rate": 0.15,
        "dependencies": {"payment-service": "degraded", "inventory-service": "healthy"},
    }),
    "list_recent_deployments": json.dumps({"deployments": [
        {"service": "payment-service", "version": "v2.14.0", "time": "14:30:00Z",
         "change": "enable feature flag use_payment_v2 and new request schema"},
    ]}),
}

INCIDENT_KEYWORDS = ["payment", "deploy", "feature", "error", "checkout"]


class AgenticIncidentInvestigationEval(EvalCase):
    """A long tool loop: the model investigates an outage, then reports.

    Each round the model's tool calls are answered with canned data until it
    produces a final answer without tool calls.
    """

    name = "agentic_incident_investigation"
    category = CATEGORY
    default_disabled = True
    supports_modes = True

    max_iterations = 25
    min_tool_rounds = 3
    min_report_length = 200

    system_prompt = (
        "You are an experienced Site Reliability Engineer investigating a "
        "production incident. Use the tools to gather evidence systematically. "
        "Once you have enough information, provide a root cause analysis with "
        "the impact, the root cause, the recommended fix and a timeline."
    )
    user_prompt = (
        "URGENT: checkout-service is returning HTTP 500 errors in production. "
        "The error rate spiked from 0.1% to about 15% at 14:32 UTC today and "
        "customers cannot complete purchases. Please find the root cause."
    )

    async def run(self, ctx, client):
        messages = [
            Message(role="system", content=self.system_prompt),
            Message(role="user", content=self.user_prompt),
        ]
        tool_rounds = 0

        for i in range(1, self.max_iterations + 1):
            try:
                message = await self.complete(client, ChatCompletionRequest(
                    messages=messages, tools=INCIDENT_TOOLS, tool_choice="auto",
                ))
            except ClientError as e:
                return self.fail(f"iteration {i}: request failed: {e}")
            except EvalFailure as e:
                return self.fail(f"iteration {i}: {e}")

            if not message.tool_calls:
                return self._check_report(message.content or "", tool_rounds)

            tool_rounds += 1
            messages.append(message.to_message())
            for tc in message.tool_calls:
                messages.append(Message(
                    role="tool",
                    tool_call_id=tc.id,
                    content=INCIDENT_RESPONSES.get(
                        tc.function.name, '{"error": "unknown tool"}'
                    ),
                ))

        return self.fail(
            f"reached max iterations ({self.max_iterations}) without "
            "completing investigation"
        )

    def _check_report(self, content: str, tool_rounds: int):
        if tool_rounds < self.min_tool_rounds:
            return self.fail(
                f"model only used {tool_rounds} tool call round(s), "
                f"expected at least {self.min_tool_rounds}"
            )
        if not content.strip():
            return self.fail("final response is empty")
        if len(content) < self.min_report_length:
            return self.fail(
                f"final response too short ({len(content)} chars, "
                f"expected at least {self.min_report_length})"
            )
        lowered = content.lower()
        matched = sum(1 for kw in INCIDENT_KEYWORDS if kw in lowered)
        if matched < 3:
            return self.fail(
                f"final response only mentions {matched}/{len(INCIDENT_KEYWORDS)} "
                f"expected keywords ({', '.join(INCIDENT_KEYWORDS)}); "
                "expected at least 3"
            )
        return self.ok()


def agentic_evals() -> list[EvalCase]:
    return [
        AgenticToolCallEval(),
        AgenticReasoningInTemplateEval(),
        AgenticReasoningNotInUserTemplateEval(),
        AgenticIncidentInvestigationEval(),
    ]

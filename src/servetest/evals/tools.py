from servetest.config import Tier
from servetest.evals.base import EvalCase, EvalFailure, function_tool, parse_arguments
from servetest.types import ChatCompletionRequest, Message

CATEGORY = "Tool Calling"

WEATHER_TOOL = function_tool(
    "get_weather",
    "Get the current weather for a location",
    {
        "type": "object",
        "properties": {
            "location": {
                "type": "string",
                "description": "The city and state, e.g. San Francisco, CA",
            },
        },
        "required": ["location"],
    },
)


def weather_request(
    question: str = "What's the weather in San Francisco?",
    tool_choice: str = "auto",
    parallel: bool | None = None,
) -> ChatCompletionRequest:
    return ChatCompletionRequest(
        messages=[Message(role="user", content=question)],
        tools=[WEATHER_TOOL],
        tool_choice=tool_choice,
        parallel_tool_calls=parallel,
    )


class SingleToolCallEval(EvalCase):
    """Exactly one well-formed ``get_weather`` call is returned."""

    name = "single_tool_call"
    category = CATEGORY
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, weather_request())
        tool_calls = message.tool_calls or []
        if not tool_calls:
            return self.fail("expected tool call, got none")
        if len(tool_calls) > 1:
            return self.fail(f"expected 1 tool call, got {len(tool_calls)}")

        tc = tool_calls[0]
        if tc.function.name != "get_weather":
            return self.fail(
                f"expected tool name 'get_weather', got {tc.function.name!r}"
            )
        if "location" not in parse_arguments(tc):
            return self.fail("tool arguments missing 'location' parameter")
        return self.ok()


class ParallelToolCallEval(EvalCase):
    """Two cities in one question yield at least two tool calls."""

    name = "parallel_tool_calls"
    category = CATEGORY
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, weather_request(
            "What's the weather in both San Francisco and New York?",
            parallel=True,
        ))
        tool_calls = message.tool_calls or []
        if len(tool_calls) < 2:
            return self.fail(
                "expected at least 2 tool calls for parallel execution, "
                f"got {len(tool_calls)}"
            )

        ids = [tc.id for tc in tool_calls]
        if len(set(ids)) != len(ids):
            return self.fail(f"tool call ids are not unique: {ids}")

        for i, tc in enumerate(tool_calls):
            if tc.function.name != "get_weather":
                return self.fail(f"tool call {i} has wrong name: {tc.function.name}")
            if "location" not in parse_arguments(tc):
                return self.fail(f"tool call {i} missing 'location' parameter")
        return self.ok()


class RequiredToolCallEval(EvalCase):
    """``tool_choice: "required"`` forces a tool call."""

    name = "required_tool_call"
    category = CATEGORY
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, weather_request(tool_choice="required"))
        tool_calls = message.tool_calls or []
        if not tool_calls:
            return self.fail("expected tool call with required tool_choice, got none")

        tc = tool_calls[0]
        if tc.function.name != "get_weather":
            return self.fail(
                f"expected tool name 'get_weather', got {tc.function.name!r}"
            )
        parse_arguments(tc)
        return self.ok()


class RequiredToolCallWithReasoningEval(EvalCase):
    """A forced tool call still comes with reasoning.

    Constrained decoding for ``tool_choice: "required"`` must not suppress
    the reasoning channel.
    """

    name = "required_tool_call_with_reasoning"
    category = CATEGORY
    tier = Tier.REASONING
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, weather_request(tool_choice="required"))
        tool_calls = message.tool_calls or []
        if not tool_calls:
            return self.fail("expected tool call with required tool_choice, got none")

        tc = tool_calls[0]
        if tc.function.name != "get_weather":
            return self.fail(
                f"expected tool name 'get_weather', got {tc.function.name!r}"
            )
        parse_arguments(tc)

        if not (message.reasoning_content or "").strip():
            return self.fail(
                "reasoning_content is empty - constrained decoding may be "
                "suppressing reasoning"
            )
        return self.ok()


CATERING_TOOL = function_tool(
    "create_catering_request",
    "Create a catering request for an event with guest dietary requirements",
    {
        "type": "object",
        "properties": {
            "event": {
                "type": "object",
                "description": "Event details",
                "properties": {
                    "name": {"type": "string", "description": "Name or title of the event"},
                    "event_type": {
                        "type": "string",
                        "enum": ["breakfast", "lunch", "dinner", "reception", "all_day"],
                        "description": "Type of catering event",
                    },
                    "date": {
                        "type": "string",
                        "description": "Event date in ISO 8601 format (YYYY-MM-DD)",
                    },
                    "start_time": {
                        "type": "string",
                        "description": "Start time in 24-hour format (HH:MM)",
                    },
                    "duration_hours": {
                        "type": "number",
                        "description": "Expected duration in hours",
                    },
                },
                "required": ["name", "event_type", "date"],
            },
            "venue": {
                "type": "object",
                "description": "Event venue information",
                "properties": {
                    "name": {"type": "string", "description": "Venue name"},
                    "address": {
                        "type": "object",
                        "properties": {
                            "street": {"type": "string"},
                            "city": {"type": "string"},
                            "state": {"type": "string"},
                            "postal_code": {"type": "string"},
                        },
                        "required": ["street", "city", "state"],
                    },
                    "contact": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "phone": {"type": "string"},
                            "email": {"type": "string"},
                        },
                    },
                    "accessibility_requirements": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Special accessibility needs (wheelchair access, etc.)",
                    },
                },
                "required": ["name", "address"],
            },
            "guests": {
                "type": "array",
                "description": "List of guests with their dietary requirements",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "description": "Guest name"},
                        "dietary_restrictions": {
                            "type": "array",
                            "items": {
                                "type": "string",
                                "enum": [
                                    "vegetarian", "vegan", "gluten_free", "dairy_free",
                                    "nut_allergy", "shellfish_allergy", "halal",
                                    "kosher", "none",
                                ],
                            },
                            "description": "List of dietary restrictions",
                        },
                        "meal_preference": {
                            "type": "string",
                            "enum": ["standard", "light", "hearty"],
                            "description": "Portion size preference",
                        },
                    },
                    "required": ["name", "dietary_restrictions"],
                },
            },
            "budget": {
                "type": "object",
                "properties": {
                    "total_amount": {"type": "number", "description": "Total budget in dollars"},
                    "currency": {"type": "string", "description": "Currency code (e.g., USD)"},
                    "includes_gratuity": {
                        "type": "boolean",
                        "description": "Whether the budget includes gratuity",
                    },
                },
                "required": ["total_amount"],
            },
            "notes": {"type": "string", "description": "Additional notes or special requests"},
        },
        "required": ["event", "venue", "guests", "budget"],
    },
)

CATERING_PROMPT = """\
I need to plan a corporate lunch for our team next Friday (2025-01-24) at the Riverside Conference Center,
located at 123 Main Street, Portland, Oregon 97201. The event coordinator is Jamie Chen (jamie@riverside.com).

We have 3 attendees:
- Alex Kim is vegetarian and prefers lighter meals
- Jordan Patel has a severe nut allergy
- Sam Wilson has no dietary restrictions and likes hearty portions

Our budget is $450 USD including tip. Please note that we'll need the room set up boardroom style."""


def _require(obj: dict, fields: list[str], where: str) -> None:
    for field in fields:
        if field not in obj:
            raise EvalFailure(f"{where}missing required field: {field}")


def _object(value, what: str) -> dict:
    if not isinstance(value, dict):
        raise EvalFailure(f"{what} field is not an object")
    return value


class ComplexSchemaToolCallEval(EvalCase):
    """A deeply nested catering schema is filled in completely.

    The tool takes nested objects, arrays of objects, enums and optional
    fields; required fields are checked at every level.
    """

    name = "complex_schema_tool_call"
    category = CATEGORY
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, ChatCompletionRequest(
            messages=[Message(role="user", content=CATERING_PROMPT)],
            tools=[CATERING_TOOL],
            tool_choice="auto",
        ))
        tool_calls = message.tool_calls or []
        if not tool_calls:
            return self.fail("expected tool call, got none")

        tc = tool_calls[0]
        if tc.function.name != "create_catering_request":
            return self.fail(
                f"expected tool name 'create_catering_request', got {tc.function.name!r}"
            )
        args = parse_arguments(tc)
        for field in ("event", "venue", "guests", "budget"):
            if field not in args:
                return self.fail(f"missing required top-level field: {field}")

        event = _object(args["event"], "event")
        _require(event, ["name", "event_type", "date"], "event ")

        venue = _object(args["venue"], "venue")
        _require(venue, ["name"], "venue ")
        address = _object(venue.get("address"), "venue.address")
        _require(address, ["street", "city", "state"], "venue.address ")

        guests = args["guests"]
        if not isinstance(guests, list):
            return self.fail("guests field is not an array")
        if len(guests) != 3:
            return self.fail(f"expected 3 guests, got {len(guests)}")
        for i, guest in enumerate(guests):
            if not isinstance(guest, dict):
                return self.fail(f"guest {i} is not an object")
            _require(guest, ["name", "dietary_restrictions"], f"guest {i} ")

        budget = _object(args["budget"], "budget")
        _require(budget, ["total_amount"], "budget ")
        return self.ok()


SAVE_CODE_TOOL = function_tool(
    "save_code",
    "Save generated code to a file",
    {
        "type": "object",
        "properties": {
            "language": {
                "type": "string",
                "description": "Programming language of the generated code",
            },
            "filename": {"type": "string", "description": "Suggested filename for the code"},
            "description": {
                "type": "string",
                "description": "Brief description of what the code does",
            },
            "code": {"type": "string", "description": "The complete, working code implementation"},
            "usage_example": {
                "type": "string",
                "description": "Example showing how to use the code",
            },
        },
        "required": ["language", "filename", "description", "code", "usage_example"],
    },
)

CODE_PROMPT = """\
Generate a Python implementation of a token bucket rate limiter.

Requirements:
- Class named TokenBucket with configurable capacity and refill_rate (tokens per second)
- Method acquire(tokens=1) that returns True if tokens are available, False otherwise
- Method wait_for_token(tokens=1) that blocks until tokens are available (use time.sleep)
- Thread-safe using a lock
- Include docstrings for the class and methods

The code should be complete and production-ready."""

MIN_CODE_LENGTH = 500
MIN_EXAMPLE_LENGTH = 20
CODE_PATTERNS = ["class TokenBucket", "def acquire", "def wait_for_token", "Lock"]


class CodeGenerationToolCallEval(EvalCase):
    """Long-form code survives as a tool argument intact."""

    name = "code_generation_tool_call"
    category = CATEGORY
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, ChatCompletionRequest(
            messages=[Message(role="user", content=CODE_PROMPT)],
            tools=[SAVE_CODE_TOOL],
            tool_choice="auto",
        ))
        tool_calls = message.tool_calls or []
        if not tool_calls:
            return self.fail("expected tool call, got none")

        tc = tool_calls[0]
        if tc.function.name != "save_code":
            return self.fail(f"expected tool name 'save_code', got {tc.function.name!r}")
        args = parse_arguments(tc)
        _require(
            args, ["language", "filename", "description", "code", "usage_example"], "",
        )

        code = args["code"]
        if not isinstance(code, str):
            return self.fail("code field is not a string")
        if len(code) < MIN_CODE_LENGTH:
            return self.fail(
                f"code appears incomplete (less than {MIN_CODE_LENGTH} characters)"
            )
        for pattern in CODE_PATTERNS:
            if pattern not in code:
                return self.fail(f"code missing expected pattern: {pattern}")

        example = args["usage_example"]
        if not isinstance(example, str) or len(example.strip()) < MIN_EXAMPLE_LENGTH:
            return self.fail("usage_example is missing or too short")
        return self.ok()


def tool_evals() -> list[EvalCase]:
    return [
        SingleToolCallEval(),
        ParallelToolCallEval(),
        RequiredToolCallEval(),
        RequiredToolCallWithReasoningEval(),
        ComplexSchemaToolCallEval(),
        CodeGenerationToolCallEval(),
    ]

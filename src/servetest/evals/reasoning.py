from servetest.config import Tier
from servetest.evals.base import EvalCase
from servetest.types import ChatCompletionRequest, Message

CATEGORY = "Reasoning"

PROMPT = "What is 15 * 27? Think step by step."

# Phrases that typically open a chain of thought. Finding one in the final
# content suggests the server did not separate reasoning from the answer.
LEAK_INDICATORS = [
    "<think>",
    "</think>",
    "let me think",
    "step 1:",
    "first, i",
    "first, let me",
    "i need to",
    "to solve this",
]


def _request() -> ChatCompletionRequest:
    return ChatCompletionRequest(messages=[Message(role="user", content=PROMPT)])


class ReasoningPresentEval(EvalCase):
    """``reasoning_content`` is populated alongside a final answer."""

    name = "reasoning_present"
    category = CATEGORY
    tier = Tier.REASONING
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, _request())
        if not (message.reasoning_content or "").strip():
            return self.fail("reasoning_content is empty")
        if not (message.content or "").strip():
            return self.fail("content is empty (expected final answer)")
        return self.ok()


class ReasoningNotLeakedEval(EvalCase):
    """Reasoning stays out of the final ``content``."""

    name = "reasoning_not_leaked"
    category = CATEGORY
    tier = Tier.REASONING
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, _request())
        if not (message.reasoning_content or "").strip():
            return self.fail(
                "reasoning_content is empty, cannot verify leak prevention"
            )

        content = (message.content or "").lower()
        for indicator in LEAK_INDICATORS:
            if indicator in content:
                if ctx.log is not None:
                    ctx.log.log_validation(
                        "reasoning leaked into content", "no indicator", indicator,
                    )
                return self.fail(
                    f"content appears to contain reasoning (found {indicator!r})"
                )
        return self.ok()


def reasoning_evals() -> list[EvalCase]:
    return [ReasoningPresentEval(), ReasoningNotLeakedEval()]

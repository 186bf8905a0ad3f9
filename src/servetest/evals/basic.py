from servetest.evals.base import EvalCase
from servetest.types import ChatCompletionRequest, Message

CATEGORY = "Basic"


class ChatCompletionEval(EvalCase):
    """The model returns non-empty content for a trivial prompt."""

    name = "chat_completion"
    category = CATEGORY
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, ChatCompletionRequest(
            messages=[Message(role="user", content="Say hello.")],
        ))
        if not (message.content or "").strip():
            return self.fail("content is empty")
        return self.ok()


def basic_evals() -> list[EvalCase]:
    return [ChatCompletionEval()]

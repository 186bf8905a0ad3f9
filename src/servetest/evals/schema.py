from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from servetest.evals.base import EvalCase
from servetest.types import ChatCompletionRequest, JSONSchema, Message, ResponseFormat

CATEGORY = "Structured Output"


class Person(BaseModel):
    """Expected shape of the structured response."""

    model_config = ConfigDict(extra="forbid", strict=True)

    name: str
    age: int
    occupation: str

    @field_validator("age", mode="before")
    @classmethod
    def _whole_number(cls, value):
        # JSON has one number type; 30.0 is still an integer age.
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value


class JsonSchemaEval(EvalCase):
    """Content constrained by ``response_format`` matches the schema."""

    name = "json_schema"
    category = CATEGORY
    supports_modes = True

    async def run(self, ctx, client):
        message = await self.complete(client, ChatCompletionRequest(
            messages=[Message(
                role="user",
                content="Generate a fictional person with a name, age, and occupation.",
            )],
            response_format=ResponseFormat(
                type="json_schema",
                json_schema=JSONSchema(
                    name="person",
                    schema=Person.model_json_schema(),
                    strict=True,
                ),
            ),
        ))

        try:
            Person.model_validate_json(message.content or "")
        except ValidationError as e:
            return self.fail(f"response does not match schema: {_first_error(e)}")
        return self.ok()


def _first_error(error: ValidationError) -> str:
    err = error.errors()[0]
    loc = ".".join(str(p) for p in err["loc"])
    return f"{loc}: {err['msg']}" if loc else err["msg"]


def schema_evals() -> list[EvalCase]:
    return [JsonSchemaEval()]

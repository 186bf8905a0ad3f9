from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI
from pydantic import ValidationError

from servetest.config import ClientConfig
from servetest.errors import DecodeError, ProtocolError, StreamDecodeError, TransportError
from servetest.instrumentation import completion_span, record_error, record_usage
from servetest.streaming import StreamResult, aparse_sse_stream
from servetest.types import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    Message,
    StreamOptions,
)

if TYPE_CHECKING:
    from servetest.evallog import EvalLog

logger = logging.getLogger(__name__)


class Client:
    """OpenAI-compatible client for the server under test.

    The client holds only configuration and the connection pool, so one
    instance is shared by every worker. :meth:`with_log` returns a view bound
    to a single eval's log handle; views share the pool.

    Requests are never retried: a failure is reported once, to the eval that
    made it.

    Args:
        config: Connection settings.
        http_client: Optional ``httpx.AsyncClient`` to send requests with.
    """

    def __init__(
        self,
        config: ClientConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = config.base_url.rstrip("/")
        self.model = config.model
        self.extra = dict(config.extra)
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=config.resolved_api_key(),
            max_retries=0,
            timeout=config.timeout,
            http_client=http_client,
        )
        self.log: EvalLog | None = None

    def with_log(self, log: EvalLog | None) -> Client:
        bound = copy.copy(self)
        bound.log = log
        return bound

    async def close(self) -> None:
        await self.client.close()

    def _kwargs(self, request: ChatCompletionRequest, stream: bool) -> dict[str, Any]:
        kwargs = request.body()
        kwargs["model"] = self.model
        kwargs["stream"] = stream
        if stream and "stream_options" not in kwargs:
            kwargs["stream_options"] = StreamOptions().model_dump()
        return kwargs

    def _log_request(self, path: str, body: dict[str, Any]) -> None:
        if self.log is not None:
            self.log.log_request("POST", f"{self.base_url}{path}", body)

    def _status_error(self, err: APIStatusError) -> ProtocolError:
        body = err.response.text
        if self.log is not None:
            self.log.log_response(err.status_code, body)
        return ProtocolError(err.status_code, body)

    def _extra_body(self, request: ChatCompletionRequest) -> dict[str, Any]:
        return {**self.extra, **request.extra}

    async def chat_completion(
        self, request: ChatCompletionRequest,
    ) -> ChatCompletionResponse:
        """Perform a blocking chat completion.

        Raises:
            TransportError: The request could not be completed.
            ProtocolError: The server returned a non-success status.
            DecodeError: The response body is not a chat completion.
        """
        kwargs = self._kwargs(request, stream=False)
        extra_body = self._extra_body(request)
        self._log_request("/chat/completions", {**kwargs, **extra_body})

        async with completion_span(self.model, streaming=False) as span:
            try:
                raw = await self.client.chat.completions.with_raw_response.create(
                    **kwargs, extra_body=extra_body,
                )
            except APIStatusError as e:
                record_error(span, e)
                raise self._status_error(e) from e
            except APIConnectionError as e:
                record_error(span, e)
                raise TransportError(f"do request: {e}") from e

            body = raw.http_response.text
            if self.log is not None:
                self.log.log_response(raw.http_response.status_code, body)

            try:
                response = ChatCompletionResponse.model_validate_json(body)
            except ValidationError as e:
                record_error(span, e)
                raise DecodeError(f"unmarshal response: {e}") from e
            record_usage(span, response.usage, response.model)

        logger.debug(f"{self.model} returned {len(response.choices)} choice(s)")
        return response

    async def chat_completion_stream(
        self, request: ChatCompletionRequest,
    ) -> StreamResult:
        """Perform a streaming chat completion and reconstruct the message.

        Usage reporting is requested unless the request sets its own
        ``stream_options``.

        Raises:
            TransportError: The request or stream read failed.
            ProtocolError: The server returned a non-success status.
            StreamDecodeError: A stream frame is not a valid chunk.
        """
        kwargs = self._kwargs(request, stream=True)
        extra_body = self._extra_body(request)
        self._log_request("/chat/completions", {**kwargs, **extra_body})

        status = 0
        async with completion_span(self.model, streaming=True) as span:
            try:
                async with self.client.chat.completions.with_streaming_response.create(
                    **kwargs, extra_body=extra_body,
                ) as response:
                    status = response.http_response.status_code
                    result = await aparse_sse_stream(
                        response.http_response.aiter_lines()
                    )
            except APIStatusError as e:
                record_error(span, e)
                raise self._status_error(e) from e
            except (APIConnectionError, httpx.TransportError) as e:
                record_error(span, e)
                raise TransportError(f"do request: {e}") from e
            except StreamDecodeError as e:
                record_error(span, e)
                if self.log is not None:
                    self.log.log_stream_response(status, e.raw)
                    self.log.log_error(e)
                raise
            record_usage(span, result.usage)

        if self.log is not None:
            self.log.log_stream_response(status, result.raw)
            self.log.log_stream_chunks(result.chunks_jsonl())

        logger.debug(
            f"{self.model} streamed {len(result.chunks)} chunk(s), "
            f"{len(result.tool_calls)} tool call(s)"
        )
        return result

    async def apply_template(self, messages: list[Message]) -> str:
        """Render ``messages`` with the server's chat template.

        Uses llama.cpp's ``/apply-template`` endpoint.
        """
        body = {"messages": [m.model_dump(exclude_none=True) for m in messages]}
        self._log_request("/apply-template", body)

        try:
            response = await self.client.post(
                "/apply-template", body=body, cast_to=httpx.Response,
            )
        except APIStatusError as e:
            raise self._status_error(e) from e
        except APIConnectionError as e:
            raise TransportError(f"do request: {e}") from e

        if self.log is not None:
            self.log.log_response(response.status_code, response.text)
        try:
            prompt = response.json()["prompt"]
        except (ValueError, KeyError, TypeError) as e:
            raise DecodeError(f"unmarshal response: {e}") from e
        if not isinstance(prompt, str):
            raise DecodeError("unmarshal response: 'prompt' is not a string")
        return prompt

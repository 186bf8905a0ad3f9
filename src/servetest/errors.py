class ServeTestError(Exception):
    """Base class for all errors raised by servetest."""


class ConfigError(ServeTestError):
    """Invalid run configuration. Raised before any eval is scheduled."""


class ClientError(ServeTestError):
    """A single request to the server failed.

    Client errors are local to one eval: the runner turns them into a failed
    result and carries on with the remaining jobs.
    """


class TransportError(ClientError):
    """The request could not be sent or the connection failed or timed out."""


class ProtocolError(ClientError):
    """The server answered with a non-success HTTP status."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"unexpected status {status}: {body[:500]}")


class DecodeError(ClientError):
    """A response body or stream frame could not be decoded."""


class StreamDecodeError(DecodeError):
    """A ``data:`` frame in an event stream was not a valid chunk.

    Args:
        message: Description of the decoding failure.
        raw: Every line read from the stream up to and including the bad
            frame, newline terminated.
    """

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw

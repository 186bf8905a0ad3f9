import json
import os
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from servetest.errors import ConfigError


class Tier(Enum):
    """Model capability a case requires.

    Tiers are inclusive: ``standard < reasoning < interleaved``. A run at a
    given tier also runs every case of a lower tier.
    """

    STANDARD = "standard"
    REASONING = "reasoning"
    INTERLEAVED = "interleaved"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)

    def includes(self, other: "Tier") -> bool:
        return other.rank <= self.rank


class Mode(Enum):
    """Delivery style of a single request."""

    BLOCKING = "blocking"
    STREAMING = "streaming"


class RunMode(Enum):
    """Delivery styles a run exercises."""

    BLOCKING = "blocking"
    STREAMING = "streaming"
    BOTH = "both"

    @property
    def modes(self) -> list[Mode]:
        if self is RunMode.BOTH:
            return [Mode.BLOCKING, Mode.STREAMING]
        return [Mode(self.value)]


DEFAULT_MODE = Mode.BLOCKING


def parse_tier(name: str | None) -> Tier | None:
    """Parse a tier name; an empty name means every tier."""
    if not name:
        return None
    try:
        return Tier(name)
    except ValueError:
        valid = ", ".join(t.value for t in Tier)
        raise ConfigError(f"invalid tier {name!r} (valid: {valid})") from None


def parse_extra_fields(items: list[str] | None) -> dict[str, Any]:
    """Parse extra request fields.

    Two forms are accepted:

    * ``key=value``: the value is sent as a string.
    * ``key:=json``: the value is parsed as JSON.
    """
    result: dict[str, Any] = {}
    for item in items or []:
        idx = item.find(":=")
        if idx > 0:
            key, value = item[:idx], item[idx + 2:]
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigError(f"invalid JSON for {key!r}: {e}") from e
            continue

        idx = item.find("=")
        if idx > 0:
            result[item[:idx]] = item[idx + 1:]
            continue

        raise ConfigError(
            f"invalid format {item!r} (expected key=value or key:=json)"
        )
    return result


class ClientConfig(BaseModel):
    """Connection settings for the server under test.

    Args:
        base_url: Server base URL, e.g. ``http://localhost:8080/v1``.
        model: Model name sent with every request.
        api_key: Bearer token. Falls back to ``OPENAI_API_KEY``.
        timeout: Per-request timeout in seconds.
        extra: Fields merged into the root of every request body.
    """

    base_url: str
    model: str
    api_key: str | None = Field(default=None, repr=False)
    timeout: float = Field(default=30.0, gt=0)
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("base_url", "model")
    @classmethod
    def _not_blank(cls, value: str, info) -> str:
        if not value.strip():
            raise ValueError(f"{info.field_name} is required")
        return value.strip()

    def resolved_api_key(self) -> str:
        # The OpenAI client refuses an empty key; local servers ignore it.
        return self.api_key or os.getenv("OPENAI_API_KEY") or "EMPTY"


class RunnerConfig(BaseModel):
    """Selection and execution settings for one run.

    Args:
        name_filter: Only run cases whose name contains this substring.
        tier: Highest tier to run; ``None`` runs every tier.
        include_all: Also run cases that are disabled by default.
        mode: Delivery modes to exercise.
        jobs: Number of concurrent workers; 1 or less runs sequentially.
        verbose: Point at the log file of every failed case.
    """

    name_filter: str = ""
    tier: Tier | None = None
    include_all: bool = False
    mode: RunMode = RunMode.BLOCKING
    jobs: int = 1
    verbose: bool = False


def build_config(
    base_url: str,
    model: str,
    api_key: str | None = None,
    timeout: float = 30.0,
    extra: list[str] | None = None,
    name_filter: str = "",
    tier: str | None = None,
    include_all: bool = False,
    mode: str = "blocking",
    jobs: int = 1,
    verbose: bool = False,
) -> tuple[ClientConfig, RunnerConfig]:
    """Validate raw settings into client and runner configuration.

    Raises:
        ConfigError: If any setting is invalid.
    """
    try:
        client_config = ClientConfig(
            base_url=base_url or "",
            model=model or "",
            api_key=api_key,
            timeout=timeout,
            extra=parse_extra_fields(extra),
        )
        runner_config = RunnerConfig(
            name_filter=name_filter or "",
            tier=parse_tier(tier),
            include_all=include_all,
            mode=RunMode(mode),
            jobs=jobs,
            verbose=verbose,
        )
    except ValidationError as e:
        raise ConfigError(_describe(e)) from e
    except ValueError as e:
        raise ConfigError(str(e)) from e
    return client_config, runner_config


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)

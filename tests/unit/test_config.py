"""Unit tests for tiers, modes and run configuration."""

import pytest

from servetest.config import (
    ClientConfig,
    Mode,
    RunMode,
    RunnerConfig,
    Tier,
    build_config,
    parse_extra_fields,
    parse_tier,
)
from servetest.errors import ConfigError


class TestTier:
    def test_tiers_are_inclusive(self):
        assert Tier.REASONING.includes(Tier.STANDARD)
        assert Tier.REASONING.includes(Tier.REASONING)
        assert not Tier.REASONING.includes(Tier.INTERLEAVED)
        assert Tier.INTERLEAVED.includes(Tier.STANDARD)
        assert not Tier.STANDARD.includes(Tier.REASONING)

    def test_parse_tier(self):
        assert parse_tier("reasoning") is Tier.REASONING
        assert parse_tier("") is None
        assert parse_tier(None) is None

    def test_parse_invalid_tier(self):
        with pytest.raises(ConfigError, match="invalid tier 'expert'"):
            parse_tier("expert")


class TestRunMode:
    def test_modes(self):
        assert RunMode.BLOCKING.modes == [Mode.BLOCKING]
        assert RunMode.STREAMING.modes == [Mode.STREAMING]
        assert RunMode.BOTH.modes == [Mode.BLOCKING, Mode.STREAMING]


class TestParseExtraFields:
    def test_string_and_json_values(self):
        extra = parse_extra_fields([
            "chat_template_kwargs:={\"enable_thinking\": true}",
            "top_k:=20",
            "reasoning_format=deepseek",
        ])

        assert extra == {
            "chat_template_kwargs": {"enable_thinking": True},
            "top_k": 20,
            "reasoning_format": "deepseek",
        }

    def test_value_may_contain_equals(self):
        assert parse_extra_fields(["stop=a=b"]) == {"stop": "a=b"}

    def test_none_is_empty(self):
        assert parse_extra_fields(None) == {}

    def test_invalid_json(self):
        with pytest.raises(ConfigError, match="invalid JSON for 'top_k'"):
            parse_extra_fields(["top_k:=twenty"])

    @pytest.mark.parametrize("item", ["novalue", "=x", ""])
    def test_invalid_format(self, item):
        with pytest.raises(ConfigError, match="invalid format"):
            parse_extra_fields([item])


class TestClientConfig:
    def test_defaults(self):
        config = ClientConfig(base_url="http://localhost:8080/v1", model="m")

        assert config.timeout == 30.0
        assert config.extra == {}

    def test_api_key_fallback(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        assert ClientConfig(base_url="u", model="m").resolved_api_key() == "from-env"
        assert ClientConfig(base_url="u", model="m", api_key="k").resolved_api_key() == "k"

        monkeypatch.delenv("OPENAI_API_KEY")
        assert ClientConfig(base_url="u", model="m").resolved_api_key() == "EMPTY"

    def test_api_key_not_in_repr(self):
        config = ClientConfig(base_url="u", model="m", api_key="secret")
        assert "secret" not in repr(config)


class TestBuildConfig:
    def test_builds_both_configs(self):
        client_config, runner_config = build_config(
            base_url="http://localhost:8080/v1",
            model="qwen3",
            extra=["top_k:=20"],
            tier="reasoning",
            mode="both",
            jobs=4,
        )

        assert client_config.extra == {"top_k": 20}
        assert runner_config == RunnerConfig(
            tier=Tier.REASONING, mode=RunMode.BOTH, jobs=4,
        )

    @pytest.mark.parametrize("jobs", [0, -3])
    def test_non_positive_jobs_accepted(self, jobs):
        _, runner_config = build_config(base_url="u", model="m", jobs=jobs)

        assert runner_config.jobs == jobs

    @pytest.mark.parametrize("kwargs,match", [
        ({"base_url": "", "model": "m"}, "base_url"),
        ({"base_url": "u", "model": "  "}, "model"),
        ({"base_url": "u", "model": "m", "timeout": 0}, "timeout"),
        ({"base_url": "u", "model": "m", "mode": "sometimes"}, "sometimes"),
        ({"base_url": "u", "model": "m", "tier": "expert"}, "invalid tier"),
        ({"base_url": "u", "model": "m", "extra": ["bad"]}, "invalid format"),
    ])
    def test_invalid_settings_raise_config_error(self, kwargs, match):
        with pytest.raises(ConfigError, match=match):
            build_config(**kwargs)

"""Config validation, env overrides and retry policy loading."""

from __future__ import annotations

import copy

import pytest
import yaml

from bot.config.loader import apply_env_overrides, get_config
from bot.config.resilience import load_resilience_settings, policy_errors
from bot.config.validator import ConfigValidationError, validate_config
from bot.resilience import ApprovalDetails, RetryPolicy


BASE_CONFIG = {
    "bot_token": "token",
    "owner_id": 1234,
    "providers": {
        "openai": {"base_url": "https://api.openai.com/v1", "api_key": "sk-test"},
        "ollama": {"base_url": "http://localhost:11434"},
    },
    "models": {
        "openai/gpt-4.1": {"temperature": 0.5},
        "ollama/qwen3:14b": {"think": False},
    },
    "fallback_models": ["ollama/qwen3:14b"],
    "resilience": {
        "approval_ttl_seconds": 600,
        "defaults": {"max_retries": 2, "breaker_limit": 4},
        "call_sites": {"chat": {"max_retries": 1}},
    },
}


def make_config(**overrides):
    cfg = copy.deepcopy(BASE_CONFIG)
    cfg.update(overrides)
    return cfg


class TestValidator:
    def test_valid_config_passes(self) -> None:
        validate_config(make_config())

    @pytest.mark.parametrize("missing", ["bot_token", "providers", "models"])
    def test_missing_required_key(self, missing: str) -> None:
        cfg = make_config()
        del cfg[missing]
        with pytest.raises(ConfigValidationError):
            validate_config(cfg)

    def test_model_with_unknown_provider(self) -> None:
        cfg = make_config(models={"anthropic/claude": {}})
        with pytest.raises(ConfigValidationError):
            validate_config(cfg)

    @pytest.mark.parametrize(
        "resilience",
        [
            {"defaults": {"max_retries": -1}},
            {"defaults": {"breaker_limit": 0}},
            {"defaults": {"initial_backoff_ms": 5000, "max_backoff_ms": 100}},
            {"call_sites": {"chat": {"require_approval": True}}},
            {"call_sites": {"chat": {"require_approval": "yes", "approval_details": {"type": "api_call"}}}},
            {"call_sites": {"chat": {"approval_details": {"user": "x"}}}},
            {"approval_ttl_seconds": -5},
            {"approval_sweep_seconds": 0},
            "not a mapping",
        ],
    )
    def test_bad_resilience_section(self, resilience) -> None:
        with pytest.raises(ConfigValidationError):
            validate_config(make_config(resilience=resilience))

    def test_unknown_policy_option_only_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        validate_config(make_config(resilience={"defaults": {"jitter": True}}))
        assert "unknown option 'jitter'" in caplog.text

    def test_owner_id_must_be_integer(self) -> None:
        with pytest.raises(ConfigValidationError):
            validate_config(make_config(owner_id="me"))


class TestEnvOverrides:
    def test_quoted_owner_and_channel_list(self) -> None:
        cfg = apply_env_overrides({}, {"OWNER_ID": '"1234"', "CHANNEL_ID": "55,66", "BOT_TOKEN": " abc "})
        assert cfg == {"owner_id": 1234, "alert_channel_id": 55, "bot_token": "abc"}

    def test_empty_values_are_ignored(self) -> None:
        assert apply_env_overrides({"owner_id": 1}, {"OWNER_ID": ""}) == {"owner_id": 1}

    def test_get_config_exits_on_invalid_file(self, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
        for key in ("BOT_TOKEN", "OWNER_ID", "CHANNEL_ID"):
            monkeypatch.delenv(key, raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("providers: {}\n", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            get_config(str(path))
        assert exc_info.value.code == 1


class TestResilienceSettings:
    def test_layering(self) -> None:
        settings = load_resilience_settings(make_config())
        assert settings.default_policy.max_retries == 2
        assert settings.default_policy.breaker_limit == 4
        # config override wins over the built-in tweak
        assert settings.policies["chat"].max_retries == 1
        assert settings.policies["chat"].breaker_limit == 4
        # built-in tweak applies when config is silent
        assert settings.policies["attachments"].max_retries == 1
        assert settings.policies["attachments"].max_backoff_ms == 2000
        assert settings.approval_ttl_seconds == 600
        assert settings.approval_sweep_seconds == 30

    def test_defaults_without_section(self) -> None:
        cfg = make_config()
        del cfg["resilience"]
        settings = load_resilience_settings(cfg)
        assert settings.default_policy == RetryPolicy()
        assert settings.approval_ttl_seconds == 900
        assert set(settings.policies) >= {"chat", "ollama", "attachments"}

    def test_approval_details_are_parsed(self) -> None:
        cfg = make_config(resilience={
            "call_sites": {"chat": {"require_approval": True, "approval_details": {"type": "api_call", "context": "chat"}}},
        })
        policy = load_resilience_settings(cfg).policies["chat"]
        assert policy.require_approval is True
        assert policy.approval_details == ApprovalDetails(type="api_call", context="chat")


class TestRetryPolicy:
    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy.from_mapping({"jitter": True})

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"breaker_limit": 0},
            {"max_retries": True},
            {"initial_backoff_ms": 20_000},
        ],
    )
    def test_invalid_values(self, kwargs) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_policy_is_frozen(self) -> None:
        with pytest.raises(AttributeError):
            RetryPolicy().max_retries = 5  # type: ignore[misc]

    def test_with_callback_keeps_thresholds(self) -> None:
        policy = RetryPolicy(max_retries=7)
        wrapped = policy.with_callback(print)
        assert wrapped.max_retries == 7
        assert wrapped.on_breaker_open is print
        assert policy.on_breaker_open is None


class TestLayeredPolicies:
    def test_unknown_option_warns_and_is_ignored(self) -> None:
        cfg = make_config(resilience={"defaults": {"jitter": True, "max_retries": 2}})
        validate_config(cfg)
        settings = load_resilience_settings(cfg)
        assert settings.default_policy.max_retries == 2
        assert settings.policies["attachments"].max_retries == 1

    def test_defaults_clashing_with_builtin_call_site(self, caplog: pytest.LogCaptureFixture) -> None:
        # fine on its own, but the attachments call site caps backoff at 2000ms
        cfg = make_config(resilience={"defaults": {"initial_backoff_ms": 5000}})

        errors = policy_errors(cfg)
        assert len(errors) == 1
        assert "resilience.call_sites.attachments" in errors[0]
        assert "max_backoff_ms" in errors[0]

        with pytest.raises(ConfigValidationError):
            validate_config(cfg)
        assert "resilience.call_sites.attachments" in caplog.text

    def test_clash_fixed_by_call_site_override(self) -> None:
        cfg = make_config(resilience={
            "defaults": {"initial_backoff_ms": 5000},
            "call_sites": {"attachments": {"max_backoff_ms": 8000}},
        })
        validate_config(cfg)
        assert load_resilience_settings(cfg).policies["attachments"].max_backoff_ms == 8000

    def test_get_config_exits_instead_of_crashing(self, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
        for key in ("BOT_TOKEN", "OWNER_ID", "CHANNEL_ID"):
            monkeypatch.delenv(key, raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(make_config(resilience={"defaults": {"initial_backoff_ms": 5000}})), encoding="utf-8")

        with pytest.raises(SystemExit) as exc_info:
            get_config(str(path))
        assert exc_info.value.code == 1

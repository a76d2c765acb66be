import pytest
from pydantic import ValidationError

from chat_gateway.config.settings import Settings
from chat_gateway.gateway.retry import RetryPolicy


def make_settings(**kw):
    kw.setdefault("log_to_file", False)
    return Settings(_env_file=None, **kw)


def test_default_model_follows_upstream_provider():
    assert make_settings().as_defaults().model == "gemini-1.5-flash"
    openai = make_settings(upstream_provider="openai", openai_api_key="k")
    assert openai.as_defaults().model == "gpt-4o-mini"
    assert openai.upstream_api_key == "k"


def test_explicit_default_model_wins():
    cfg = make_settings(upstream_provider="OpenAI", default_model="glm-4-flash")
    assert cfg.upstream_provider == "openai"
    assert cfg.as_defaults().model == "glm-4-flash"


def test_unknown_provider_rejected():
    with pytest.raises(ValidationError):
        make_settings(upstream_provider="llama-local")


def test_prefix_and_secrets_normalized():
    cfg = make_settings(api_prefix="api/", gemini_api_key="  abcd1234  ")
    assert cfg.api_prefix == "/api"
    assert cfg.gemini_api_key == "abcd1234"
    assert cfg.key_preview == "abcd...1234"


def test_retry_policy_from_settings():
    policy = RetryPolicy.from_settings(make_settings(upstream_deadline_ms=5000, retry_deadline_ms=None))
    assert policy.deadline_ms == 5000
    assert policy.retry_deadline_ms is None
    assert policy.backoff_base_ms == 300

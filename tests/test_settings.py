# tests/test_settings.py
"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from ragchat.config.settings import ModelParams, Settings, get_settings
from ragchat.src.core.exceptions import ConfigurationError


def load(**env):
    return Settings(_env_file=None, **env)


class TestDefaults:
    def test_documented_defaults(self):
        settings = load(GOOGLE_API_KEY="k")

        assert settings.MAX_RETRIEVER_RESULTS == 5
        assert settings.MIN_RETRIEVER_SCORE == 0.7
        assert settings.MEMORY_MAX_TOKENS == 4000
        assert settings.QUERY_EXPANSION_COUNT == 3
        assert settings.EMBEDDING_MODEL == "gemini-embedding-001"
        assert settings.LEDGER_BACKEND == "json"
        assert settings.CHAT_MODEL == ModelParams()

    def test_model_params_defaults(self):
        params = ModelParams()
        assert params.temperature == 0.2
        assert params.top_p == 1.0
        assert params.max_tokens == 4000
        assert params.stop == ()
        assert params.max_retries == 3
        assert params.response_format == "text"

    def test_api_key_is_secret(self):
        settings = load(GOOGLE_API_KEY="super-secret")
        assert "super-secret" not in repr(settings)


class TestEnvironment:
    def test_nested_model_params_from_env(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "k")
        monkeypatch.setenv("CHAT_MODEL__TEMPERATURE", "0.9")
        monkeypatch.setenv("STREAMING_CHAT_MODEL__MAX_TOKENS", "256")

        settings = Settings(_env_file=None)

        assert settings.CHAT_MODEL.temperature == 0.9
        assert settings.STREAMING_CHAT_MODEL.max_tokens == 256
        assert settings.STREAMING_CHAT_MODEL.temperature == 0.2

    def test_missing_api_key_raises_configuration_error(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        get_settings.cache_clear()

        with pytest.raises(ConfigurationError, match="GOOGLE_API_KEY"):
            get_settings()


class TestValidation:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("MIN_RETRIEVER_SCORE", 1.5),
            ("MAX_WORKERS", 0),
            ("MAX_WORKERS", 17),
            ("CHUNK_SIZE", 10),
            ("MAX_RETRIEVER_RESULTS", 0),
            ("GOOGLE_API_KEY", "   "),
        ],
    )
    def test_out_of_range_values_rejected(self, field, value):
        env = {"GOOGLE_API_KEY": "k", field: value}
        with pytest.raises(PydanticValidationError):
            load(**env)

    def test_mongo_backend_requires_uri(self):
        with pytest.raises(PydanticValidationError):
            load(GOOGLE_API_KEY="k", LEDGER_BACKEND="mongo")
        assert load(GOOGLE_API_KEY="k", LEDGER_BACKEND="mongo", MONGO_URI="mongodb://localhost").MONGO_URI is not None

    def test_unknown_model_param_rejected(self):
        with pytest.raises(PydanticValidationError):
            ModelParams(temprature=0.5)

    def test_settings_are_frozen(self):
        settings = load(GOOGLE_API_KEY="k")
        with pytest.raises(PydanticValidationError):
            settings.MAX_WORKERS = 8

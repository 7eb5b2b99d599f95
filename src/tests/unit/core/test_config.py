"""
Tests for Settings validation and the ConfigurationManager cascade.
"""

from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from agentu.core.config import ConfigurationManager, Settings


class TestSettingsValidation:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.default_monthly_token_limit == 1_000_000
        assert settings.quota_warning_threshold == 0.8
        assert settings.default_chunk_size == 1000
        assert settings.default_chunk_overlap == 200

    def test_log_level_is_normalised(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")

    @pytest.mark.parametrize("threshold", [0.0, 1.0, 1.5, -0.1])
    def test_warning_threshold_must_be_strictly_inside_unit_interval(self, threshold):
        with pytest.raises(ValidationError):
            Settings(quota_warning_threshold=threshold)

    def test_database_url_scheme_checked(self):
        with pytest.raises(ValidationError):
            Settings(database_url="mysql://u:p@localhost/db")
        assert Settings(database_url="sqlite+aiosqlite:///tmp.db").database_url.startswith("sqlite")

    def test_redis_enabled_follows_url(self):
        assert Settings(redis_url=None).redis_enabled is False
        assert Settings(redis_url="redis://localhost:6379").redis_enabled is True

    def test_env_alias(self, monkeypatch):
        monkeypatch.setenv("AGENTU_DEFAULT_CHUNK_SIZE", "512")
        assert Settings().default_chunk_size == 512


class TestConfigurationManager:
    @pytest.fixture
    def manager(self):
        return ConfigurationManager(Settings(llm_temperature_default=0.7, llm_max_tokens_default=1024))

    def test_temperature_cascade(self, manager):
        model = SimpleNamespace(temperature_default=0.3, temperature_min=0.0, temperature_max=1.0)
        assert manager.get_temperature(SimpleNamespace(temperature=0.9), model) == 0.9
        assert manager.get_temperature(SimpleNamespace(temperature=None), model) == 0.3
        assert manager.get_temperature() == 0.7

    def test_temperature_clamped_to_model_range(self, manager):
        model = SimpleNamespace(temperature_default=0.5, temperature_min=0.0, temperature_max=1.0)
        assert manager.get_temperature(SimpleNamespace(temperature=1.8), model) == 1.0

    def test_max_tokens_capped_by_model(self, manager):
        model = SimpleNamespace(max_tokens=512)
        assert manager.get_max_tokens(SimpleNamespace(max_tokens=4000), model) == 512
        assert manager.get_max_tokens(SimpleNamespace(max_tokens=None), None) == 1024

    def test_chunk_settings_prefer_knowledge_base(self, manager):
        assert manager.get_chunk_size({"chunk_size": 300}) == 300
        assert manager.get_chunk_size({"chunk_size": None}) == 1000
        assert manager.get_chunk_overlap({"chunk_overlap": 0}) == 0
        assert manager.get_chunk_overlap(None) == 200

    def test_rag_max_results(self, manager):
        assert manager.get_rag_max_results(3) == 3
        assert manager.get_rag_max_results(0) == manager.settings.rag_max_results_default
        assert manager.get_rag_max_results(None) == manager.settings.rag_max_results_default

    def test_context_budget(self, manager):
        assert manager.get_context_budget() == (4000, "chars")

"""Unit tests for CardsmithSettings."""

import pytest
import yaml
from pydantic import ValidationError

from cardsmith.application.settings import CardsmithSettings
from cardsmith.core.domain.models import ProviderKind


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in ("CARDSMITH_MODEL_NAME", "CARDSMITH_PROVIDER", "CARDSMITH_MAX_ITERATIONS"):
        monkeypatch.delenv(key, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)


def test_defaults():
    settings = CardsmithSettings()

    assert settings.provider == ProviderKind.OPENAI
    assert settings.max_iterations == 50
    assert settings.tool_timeout_seconds == 300.0
    assert settings.required_outputs == ["character", "worldbook"]
    assert settings.token_budget is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CARDSMITH_MODEL_NAME", "llama3.1")
    monkeypatch.setenv("CARDSMITH_PROVIDER", "ollama")
    monkeypatch.setenv("CARDSMITH_MAX_ITERATIONS", "12")

    settings = CardsmithSettings()

    assert settings.model_name == "llama3.1"
    assert settings.provider == ProviderKind.OLLAMA
    assert settings.max_iterations == 12


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "config" / "config.yaml"
    CardsmithSettings(model_name="gpt-4.1", token_budget=5000).save_to_file(path)

    loaded = CardsmithSettings.load_from_file(path)

    assert loaded.model_name == "gpt-4.1"
    assert loaded.token_budget == 5000
    assert yaml.safe_load(path.read_text())["provider"] == "openai"


def test_load_missing_file_gives_defaults(tmp_path):
    assert CardsmithSettings.load_from_file(tmp_path / "missing.yaml").max_iterations == 50


def test_update_setting_coerces_and_saves(tmp_path):
    path = tmp_path / "config.yaml"
    settings = CardsmithSettings()

    settings.update_setting("max_iterations", "20", config_path=path)

    assert settings.max_iterations == 20
    assert CardsmithSettings.load_from_file(path).max_iterations == 20


def test_update_unknown_setting(tmp_path):
    with pytest.raises(ValueError, match="Unknown setting: colour"):
        CardsmithSettings().update_setting("colour", "blue", config_path=tmp_path / "c.yaml")


def test_update_invalid_value(tmp_path):
    path = tmp_path / "config.yaml"
    settings = CardsmithSettings()

    with pytest.raises(ValidationError):
        settings.update_setting("provider", "skynet", config_path=path)

    assert settings.provider == ProviderKind.OPENAI
    assert not path.exists()


def test_to_model_config():
    settings = CardsmithSettings(
        provider="ollama", model_name="mistral", base_url="http://box:11434", temperature=0.3
    )

    config = settings.to_model_config()

    assert config.provider == ProviderKind.OLLAMA
    assert config.model_name == "mistral"
    assert config.base_url == "http://box:11434"
    assert config.temperature == 0.3


def test_log_level_is_normalised_and_checked():
    assert CardsmithSettings(log_level=" info ").log_level == "INFO"

    with pytest.raises(ValidationError):
        CardsmithSettings(log_level="chatty")
    with pytest.raises(ValidationError):
        CardsmithSettings(session_cleanup_days=0)

from __future__ import annotations

import allure
import pytest

from parallel_learn.config import Settings, SettingsError

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.worker.timeout_seconds == 120.0
    assert settings.worker.terminate_grace_seconds == 5.0
    assert settings.worker.cancel_grace_seconds == 2.0
    assert settings.retry.max_retries == 3
    assert settings.retry.backoff_schedule_ms == (0, 5_000, 10_000)
    assert settings.monitor.sample_interval_seconds == 1.0
    assert settings.merge.timeout_seconds == 120.0
    assert settings.merge.progress_interval_seconds == 5.0
    assert settings.merge.fallback_enabled is True
    assert settings.agent.command_template == "claude -p --model {model}"
    assert settings.agent.model == "sonnet"


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("PARALLEL_LEARN_WORKER_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("PARALLEL_LEARN_MAX_RETRIES", "1")
    monkeypatch.setenv("PARALLEL_LEARN_BACKOFF_SCHEDULE_MS", "0, 250 ,1000")
    monkeypatch.setenv("PARALLEL_LEARN_FALLBACK_ENABLED", "off")
    monkeypatch.setenv("PARALLEL_LEARN_AGENT_COMMAND", "gemini --model {model}")
    monkeypatch.setenv("PARALLEL_LEARN_AGENT_MODEL", "pro")

    settings = Settings.from_env()

    assert settings.worker.timeout_seconds == 30.0
    assert settings.retry.max_retries == 1
    assert settings.retry.backoff_schedule_ms == (0, 250, 1_000)
    assert settings.merge.fallback_enabled is False
    assert settings.agent.command_template == "gemini --model {model}"
    assert settings.agent.model == "pro"


def test_synthesis_agent_falls_back_to_worker_agent(monkeypatch) -> None:
    settings = Settings.from_env()
    assert settings.agent.effective_synthesis_template == settings.agent.command_template
    assert settings.agent.effective_synthesis_model == "sonnet"

    monkeypatch.setenv("PARALLEL_LEARN_SYNTHESIS_COMMAND", "claude -p --model {model} --merge")
    monkeypatch.setenv("PARALLEL_LEARN_SYNTHESIS_MODEL", "opus")
    settings = Settings.from_env()

    assert settings.agent.effective_synthesis_template == "claude -p --model {model} --merge"
    assert settings.agent.effective_synthesis_model == "opus"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PARALLEL_LEARN_WORKER_TIMEOUT_SECONDS", "0"),
        ("PARALLEL_LEARN_WORKER_TIMEOUT_SECONDS", "soon"),
        ("PARALLEL_LEARN_MAX_RETRIES", "-1"),
        ("PARALLEL_LEARN_MAX_RETRIES", "two"),
        ("PARALLEL_LEARN_BACKOFF_SCHEDULE_MS", "0,fast"),
        ("PARALLEL_LEARN_BACKOFF_SCHEDULE_MS", "0,-5"),
        ("PARALLEL_LEARN_BACKOFF_SCHEDULE_MS", " , "),
        ("PARALLEL_LEARN_MERGE_PROGRESS_INTERVAL_SECONDS", "0"),
        ("PARALLEL_LEARN_MERGE_PROGRESS_INTERVAL_SECONDS", "-1"),
        ("PARALLEL_LEARN_FALLBACK_ENABLED", "maybe"),
        ("PARALLEL_LEARN_AGENT_COMMAND", "   "),
    ],
)
def test_invalid_values_raise_settings_error(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(SettingsError):
        Settings.from_env()


def test_blank_numeric_value_uses_default(monkeypatch) -> None:
    monkeypatch.setenv("PARALLEL_LEARN_MAX_RETRIES", " ")

    assert Settings.from_env().retry.max_retries == 3

from __future__ import annotations

from pathlib import Path

import allure
import pytest

from pm_orchestrator.config import DEFAULT_EXECUTOR_COMMAND, Settings
from pm_orchestrator.retry.backoff import BackoffKind
from pm_orchestrator.retry.failure_classifier import FailureType

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("PM_ORCHESTRATOR_DB_PATH")

    settings = Settings.from_env()

    assert settings.db_path == Path(".pm_orchestrator.db")
    assert settings.queue.namespace == "default"
    assert settings.retry.max_retries == 3
    assert settings.retry.jitter is False
    assert settings.circuit_breaker.threshold == 5
    assert settings.model_policy.profile == "stable"
    assert settings.model_policy.cost_limit is None
    assert settings.executor.command_template == DEFAULT_EXECUTOR_COMMAND
    settings.validate()
    assert Settings.from_env(db_path=tmp_path / "x.db").db_path == tmp_path / "x.db"


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("PM_ORCHESTRATOR_NAMESPACE", "proj")
    monkeypatch.setenv("PM_ORCHESTRATOR_LOG_LEVEL", "debug")
    monkeypatch.setenv("PM_ORCHESTRATOR_RETRY_MAX_RETRIES", "5")
    monkeypatch.setenv("PM_ORCHESTRATOR_RETRY_BACKOFF_KIND", "Linear")
    monkeypatch.setenv("PM_ORCHESTRATOR_RETRY_JITTER", "on")
    monkeypatch.setenv("PM_ORCHESTRATOR_MODEL_COST_LIMIT", "12.5")
    monkeypatch.setenv("PM_ORCHESTRATOR_MODEL_FALLBACK_ORDER", "anthropic, openai, anthropic")
    monkeypatch.setenv("PM_ORCHESTRATOR_DEFAULT_MODEL", "gpt-4o-mini")

    settings = Settings.from_env()

    assert settings.queue.namespace == "proj"
    assert settings.log_level == "DEBUG"
    assert settings.retry.max_retries == 5
    assert settings.retry.backoff_kind == "linear"
    assert settings.retry.jitter is True
    assert settings.model_policy.cost_limit == 12.5
    assert settings.model_policy.fallback_order == ("anthropic", "openai")
    assert settings.task_defaults.model == "gpt-4o-mini"
    settings.validate()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("PM_ORCHESTRATOR_RETRY_MAX_RETRIES", "three", "integer value for PM_ORCHESTRATOR_RETRY_MAX_RETRIES"),
        ("PM_ORCHESTRATOR_POLL_INTERVAL_SECONDS", "soon", "number value for PM_ORCHESTRATOR_POLL_INTERVAL"),
        ("PM_ORCHESTRATOR_MODEL_COST_LIMIT", "lots", "number value for PM_ORCHESTRATOR_MODEL_COST_LIMIT"),
        ("PM_ORCHESTRATOR_RETRY_JITTER", "maybe", "boolean value for PM_ORCHESTRATOR_RETRY_JITTER"),
    ],
)
def test_invalid_values_name_the_variable(monkeypatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("PM_ORCHESTRATOR_NAMESPACE", " ", "PM_ORCHESTRATOR_NAMESPACE must not be empty"),
        ("PM_ORCHESTRATOR_RETRY_BACKOFF_KIND", "random", "RETRY_BACKOFF_KIND must be one of"),
        ("PM_ORCHESTRATOR_RETRY_MAX_BACKOFF_MS", "10", "RETRY_MAX_BACKOFF_MS must be >="),
        ("PM_ORCHESTRATOR_CIRCUIT_BREAKER_THRESHOLD", "0", "PM_ORCHESTRATOR_CIRCUIT_BREAKER_THRESHOLD"),
        ("PM_ORCHESTRATOR_PLANNER_EXECUTION_MODE", "random", "PM_ORCHESTRATOR_PLANNER_EXECUTION_MODE"),
        ("PM_ORCHESTRATOR_PLANNER_MIN_SUBTASKS", "20", "PM_ORCHESTRATOR_PLANNER_MIN_SUBTASKS"),
        ("PM_ORCHESTRATOR_MODEL_PROFILE", "turbo", "PM_ORCHESTRATOR_MODEL_PROFILE must be one of"),
        ("PM_ORCHESTRATOR_MODEL_COST_LIMIT", "0", "PM_ORCHESTRATOR_MODEL_COST_LIMIT must be > 0"),
        ("PM_ORCHESTRATOR_EXECUTOR_COMMAND", "agent --model {model}", "EXECUTOR_COMMAND must include"),
    ],
)
def test_validate_names_the_variable(monkeypatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()


def test_component_configs(monkeypatch) -> None:
    monkeypatch.setenv("PM_ORCHESTRATOR_RETRY_CAUSE_SPECIFIC", "true")
    monkeypatch.setenv("PM_ORCHESTRATOR_MAX_PARALLEL_SUBTASKS", "5")
    monkeypatch.setenv("PM_ORCHESTRATOR_PLANNER_EXECUTION_MODE", "sequential")
    monkeypatch.setenv("PM_ORCHESTRATOR_DEFAULT_PROVIDER", "anthropic")
    settings = Settings.from_env()

    retry = settings.retry_config()
    assert retry.backoff.kind == BackoffKind.EXPONENTIAL
    assert set(retry.cause_policies) == {FailureType.RATE_LIMIT, FailureType.TIMEOUT}
    assert settings.orchestrator_config().max_parallel_subtasks == 5
    assert settings.planner_config().execution_mode == "sequential"
    assert settings.model_policy_config().fallback_provider == "anthropic"

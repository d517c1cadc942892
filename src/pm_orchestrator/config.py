"""Runtime configuration for the queue, retry, planning and dispatch layers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from pm_orchestrator.model_policy.manager import ModelPolicyConfig
from pm_orchestrator.model_policy.profiles import DEFAULT_PROFILE, PROFILES
from pm_orchestrator.orchestration.orchestrator import OrchestratorConfig
from pm_orchestrator.planning.planner import PlannerConfig
from pm_orchestrator.retry.backoff import BackoffKind, BackoffStrategy
from pm_orchestrator.retry.manager import RetryConfig, recommended_cause_policies

ENV_PREFIX = "PM_ORCHESTRATOR_"
DEFAULT_DB_PATH = ".pm_orchestrator.db"
DEFAULT_EXECUTOR_COMMAND = "python3 -m pm_orchestrator.executor.echo_agent --prompt-file {prompt_file}"


@dataclass(slots=True)
class QueueSettings:
    """Queue store settings."""

    namespace: str = "default"
    sqlite_busy_timeout_ms: int = 5_000
    stale_after_seconds: int = 1_800


@dataclass(slots=True)
class RetrySettings:
    """Retry policy settings."""

    max_retries: int = 3
    backoff_kind: str = "exponential"
    initial_backoff_ms: int = 1_000
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 30_000
    jitter: bool = False
    cause_specific: bool = False


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Per (provider, model) circuit breaker settings."""

    threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass(slots=True)
class PlannerSettings:
    """Size estimation and chunking settings."""

    auto_chunk: bool = True
    chunk_complexity_threshold: int = 6
    chunk_token_threshold: int = 8_000
    min_subtasks: int = 2
    max_subtasks: int = 10
    enable_dependency_analysis: bool = True
    execution_mode: str = "parallel"


@dataclass(slots=True)
class ModelPolicySettings:
    """Model profile and cost limit settings."""

    profile: str = DEFAULT_PROFILE
    cost_limit: float | None = None
    cost_warning_ratio: float = 0.8
    fallback_order: tuple[str, ...] = ("openai", "anthropic")


@dataclass(slots=True)
class DispatcherSettings:
    """Dispatch loop settings."""

    worker_id: str | None = None
    poll_interval_seconds: float = 1.0
    heartbeat_interval_seconds: float = 5.0
    max_parallel_subtasks: int = 3
    store_retry_initial_seconds: float = 0.5
    store_retry_max_seconds: float = 30.0
    max_auto_resolutions: int = 3
    enable_model_escalation: bool = True


@dataclass(slots=True)
class ExecutorSettings:
    """External agent command settings."""

    command_template: str = DEFAULT_EXECUTOR_COMMAND
    timeout_seconds: int = 600
    poll_interval_seconds: float = 0.1


@dataclass(slots=True)
class TaskDefaultsSettings:
    """Defaults frozen into a task's settings snapshot at submission."""

    provider: str = "openai"
    model: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    log_level: str = "WARNING"
    queue: QueueSettings = field(default_factory=QueueSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    planner: PlannerSettings = field(default_factory=PlannerSettings)
    model_policy: ModelPolicySettings = field(default_factory=ModelPolicySettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    task_defaults: TaskDefaultsSettings = field(default_factory=TaskDefaultsSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``PM_ORCHESTRATOR_*`` variables with local defaults."""

        cost_limit_raw = _env("MODEL_COST_LIMIT", "").strip()
        return cls(
            db_path=db_path or Path(_env("DB_PATH", DEFAULT_DB_PATH)),
            log_level=_env("LOG_LEVEL", "WARNING").upper(),
            queue=QueueSettings(
                namespace=_env("NAMESPACE", "default"),
                sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5_000),
                stale_after_seconds=_env_int("STALE_AFTER_SECONDS", 1_800),
            ),
            retry=RetrySettings(
                max_retries=_env_int("RETRY_MAX_RETRIES", 3),
                backoff_kind=_env("RETRY_BACKOFF_KIND", "exponential").strip().lower(),
                initial_backoff_ms=_env_int("RETRY_INITIAL_BACKOFF_MS", 1_000),
                backoff_multiplier=_env_float("RETRY_BACKOFF_MULTIPLIER", 2.0),
                max_backoff_ms=_env_int("RETRY_MAX_BACKOFF_MS", 30_000),
                jitter=_env_bool(f"{ENV_PREFIX}RETRY_JITTER", False),
                cause_specific=_env_bool(f"{ENV_PREFIX}RETRY_CAUSE_SPECIFIC", False),
            ),
            circuit_breaker=CircuitBreakerSettings(
                threshold=_env_int("CIRCUIT_BREAKER_THRESHOLD", 5),
                cooldown_seconds=_env_float("CIRCUIT_BREAKER_COOLDOWN_SECONDS", 60.0),
            ),
            planner=PlannerSettings(
                auto_chunk=_env_bool(f"{ENV_PREFIX}PLANNER_AUTO_CHUNK", True),
                chunk_complexity_threshold=_env_int("PLANNER_CHUNK_COMPLEXITY_THRESHOLD", 6),
                chunk_token_threshold=_env_int("PLANNER_CHUNK_TOKEN_THRESHOLD", 8_000),
                min_subtasks=_env_int("PLANNER_MIN_SUBTASKS", 2),
                max_subtasks=_env_int("PLANNER_MAX_SUBTASKS", 10),
                enable_dependency_analysis=_env_bool(
                    f"{ENV_PREFIX}PLANNER_DEPENDENCY_ANALYSIS",
                    True,
                ),
                execution_mode=_env("PLANNER_EXECUTION_MODE", "parallel").strip().lower(),
            ),
            model_policy=ModelPolicySettings(
                profile=_env("MODEL_PROFILE", DEFAULT_PROFILE).strip().lower(),
                cost_limit=_parse_float("MODEL_COST_LIMIT", cost_limit_raw) if cost_limit_raw else None,
                cost_warning_ratio=_env_float("MODEL_COST_WARNING_RATIO", 0.8),
                fallback_order=_env_csv("MODEL_FALLBACK_ORDER", ("openai", "anthropic")),
            ),
            dispatcher=DispatcherSettings(
                worker_id=_env("WORKER_ID", "").strip() or None,
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 1.0),
                heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 5.0),
                max_parallel_subtasks=_env_int("MAX_PARALLEL_SUBTASKS", 3),
                store_retry_initial_seconds=_env_float("STORE_RETRY_INITIAL_SECONDS", 0.5),
                store_retry_max_seconds=_env_float("STORE_RETRY_MAX_SECONDS", 30.0),
                max_auto_resolutions=_env_int("MAX_AUTO_RESOLUTIONS", 3),
                enable_model_escalation=_env_bool(f"{ENV_PREFIX}MODEL_ESCALATION", True),
            ),
            executor=ExecutorSettings(
                command_template=_env("EXECUTOR_COMMAND", DEFAULT_EXECUTOR_COMMAND),
                timeout_seconds=_env_int("EXECUTOR_TIMEOUT_SECONDS", 600),
                poll_interval_seconds=_env_float("EXECUTOR_POLL_INTERVAL_SECONDS", 0.1),
            ),
            task_defaults=TaskDefaultsSettings(
                provider=_env("DEFAULT_PROVIDER", "openai").strip(),
                model=_env("DEFAULT_MODEL", "").strip() or None,
                max_tokens=_env_int("DEFAULT_MAX_TOKENS", 4096),
                temperature=_env_float("DEFAULT_TEMPERATURE", 0.2),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise ``ValueError`` naming the offending variable."""

        if not self.queue.namespace.strip():
            raise ValueError(f"{ENV_PREFIX}NAMESPACE must not be empty.")
        if self.queue.sqlite_busy_timeout_ms <= 0:
            raise ValueError(f"{ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.stale_after_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}STALE_AFTER_SECONDS must be >= 0.")
        if self.retry.max_retries < 0:
            raise ValueError(f"{ENV_PREFIX}RETRY_MAX_RETRIES must be >= 0.")
        if self.retry.backoff_kind not in {kind.value for kind in BackoffKind}:
            raise ValueError(
                f"{ENV_PREFIX}RETRY_BACKOFF_KIND must be one of "
                f"{', '.join(kind.value for kind in BackoffKind)}: {self.retry.backoff_kind!r}",
            )
        if self.retry.initial_backoff_ms < 0:
            raise ValueError(f"{ENV_PREFIX}RETRY_INITIAL_BACKOFF_MS must be >= 0.")
        if self.retry.max_backoff_ms < self.retry.initial_backoff_ms:
            raise ValueError(
                f"{ENV_PREFIX}RETRY_MAX_BACKOFF_MS must be >= {ENV_PREFIX}RETRY_INITIAL_BACKOFF_MS.",
            )
        if self.retry.backoff_multiplier < 1:
            raise ValueError(f"{ENV_PREFIX}RETRY_BACKOFF_MULTIPLIER must be >= 1.")
        if self.circuit_breaker.threshold < 1:
            raise ValueError(f"{ENV_PREFIX}CIRCUIT_BREAKER_THRESHOLD must be >= 1.")
        if self.circuit_breaker.cooldown_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}CIRCUIT_BREAKER_COOLDOWN_SECONDS must be >= 0.")
        if self.planner.execution_mode not in {"parallel", "sequential"}:
            raise ValueError(
                f"{ENV_PREFIX}PLANNER_EXECUTION_MODE must be 'parallel' or 'sequential'.",
            )
        if not 1 <= self.planner.min_subtasks <= self.planner.max_subtasks:
            raise ValueError(
                f"{ENV_PREFIX}PLANNER_MIN_SUBTASKS must be between 1 and "
                f"{ENV_PREFIX}PLANNER_MAX_SUBTASKS.",
            )
        if self.model_policy.profile not in PROFILES:
            raise ValueError(
                f"{ENV_PREFIX}MODEL_PROFILE must be one of {', '.join(sorted(PROFILES))}: "
                f"{self.model_policy.profile!r}",
            )
        if self.model_policy.cost_limit is not None and self.model_policy.cost_limit <= 0:
            raise ValueError(f"{ENV_PREFIX}MODEL_COST_LIMIT must be > 0.")
        if not 0 < self.model_policy.cost_warning_ratio <= 1:
            raise ValueError(f"{ENV_PREFIX}MODEL_COST_WARNING_RATIO must be within (0, 1].")
        if self.dispatcher.max_parallel_subtasks < 1:
            raise ValueError(f"{ENV_PREFIX}MAX_PARALLEL_SUBTASKS must be >= 1.")
        if self.dispatcher.heartbeat_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.dispatcher.poll_interval_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}POLL_INTERVAL_SECONDS must be >= 0.")
        if self.executor.timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}EXECUTOR_TIMEOUT_SECONDS must be > 0.")
        if "{prompt}" not in self.executor.command_template and (
            "{prompt_file}" not in self.executor.command_template
        ):
            raise ValueError(f"{ENV_PREFIX}EXECUTOR_COMMAND must include {{prompt}} or {{prompt_file}}.")

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry.max_retries,
            backoff=BackoffStrategy(
                kind=BackoffKind(self.retry.backoff_kind),
                initial_ms=self.retry.initial_backoff_ms,
                multiplier=self.retry.backoff_multiplier,
                max_ms=self.retry.max_backoff_ms,
                jitter=self.retry.jitter,
            ),
            cause_policies=recommended_cause_policies() if self.retry.cause_specific else {},
        )

    def planner_config(self) -> PlannerConfig:
        return PlannerConfig(
            auto_chunk=self.planner.auto_chunk,
            chunk_complexity_threshold=self.planner.chunk_complexity_threshold,
            chunk_token_threshold=self.planner.chunk_token_threshold,
            min_subtasks=self.planner.min_subtasks,
            max_subtasks=self.planner.max_subtasks,
            enable_dependency_analysis=self.planner.enable_dependency_analysis,
            execution_mode=self.planner.execution_mode,
        )

    def model_policy_config(self) -> ModelPolicyConfig:
        return ModelPolicyConfig(
            profile=self.model_policy.profile,
            cost_limit=self.model_policy.cost_limit,
            cost_warning_ratio=self.model_policy.cost_warning_ratio,
            fallback_provider=self.task_defaults.provider,
            fallback_order=self.model_policy.fallback_order,
        )

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            max_parallel_subtasks=self.dispatcher.max_parallel_subtasks,
            executor_timeout_seconds=self.executor.timeout_seconds,
            enable_model_escalation=self.dispatcher.enable_model_escalation,
            max_auto_resolutions=self.dispatcher.max_auto_resolutions,
        )


def _env(suffix: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{suffix}", default)


def _env_int(suffix: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{suffix}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {ENV_PREFIX}{suffix}: {raw!r}") from error


def _env_float(suffix: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{suffix}")
    if raw is None or not raw.strip():
        return default
    return _parse_float(suffix, raw)


def _parse_float(suffix: str, raw: str) -> float:
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {ENV_PREFIX}{suffix}: {raw!r}") from error


def _env_csv(suffix: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(f"{ENV_PREFIX}{suffix}", "").strip()
    if not raw:
        return default
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values) or default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

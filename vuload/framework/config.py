"""
Configuration management for vuload runs.

This module handles loading, parsing, and validating run configurations
from YAML files: run options, scenario definitions and thresholds. The
resulting RunConfig is immutable and is handed to the controller before the
run starts.
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from jsonschema import Draft7Validator

from .thresholds import DEFAULT_TREND_STATS, ThresholdExpression, ThresholdExpressionError


CONSTANT_VUS = "constant-vus"
VALID_EXECUTORS = [CONSTANT_VUS]

DEFAULT_SCRIPT = "catalog"
DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_GRACEFUL_STOP = 30.0
DEFAULT_MAX_TREND_SAMPLES = 1_000_000

DURATION_PATTERN = r"^([0-9]+(\.[0-9]+)?(ms|s|m|h))+$"

_DURATION_SCHEMA = {
    "anyOf": [
        {"type": "number", "minimum": 0},
        {"type": "string", "pattern": DURATION_PATTERN},
    ]
}

# JSON Schema for configuration validation
CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["scenarios"],
    "additionalProperties": False,
    "properties": {
        "run": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "script": {"type": "string", "minLength": 1},
                "env": {
                    "type": "object",
                    "additionalProperties": {"type": ["string", "number", "boolean"]},
                },
                "max_duration": _DURATION_SCHEMA,
                "request_timeout": _DURATION_SCHEMA,
                "max_trend_samples": {"type": "integer", "minimum": 2},
                "threshold_eval_interval": _DURATION_SCHEMA,
                "fail_on_inconclusive": {"type": "boolean"},
                "summary_trend_stats": {
                    "type": "array",
                    "items": {"type": "string"},
                    "minItems": 1,
                },
            },
        },
        "scenarios": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "required": ["vus", "duration", "exec"],
                "additionalProperties": False,
                "properties": {
                    "executor": {"type": "string", "enum": VALID_EXECUTORS},
                    "vus": {"type": "integer", "minimum": 1},
                    "duration": _DURATION_SCHEMA,
                    "start_time": _DURATION_SCHEMA,
                    "exec": {"type": "string", "minLength": 1},
                    "think_time": _DURATION_SCHEMA,
                    "graceful_stop": _DURATION_SCHEMA,
                    "tags": {
                        "type": "object",
                        "additionalProperties": {"type": "string"},
                    },
                },
            },
        },
        "thresholds": {
            "type": "object",
            "additionalProperties": {
                "type": "array",
                "items": {
                    "anyOf": [
                        {"type": "string"},
                        {
                            "type": "object",
                            "required": ["threshold"],
                            "additionalProperties": False,
                            "properties": {
                                "threshold": {"type": "string"},
                                "abort_on_fail": {"type": "boolean"},
                                "delay_abort_eval": _DURATION_SCHEMA,
                            },
                        },
                    ]
                },
            },
        },
    },
}


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        return f"{super().__str__()}: " + "; ".join(self.errors)


def validate_config(data: dict[str, Any]) -> list[str]:
    """
    Validate configuration data against the schema.

    Args:
        data: Configuration dictionary to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = Draft7Validator(CONFIG_SCHEMA)
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: list(e.path)):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
    return errors


def expand_env_vars(value: Any) -> Any:
    """
    Expand environment variables in strings, recursively.

    Supports ${VAR_NAME} syntax. Unset variables expand to "".

    Args:
        value: String, list or dict potentially containing references

    Returns:
        Value with environment variables expanded
    """
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    if not isinstance(value, str):
        return value

    pattern = r'\$\{([^}]+)\}'

    def replace_env(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    return re.sub(pattern, replace_env, value)


_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_PART = re.compile(r"([0-9]+(?:\.[0-9]+)?)(ms|s|m|h)")


def parse_duration(value: Union[str, int, float, None]) -> float:
    """Parse a duration to seconds.

    Args:
        value: Number of seconds, or a string such as "500ms", "10s",
            "1m30s" or "2h"

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the value is not a valid non-negative duration
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must be non-negative, got {value}")
        return float(value)

    text = str(value).strip()
    if not re.fullmatch(DURATION_PATTERN, text):
        raise ValueError(f"Invalid duration: '{value}'")
    return sum(float(n) * _UNIT_SECONDS[unit] for n, unit in _DURATION_PART.findall(text))


@dataclass(frozen=True)
class ScenarioConfig:
    """
    A named, time-bounded group of virtual users.

    Attributes:
        name: Unique scenario name
        exec: Name of the script function each iteration runs
        vus: Number of concurrent virtual users
        duration: Seconds the scenario runs after its start offset
        start_time: Seconds after run start before the scenario begins
        think_time: Pause after each iteration in seconds
        graceful_stop: Seconds to wait for in-flight iterations after stop
        executor: Executor kind (only constant-vus)
        tags: Free-form tags reported with the scenario
    """

    name: str
    exec: str
    vus: int
    duration: float
    start_time: float = 0.0
    think_time: float = 0.0
    graceful_stop: float = DEFAULT_GRACEFUL_STOP
    executor: str = CONSTANT_VUS
    tags: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate scenario values after initialization."""
        if self.executor not in VALID_EXECUTORS:
            raise ValueError(
                f"scenarios.{self.name}: invalid executor '{self.executor}'. "
                f"Must be one of {VALID_EXECUTORS}"
            )
        if self.vus < 1:
            raise ValueError(f"scenarios.{self.name}: vus must be >= 1, got {self.vus}")
        if self.duration <= 0:
            raise ValueError(
                f"scenarios.{self.name}: duration must be positive, got {self.duration}"
            )
        for attr in ("start_time", "think_time", "graceful_stop"):
            if getattr(self, attr) < 0:
                raise ValueError(f"scenarios.{self.name}: {attr} must be non-negative")

    @property
    def end_time(self) -> float:
        """Seconds after run start at which the scenario's duration expires."""
        return self.start_time + self.duration

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "executor": self.executor,
            "vus": self.vus,
            "duration": self.duration,
            "start_time": self.start_time,
            "exec": self.exec,
            "think_time": self.think_time,
            "graceful_stop": self.graceful_stop,
            "tags": dict(self.tags),
        }


@dataclass(frozen=True)
class ThresholdConfig:
    """A threshold expression bound to a metric."""

    metric: str
    expression: str
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    def to_dict(self) -> Union[str, dict[str, Any]]:
        """Convert to the YAML form (plain string when no options are set)."""
        if not self.abort_on_fail and not self.delay_abort_eval:
            return self.expression
        return {
            "threshold": self.expression,
            "abort_on_fail": self.abort_on_fail,
            "delay_abort_eval": self.delay_abort_eval,
        }


@dataclass(frozen=True)
class RunOptions:
    """
    Run-wide options.

    Attributes:
        name: Run name reported in the summary
        script: Script registry name or importable module path
        env: Environment values exposed to scripts (over os.environ)
        max_duration: Global deadline in seconds (None derives it from scenarios)
        request_timeout: Hard timeout for every HTTP request in seconds
        max_trend_samples: Retained values per trend before downsampling
        threshold_eval_interval: Seconds between mid-run threshold checks
        fail_on_inconclusive: Treat inconclusive thresholds as failures
        summary_trend_stats: Statistics reported for trend metrics
    """

    name: str = "vuload-run"
    script: str = DEFAULT_SCRIPT
    env: dict[str, str] = field(default_factory=dict)
    max_duration: Optional[float] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_trend_samples: int = DEFAULT_MAX_TREND_SAMPLES
    threshold_eval_interval: Optional[float] = None
    fail_on_inconclusive: bool = False
    summary_trend_stats: tuple[str, ...] = DEFAULT_TREND_STATS

    def __post_init__(self):
        """Validate option values after initialization."""
        if self.request_timeout <= 0:
            raise ValueError("run.request_timeout must be positive")
        if self.max_duration is not None and self.max_duration <= 0:
            raise ValueError("run.max_duration must be positive")
        if self.threshold_eval_interval is not None and self.threshold_eval_interval <= 0:
            raise ValueError("run.threshold_eval_interval must be positive")
        for stat in self.summary_trend_stats:
            try:
                ThresholdExpression.parse(f"{stat}>=0")
            except ThresholdExpressionError:
                raise ValueError(f"run.summary_trend_stats: invalid statistic '{stat}'") from None


@dataclass(frozen=True)
class RunConfig:
    """
    Main configuration for a vuload run.

    Holds run options, scenario definitions and thresholds. Instances are
    immutable; ``with_env`` returns a copy with extra environment values.
    """

    options: RunOptions = field(default_factory=RunOptions)
    scenarios: tuple[ScenarioConfig, ...] = ()
    thresholds: tuple[ThresholdConfig, ...] = ()

    def __post_init__(self):
        """Validate cross-scenario constraints after initialization."""
        if not self.scenarios:
            raise ValueError("At least one scenario must be configured")
        names = [s.name for s in self.scenarios]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate scenario names: {', '.join(duplicates)}")
        for threshold in self.thresholds:
            try:
                ThresholdExpression.parse(threshold.expression)
            except ThresholdExpressionError as exc:
                raise ValueError(f"thresholds.{threshold.metric}: {exc}") from None

    @classmethod
    def from_yaml(cls, path: Union[Path, str], validate: bool = True) -> "RunConfig":
        """
        Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file
            validate: Whether to validate the configuration against schema

        Returns:
            RunConfig instance with loaded values

        Raises:
            FileNotFoundError: If the config file doesn't exist
            ConfigValidationError: If the YAML is invalid or validation fails
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"Invalid YAML in {path}", errors=[str(exc)]) from exc

        if not isinstance(data, dict):
            raise ConfigValidationError(
                f"Configuration in {path} must be a mapping",
                errors=["root: expected a mapping"],
            )
        return cls.from_dict(expand_env_vars(data), validate=validate)

    @classmethod
    def from_dict(cls, data: dict[str, Any], validate: bool = True) -> "RunConfig":
        """
        Create configuration from a dictionary.

        Args:
            data: Dictionary containing configuration values
            validate: Whether to validate against the schema first

        Returns:
            RunConfig instance with loaded values

        Raises:
            ConfigValidationError: If validation or value checks fail
        """
        if validate:
            errors = validate_config(data)
            if errors:
                raise ConfigValidationError(
                    f"Configuration validation failed with {len(errors)} error(s)",
                    errors=errors,
                )

        try:
            run_data = data.get("run", {}) or {}
            options = RunOptions(
                name=run_data.get("name", "vuload-run"),
                script=run_data.get("script", DEFAULT_SCRIPT),
                env={k: str(v) for k, v in (run_data.get("env") or {}).items()},
                max_duration=(
                    parse_duration(run_data["max_duration"])
                    if run_data.get("max_duration") is not None else None
                ),
                request_timeout=parse_duration(
                    run_data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)
                ),
                max_trend_samples=run_data.get("max_trend_samples", DEFAULT_MAX_TREND_SAMPLES),
                threshold_eval_interval=(
                    parse_duration(run_data["threshold_eval_interval"])
                    if run_data.get("threshold_eval_interval") is not None else None
                ),
                fail_on_inconclusive=run_data.get("fail_on_inconclusive", False),
                summary_trend_stats=tuple(
                    run_data.get("summary_trend_stats", DEFAULT_TREND_STATS)
                ),
            )

            scenarios = tuple(
                ScenarioConfig(
                    name=name,
                    exec=scenario_data["exec"],
                    vus=scenario_data["vus"],
                    duration=parse_duration(scenario_data["duration"]),
                    start_time=parse_duration(scenario_data.get("start_time", 0)),
                    think_time=parse_duration(scenario_data.get("think_time", 0)),
                    graceful_stop=parse_duration(
                        scenario_data.get("graceful_stop", DEFAULT_GRACEFUL_STOP)
                    ),
                    executor=scenario_data.get("executor", CONSTANT_VUS),
                    tags=dict(scenario_data.get("tags", {})),
                )
                for name, scenario_data in (data.get("scenarios") or {}).items()
            )

            thresholds = []
            for metric, entries in (data.get("thresholds") or {}).items():
                for entry in entries:
                    if isinstance(entry, dict):
                        thresholds.append(ThresholdConfig(
                            metric=metric,
                            expression=entry["threshold"],
                            abort_on_fail=entry.get("abort_on_fail", False),
                            delay_abort_eval=parse_duration(entry.get("delay_abort_eval", 0)),
                        ))
                    else:
                        thresholds.append(ThresholdConfig(metric=metric, expression=entry))

            return cls(options=options, scenarios=scenarios, thresholds=tuple(thresholds))
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigValidationError("Invalid configuration", errors=[str(exc)]) from exc

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary representation."""
        thresholds: dict[str, list[Any]] = {}
        for threshold in self.thresholds:
            thresholds.setdefault(threshold.metric, []).append(threshold.to_dict())

        run: dict[str, Any] = {
            "name": self.options.name,
            "script": self.options.script,
            "env": dict(self.options.env),
            "request_timeout": self.options.request_timeout,
            "max_trend_samples": self.options.max_trend_samples,
            "fail_on_inconclusive": self.options.fail_on_inconclusive,
            "summary_trend_stats": list(self.options.summary_trend_stats),
        }
        if self.options.max_duration is not None:
            run["max_duration"] = self.options.max_duration
        if self.options.threshold_eval_interval is not None:
            run["threshold_eval_interval"] = self.options.threshold_eval_interval

        return {
            "run": run,
            "scenarios": {s.name: s.to_dict() for s in self.scenarios},
            "thresholds": thresholds,
        }

    def with_env(self, overrides: Optional[dict[str, str]] = None) -> "RunConfig":
        """
        Return a copy with extra environment values.

        Overrides take precedence over values from the configuration file.
        """
        if not overrides:
            return self
        env = {**self.options.env, **{k: str(v) for k, v in overrides.items()}}
        return replace(self, options=replace(self.options, env=env))

    def resolved_env(self) -> dict[str, str]:
        """Process environment overlaid with the configured env values."""
        return {**os.environ, **self.options.env}

    @property
    def deadline(self) -> float:
        """
        Global deadline in seconds.

        Defaults to the latest scenario end plus its graceful stop.
        """
        if self.options.max_duration is not None:
            return self.options.max_duration
        return max(s.end_time + s.graceful_stop for s in self.scenarios)

    def get_scenario(self, name: str) -> ScenarioConfig:
        """Look up a scenario by name."""
        for scenario in self.scenarios:
            if scenario.name == name:
                return scenario
        raise KeyError(f"Unknown scenario: {name}")


def load_config(
    config_path: Optional[Union[Path, str]] = None,
    env: Optional[dict[str, str]] = None,
    validate: bool = True,
) -> RunConfig:
    """
    Load configuration from file and merge CLI environment overrides.

    This is the main entry point for loading configuration. Without a path
    the bundled catalog configuration is used.

    Args:
        config_path: Path to YAML configuration file (optional)
        env: Environment overrides (e.g. from ``-e KEY=VALUE``)
        validate: Whether to validate configuration

    Returns:
        RunConfig with merged values
    """
    path = Path(config_path) if config_path else default_config_path()
    return RunConfig.from_yaml(path, validate=validate).with_env(env)


def default_config_path() -> Path:
    """Path of the bundled catalog configuration."""
    return Path(__file__).parent.parent / "config" / "catalog.yaml"

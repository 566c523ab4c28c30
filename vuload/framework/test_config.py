"""
Tests for configuration loading and validation.

Includes a property test that any valid configuration dictionary round-trips
its values into the RunConfig, and checks that the bundled catalog
configuration stays valid.
"""

import pytest
import yaml
from hypothesis import given, settings
from hypothesis import strategies as st

from vuload.framework.config import (
    ConfigValidationError,
    RunConfig,
    default_config_path,
    expand_env_vars,
    load_config,
    parse_duration,
    validate_config,
)


def minimal_config(**overrides) -> dict:
    data = {
        "scenarios": {
            "smoke": {"vus": 2, "duration": "5s", "exec": "hit"},
        },
    }
    data.update(overrides)
    return data


class TestParseDuration:
    """Duration strings."""

    @pytest.mark.parametrize("value,expected", [
        ("500ms", 0.5),
        ("10s", 10.0),
        ("2m", 120.0),
        ("1h", 3600.0),
        ("1m30s", 90.0),
        ("1.5s", 1.5),
        (3, 3.0),
        (0.25, 0.25),
        (None, 0.0),
    ])
    def test_valid(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "10", "ten seconds", "5d", "-1s", -1, True])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestEnvExpansion:
    """${VAR} expansion."""

    def test_expands_nested_values(self, monkeypatch):
        monkeypatch.setenv("VULOAD_HOST", "example.test")
        data = {"run": {"env": {"BASE_URL": "https://${VULOAD_HOST}/api"}}, "n": [1, "${VULOAD_HOST}"]}
        assert expand_env_vars(data) == {
            "run": {"env": {"BASE_URL": "https://example.test/api"}},
            "n": [1, "example.test"],
        }

    def test_unset_variable_expands_to_empty(self, monkeypatch):
        monkeypatch.delenv("VULOAD_UNSET", raising=False)
        assert expand_env_vars("x${VULOAD_UNSET}y") == "xy"


class TestValidation:
    """Schema and value checks."""

    def test_minimal_config_is_valid(self):
        assert validate_config(minimal_config()) == []
        config = RunConfig.from_dict(minimal_config())
        scenario = config.get_scenario("smoke")
        assert scenario.vus == 2
        assert scenario.duration == 5.0
        assert scenario.graceful_stop == 30.0
        assert config.options.request_timeout == 60.0

    def test_missing_scenarios(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            RunConfig.from_dict({"run": {"name": "x"}})
        assert any("scenarios" in e for e in exc_info.value.errors)

    def test_zero_vus_rejected(self):
        data = minimal_config()
        data["scenarios"]["smoke"]["vus"] = 0
        with pytest.raises(ConfigValidationError):
            RunConfig.from_dict(data)

    def test_unknown_executor_rejected(self):
        data = minimal_config()
        data["scenarios"]["smoke"]["executor"] = "ramping-vus"
        with pytest.raises(ConfigValidationError):
            RunConfig.from_dict(data)

    def test_bad_threshold_expression_rejected(self):
        data = minimal_config(thresholds={"http_req_duration": ["p95<800"]})
        with pytest.raises(ConfigValidationError) as exc_info:
            RunConfig.from_dict(data)
        assert "p95<800" in str(exc_info.value)

    def test_threshold_objects(self):
        data = minimal_config(thresholds={
            "http_req_failed": [
                "rate<0.01",
                {"threshold": "rate<0.1", "abort_on_fail": True, "delay_abort_eval": "10s"},
            ],
        })
        config = RunConfig.from_dict(data)
        plain, aborting = config.thresholds
        assert not plain.abort_on_fail
        assert aborting.abort_on_fail
        assert aborting.delay_abort_eval == 10.0

    def test_invalid_summary_stat_rejected(self):
        data = minimal_config(run={"summary_trend_stats": ["avg", "p99"]})
        with pytest.raises(ConfigValidationError):
            RunConfig.from_dict(data)

    def test_deadline_defaults_to_last_scenario_end_plus_grace(self):
        data = {
            "scenarios": {
                "a": {"vus": 1, "duration": "10s", "exec": "f", "graceful_stop": "5s"},
                "b": {"vus": 1, "duration": "10s", "exec": "f", "start_time": "20s",
                      "graceful_stop": "1s"},
            },
        }
        assert RunConfig.from_dict(data).deadline == 31.0

    def test_max_duration_overrides_deadline(self):
        data = minimal_config(run={"max_duration": "2s"})
        assert RunConfig.from_dict(data).deadline == 2.0


class TestLoading:
    """YAML files and environment overrides."""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text(yaml.safe_dump(minimal_config(run={"name": "from-file"})))
        config = RunConfig.from_yaml(path)
        assert config.options.name == "from-file"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            RunConfig.from_yaml(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("scenarios: [unclosed")
        with pytest.raises(ConfigValidationError):
            RunConfig.from_yaml(path)

    def test_env_overrides_take_precedence(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text(yaml.safe_dump(minimal_config(run={"env": {"CATEGORY": "laptops"}})))
        config = load_config(path, env={"CATEGORY": "tablets", "BASE_URL": "http://x"})
        assert config.options.env == {"CATEGORY": "tablets", "BASE_URL": "http://x"}
        assert config.resolved_env()["CATEGORY"] == "tablets"

    def test_bundled_catalog_config_is_valid(self):
        config = load_config(default_config_path())
        assert len(config.scenarios) == 6
        assert {s.exec for s in config.scenarios} == {
            "categories_details", "category_names", "products_by_category",
        }
        assert config.get_scenario("products_by_category_25vus").start_time == 145.0
        assert config.deadline == 145.0 + 45.0 + 30.0
        metrics = {t.metric for t in config.thresholds}
        assert "http_req_failed" in metrics
        assert "total_requests" in metrics


# Strategies for generating valid configuration values
scenario_names = st.text(
    alphabet="abcdefghijklmnopqrstuvwxyz0123456789_",
    min_size=1,
    max_size=30,
).filter(lambda s: s[0].isalpha())
durations = st.sampled_from(["500ms", "1s", "10s", "45s", "1m", "1m30s", 5, 2.5])
threshold_expressions = st.sampled_from([
    "p(95)<800", "p(99.9)<1800", "max<2500", "avg<200", "med<=300", "count>0", "rate<0.005",
])


@st.composite
def valid_run_config_dict(draw):
    """Generate a valid run configuration dictionary."""
    names = draw(st.lists(scenario_names, min_size=1, max_size=5, unique=True))
    scenarios = {
        name: {
            "executor": "constant-vus",
            "vus": draw(st.integers(min_value=1, max_value=200)),
            "duration": draw(durations),
            "start_time": draw(durations),
            "exec": draw(st.sampled_from(["categories_details", "category_names"])),
            "think_time": draw(durations),
        }
        for name in names
    }
    thresholds = draw(st.dictionaries(
        st.sampled_from(["http_req_duration", "http_req_failed", "total_requests"]),
        st.lists(threshold_expressions, min_size=1, max_size=4),
        max_size=3,
    ))
    return {
        "run": {
            "name": draw(scenario_names),
            "request_timeout": draw(durations),
            "fail_on_inconclusive": draw(st.booleans()),
        },
        "scenarios": scenarios,
        "thresholds": thresholds,
    }


@pytest.mark.property
class TestConfigParsing:
    """
    Property-based tests for configuration parsing.
    """

    @given(config_dict=valid_run_config_dict())
    @settings(max_examples=100)
    def test_from_dict_preserves_all_values(self, config_dict: dict):
        """
        Property: For any valid configuration dictionary, parsing should
        produce a RunConfig with all specified values preserved.
        """
        config = RunConfig.from_dict(config_dict)

        assert config.options.name == config_dict["run"]["name"]
        assert config.options.fail_on_inconclusive == config_dict["run"]["fail_on_inconclusive"]
        assert config.options.request_timeout == parse_duration(config_dict["run"]["request_timeout"])

        assert [s.name for s in config.scenarios] == list(config_dict["scenarios"])
        for scenario in config.scenarios:
            source = config_dict["scenarios"][scenario.name]
            assert scenario.vus == source["vus"]
            assert scenario.exec == source["exec"]
            assert scenario.duration == parse_duration(source["duration"])
            assert scenario.start_time == parse_duration(source["start_time"])
            assert scenario.think_time == parse_duration(source["think_time"])

        expected = [(m, e) for m, exprs in config_dict["thresholds"].items() for e in exprs]
        assert [(t.metric, t.expression) for t in config.thresholds] == expected

    @given(config_dict=valid_run_config_dict())
    @settings(max_examples=50)
    def test_to_dict_round_trips(self, config_dict: dict):
        """
        Property: serializing a RunConfig and parsing it again yields an
        equal configuration.
        """
        config = RunConfig.from_dict(config_dict)
        assert RunConfig.from_dict(config.to_dict()) == config

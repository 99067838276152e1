"""Tests for YAML configuration loading."""

import pytest

from config import CONFIG_PATH_ENV, BudgetConfig, ConfigurationError, policy_from_dict
from model import (
    CostDerivationMode,
    CostFallbackBehavior,
    EacFormula,
    EffectiveBudgetPolicy,
)


CUSTOM_YAML = """
version: "2.0"
default_policy:
  forecasting_rules:
    eac_formula: CPI_BASED
    spi_enabled: true
  cost_derivation_rules:
    mode: HYBRID
    cost_fallback_behavior: USE_ZERO
cost_comparison:
  aligned_tolerance_ratio: 0.05
logging:
  level: debug
"""


class TestBudgetConfig:
    def test_bundled_defaults(self):
        config = BudgetConfig()
        assert config.default_policy == EffectiveBudgetPolicy()
        assert config.aligned_tolerance_ratio == 0.01
        assert config.aligned_tolerance_floor == 1.0
        assert config.log_level == "INFO"
        assert config.server_port == 8000

    def test_custom_file(self, tmp_path):
        path = tmp_path / "budget.yaml"
        path.write_text(CUSTOM_YAML)
        config = BudgetConfig(path)
        policy = config.default_policy
        assert config.version == "2.0"
        assert policy.forecasting_rules.eac_formula == EacFormula.CPI_BASED
        assert policy.forecasting_rules.spi_enabled is True
        assert policy.threshold_rules.forecast_overrun_warn_percent == 10.0
        assert policy.cost_derivation_rules.mode == CostDerivationMode.HYBRID
        assert policy.cost_derivation_rules.cost_fallback_behavior == CostFallbackBehavior.USE_ZERO
        assert config.aligned_tolerance_ratio == 0.05
        assert config.aligned_tolerance_floor == 1.0
        assert config.log_level == "DEBUG"

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text(CUSTOM_YAML)
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))
        assert BudgetConfig().version == "2.0"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            BudgetConfig(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("default_policy: [unclosed")
        with pytest.raises(ConfigurationError):
            BudgetConfig(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            BudgetConfig(path)


class TestPolicyFromDict:
    def test_empty_gives_defaults(self):
        assert policy_from_dict({}) == EffectiveBudgetPolicy()

    def test_unknown_enum(self):
        with pytest.raises(ConfigurationError):
            policy_from_dict({"cost_derivation_rules": {"mode": "SOMETIMES"}})

"""
Configuration loader for the budget engine.

Loads settings from budget_config.yaml and provides typed access to the
default budget policy, the cost comparison tolerance, logging and server
settings.  Calculators never read this module; the application layer reads
it and passes values in explicitly.
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml

from model import (
    CostDerivationMode,
    CostDerivationRules,
    CostFallbackBehavior,
    EacFormula,
    EffectiveBudgetPolicy,
    ForecastingRules,
    ThresholdRules,
)


DEFAULT_CONFIG_PATH = Path(__file__).parent / "budget_config.yaml"
CONFIG_PATH_ENV = "BUDGET_CONFIG_PATH"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""
    pass


class BudgetConfig:
    """
    Configuration manager for the budget engine.

    Use get_config() to obtain the singleton instance.
    """

    def __init__(self, config_path: Optional[Path] = None):
        env_path = os.environ.get(CONFIG_PATH_ENV)
        self._config_path = config_path or (Path(env_path) if env_path else DEFAULT_CONFIG_PATH)
        self._config: dict = {}
        self._load()

    def _load(self) -> None:
        """Load configuration from YAML file."""
        if not self._config_path.exists():
            raise ConfigurationError(f"Config file not found: {self._config_path}")

        try:
            with open(self._config_path, 'r') as f:
                self._config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self._config, dict):
            raise ConfigurationError("Config file must contain a YAML mapping")

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load()
        get_config.cache_clear()

    @property
    def version(self) -> str:
        return self._config.get("version", "unknown")

    # =========================================================================
    # Default policy
    # =========================================================================

    @property
    def default_policy(self) -> EffectiveBudgetPolicy:
        """Policy for projects without an explicitly resolved one."""
        section = self._config.get("default_policy", {}) or {}
        return policy_from_dict(section)

    # =========================================================================
    # Cost comparison
    # =========================================================================

    @property
    def cost_comparison(self) -> dict:
        return self._config.get("cost_comparison", {}) or {}

    @property
    def aligned_tolerance_ratio(self) -> float:
        return float(self.cost_comparison.get("aligned_tolerance_ratio", 0.01))

    @property
    def aligned_tolerance_floor(self) -> float:
        return float(self.cost_comparison.get("aligned_tolerance_floor", 1.0))

    # =========================================================================
    # Logging / server
    # =========================================================================

    @property
    def log_level(self) -> str:
        return str((self._config.get("logging", {}) or {}).get("level", "INFO")).upper()

    @property
    def server_host(self) -> str:
        return (self._config.get("server", {}) or {}).get("host", "127.0.0.1")

    @property
    def server_port(self) -> int:
        return int((self._config.get("server", {}) or {}).get("port", 8000))


def policy_from_dict(data: dict) -> EffectiveBudgetPolicy:
    """
    Build an EffectiveBudgetPolicy from a plain mapping (YAML section or JSON).

    Missing keys take the dataclass defaults; unknown enum values raise
    ConfigurationError.
    """
    forecasting = data.get("forecasting_rules", {}) or {}
    thresholds = data.get("threshold_rules", {}) or {}
    derivation = data.get("cost_derivation_rules", {}) or {}
    defaults = EffectiveBudgetPolicy()

    try:
        return EffectiveBudgetPolicy(
            forecasting_rules=ForecastingRules(
                eac_formula=EacFormula(
                    forecasting.get("eac_formula", defaults.forecasting_rules.eac_formula.value)
                ),
                spi_enabled=bool(
                    forecasting.get("spi_enabled", defaults.forecasting_rules.spi_enabled)
                ),
                forecast_update_frequency_days=int(forecasting.get(
                    "forecast_update_frequency_days",
                    defaults.forecasting_rules.forecast_update_frequency_days,
                )),
            ),
            threshold_rules=ThresholdRules(
                **{
                    name: float(thresholds.get(name, getattr(defaults.threshold_rules, name)))
                    for name in (
                        "cost_variance_warn_percent",
                        "cost_variance_block_percent",
                        "forecast_overrun_warn_percent",
                        "forecast_overrun_block_percent",
                    )
                }
            ),
            cost_derivation_rules=CostDerivationRules(
                mode=CostDerivationMode(
                    derivation.get("mode", defaults.cost_derivation_rules.mode.value)
                ),
                default_hours_per_week=float(derivation.get(
                    "default_hours_per_week",
                    defaults.cost_derivation_rules.default_hours_per_week,
                )),
                cost_fallback_behavior=CostFallbackBehavior(derivation.get(
                    "cost_fallback_behavior",
                    defaults.cost_derivation_rules.cost_fallback_behavior.value,
                )),
            ),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid budget policy: {e}")


@lru_cache(maxsize=1)
def get_config() -> BudgetConfig:
    """Get the singleton configuration instance."""
    return BudgetConfig()

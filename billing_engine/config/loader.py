"""
Configuration management and loading.

Reads the YAML file that feeds the engine's constructor parameters when it is
operated from the command line.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from billing_engine.core.billing import DEFAULT_RETRY_BASE_TIMEOUT_MS
from billing_engine.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the invoice database."""
    path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        """Validate path is not empty."""
        if not self.path or not self.path.strip():
            raise ValueError("database path cannot be empty")


@dataclass(frozen=True)
class RunnerConfig:
    """Billing schedule and charge retry settings."""
    day_of_month: int = 1
    retry_base_timeout_ms: int = DEFAULT_RETRY_BASE_TIMEOUT_MS
    max_concurrency: Optional[int] = None

    def __post_init__(self):
        """Validate schedule and retry values."""
        if not 1 <= self.day_of_month <= 31:
            raise ValueError("day_of_month must be between 1 and 31")
        if self.retry_base_timeout_ms < 0:
            raise ValueError("retry_base_timeout_ms must be >= 0")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")


@dataclass(frozen=True)
class ProviderConfig:
    """Behaviour of the simulated payment provider."""
    decline_rate: float = 0.0
    network_failure_rate: float = 0.0
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate rates are probabilities."""
        if not 0.0 <= self.decline_rate <= 1.0:
            raise ValueError("decline_rate must be between 0 and 1")
        if not 0.0 <= self.network_failure_rate <= 1.0:
            raise ValueError("network_failure_rate must be between 0 and 1")


@dataclass(frozen=True)
class BillingConfig:
    """Complete billing engine configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    billing: RunnerConfig = field(default_factory=RunnerConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)


def load_billing_config(path: str) -> BillingConfig:
    """Load and validate billing configuration from YAML file.

    Every section is optional and falls back to its defaults, but unknown keys
    and mistyped values are rejected so a typo never silently changes billing
    behaviour.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BillingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Billing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return BillingConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'billing', 'provider'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database_data = _section(raw_config, 'database', {'path'})
    billing_data = _section(
        raw_config, 'billing',
        {'day_of_month', 'retry_base_timeout_ms', 'max_concurrency'}
    )
    provider_data = _section(
        raw_config, 'provider',
        {'decline_rate', 'network_failure_rate', 'seed'}
    )

    database = DatabaseConfig(
        path=_expect(database_data, 'path', str, 'database', DEFAULT_DB_PATH)
    )
    billing = RunnerConfig(
        day_of_month=_expect(billing_data, 'day_of_month', int, 'billing', 1),
        retry_base_timeout_ms=_expect(
            billing_data, 'retry_base_timeout_ms', int, 'billing', DEFAULT_RETRY_BASE_TIMEOUT_MS
        ),
        max_concurrency=_expect(billing_data, 'max_concurrency', int, 'billing', None)
    )
    provider = ProviderConfig(
        decline_rate=float(_expect(provider_data, 'decline_rate', (int, float), 'provider', 0.0)),
        network_failure_rate=float(
            _expect(provider_data, 'network_failure_rate', (int, float), 'provider', 0.0)
        ),
        seed=_expect(provider_data, 'seed', int, 'provider', None)
    )

    return BillingConfig(database=database, billing=billing, provider=provider)


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Fetch an optional section and reject unknown keys in it.

    Raises:
        ValueError: If the section is not a dictionary or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _expect(data: Dict, key: str, expected_type, path: str, default: Any) -> Any:
    """Return ``data[key]`` checked against ``expected_type``, or ``default``.

    Booleans are rejected for numeric fields since YAML parses ``yes``/``no``
    as booleans.

    Raises:
        ValueError: If the value has the wrong type
    """
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, expected_type):
        raise ValueError(f"'{key}' in {path} has invalid type {type(value).__name__}")
    return value

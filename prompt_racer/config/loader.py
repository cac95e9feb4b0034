"""
Configuration management and loading.

Handles racer settings from YAML and secrets from environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

PROVIDER_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "xai": "XAI_API_KEY",
}
STRIPE_KEY_VAR = "STRIPE_SECRET_KEY"
COOKIE_SECRET_VAR = "PROMPT_RACER_COOKIE_SECRET"
CONFIG_PATH_VAR = "PROMPT_RACER_CONFIG"


@dataclass(frozen=True)
class CreditsConfig:
    """Credit allotment for new identities."""
    free_allotment: int = 3

    def __post_init__(self):
        """Validate allotment is non-negative."""
        if self.free_allotment < 0:
            raise ValueError("free_allotment must be >= 0")


@dataclass(frozen=True)
class RaceConfig:
    """Limits applied to each race attempt."""
    max_backends: int = 4
    adapter_timeout_seconds: float = 60.0

    def __post_init__(self):
        """Validate race limits are positive."""
        if self.max_backends <= 0:
            raise ValueError("max_backends must be > 0")
        if self.adapter_timeout_seconds <= 0:
            raise ValueError("adapter_timeout_seconds must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Locations of the account database and the anonymous cookie jar."""
    db_path: str = "prompt_racer.db"
    cookie_jar_path: str = ".prompt-racer-cookies.db"


@dataclass(frozen=True)
class CookieConfig:
    """Credit cookie lifetime."""
    max_age_days: int = 365

    def __post_init__(self):
        """Validate cookie lifetime is positive."""
        if self.max_age_days <= 0:
            raise ValueError("max_age_days must be > 0")

    @property
    def max_age_seconds(self) -> int:
        return self.max_age_days * 24 * 60 * 60


@dataclass(frozen=True)
class RacerConfig:
    """Complete racer configuration."""
    credits: CreditsConfig = field(default_factory=CreditsConfig)
    race: RaceConfig = field(default_factory=RaceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cookie: CookieConfig = field(default_factory=CookieConfig)


@dataclass(frozen=True)
class RacerSettings:
    """Configuration plus secrets read from the environment."""
    config: RacerConfig
    provider_keys: Dict[str, Optional[str]]
    stripe_secret_key: Optional[str] = None
    cookie_secret: Optional[str] = None

    def provider_key(self, family: str) -> Optional[str]:
        """API key for a provider family, or None if unset."""
        return self.provider_keys.get(family)


_SECTION_KEYS = {
    "credits": {"free_allotment"},
    "race": {"max_backends", "adapter_timeout_seconds"},
    "storage": {"db_path", "cookie_jar_path"},
    "cookie": {"max_age_days"},
}


def load_racer_config(path: Optional[str] = None) -> RacerConfig:
    """Load and validate racer configuration from a YAML file.

    Any section or key that is left out takes its default. Unknown keys are
    rejected so typos never silently fall back to defaults.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated RacerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return RacerConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Racer config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        return RacerConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for section, allowed_keys in _SECTION_KEYS.items():
        data = raw_config.get(section) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{section}' must be a dictionary")
        unknown = set(data.keys()) - allowed_keys
        if unknown:
            raise ValueError(f"Unknown keys in {section}: {unknown}")
        sections[section] = data

    credits_data = sections["credits"]
    race_data = sections["race"]

    return RacerConfig(
        credits=CreditsConfig(
            free_allotment=_parse_int(credits_data, "free_allotment", "credits", 3)
        ),
        race=RaceConfig(
            max_backends=_parse_int(race_data, "max_backends", "race", 4),
            adapter_timeout_seconds=_parse_number(race_data, "adapter_timeout_seconds", "race", 60.0)
        ),
        storage=StorageConfig(**{k: str(v) for k, v in sections["storage"].items()}),
        cookie=CookieConfig(
            max_age_days=_parse_int(sections["cookie"], "max_age_days", "cookie", 365)
        )
    )


def _parse_int(data: Dict, key: str, path: str, default: int) -> int:
    """Read an integer option, rejecting floats, strings and booleans."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _parse_number(data: Dict, key: str, path: str, default: float) -> float:
    """Read a numeric option."""
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> RacerSettings:
    """Load configuration and pick up secrets from the environment.

    The config path defaults to $PROMPT_RACER_CONFIG when set. Empty
    environment values count as unset.
    """
    env = os.environ if environ is None else environ
    if path is None:
        path = env.get(CONFIG_PATH_VAR) or None

    return RacerSettings(
        config=load_racer_config(path),
        provider_keys={
            family: (env.get(var) or None) for family, var in PROVIDER_KEY_VARS.items()
        },
        stripe_secret_key=env.get(STRIPE_KEY_VAR) or None,
        cookie_secret=env.get(COOKIE_SECRET_VAR) or None
    )


def check_provider_keys(environ: Optional[Mapping[str, str]] = None) -> Dict[str, bool]:
    """Report which provider API keys are configured.

    Returns:
        Mapping of environment variable name to whether it is set
    """
    env = os.environ if environ is None else environ
    return {var: bool(env.get(var)) for var in PROVIDER_KEY_VARS.values()}

"""Configuration loader for the Course Content Engine.

Loads configuration from:
1. Default values (hardcoded)
2. config.yaml file (if exists)
3. Environment variables (highest priority, .env is honoured)

Environment variables use the pattern: COURSE_ENGINE_SECTION__KEY
Examples:
    COURSE_ENGINE_DATABASE__PATH=custom.db
    COURSE_ENGINE_REPOSITORY__MAX_ATTEMPTS=3
    COURSE_ENGINE_CACHE__COURSE_STALE_AFTER=300
    COURSE_ENGINE_LOGGING__LEVEL=DEBUG
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .logging_config import get_logger

logger = get_logger('config')

ENV_PREFIX = "COURSE_ENGINE_"


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "data/course_engine.db"


@dataclass
class RepositoryConfig:
    """Retry budget for data-service calls."""
    max_attempts: int = 2  # initial call plus one retry
    initial_delay: float = 0.25
    max_delay: float = 2.0
    backoff_factor: float = 2.0
    jitter: bool = True


@dataclass
class CacheConfig:
    """Staleness tiers per resource type, in seconds."""
    course_stale_after: float = 15 * 60.0
    course_hard_expire_after: float = 60 * 60.0
    modules_stale_after: float = 15 * 60.0
    modules_hard_expire_after: float = 60 * 60.0
    lessons_stale_after: float = 15 * 60.0
    lessons_hard_expire_after: float = 60 * 60.0
    enrollment_stale_after: float = 10 * 60.0
    enrollment_hard_expire_after: float = 30 * 60.0
    lesson_content_stale_after: float = 10 * 60.0
    lesson_content_hard_expire_after: float = 30 * 60.0
    lesson_content_editing_stale_after: float = 2 * 60.0
    lesson_content_editing_hard_expire_after: float = 10 * 60.0

    def policy_pairs(self) -> dict[str, tuple[float, float]]:
        """Return ``{resource_type: (stale_after, hard_expire_after)}``."""
        pairs = {}
        for name, value in asdict(self).items():
            if name.endswith('_stale_after'):
                resource = name[:-len('_stale_after')]
                pairs[resource] = (value, getattr(self, f'{resource}_hard_expire_after'))
        return pairs


@dataclass
class CompletionConfig:
    """Completion tracking configuration."""
    cleanup_interval: float = 60.0 * 60  # 1 hour


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    json_format: bool = False


@dataclass
class Config:
    """Main configuration container."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = {
    'database': DatabaseConfig,
    'repository': RepositoryConfig,
    'cache': CacheConfig,
    'completion': CompletionConfig,
    'logging': LoggingConfig,
}


def _deep_update(base: dict, updates: dict) -> dict:
    """Recursively update a dictionary."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env_overrides(config_dict: dict) -> dict:
    """Apply environment variable overrides.

    Environment variables use the pattern: COURSE_ENGINE_SECTION__KEY
    Double underscore separates nested keys.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        path = key[len(ENV_PREFIX):].lower().split("__")
        if len(path) != 2:
            continue

        section, final_key = path
        current = config_dict.setdefault(section, {})

        if final_key in current:
            original = current[final_key]
            try:
                if isinstance(original, bool):
                    value = value.lower() in ('true', '1', 'yes')
                elif isinstance(original, int):
                    value = int(value)
                elif isinstance(original, float):
                    value = float(value)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid value for {key}: {value!r}", config_key=f"{section}.{final_key}"
                )

        current[final_key] = value
        logger.debug(f"Applied env override: {key}")

    return config_dict


def _dict_to_config(config_dict: dict) -> Config:
    """Convert a dictionary to Config dataclass, ignoring unknown keys."""
    sections = {}
    for name, section_cls in _SECTIONS.items():
        values = config_dict.get(name) or {}
        sections[name] = section_cls(**{
            k: v for k, v in values.items()
            if k in section_cls.__dataclass_fields__
        })
    return Config(**sections)


def validate_config(config: Config) -> Config:
    """Reject configurations that break cache or retry invariants."""
    for resource, (stale, hard) in config.cache.policy_pairs().items():
        if stale < 0 or hard < 0:
            raise ConfigurationError(
                f"Cache durations for '{resource}' must be non-negative",
                config_key=f"cache.{resource}_stale_after",
            )
        if stale > hard:
            raise ConfigurationError(
                f"Cache policy for '{resource}' has stale_after ({stale}) "
                f"greater than hard_expire_after ({hard})",
                config_key=f"cache.{resource}_stale_after",
            )
    if config.repository.max_attempts < 1:
        raise ConfigurationError(
            "repository.max_attempts must be at least 1",
            config_key="repository.max_attempts",
        )
    return config


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to config file. If None, searches for config.yaml
                    in the working directory.

    Returns:
        Config object with all settings loaded
    """
    load_dotenv()

    config_dict = asdict(Config())

    if config_path is None:
        for path in (Path("config.yaml"), Path("config.yml")):
            if path.exists():
                config_path = str(path)
                break

    if config_path:
        if not Path(config_path).exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse config file {config_path}: {e}")
        config_dict = _deep_update(config_dict, file_config)
        logger.debug(f"Loaded config from: {config_path}")

    config_dict = _apply_env_overrides(config_dict)

    return validate_config(_dict_to_config(config_dict))

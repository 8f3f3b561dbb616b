"""
Configuration loaded from environment variables
"""
import os
from dataclasses import dataclass, field

from fleetwatch.errors import ConfigError

ENV_PREFIX = 'FLEETWATCH_'

_DURATION_UNITS = {'s': 1, 'm': 60, 'h': 3600}


def parse_duration(value):
    """Parse '30', '30s', '5m' or '1h' into seconds"""
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise ConfigError("Empty duration")

    multiplier = 1
    if text[-1] in _DURATION_UNITS:
        multiplier = _DURATION_UNITS[text[-1]]
        text = text[:-1]

    try:
        seconds = float(text) * multiplier
    except ValueError:
        raise ConfigError(f"Invalid duration: {value!r}") from None

    if seconds < 0:
        raise ConfigError(f"Duration must not be negative: {value!r}")
    return seconds


def _env(name, default):
    return os.getenv(ENV_PREFIX + name, default)


def _env_int(name, default, minimum=0):
    raw = _env(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{ENV_PREFIX}{name} must be at least {minimum}, got {value}")
    return value


def _env_float(name, default):
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def _env_duration(name, default):
    try:
        return parse_duration(_env(name, default))
    except ConfigError as e:
        raise ConfigError(f"{ENV_PREFIX}{name}: {e}") from None


@dataclass(frozen=True)
class BackoffConfig:
    """Exponential backoff: base * 2**attempt, capped at max, +/- jitter fraction"""
    base: float = 0.1
    max: float = 5.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.base < 0 or self.max < 0:
            raise ConfigError("Backoff durations must not be negative")
        if not 0 <= self.jitter <= 1:
            raise ConfigError(f"Backoff jitter must be between 0 and 1, got {self.jitter}")


@dataclass(frozen=True)
class CoordinationConfig:
    max_concurrent_per_partition: int = 1
    drain_timeout: float = 300.0
    conflict_retry_limit: int = 5
    conflict_backoff: BackoffConfig = field(default_factory=BackoffConfig)
    infra_retry_limit: int = 3
    infra_backoff: BackoffConfig = field(
        default_factory=lambda: BackoffConfig(base=2.0, max=60.0, jitter=0.1)
    )
    verify_timeout: float = 600.0
    reboot_grace_period: float = 300.0
    update_check_interval: float = 3600.0
    resync_interval: float = 60.0
    partition_label: str = 'topology.kubernetes.io/zone'

    def __post_init__(self):
        if self.max_concurrent_per_partition < 1:
            raise ConfigError("max_concurrent_per_partition must be at least 1")
        if self.conflict_retry_limit < 0 or self.infra_retry_limit < 0:
            raise ConfigError("Retry limits must not be negative")

    @classmethod
    def from_env(cls):
        return cls(
            max_concurrent_per_partition=_env_int('MAX_CONCURRENT_PER_PARTITION', 1, minimum=1),
            drain_timeout=_env_duration('DRAIN_TIMEOUT', '300s'),
            conflict_retry_limit=_env_int('CONFLICT_RETRY_LIMIT', 5),
            conflict_backoff=BackoffConfig(
                base=_env_duration('CONFLICT_BACKOFF_BASE', '0.1s'),
                max=_env_duration('CONFLICT_BACKOFF_MAX', '5s'),
                jitter=_env_float('CONFLICT_BACKOFF_JITTER', 0.1),
            ),
            infra_retry_limit=_env_int('INFRA_RETRY_LIMIT', 3),
            infra_backoff=BackoffConfig(
                base=_env_duration('INFRA_BACKOFF_BASE', '2s'),
                max=_env_duration('INFRA_BACKOFF_MAX', '60s'),
                jitter=_env_float('INFRA_BACKOFF_JITTER', 0.1),
            ),
            verify_timeout=_env_duration('VERIFY_TIMEOUT', '600s'),
            reboot_grace_period=_env_duration('REBOOT_GRACE_PERIOD', '300s'),
            update_check_interval=_env_duration('UPDATE_CHECK_INTERVAL', '3600s'),
            resync_interval=_env_duration('RESYNC_INTERVAL', '60s'),
            partition_label=_env('PARTITION_LABEL', 'topology.kubernetes.io/zone'),
        )

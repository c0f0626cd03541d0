# quizgate/config.py
import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(key)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _env_int(key: str, default: int) -> int:
    try:
        return int(_env_str(key, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = _env_str(key)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class RateLimitConfig:
    """Cooldown and partition-degrade knobs applied after provider 429s."""
    enable_cooldown: bool = True
    enable_partition_degrade: bool = True
    degrade_window_s: float = 60.0
    degraded_batch_size: int = 1
    min_cooldown_s: float = 1.5
    max_cooldown_s: float = 15.0
    cooldown_growth_factor: float = 1.5
    default_retry_after_s: float = 3.0
    successes_to_recover: int = 5


@dataclass(frozen=True)
class TokenBudgetConfig:
    """Tokens-per-minute budget enforced over a sliding window."""
    enabled: bool = True
    limit_per_minute: int = 30000
    near_threshold: int = 2000
    pre_wait_s: float = 2.2
    post_wait_s: float = 2.0
    window_s: float = 60.0
    corrupt_factor: int = 3


@dataclass(frozen=True)
class DispatchConfig:
    max_retries: int = 3
    backoff_base_s: float = 2.0
    unavailable_pause_s: float = 30.0
    unavailable_backoff_s: float = 5.0
    request_timeout_s: float = 120.0


@dataclass(frozen=True)
class BatchConfig:
    max_batch_size: int = 3
    max_batch_tokens: int = 3500


@dataclass(frozen=True)
class SessionConfig:
    max_concurrent: int = 15
    timeout_s: float = 3600.0
    sweep_interval_s: float = 300.0


@dataclass(frozen=True)
class Settings:
    host: str = '0.0.0.0'
    port: int = 3000
    admin_key: Optional[str] = None
    allowed_origin: Optional[str] = None
    user_tokens: Optional[str] = None
    log_level: str = 'INFO'
    enable_logging: bool = True
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    token_budget: TokenBudgetConfig = field(default_factory=TokenBudgetConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)


def load_settings() -> Settings:
    """Build Settings from the process environment (and .env, if present)."""
    return Settings(
        host=_env_str('HOST', '0.0.0.0'),
        port=_env_int('PORT', 3000),
        admin_key=_env_str('ADMIN_KEY'),
        allowed_origin=_env_str('ALLOWED_ORIGIN'),
        user_tokens=_env_str('USER_TOKENS'),
        log_level=_env_str('LOG_LEVEL', 'INFO').upper(),
        enable_logging=_env_bool('ENABLE_LOGGING', True),
        token_budget=TokenBudgetConfig(
            enabled=_env_bool('TOKEN_BUDGET_ENABLED', True),
            limit_per_minute=_env_int('TOKEN_LIMIT_PER_MINUTE', 30000),
        ),
        sessions=SessionConfig(
            max_concurrent=_env_int('MAX_CONCURRENT_USERS', 15),
            # SESSION_TIMEOUT is expressed in milliseconds
            timeout_s=_env_int('SESSION_TIMEOUT', 3600000) / 1000.0,
        ),
    )


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    if not settings.enable_logging:
        level = max(level, logging.WARNING)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

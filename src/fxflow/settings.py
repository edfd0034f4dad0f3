from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class EngineSettings:
    """Engine settings loaded from environment with fail-fast validation."""

    cache_ttl_seconds: float = 60.0
    cache_max_entries: int = 1_024
    rate_limit_qps: float = 10.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 0.1
    retry_backoff: float = 2.0
    ledger_path: str = ""
    dev_mode: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "EngineSettings":
        """Build settings from ``FX_*`` environment variables.

        If ``env_file`` points at an existing file it is loaded first with
        python-dotenv; variables already present in the environment win.

        Raises:
            ValueError: If any variable is malformed or out of bounds.
        """
        if env_file is not None and env_file.is_file():
            load_dotenv(env_file)
        return cls(
            cache_ttl_seconds=_get_env_float("FX_CACHE_TTL_SECONDS", default=60.0, minimum=0.0),
            cache_max_entries=_get_env_int("FX_CACHE_MAX_ENTRIES", default=1_024, minimum=1),
            rate_limit_qps=_get_env_float("FX_RATE_LIMIT_QPS", default=10.0, minimum=0.001),
            retry_attempts=_get_env_int("FX_RETRY_ATTEMPTS", default=3, minimum=1, maximum=100),
            retry_delay_seconds=_get_env_float("FX_RETRY_DELAY_SECONDS", default=0.1, minimum=0.0),
            retry_backoff=_get_env_float("FX_RETRY_BACKOFF", default=2.0, minimum=1.0),
            ledger_path=os.getenv("FX_LEDGER_PATH", ""),
            dev_mode=_get_env_bool("FX_DEV_MODE", default=False),
            log_level=os.getenv("FX_LOG_LEVEL", "INFO"),
        ).normalized()

    @property
    def ledger_file(self) -> Path | None:
        """Return the ledger path, or None when no file sink is configured."""
        return Path(self.ledger_path) if self.ledger_path else None

    @property
    def log_level_number(self) -> int:
        return getattr(logging, self.log_level)

    def normalized(self) -> "EngineSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if self.cache_ttl_seconds < 0:
            raise ValueError(f"FX_CACHE_TTL_SECONDS must be >= 0, got: {self.cache_ttl_seconds}")
        if self.cache_max_entries < 1:
            raise ValueError(f"FX_CACHE_MAX_ENTRIES must be >= 1, got: {self.cache_max_entries}")
        if self.rate_limit_qps <= 0:
            raise ValueError(f"FX_RATE_LIMIT_QPS must be > 0, got: {self.rate_limit_qps}")
        if self.retry_attempts < 1:
            raise ValueError(f"FX_RETRY_ATTEMPTS must be >= 1, got: {self.retry_attempts}")
        if self.retry_delay_seconds < 0:
            raise ValueError(f"FX_RETRY_DELAY_SECONDS must be >= 0, got: {self.retry_delay_seconds}")
        if self.retry_backoff < 1:
            raise ValueError(f"FX_RETRY_BACKOFF must be >= 1, got: {self.retry_backoff}")

        log_level = self.log_level.strip().upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(f"FX_LOG_LEVEL must be one of: {', '.join(sorted(_LOG_LEVELS))}")
        return replace(self, ledger_path=self.ledger_path.strip(), log_level=log_level)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1e9) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed != parsed or parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {raw}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


def _parse_coupons(raw: str) -> dict[str, Decimal]:
    """Parse ``CODE:percent`` pairs, e.g. ``WELCOME10:10,SPRING25:25``."""
    coupons: dict[str, Decimal] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        code, sep, percent_raw = chunk.partition(":")
        if not sep or not code.strip():
            raise ValueError(f"COUPON_CODES entries must be CODE:percent (got {chunk!r})")
        try:
            percent = Decimal(percent_raw.strip())
        except InvalidOperation:
            raise ValueError(
                f"COUPON_CODES percent must be numeric (got {percent_raw!r})"
            ) from None
        if not Decimal("0") < percent <= Decimal("100"):
            raise ValueError(f"COUPON_CODES percent must be in (0, 100] (got {percent})")
        coupons[code.strip().upper()] = percent
    return coupons


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    enrollment_max_attempts: int = 5
    lock_timeout_seconds: float = 5.0
    expiry_sweep_seconds: int = 300
    coupon_codes: dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")
    attempts_raw = _getenv("ENROLLMENT_MAX_ATTEMPTS", "5")
    lock_timeout_raw = _getenv("LOCK_TIMEOUT_SECONDS", "5")
    sweep_raw = _getenv("EXPIRY_SWEEP_SECONDS", "300")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    try:
        max_attempts = int(attempts_raw)
    except ValueError:
        raise ValueError(
            f"ENROLLMENT_MAX_ATTEMPTS must be an integer (got {attempts_raw!r})"
        ) from None
    if max_attempts < 1:
        raise ValueError(f"ENROLLMENT_MAX_ATTEMPTS must be >= 1 (got {max_attempts})")

    try:
        lock_timeout = float(lock_timeout_raw)
    except ValueError:
        raise ValueError(
            f"LOCK_TIMEOUT_SECONDS must be a number (got {lock_timeout_raw!r})"
        ) from None
    if lock_timeout <= 0:
        raise ValueError(f"LOCK_TIMEOUT_SECONDS must be > 0 (got {lock_timeout})")

    try:
        sweep_seconds = int(sweep_raw)
    except ValueError:
        raise ValueError(
            f"EXPIRY_SWEEP_SECONDS must be an integer (got {sweep_raw!r})"
        ) from None

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_parse_bool("LOG_JSON", _getenv("LOG_JSON", "false")),
        port=port,
        database_url=database_url,
        redis_url=redis_url,
        enrollment_max_attempts=max_attempts,
        lock_timeout_seconds=lock_timeout,
        expiry_sweep_seconds=sweep_seconds,
        coupon_codes=_parse_coupons(_getenv("COUPON_CODES", "")),
    )


SETTINGS = load_settings()

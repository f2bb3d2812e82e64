"""
Order Service — 設定

すべて環境変数から読む。コード側にデフォルトを持ち、
不正な値は起動時に ConfigurationError で止める。

サーキットブレーカーはブレーカー名ごとに
BREAKER_<NAME>_SLIDING_WINDOW_SIZE のような変数で上書きできる
(<NAME> は英数字以外を _ にして大文字化したもの)。
"""

import os
import re
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field

from .circuit_breaker import CircuitBreakerConfig, SlidingWindowType
from .errors import ConfigurationError, ProductNotFound

PRODUCT_SERVICE_NAME = "product-management"
PRODUCT_BREAKER_NAME = "product-service"
DEFAULT_FALLBACK_PRODUCT = "CACHED01111"


@dataclass(frozen=True)
class OrderSettings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    lookup_timeout_ms: int = 2000
    save_timeout_ms: int = 5000
    load_balancers_for: list[str] = field(default_factory=lambda: [PRODUCT_SERVICE_NAME])
    discovery_refresh_interval_s: float = 30.0
    fallback_product_code: str | None = DEFAULT_FALLBACK_PRODUCT
    product_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    http_max_connections: int = 100
    db_pool_size: int = 10
    db_max_overflow: int = 10
    log_level: str = "INFO"
    catalog_events_enabled: bool = True
    instance_id: str = "order-management"

    @property
    def lookup_timeout(self) -> float:
        return self.lookup_timeout_ms / 1000.0

    @property
    def save_timeout(self) -> float:
        return self.save_timeout_ms / 1000.0


def _int(environ: Mapping[str, str], key: str, default: int, minimum: int = 1) -> int:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


def _env_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


def breaker_config_from_env(
    name: str,
    environ: Mapping[str, str],
    ignored_exceptions: tuple[type[BaseException], ...] = (ProductNotFound,),
) -> CircuitBreakerConfig:
    prefix = f"BREAKER_{_env_name(name)}_"
    defaults = CircuitBreakerConfig()

    window_type_raw = environ.get(prefix + "SLIDING_WINDOW_TYPE") or defaults.sliding_window_type.value
    try:
        window_type = SlidingWindowType(window_type_raw.upper())
    except ValueError:
        raise ConfigurationError(
            f"{prefix}SLIDING_WINDOW_TYPE must be COUNT_BASED or TIME_BASED, got {window_type_raw!r}"
        ) from None

    minimum_calls = environ.get(prefix + "MINIMUM_NUMBER_OF_CALLS")
    return CircuitBreakerConfig(
        sliding_window_size=_int(environ, prefix + "SLIDING_WINDOW_SIZE", defaults.sliding_window_size),
        sliding_window_type=window_type,
        failure_rate_threshold=_float(
            environ, prefix + "FAILURE_RATE_THRESHOLD", defaults.failure_rate_threshold
        ),
        wait_duration_in_open_state=_int(
            environ,
            prefix + "WAIT_DURATION_IN_OPEN_STATE_MS",
            int(defaults.wait_duration_in_open_state * 1000),
            minimum=0,
        ) / 1000.0,
        permitted_number_of_calls_in_half_open_state=_int(
            environ,
            prefix + "PERMITTED_NUMBER_OF_CALLS_IN_HALF_OPEN_STATE",
            defaults.permitted_number_of_calls_in_half_open_state,
        ),
        minimum_number_of_calls=(
            _int(environ, prefix + "MINIMUM_NUMBER_OF_CALLS", 1) if minimum_calls else None
        ),
        ignored_exceptions=ignored_exceptions,
    )


def load_settings(environ: Mapping[str, str] | None = None) -> OrderSettings:
    environ = os.environ if environ is None else environ
    try:
        database_url = environ["DATABASE_URL"]
    except KeyError:
        raise ConfigurationError("DATABASE_URL is not set") from None

    balancers = [
        name.strip()
        for name in environ.get("LOAD_BALANCERS_FOR", PRODUCT_SERVICE_NAME).split(",")
        if name.strip()
    ]
    fallback = environ.get("PRODUCT_FALLBACK_CODE", DEFAULT_FALLBACK_PRODUCT).strip()

    return OrderSettings(
        database_url=database_url,
        redis_url=environ.get("REDIS_URL", "redis://localhost:6379"),
        lookup_timeout_ms=_int(environ, "ORDER_LOOKUP_TIMEOUT_MS", 2000),
        save_timeout_ms=_int(environ, "ORDER_SAVE_TIMEOUT_MS", 5000),
        load_balancers_for=balancers,
        discovery_refresh_interval_s=_float(environ, "DISCOVERY_REFRESH_INTERVAL_S", 30.0),
        fallback_product_code=fallback or None,
        product_breaker=breaker_config_from_env(PRODUCT_BREAKER_NAME, environ),
        http_max_connections=_int(environ, "HTTP_MAX_CONNECTIONS", 100),
        db_pool_size=_int(environ, "DB_POOL_SIZE", 10),
        db_max_overflow=_int(environ, "DB_MAX_OVERFLOW", 10, minimum=0),
        log_level=environ.get("LOG_LEVEL", "INFO").upper(),
        catalog_events_enabled=environ.get("CATALOG_EVENTS_ENABLED", "true").lower() != "false",
        instance_id=environ.get("SERVICE_INSTANCE_ID") or socket.gethostname(),
    )

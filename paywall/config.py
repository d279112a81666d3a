"""Runtime configuration helpers."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class PaywallConfig:
    """Settings for the purchase service and its collaborators."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    jwt_secret_key: str
    jwt_algorithm: str
    payment_gateway: str
    stripe_secret_key: Optional[str]
    stripe_publishable_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    sandbox_auto_succeed: bool
    currency: str
    gateway_timeout_seconds: float
    pending_purchase_ttl: timedelta
    ownership_cache_ttl_seconds: int
    content_root: str
    log_level: str
    cors_origins: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def db_settings(self) -> Dict[str, Any]:
        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
        )

    @property
    def uses_stripe(self) -> bool:
        return self.payment_gateway == "stripe"


def _to_int(value: Optional[str], *, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float, name: str) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    timeout = _to_float(raw_value, default=5.0, name="DB_CONNECT_TIMEOUT")
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def _split_csv(value: Optional[str], *, default: str) -> Tuple[str, ...]:
    raw = default if value is None else value
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def load_config(env: Optional[Mapping[str, str]] = None) -> PaywallConfig:
    """Load :class:`PaywallConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    payment_gateway = (env_mapping.get("PAYMENT_GATEWAY") or "sandbox").strip().lower()
    if payment_gateway not in {"sandbox", "stripe"}:
        raise ValueError(f"PAYMENT_GATEWAY must be 'sandbox' or 'stripe', got {payment_gateway!r}")

    currency = (env_mapping.get("PAYMENT_CURRENCY") or "usd").strip().lower()
    if len(currency) != 3:
        raise ValueError("PAYMENT_CURRENCY must be a three letter ISO code")

    gateway_timeout = _to_float(
        env_mapping.get("GATEWAY_TIMEOUT_SECONDS"), default=10.0, name="GATEWAY_TIMEOUT_SECONDS"
    )
    if gateway_timeout <= 0:
        raise ValueError("GATEWAY_TIMEOUT_SECONDS must be positive")

    pending_ttl_minutes = _to_int(
        env_mapping.get("PENDING_PURCHASE_TTL_MINUTES"), default=15, name="PENDING_PURCHASE_TTL_MINUTES"
    )
    cache_ttl = _to_int(
        env_mapping.get("OWNERSHIP_CACHE_TTL_SECONDS"), default=0, name="OWNERSHIP_CACHE_TTL_SECONDS"
    )

    return PaywallConfig(
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432, name="DB_PORT"),
        db_name=env_mapping.get("DB_NAME", "paywall_db"),
        db_user=env_mapping.get("DB_USER", "paywall_user"),
        db_password=env_mapping.get("DB_PASSWORD", "paywall_pass"),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        jwt_secret_key=env_mapping.get("JWT_SECRET_KEY", "dev-secret-change-me"),
        jwt_algorithm=env_mapping.get("JWT_ALGORITHM", "HS256"),
        payment_gateway=payment_gateway,
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_publishable_key=env_mapping.get("STRIPE_PUBLISHABLE_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        sandbox_auto_succeed=_to_bool(env_mapping.get("SANDBOX_AUTO_SUCCEED"), default=False),
        currency=currency,
        gateway_timeout_seconds=gateway_timeout,
        pending_purchase_ttl=timedelta(minutes=max(1, pending_ttl_minutes)),
        ownership_cache_ttl_seconds=max(0, cache_ttl),
        content_root=env_mapping.get("CONTENT_ROOT", "uploads"),
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").upper(),
        cors_origins=_split_csv(env_mapping.get("CORS_ORIGINS"), default="http://localhost:5173"),
    )


__all__ = ["PaywallConfig", "load_config"]

"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

from .config import PaywallConfig

_get_conn: Optional[Callable[[], Any]] = None
_get_credential_claims: Optional[Callable[..., Any]] = None
_config: Optional[PaywallConfig] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_credential_claims: Callable[..., Any],
    config: PaywallConfig,
) -> None:
    """Register application-wide dependencies required by modular routers."""

    global _get_conn
    global _get_credential_claims
    global _config

    _get_conn = get_conn
    _get_credential_claims = get_credential_claims
    _config = config


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_credential_claims(*args: Any, **kwargs: Any) -> Any:
    dependency = _require(_get_credential_claims, "get_credential_claims")
    return dependency(*args, **kwargs)


def get_config() -> PaywallConfig:
    return _require(_config, "config")

# posledger/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///posledger.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Idempotency windows
    IDEMPOTENCY_TTL_HOURS = _env_int("IDEMPOTENCY_TTL_HOURS", 24)
    IDEMPOTENCY_PENDING_TTL_SECONDS = _env_int("IDEMPOTENCY_PENDING_TTL_SECONDS", 300)

    # Retry policy for lock / optimistic-version conflicts
    CONCURRENCY_RETRY_ATTEMPTS = _env_int("CONCURRENCY_RETRY_ATTEMPTS", 3)
    CONCURRENCY_BACKOFF_BASE = float(os.environ.get("CONCURRENCY_BACKOFF_BASE", 0.1))

    # Alert thresholds
    ALERT_EXPIRY_WINDOW_DAYS = _env_int("ALERT_EXPIRY_WINDOW_DAYS", 30)
    ALERT_CUSTOMER_DEBT_THRESHOLD_CENTS = _env_int("ALERT_CUSTOMER_DEBT_THRESHOLD_CENTS", 10_000)
    ALERT_PURCHASE_ORDER_SLA_DAYS = _env_int("ALERT_PURCHASE_ORDER_SLA_DAYS", 7)
    ALERT_REGISTER_OPEN_HOURS = _env_int("ALERT_REGISTER_OPEN_HOURS", 12)
    ALERT_SYNC_PENDING_THRESHOLD = _env_int("ALERT_SYNC_PENDING_THRESHOLD", 50)

    # Retention
    AUDIT_RETENTION_DAYS = _env_int("AUDIT_RETENTION_DAYS", 90)
    SYNC_RETENTION_DAYS = _env_int("SYNC_RETENTION_DAYS", 7)
    SYNC_MAX_RETRIES = _env_int("SYNC_MAX_RETRIES", 5)


@dataclass(frozen=True)
class CoreSettings:
    """Typed view of the config keys the ledger core reads."""
    idempotency_ttl_hours: int = 24
    idempotency_pending_ttl_seconds: int = 300
    retry_attempts: int = 3
    backoff_base: float = 0.1
    expiry_window_days: int = 30
    customer_debt_threshold_cents: int = 10_000
    purchase_order_sla_days: int = 7
    register_open_hours: int = 12
    sync_pending_threshold: int = 50
    audit_retention_days: int = 90
    sync_retention_days: int = 7
    sync_max_retries: int = 5

    @classmethod
    def from_mapping(cls, config: Mapping) -> "CoreSettings":
        defaults = cls()
        return cls(
            idempotency_ttl_hours=config.get("IDEMPOTENCY_TTL_HOURS", defaults.idempotency_ttl_hours),
            idempotency_pending_ttl_seconds=config.get(
                "IDEMPOTENCY_PENDING_TTL_SECONDS", defaults.idempotency_pending_ttl_seconds
            ),
            retry_attempts=config.get("CONCURRENCY_RETRY_ATTEMPTS", defaults.retry_attempts),
            backoff_base=config.get("CONCURRENCY_BACKOFF_BASE", defaults.backoff_base),
            expiry_window_days=config.get("ALERT_EXPIRY_WINDOW_DAYS", defaults.expiry_window_days),
            customer_debt_threshold_cents=config.get(
                "ALERT_CUSTOMER_DEBT_THRESHOLD_CENTS", defaults.customer_debt_threshold_cents
            ),
            purchase_order_sla_days=config.get("ALERT_PURCHASE_ORDER_SLA_DAYS", defaults.purchase_order_sla_days),
            register_open_hours=config.get("ALERT_REGISTER_OPEN_HOURS", defaults.register_open_hours),
            sync_pending_threshold=config.get("ALERT_SYNC_PENDING_THRESHOLD", defaults.sync_pending_threshold),
            audit_retention_days=config.get("AUDIT_RETENTION_DAYS", defaults.audit_retention_days),
            sync_retention_days=config.get("SYNC_RETENTION_DAYS", defaults.sync_retention_days),
            sync_max_retries=config.get("SYNC_MAX_RETRIES", defaults.sync_max_retries),
        )

"""Core configuration & tunable operating rules.

Retry/backoff shapes, batch sizes, webhook retention, reconciliation paging
and provider credentials live here so they can be adjusted without touching
service code. Values are read from the environment once at import time; tests
monkeypatch the dicts directly.
"""
from __future__ import annotations

import os

from ledgerlink.exceptions import ConfigurationError


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	return float(raw) if raw and raw.strip() else default


def _env_int(name: str, default: int) -> int:
	raw = os.getenv(name)
	return int(raw) if raw and raw.strip() else default


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


# --------------------------------- Backoff -------------------------------- #
# delay = min(base * factor ** attempts, max_seconds) + uniform(0, jitter_seconds)
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,
	"max_seconds": _env_int("BACKOFF_MAX_SECONDS", 60),
	"jitter_seconds": _env_float("BACKOFF_JITTER_SECONDS", 5.0),
}

# --------------------------------- Outbox --------------------------------- #
OUTBOX_SETTINGS: dict[str, int | float] = {
	"batch_size": _env_int("OUTBOX_BATCH_SIZE", 10),
	"max_attempts": _env_int("OUTBOX_MAX_ATTEMPTS", 5),
	"poll_interval_seconds": _env_float("OUTBOX_POLL_INTERVAL_SECONDS", 60.0),
	"call_timeout_seconds": _env_float("OUTBOX_CALL_TIMEOUT_SECONDS", 30.0),
	# processing rows older than this are assumed orphaned by a crashed worker
	"stale_after_seconds": _env_float("OUTBOX_STALE_AFTER_SECONDS", 600.0),
}

# -------------------------------- Webhooks -------------------------------- #
WEBHOOK_SETTINGS: dict[str, int | float] = {
	"signature_tolerance_seconds": 300,  # replay window for timestamped schemes
	"max_retries": _env_int("WEBHOOK_MAX_RETRIES", 3),
	"retention_days": _env_int("WEBHOOK_RETENTION_DAYS", 90),
	"retry_poll_interval_seconds": _env_float("WEBHOOK_RETRY_POLL_SECONDS", 60.0),
	"retry_batch_size": 25,
	"purge_interval_seconds": _env_float("WEBHOOK_PURGE_INTERVAL_SECONDS", 3600.0),
	# processing rows older than this are handed back to the retry worker
	"stale_after_seconds": _env_float("WEBHOOK_STALE_AFTER_SECONDS", 600.0),
}

# ----------------------------- Reconciliation ----------------------------- #
RECONCILIATION_SETTINGS: dict[str, int | float | bool] = {
	"page_size": _env_int("RECONCILIATION_PAGE_SIZE", 100),
	"interval_seconds": _env_float("RECONCILIATION_INTERVAL_SECONDS", 86400.0),
	"fetch_timeout_seconds": _env_float("RECONCILIATION_FETCH_TIMEOUT_SECONDS", 30.0),
	"inverse_pass_enabled": _env_bool("RECONCILIATION_INVERSE_PASS", True),
	"enable_scheduler": _env_bool("RECONCILIATION_SCHEDULER", True),
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
	"half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# --------------------------------- Ledger --------------------------------- #
LEDGER_SETTINGS: dict[str, str | float | None] = {
	"horizon_url": os.getenv("STELLAR_HORIZON_URL", "https://horizon-testnet.stellar.org"),
	"network_passphrase": os.getenv("STELLAR_NETWORK_PASSPHRASE", "Test SDF Network ; September 2015"),
	"secret_key": os.getenv("STELLAR_SECRET_KEY") or None,
	"request_timeout_seconds": _env_float("STELLAR_REQUEST_TIMEOUT_SECONDS", 20.0),
	"memo_lookup_limit": _env_int("STELLAR_MEMO_LOOKUP_LIMIT", 200),
}

# -------------------------------- Providers ------------------------------- #
SUPPORTED_PROVIDERS: tuple[str, ...] = ("stripe", "razorpay", "paystack", "flutterwave", "paypal")

_active_raw = os.getenv("ACTIVE_PAYMENT_PROVIDERS", "stripe")
ACTIVE_PAYMENT_PROVIDERS: list[str] = [p.strip().lower() for p in _active_raw.split(",") if p.strip()]

# One signing secret per provider, e.g. STRIPE_WEBHOOK_SECRET.
WEBHOOK_SECRETS: dict[str, str] = {
	name: secret
	for name in SUPPORTED_PROVIDERS
	if (secret := os.getenv(f"{name.upper()}_WEBHOOK_SECRET"))
}

# API credentials for transaction feeds used by reconciliation.
PROVIDER_API_KEYS: dict[str, str | None] = {
	"stripe": os.getenv("STRIPE_API_KEY") or None,
	"paystack": os.getenv("PAYSTACK_SECRET_KEY") or None,
}

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE: str | None = os.getenv("LOG_FILE", "logs/ledgerlink.log") or None
ENABLE_WORKERS: bool = _env_bool("ENABLE_WORKERS", True)


def validate_provider_secrets(active: list[str], secrets: dict[str, str]) -> None:
	"""Fail fast when an active provider cannot verify its own webhooks."""
	unknown = [p for p in active if p not in SUPPORTED_PROVIDERS]
	if unknown:
		raise ConfigurationError(f"Unsupported payment provider(s) configured: {', '.join(unknown)}")
	missing = [p for p in active if not secrets.get(p)]
	if missing:
		names = ", ".join(f"{p.upper()}_WEBHOOK_SECRET" for p in missing)
		raise ConfigurationError(f"Missing webhook secret for active provider(s): {names}")


__all__ = [
	"BACKOFF_POLICY",
	"OUTBOX_SETTINGS",
	"WEBHOOK_SETTINGS",
	"RECONCILIATION_SETTINGS",
	"CIRCUIT_BREAKER",
	"LEDGER_SETTINGS",
	"SUPPORTED_PROVIDERS",
	"ACTIVE_PAYMENT_PROVIDERS",
	"WEBHOOK_SECRETS",
	"PROVIDER_API_KEYS",
	"LOG_LEVEL",
	"LOG_FILE",
	"ENABLE_WORKERS",
	"validate_provider_secrets",
]

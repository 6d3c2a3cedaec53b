"""Reconciliation job configuration & tunable governance rules.

All tunables that may evolve per deployment tier (batch size, timeouts,
retry/backoff, throttle, lease length, retention, price tolerance, pending
order age window) are centralized here. Defaults come from module constants
that read the environment; `load_settings()` folds them into a validated
`ReconciliationSettings` instance and refuses to hand out invalid values.
"""
from __future__ import annotations

import os
from typing import Any, Final, Literal

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from order_reconciliation.exceptions import ConfigurationInvalid
from order_reconciliation.utils.backoff import backoff_schedule

ENVIRONMENTS: Final = ("production", "staging", "development", "test")

ENVIRONMENT: str = (os.getenv("RECONCILIATION_ENV") or os.getenv("ENVIRONMENT") or "development").strip().lower()

# Ops API protection. When unset the admin endpoints are open (local dev only).
ADMIN_API_KEY: str | None = os.getenv("ADMIN_API_KEY") or None

# Start the cron scheduler inside the FastAPI lifespan.
SCHEDULER_ENABLED: bool = os.getenv("RECONCILIATION_SCHEDULER_ENABLED", "false").lower() in ("1", "true", "yes")

# --------------------------------- Gateway -------------------------------- #
GATEWAY_SETTINGS: dict[str, str | None] = {
	"name": "abacatepay",
	"base_url": os.getenv("ABACATEPAY_API_URL", "https://api.abacatepay.com"),
	"api_key": os.getenv("ABACATEPAY_API_KEY") or None,
}

# ------------------------------ Reconciliation ---------------------------- #
# Values below are the production baseline; ENVIRONMENT_OVERRIDES adjusts
# them per tier.
RECONCILIATION_SETTINGS: dict[str, Any] = {
	"cron_schedule": "*/5 * * * *",
	"cron_timezone": "America/Sao_Paulo",
	"batch_size": 100,                       # Max orders per cycle
	"execution_timeout_seconds": 240.0,      # 4 minutes, checked between orders
	# Retry policy (per order, within one cycle)
	"max_retries": 3,                        # Total gateway attempts per order
	"retry_delay_seconds": 1.0,
	"backoff_multiplier": 2.0,
	# Gateway pacing
	"api_timeout_seconds": 30.0,
	"api_throttle_seconds": 0.1,             # Min gap between any two calls
	# Lease must outlive the execution timeout plus one in-flight order (333.3s here)
	"lock_timeout_seconds": 360.0,
	"lock_backend": "database",              # database | redis
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	# Audit
	"audit_retention_days": 30,
	# Price validation (integer centavos)
	"expected_ticket_price": 15000,          # R$ 150,00
	"price_tolerance": 0.05,                 # 5%
	# Pending order age window
	"pending_order_min_age_seconds": 3600.0,   # 1 hour
	"pending_order_max_age_seconds": 86400.0,  # 24 hours
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failed orders before OPEN
	"open_cooldown_seconds": 60,     # Stay OPEN for 1 minute
	"half_open_probe_count": 1,      # Probes allowed in HALF_OPEN
}

# -------------------------------- Alerting -------------------------------- #
ALERTING_SETTINGS: dict[str, float] = {
	"execution_time_seconds": 180.0,  # 3 minutes
	"api_error_rate": 0.10,           # 10% of gateway calls
}

# ------------------------------- Environments ----------------------------- #
ENVIRONMENT_OVERRIDES: dict[str, dict[str, Any]] = {
	"production": {},
	"staging": {
		"batch_size": 50,
		"cron_schedule": "*/10 * * * *",
	},
	"development": {
		"batch_size": 10,
		"cron_schedule": "*/15 * * * *",
	},
	"test": {
		"batch_size": 5,
		"execution_timeout_seconds": 30.0,
		"cron_schedule": "*/15 * * * *",
	},
}

# Logging
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO" if ENVIRONMENT == "production" else "DEBUG")
LOG_FILE: str | None = os.getenv("LOG_FILE", "logs/reconciliation.log") or None


class ReconciliationSettings(BaseModel):
	"""Validated, immutable view of the tunables used by one job instance."""

	model_config = ConfigDict(frozen=True, extra="forbid")

	environment: str = "development"
	cron_schedule: str
	cron_timezone: str = "America/Sao_Paulo"
	batch_size: int = Field(gt=0)
	execution_timeout_seconds: float = Field(gt=0)
	max_retries: int = Field(ge=1)
	retry_delay_seconds: float = Field(gt=0)
	backoff_multiplier: float = Field(ge=1)
	api_timeout_seconds: float = Field(gt=0)
	api_throttle_seconds: float = Field(ge=0)
	lock_timeout_seconds: float = Field(gt=0)
	lock_backend: Literal["database", "redis"] = "database"
	redis_url: str = "redis://localhost:6379/0"
	audit_retention_days: int = Field(gt=0)
	expected_ticket_price: int = Field(gt=0)
	price_tolerance: float = Field(ge=0, le=1)
	pending_order_min_age_seconds: float = Field(ge=0)
	pending_order_max_age_seconds: float = Field(gt=0)
	circuit_breaker_threshold: int = Field(default=5, gt=0)
	circuit_breaker_cooldown_seconds: float = Field(default=60.0, gt=0)
	alert_execution_time_seconds: float = Field(default=180.0, gt=0)
	alert_api_error_rate: float = Field(default=0.10, ge=0, le=1)
	gateway_name: str = "abacatepay"
	gateway_base_url: str = "https://api.abacatepay.com"
	gateway_api_key: str | None = None

	@property
	def order_budget_seconds(self) -> float:
		"""Longest a single order can take: every attempt times out, plus throttle and backoff."""
		delays = backoff_schedule(self.max_retries, base=self.retry_delay_seconds, factor=self.backoff_multiplier)
		return self.max_retries * (self.api_timeout_seconds + self.api_throttle_seconds) + sum(delays)

	@property
	def worst_case_cycle_seconds(self) -> float:
		"""The timeout is checked between orders, so the last order may start just before it."""
		return self.execution_timeout_seconds + self.order_budget_seconds

	@model_validator(mode="after")
	def _check_relations(self) -> "ReconciliationSettings":
		if self.lock_timeout_seconds <= self.worst_case_cycle_seconds:
			raise ValueError(
				f"lock_timeout_seconds must exceed the worst-case cycle length "
				f"({self.worst_case_cycle_seconds:.1f}s: execution timeout plus one in-flight order)"
			)
		if self.pending_order_max_age_seconds <= self.pending_order_min_age_seconds:
			raise ValueError("pending_order_max_age_seconds must exceed pending_order_min_age_seconds")
		try:
			CronTrigger.from_crontab(self.cron_schedule, timezone=self.cron_timezone)
		except (ValueError, LookupError) as e:
			raise ValueError(f"invalid cron_schedule {self.cron_schedule!r}: {e}") from e
		return self


def _env_overrides() -> dict[str, Any]:
	"""Collect RECONCILIATION_<NAME> overrides for every known tunable."""
	overrides: dict[str, Any] = {}
	for name in RECONCILIATION_SETTINGS:
		raw = os.getenv(f"RECONCILIATION_{name.upper()}")
		if raw is not None and raw.strip():
			overrides[name] = raw.strip()
	return overrides


def build_settings_values(environment: str | None = None) -> dict[str, Any]:
	"""Merge baseline, tier overrides and environment variables (unvalidated)."""
	env = (environment or ENVIRONMENT).lower()
	if env not in ENVIRONMENTS:
		env = "development"
	values: dict[str, Any] = dict(RECONCILIATION_SETTINGS)
	values.update(ENVIRONMENT_OVERRIDES.get(env, {}))
	values.update(_env_overrides())
	values.update(
		environment=env,
		circuit_breaker_threshold=CIRCUIT_BREAKER["failure_threshold"],
		circuit_breaker_cooldown_seconds=CIRCUIT_BREAKER["open_cooldown_seconds"],
		alert_execution_time_seconds=ALERTING_SETTINGS["execution_time_seconds"],
		alert_api_error_rate=ALERTING_SETTINGS["api_error_rate"],
		gateway_name=GATEWAY_SETTINGS["name"],
		gateway_base_url=GATEWAY_SETTINGS["base_url"],
		gateway_api_key=GATEWAY_SETTINGS["api_key"],
	)
	return values


def load_settings(environment: str | None = None, **overrides: Any) -> ReconciliationSettings:
	"""Build validated settings or raise ConfigurationInvalid.

	Keyword overrides win over every other source (used by tests and the CLI).
	"""
	values = build_settings_values(environment)
	values.update(overrides)
	try:
		return ReconciliationSettings(**values)
	except ValidationError as e:
		errors = []
		for err in e.errors():
			loc = ".".join(str(p) for p in err.get("loc", ())) or "settings"
			errors.append(f"{loc}: {err.get('msg')}")
		raise ConfigurationInvalid(errors) from e


__all__ = [
	"ENVIRONMENT",
	"ENVIRONMENTS",
	"ADMIN_API_KEY",
	"SCHEDULER_ENABLED",
	"LOG_LEVEL",
	"LOG_FILE",
	# Rule groups
	"GATEWAY_SETTINGS",
	"RECONCILIATION_SETTINGS",
	"CIRCUIT_BREAKER",
	"ALERTING_SETTINGS",
	"ENVIRONMENT_OVERRIDES",
	"ReconciliationSettings",
	"build_settings_values",
	"load_settings",
]

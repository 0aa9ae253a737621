from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int | None = None) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Delivery Confirmation Reminders"
    api_prefix: str = "/api/v1"
    business_timezone: str = "America/Denver"
    # Kill switch for every phase trigger.
    notifs_enabled: bool = False
    cron_secret: str = ""
    cron_allow_now_override: bool = False
    phase_worker_count: int = 4
    job_store_backend: str = "inmemory"
    order_view_backend: str = "inmemory"
    phase_run_store_backend: str = "inmemory"
    database_url: str = ""
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_channel: str = "email"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    escalation_client_type: str = "stub"
    erp_escalation_base_url: str = ""
    erp_escalation_api_key: str = ""
    erp_escalation_timeout_seconds: int = 30
    runtime_secret_guard_mode: str = "warn"

    def uses_database(self) -> bool:
        backends = (self.job_store_backend, self.order_view_backend, self.phase_run_store_backend)
        return any(value.strip().lower() == "postgres" for value in backends)


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "Delivery Confirmation Reminders"),
        api_prefix=os.getenv("API_PREFIX", "/api/v1"),
        business_timezone=os.getenv("BUSINESS_TIMEZONE", "America/Denver"),
        notifs_enabled=_as_bool(os.getenv("NOTIFS_ENABLED"), False),
        cron_secret=os.getenv("CRON_SECRET", ""),
        cron_allow_now_override=_as_bool(os.getenv("CRON_ALLOW_NOW_OVERRIDE"), False),
        phase_worker_count=_as_int(os.getenv("PHASE_WORKER_COUNT"), 4, minimum=1),
        job_store_backend=os.getenv("JOB_STORE_BACKEND", "inmemory"),
        order_view_backend=os.getenv("ORDER_VIEW_BACKEND", "inmemory"),
        phase_run_store_backend=os.getenv("PHASE_RUN_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_channel=os.getenv("NOTIFIER_CHANNEL", "email"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30, minimum=1),
        escalation_client_type=_normalize_mode(
            os.getenv("ESCALATION_CLIENT_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        erp_escalation_base_url=os.getenv("ERP_ESCALATION_BASE_URL", ""),
        erp_escalation_api_key=os.getenv("ERP_ESCALATION_API_KEY", ""),
        erp_escalation_timeout_seconds=_as_int(os.getenv("ERP_ESCALATION_TIMEOUT_SECONDS"), 30, minimum=1),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.cron_secret, defaults={"dev-cron-secret", "change-me-in-production"}):
        issues.append("CRON_SECRET is empty or uses a placeholder value")
    if settings.uses_database() and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when any *_BACKEND=postgres")
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    if settings.escalation_client_type == "http":
        if not settings.erp_escalation_base_url.strip():
            issues.append("ERP_ESCALATION_BASE_URL is required when ESCALATION_CLIENT_TYPE=http")
        if not settings.erp_escalation_api_key.strip():
            issues.append("ERP_ESCALATION_API_KEY is required when ESCALATION_CLIENT_TYPE=http")
    return tuple(issues)

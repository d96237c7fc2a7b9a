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


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


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
    app_name: str = "Reminder Dispatch"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    cron_secret: str = ""
    # Voice provider call-status webhook.
    call_webhook_secret: str = ""
    call_webhook_signature_mode: str = "enforce"
    call_webhook_max_age_seconds: int = 300
    # SMS provider.
    sms_sender_type: str = "stub"
    sms_enabled: bool = True
    sms_status_signature_mode: str = "log_only"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    sms_status_callback_url: str = ""
    sms_character_limit: int = 160
    # Voice provider.
    voice_dispatcher_type: str = "stub"
    voice_enabled: bool = True
    voice_api_base_url: str = ""
    voice_api_key: str = ""
    voice_timeout_seconds: int = 30
    # Accounting status lookups used by pre-dispatch verification.
    accounting_client_type: str = "cache"
    accounting_api_base_url: str = ""
    accounting_api_key: str = ""
    accounting_timeout_seconds: int = 15
    # Scheduler pass.
    in_progress_timeout_minutes: int = 10
    queued_stale_minutes: int = 10
    scheduler_error_rate_alert_threshold: float = 0.2
    scheduler_batch_limit: int = 500
    outbound_rate_limit_max: int = 30
    outbound_rate_limit_window_seconds: int = 60
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDER_APP_NAME", "Reminder Dispatch"),
        api_prefix=os.getenv("REMINDER_API_PREFIX", "/api/v1"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        cron_secret=os.getenv("CRON_SECRET", ""),
        call_webhook_secret=os.getenv("CALL_WEBHOOK_SECRET", ""),
        call_webhook_signature_mode=_normalize_mode(
            os.getenv("CALL_WEBHOOK_SIGNATURE_MODE"),
            default="enforce",
            allowed={"off", "log_only", "enforce"},
        ),
        call_webhook_max_age_seconds=_as_int(os.getenv("CALL_WEBHOOK_MAX_AGE_SECONDS"), 300),
        sms_sender_type=_normalize_mode(
            os.getenv("SMS_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "twilio"},
        ),
        sms_enabled=_as_bool(os.getenv("SMS_ENABLED"), True),
        sms_status_signature_mode=_normalize_mode(
            os.getenv("SMS_STATUS_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER", ""),
        sms_status_callback_url=os.getenv("SMS_STATUS_CALLBACK_URL", ""),
        sms_character_limit=_as_int(os.getenv("SMS_CHARACTER_LIMIT"), 160),
        voice_dispatcher_type=_normalize_mode(
            os.getenv("VOICE_DISPATCHER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        voice_enabled=_as_bool(os.getenv("VOICE_ENABLED"), True),
        voice_api_base_url=os.getenv("VOICE_API_BASE_URL", ""),
        voice_api_key=os.getenv("VOICE_API_KEY", ""),
        voice_timeout_seconds=_as_int(os.getenv("VOICE_TIMEOUT_SECONDS"), 30),
        accounting_client_type=_normalize_mode(
            os.getenv("ACCOUNTING_CLIENT_TYPE"),
            default="cache",
            allowed={"cache", "http"},
        ),
        accounting_api_base_url=os.getenv("ACCOUNTING_API_BASE_URL", ""),
        accounting_api_key=os.getenv("ACCOUNTING_API_KEY", ""),
        accounting_timeout_seconds=_as_int(os.getenv("ACCOUNTING_TIMEOUT_SECONDS"), 15),
        in_progress_timeout_minutes=_as_int(os.getenv("IN_PROGRESS_TIMEOUT_MINUTES"), 10),
        queued_stale_minutes=_as_int(os.getenv("QUEUED_STALE_MINUTES"), 10),
        scheduler_error_rate_alert_threshold=_as_float(
            os.getenv("SCHEDULER_ERROR_RATE_ALERT_THRESHOLD"), 0.2
        ),
        scheduler_batch_limit=_as_int(os.getenv("SCHEDULER_BATCH_LIMIT"), 500),
        outbound_rate_limit_max=_as_int(os.getenv("OUTBOUND_RATE_LIMIT_MAX"), 30),
        outbound_rate_limit_window_seconds=_as_int(os.getenv("OUTBOUND_RATE_LIMIT_WINDOW_SECONDS"), 60),
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
    if settings.call_webhook_signature_mode == "enforce" and not settings.call_webhook_secret.strip():
        issues.append("CALL_WEBHOOK_SECRET is required when CALL_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.sms_sender_type == "twilio":
        if not settings.twilio_account_sid.strip() or not settings.twilio_auth_token.strip():
            issues.append("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required when SMS_SENDER_TYPE=twilio")
        if not settings.twilio_phone_number.strip():
            issues.append("TWILIO_PHONE_NUMBER is required when SMS_SENDER_TYPE=twilio")
    if settings.sms_status_signature_mode == "enforce" and not settings.twilio_auth_token.strip():
        issues.append("TWILIO_AUTH_TOKEN is required when SMS_STATUS_SIGNATURE_MODE=enforce")
    if settings.voice_dispatcher_type == "http" and (
        not settings.voice_api_base_url.strip() or not settings.voice_api_key.strip()
    ):
        issues.append("VOICE_API_BASE_URL and VOICE_API_KEY are required when VOICE_DISPATCHER_TYPE=http")
    if settings.accounting_client_type == "http" and not settings.accounting_api_base_url.strip():
        issues.append("ACCOUNTING_API_BASE_URL is required when ACCOUNTING_CLIENT_TYPE=http")
    return tuple(issues)

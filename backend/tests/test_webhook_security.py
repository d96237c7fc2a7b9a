from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from twilio.request_validator import RequestValidator

from reminder_dispatch.config import Settings
from reminder_dispatch.webhook_security import (
    sign_call_webhook,
    verify_call_webhook_signature,
    verify_twilio_status_signature,
)

NOW = datetime(2026, 10, 19, 16, 0, tzinfo=timezone.utc)
BODY = b'{"reminder_id":"rem_1","event":"answered"}'


def _settings(**overrides: object) -> Settings:
    return replace(Settings(call_webhook_secret="hook-secret", twilio_auth_token="twilio-token"), **overrides)


def _signed_headers(*, secret: str = "hook-secret", timestamp: int | None = None, body: bytes = BODY) -> dict[str, str]:
    ts = timestamp if timestamp is not None else int(NOW.timestamp())
    return {
        "x-webhook-timestamp": str(ts),
        "x-webhook-signature": f"sha256={sign_call_webhook(secret, timestamp=ts, body=body)}",
    }


def test_valid_signature_is_accepted() -> None:
    result = verify_call_webhook_signature(settings=_settings(), body=BODY, headers=_signed_headers(), now=NOW)
    assert result.verified
    assert result.reason is None


def test_signature_checks_report_reason() -> None:
    settings = _settings()
    stale = int(NOW.timestamp()) - 301

    cases = {
        "timestamp_missing": {},
        "signature_missing": {"X-Webhook-Timestamp": str(int(NOW.timestamp()))},
        "timestamp_invalid": {"X-Webhook-Timestamp": "yesterday", "X-Webhook-Signature": "abc"},
        "timestamp_out_of_window": _signed_headers(timestamp=stale),
        "signature_mismatch": _signed_headers(secret="other-secret"),
    }
    for reason, headers in cases.items():
        result = verify_call_webhook_signature(settings=settings, body=BODY, headers=headers, now=NOW)
        assert not result.verified
        assert result.reason == reason


def test_tampered_body_is_rejected() -> None:
    result = verify_call_webhook_signature(
        settings=_settings(), body=BODY.replace(b"answered", b"completed"), headers=_signed_headers(), now=NOW
    )
    assert result.reason == "signature_mismatch"


def test_missing_secret_and_off_mode() -> None:
    missing = verify_call_webhook_signature(
        settings=_settings(call_webhook_secret=""), body=BODY, headers=_signed_headers(), now=NOW
    )
    assert missing.reason == "webhook_secret_missing"

    off = verify_call_webhook_signature(settings=_settings(call_webhook_signature_mode="off"), body=BODY, headers={})
    assert off.verified


def test_twilio_signature_round_trip() -> None:
    url = "https://example.test/api/v1/reminders/webhooks/sms-status"
    form = {"MessageSid": "SM123", "MessageStatus": "delivered"}
    signature = RequestValidator("twilio-token").compute_signature(url, form)
    settings = _settings(sms_status_signature_mode="enforce")

    good = verify_twilio_status_signature(
        settings=settings, url=url, form_data=form, headers={"X-Twilio-Signature": signature}
    )
    bad = verify_twilio_status_signature(
        settings=settings, url=url, form_data={**form, "MessageStatus": "failed"}, headers={"X-Twilio-Signature": signature}
    )
    missing = verify_twilio_status_signature(settings=settings, url=url, form_data=form, headers={})

    assert good.verified
    assert bad.reason == "signature_mismatch"
    assert missing.reason == "signature_missing"

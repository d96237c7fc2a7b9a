from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Protocol

from .phone import is_e164, mask_phone_number
from .reference_data import (
    BusinessProfileRecord,
    CustomerRecord,
    InvoiceRecord,
    ReminderSettingsRecord,
)
from .reminder_store import ReminderRecord

# 4xx answers that still mean "try again later"; any other 4xx is permanent.
_RETRYABLE_HTTP_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class CallContext:
    reminder_id: str
    reminder_type: str
    customer_name: str
    invoice_number: str
    original_amount: float
    amount_due: float
    currency: str
    due_date: date
    days_until_due: int
    is_overdue: bool
    payment_methods: tuple[str, ...]
    company_name: str
    business_description: str | None
    support_phone: str
    support_email: str | None
    language: str
    voice_gender: str

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["due_date"] = self.due_date.isoformat()
        payload["payment_methods"] = list(self.payment_methods)
        return payload


def build_call_context(
    *,
    reminder: ReminderRecord,
    invoice: InvoiceRecord,
    customer: CustomerRecord | None,
    profile: BusinessProfileRecord,
    settings: ReminderSettingsRecord,
    amount_due: float,
    today: date,
) -> CallContext:
    days_until_due = (invoice.due_date - today).days
    customer_name = (customer.name or "").strip() if customer is not None else ""
    return CallContext(
        reminder_id=reminder.reminder_id,
        reminder_type=reminder.reminder_type,
        customer_name=customer_name or "Customer",
        invoice_number=(invoice.invoice_number or "").strip() or "Unknown",
        original_amount=round(invoice.amount_total, 2),
        amount_due=round(amount_due, 2),
        currency=invoice.currency,
        due_date=invoice.due_date,
        days_until_due=days_until_due,
        is_overdue=days_until_due < 0,
        payment_methods=profile.preferred_payment_methods,
        company_name=profile.company_name,
        business_description=profile.business_description,
        support_phone=profile.support_phone,
        support_email=profile.support_email,
        language=settings.language,
        voice_gender=settings.voice_gender,
    )


@dataclass(frozen=True)
class VoiceDispatchResult:
    accepted: bool
    attempted_at: datetime
    provider_call_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    permanent: bool = False


class VoiceDispatcher(Protocol):
    def dispatch(self, phone_number: str, context: CallContext) -> VoiceDispatchResult: ...


class StubVoiceDispatcher:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.calls: list[tuple[str, CallContext]] = []

    def dispatch(self, phone_number: str, context: CallContext) -> VoiceDispatchResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return VoiceDispatchResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code="voice_disabled",
                error_message="Voice dispatch is disabled",
            )
        if not is_e164(phone_number):
            return VoiceDispatchResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code="invalid_phone_number",
                error_message=f"Invalid phone number format: {mask_phone_number(phone_number)}",
                permanent=True,
            )
        self.calls.append((phone_number, context))
        return VoiceDispatchResult(
            accepted=True,
            attempted_at=attempted_at,
            provider_call_id=f"stub-call-{context.reminder_id}-{int(attempted_at.timestamp())}",
        )


class _VoiceDispatchError(Exception):
    """Internal error raised when a voice provider HTTP request fails."""

    def __init__(self, error_code: str, message: str, *, permanent: bool = False) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.permanent = permanent


class HttpVoiceDispatcher:
    """Voice agent dispatcher that starts outbound calls over HTTP."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def dispatch(self, phone_number: str, context: CallContext) -> VoiceDispatchResult:
        attempted_at = datetime.now(timezone.utc)
        masked = mask_phone_number(phone_number)
        if not is_e164(phone_number):
            return VoiceDispatchResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code="invalid_phone_number",
                error_message=f"Invalid phone number format: {masked}",
                permanent=True,
            )

        request_payload = {
            "phone_number": phone_number,
            "context": context.to_payload(),
            "idempotency_key": f"reminder-{context.reminder_id}-{int(attempted_at.timestamp())}",
        }
        try:
            response_data = self._post(request_payload)
        except _VoiceDispatchError as exc:
            return VoiceDispatchResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked})",
                permanent=exc.permanent,
            )

        call_id = response_data.get("call_id") or response_data.get("room_name")
        if not call_id:
            return VoiceDispatchResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code="missing_call_id",
                error_message="Voice provider accepted the request without returning a call id",
            )
        return VoiceDispatchResult(accepted=True, attempted_at=attempted_at, provider_call_id=str(call_id))

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/v1/calls"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise _VoiceDispatchError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
                permanent=400 <= exc.code < 500 and exc.code not in _RETRYABLE_HTTP_CODES,
            ) from exc
        except urllib.error.URLError as exc:
            raise _VoiceDispatchError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _VoiceDispatchError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise _VoiceDispatchError(
                error_code="invalid_response",
                message="Voice provider returned a non-JSON response",
            ) from exc
        if not isinstance(payload, dict):
            raise _VoiceDispatchError(
                error_code="invalid_response",
                message="Voice provider response is not a JSON object",
            )
        return payload

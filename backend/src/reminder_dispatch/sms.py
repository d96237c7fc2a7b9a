from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Protocol

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from .phone import is_e164, mask_phone_number

logger = logging.getLogger(__name__)

SMS_CHARACTER_LIMIT = 160
TRUNCATED_FIELD_LENGTH = 15
ELLIPSIS = "..."

# Twilio error codes for destinations that will never accept a message.
PERMANENT_TWILIO_ERROR_CODES = frozenset({21211, 21612, 21614, 30003, 30004, 30005, 30006})

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "INR": "₹",
    "JPY": "¥",
    "CNY": "¥",
    "AUD": "A$",
    "CAD": "C$",
    "NZD": "NZ$",
    "SGD": "S$",
    "HKD": "HK$",
    "CHF": "CHF ",
    "AED": "AED ",
    "ZAR": "R",
    "BRL": "R$",
    "MXN": "MX$",
    "KRW": "₩",
}

_TEMPLATES: dict[str, str] = {
    "en": "Hi {name}, reminder: Invoice #{number} for {amount} is due on {date}. - {company}",
    "hi": "नमस्ते {name}, याद दिलाना: चालान #{number} {amount} का {date} को देय है। - {company}",
    "hinglish": "Hi {name}, reminder: Invoice #{number} ka {amount} {date} ko due hai. - {company}",
}

_LANGUAGE_ALIASES = {"english": "en", "hindi": "hi"}


def currency_symbol(currency_code: str) -> str:
    normalized = currency_code.strip().upper()
    return CURRENCY_SYMBOLS.get(normalized, f"{normalized} " if normalized else "$")


def format_amount(amount: float, currency_code: str) -> str:
    return f"{currency_symbol(currency_code)}{amount:.2f}"


def format_short_date(value: date) -> str:
    return f"{value:%b} {value.day}"


def _shorten(value: str) -> str:
    if len(value) <= TRUNCATED_FIELD_LENGTH:
        return value
    return value[:TRUNCATED_FIELD_LENGTH] + ELLIPSIS


@dataclass(frozen=True)
class SmsMessageData:
    customer_name: str
    invoice_number: str
    amount: float
    currency: str
    due_date: date
    company_name: str
    language: str = "en"


def _render(data: SmsMessageData, *, name: str, company: str) -> str:
    language = _LANGUAGE_ALIASES.get(data.language.strip().lower(), data.language.strip().lower())
    template = _TEMPLATES.get(language, _TEMPLATES["en"])
    return template.format(
        name=name,
        number=data.invoice_number,
        amount=format_amount(data.amount, data.currency),
        date=format_short_date(data.due_date),
        company=company,
    )


def format_sms_message(data: SmsMessageData, *, limit: int = SMS_CHARACTER_LIMIT) -> str:
    """Render the reminder text and keep it within ``limit`` characters.

    Long customer names are shortened first, then long company names. If the
    text is still too long it is cut and ends with ``...``.
    """
    message = _render(data, name=data.customer_name, company=data.company_name)
    if len(message) <= limit:
        return message

    name = _shorten(data.customer_name)
    message = _render(data, name=name, company=data.company_name)
    if len(message) <= limit:
        return message

    message = _render(data, name=name, company=_shorten(data.company_name))
    if len(message) <= limit:
        return message

    return message[: limit - len(ELLIPSIS)] + ELLIPSIS


@dataclass(frozen=True)
class SmsSendResult:
    accepted: bool
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    permanent: bool = False


class SmsSender(Protocol):
    def send(self, phone_number: str, message: str) -> SmsSendResult: ...


def _precheck(phone_number: str, message: str, attempted_at: datetime) -> SmsSendResult | None:
    if not is_e164(phone_number):
        return SmsSendResult(
            accepted=False,
            attempted_at=attempted_at,
            error_code="invalid_phone_number",
            error_message=f"Invalid phone number format: {mask_phone_number(phone_number)}",
            permanent=True,
        )
    if not message.strip():
        return SmsSendResult(
            accepted=False,
            attempted_at=attempted_at,
            error_code="invalid_message",
            error_message="Message body cannot be empty",
            permanent=True,
        )
    return None


class StubSmsSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.messages: list[tuple[str, str]] = []

    def send(self, phone_number: str, message: str) -> SmsSendResult:
        attempted_at = datetime.now(timezone.utc)
        rejected = _precheck(phone_number, message, attempted_at)
        if rejected is not None:
            return rejected
        if not self._enabled:
            return SmsSendResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code="sms_disabled",
                error_message="SMS delivery is disabled",
            )
        self.messages.append((phone_number, message))
        return SmsSendResult(
            accepted=True,
            attempted_at=attempted_at,
            provider_message_id=f"SMstub{len(self.messages):06d}{int(attempted_at.timestamp())}",
        )


class TwilioSmsSender:
    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: str | None = None,
        client: Client | None = None,
    ) -> None:
        if not account_sid.strip() or not auth_token.strip():
            raise ValueError("Twilio account SID and auth token are required")
        if not is_e164(from_number.strip()):
            raise ValueError("Twilio sender number must be in E.164 format")
        self._client = client or Client(account_sid.strip(), auth_token.strip())
        self._from_number = from_number.strip()
        self._status_callback_url = (status_callback_url or "").strip() or None

    def send(self, phone_number: str, message: str) -> SmsSendResult:
        attempted_at = datetime.now(timezone.utc)
        rejected = _precheck(phone_number, message, attempted_at)
        if rejected is not None:
            return rejected

        masked = mask_phone_number(phone_number)
        create_kwargs: dict[str, str] = {"to": phone_number, "from_": self._from_number, "body": message}
        if self._status_callback_url:
            create_kwargs["status_callback"] = self._status_callback_url
        try:
            created = self._client.messages.create(**create_kwargs)
        except TwilioRestException as exc:
            return self._rest_failure(exc, attempted_at=attempted_at, masked=masked)
        except (TwilioException, OSError) as exc:
            logger.warning("twilio network error sending to %s: %s", masked, exc)
            return SmsSendResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code="network_error",
                error_message=f"Network error: {exc}",
            )

        logger.info("sms accepted by twilio for %s (sid=%s)", masked, created.sid)
        return SmsSendResult(accepted=True, attempted_at=attempted_at, provider_message_id=created.sid)

    def _rest_failure(self, exc: TwilioRestException, *, attempted_at: datetime, masked: str) -> SmsSendResult:
        if exc.status == 429:
            return SmsSendResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code="rate_limited",
                error_message=f"Twilio rate limit exceeded (recipient: {masked})",
            )
        code = exc.code if isinstance(exc.code, int) else None
        if code in PERMANENT_TWILIO_ERROR_CODES:
            return SmsSendResult(
                accepted=False,
                attempted_at=attempted_at,
                error_code=f"twilio_{code}",
                error_message=f"{exc.msg} (recipient: {masked})",
                permanent=True,
            )
        return SmsSendResult(
            accepted=False,
            attempted_at=attempted_at,
            error_code=f"twilio_{code}" if code is not None else f"http_{exc.status}",
            error_message=f"{exc.msg} (recipient: {masked})",
        )

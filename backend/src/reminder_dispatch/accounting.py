from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from .reference_data import ReferenceDataRepository


@dataclass(frozen=True)
class AccountingStatusSnapshot:
    status: str
    balance: float
    last_modified_at: datetime | None = None


class AccountingStatusError(Exception):
    """Raised when the accounting provider cannot report an invoice's status."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class AccountingStatusClient(Protocol):
    def get_invoice_status(self, invoice_id: str) -> AccountingStatusSnapshot: ...


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class CachedAccountingStatusClient:
    """Answers from the local invoice cache; used when no live provider is configured."""

    def __init__(self, reference_data: ReferenceDataRepository) -> None:
        self._reference_data = reference_data

    def get_invoice_status(self, invoice_id: str) -> AccountingStatusSnapshot:
        invoice = self._reference_data.get_invoice(invoice_id)
        if invoice is None:
            raise AccountingStatusError("invoice_not_found", f"invoice not found in cache: {invoice_id}")
        return AccountingStatusSnapshot(
            status=invoice.status,
            balance=invoice.balance,
            last_modified_at=invoice.last_modified_at,
        )


class HttpAccountingStatusClient:
    def __init__(self, *, base_url: str, api_key: str = "", timeout_seconds: int = 15) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._base_url = stripped_url
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds

    def get_invoice_status(self, invoice_id: str) -> AccountingStatusSnapshot:
        payload = self._get(f"/v1/invoices/{urllib.parse.quote(invoice_id, safe='')}/status")
        status = payload.get("status")
        if not isinstance(status, str) or not status.strip():
            raise AccountingStatusError("invalid_response", "accounting response is missing a status")
        try:
            balance = float(payload.get("balance", 0) or 0)
        except (TypeError, ValueError) as exc:
            raise AccountingStatusError("invalid_response", "accounting response has a non-numeric balance") from exc
        return AccountingStatusSnapshot(
            status=status.strip().lower(),
            balance=balance,
            last_modified_at=_parse_timestamp(payload.get("last_modified")),
        )

    def _get(self, path: str) -> dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        request = urllib.request.Request(f"{self._base_url}{path}", headers=headers, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise AccountingStatusError(f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise AccountingStatusError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise AccountingStatusError("timeout", f"Request timed out: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise AccountingStatusError("invalid_response", "accounting response is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise AccountingStatusError("invalid_response", "accounting response is not a JSON object")
        return payload

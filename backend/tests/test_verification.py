from __future__ import annotations

import json
import urllib.error
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from reminder_dispatch.accounting import (
    AccountingStatusError,
    AccountingStatusSnapshot,
    CachedAccountingStatusClient,
    HttpAccountingStatusClient,
)
from reminder_dispatch.reference_data import InMemoryReferenceDataRepository, InvoiceRecord
from reminder_dispatch.verification import InvoiceStatusVerifier


def _reference(*, status: str = "sent", balance: float = 75.0) -> InMemoryReferenceDataRepository:
    reference = InMemoryReferenceDataRepository()
    reference.upsert_invoice(
        InvoiceRecord(
            invoice_id="inv-7",
            user_id="user-1",
            customer_id="cust-1",
            invoice_number="INV-7",
            amount_total=75.0,
            balance=balance,
            currency="USD",
            due_date=date(2026, 10, 30),
            status=status,
        )
    )
    return reference


def _mock_response(body: dict[str, object]) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@pytest.mark.parametrize(
    ("status", "balance", "proceed", "paid"),
    [
        ("sent", 75.0, True, False),
        ("overdue", 10.0, True, False),
        ("partially_paid", 25.0, True, False),
        ("paid", 0.0, False, True),
        ("draft", 75.0, False, False),
        ("void", 75.0, False, False),
        ("sent", 0.0, False, False),
    ],
)
def test_verifier_classifies_cached_status(status: str, balance: float, proceed: bool, paid: bool) -> None:
    reference = _reference(status=status, balance=balance)
    verifier = InvoiceStatusVerifier(accounting=CachedAccountingStatusClient(reference), reference_data=reference)

    verification = verifier.verify("inv-7")

    assert verification.should_proceed is proceed
    assert verification.is_paid is paid
    assert not verification.failed


def test_verifier_fails_closed_on_provider_error() -> None:
    accounting = MagicMock()
    accounting.get_invoice_status.side_effect = AccountingStatusError("http_502", "HTTP 502: Bad Gateway")
    verifier = InvoiceStatusVerifier(accounting=accounting, reference_data=_reference())

    verification = verifier.verify("inv-7")

    assert not verification.should_proceed
    assert not verification.is_paid
    assert verification.failed
    assert verification.error == "HTTP 502: Bad Gateway"


def test_verifier_writes_fresh_status_back_to_cache() -> None:
    reference = _reference()
    modified = datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)
    accounting = MagicMock()
    accounting.get_invoice_status.return_value = AccountingStatusSnapshot(
        status="PAID", balance=0.0, last_modified_at=modified
    )
    verifier = InvoiceStatusVerifier(accounting=accounting, reference_data=reference)

    verification = verifier.verify("inv-7")

    assert verification.is_paid
    cached = reference.get_invoice("inv-7")
    assert cached is not None
    assert cached.status == "paid"
    assert cached.balance == 0.0
    assert cached.last_modified_at == modified


def test_cached_client_reports_missing_invoice() -> None:
    with pytest.raises(AccountingStatusError) as excinfo:
        CachedAccountingStatusClient(InMemoryReferenceDataRepository()).get_invoice_status("inv-404")
    assert excinfo.value.error_code == "invoice_not_found"


@patch("reminder_dispatch.accounting.urllib.request.urlopen")
def test_http_client_parses_status(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(
        {"status": " Overdue ", "balance": "42.10", "last_modified": "2026-10-18T09:00:00Z"}
    )
    client = HttpAccountingStatusClient(base_url="https://books.test/", api_key="books-key")

    snapshot = client.get_invoice_status("inv/7")

    assert snapshot.status == "overdue"
    assert snapshot.balance == 42.10
    assert snapshot.last_modified_at == datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://books.test/v1/invoices/inv%2F7/status"
    assert request_arg.get_header("Authorization") == "Bearer books-key"


@patch("reminder_dispatch.accounting.urllib.request.urlopen")
def test_http_client_maps_http_errors(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://books.test/v1/invoices/inv-7/status",
        code=503,
        msg="Service Unavailable",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )
    client = HttpAccountingStatusClient(base_url="https://books.test")

    with pytest.raises(AccountingStatusError) as excinfo:
        client.get_invoice_status("inv-7")
    assert excinfo.value.error_code == "http_503"


@patch("reminder_dispatch.accounting.urllib.request.urlopen")
def test_http_client_rejects_response_without_status(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"balance": 10})
    client = HttpAccountingStatusClient(base_url="https://books.test")

    with pytest.raises(AccountingStatusError) as excinfo:
        client.get_invoice_status("inv-7")
    assert excinfo.value.error_code == "invalid_response"


@patch("reminder_dispatch.accounting.urllib.request.urlopen")
def test_http_client_rejects_non_object_response(mock_urlopen: MagicMock) -> None:
    response = _mock_response({})
    response.read.return_value = b'["paid"]'
    mock_urlopen.return_value = response
    client = HttpAccountingStatusClient(base_url="https://books.test")

    with pytest.raises(AccountingStatusError) as excinfo:
        client.get_invoice_status("inv-7")
    assert excinfo.value.error_code == "invalid_response"

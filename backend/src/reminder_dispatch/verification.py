from __future__ import annotations

import logging
from dataclasses import dataclass

from .accounting import AccountingStatusClient
from .reference_data import ReferenceDataRepository

logger = logging.getLogger(__name__)

ACTIONABLE_STATUSES = frozenset({"sent", "unpaid", "overdue", "partially_paid"})
PAID_STATUS = "paid"


@dataclass(frozen=True)
class InvoiceVerification:
    should_proceed: bool
    is_paid: bool
    current_status: str
    amount_due: float
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class InvoiceStatusVerifier:
    """Re-checks an invoice with the accounting provider right before contact.

    Any failure to fetch the status fails closed. A successful fetch is
    written back to the invoice cache.
    """

    def __init__(self, *, accounting: AccountingStatusClient, reference_data: ReferenceDataRepository) -> None:
        self._accounting = accounting
        self._reference_data = reference_data

    def verify(self, invoice_id: str) -> InvoiceVerification:
        try:
            snapshot = self._accounting.get_invoice_status(invoice_id)
        except Exception as exc:  # noqa: BLE001 - any provider failure must block the dispatch
            logger.warning("invoice status verification failed for %s: %s", invoice_id, exc)
            return InvoiceVerification(
                should_proceed=False,
                is_paid=False,
                current_status="unknown",
                amount_due=0.0,
                error=str(exc) or exc.__class__.__name__,
            )

        status = snapshot.status.strip().lower()
        balance = round(float(snapshot.balance), 2)
        self._reference_data.refresh_invoice_status(
            invoice_id,
            status=status,
            balance=balance,
            last_modified_at=snapshot.last_modified_at,
        )

        is_paid = status == PAID_STATUS
        should_proceed = not is_paid and status in ACTIONABLE_STATUSES and balance > 0
        return InvoiceVerification(
            should_proceed=should_proceed,
            is_paid=is_paid,
            current_status=status,
            amount_due=balance,
        )

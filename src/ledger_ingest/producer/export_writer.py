"""
ExportWriter — renders merged batches as tax-software CSV rows.

Two row shapes:
- standard (CanonicalTransaction): one row per entry, received/sent/fee columns
- derivatives (DerivativesTransaction): one row per fill or funding payment

Flagged entries keep their row; the review reasons are appended to Notes so a
human sees them next to the amounts they refer to.
"""

import csv
import io
import logging
from typing import Any, Optional, Sequence, TextIO

from ..framework.models import CanonicalTransaction, DerivativesTransaction, LedgerRecord, to_utc

logger = logging.getLogger(__name__)

STANDARD_COLUMNS = (
    "Date",
    "Received Quantity",
    "Received Currency",
    "Received Fiat Amount",
    "Sent Quantity",
    "Sent Currency",
    "Sent Fiat Amount",
    "Fee Amount",
    "Fee Currency",
    "Transaction Hash",
    "Notes",
    "Tag",
)

DERIVATIVES_COLUMNS = (
    "Date",
    "Asset",
    "Amount",
    "Fee",
    "P&L",
    "Payment Token",
    "Notes",
    "Transaction Hash",
    "Tag",
)

AMOUNT_DECIMALS = 8
FIAT_DECIMALS = 2


def format_date(record: LedgerRecord) -> str:
    """MM/DD/YYYY HH:MM:SS in UTC."""
    return to_utc(record.timestamp).strftime("%m/%d/%Y %H:%M:%S")


def format_amount(value: Optional[float]) -> str:
    """Up to 8 decimals, trailing zeros dropped; empty for missing amounts."""
    if value is None:
        return ""
    text = f"{value:.{AMOUNT_DECIMALS}f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def format_fiat(amount: Optional[float], price: Optional[float]) -> str:
    if not amount or not price:
        return ""
    return f"{amount * price:.{FIAT_DECIMALS}f}"


def format_pnl(value: float) -> str:
    text = format_amount(abs(value))
    if text == "0":
        return "0"
    return f"+{text}" if value > 0 else f"-{text}"


def review_notes(record: LedgerRecord) -> str:
    if not record.ambiguity_flag or not record.ambiguity_reasons:
        return record.notes
    return f"{record.notes} [REVIEW: {'; '.join(record.ambiguity_reasons)}]"


def standard_row(tx: CanonicalTransaction) -> dict[str, str]:
    return {
        "Date": format_date(tx),
        "Received Quantity": format_amount(tx.received_amount),
        "Received Currency": tx.received_currency or "",
        "Received Fiat Amount": format_fiat(tx.received_amount, tx.fiat_price_at_time),
        "Sent Quantity": format_amount(tx.sent_amount),
        "Sent Currency": tx.sent_currency or "",
        "Sent Fiat Amount": format_fiat(tx.sent_amount, tx.fiat_price_at_time),
        "Fee Amount": format_amount(tx.fee_amount) if tx.fee_amount else "",
        "Fee Currency": tx.fee_currency if tx.fee_amount else "",
        "Transaction Hash": tx.origin_hash,
        "Notes": review_notes(tx),
        "Tag": tx.classification_tag.value,
    }


def derivatives_row(tx: DerivativesTransaction) -> dict[str, str]:
    return {
        "Date": format_date(tx),
        "Asset": tx.asset,
        "Amount": format_amount(tx.amount),
        "Fee": format_amount(tx.fee),
        "P&L": format_pnl(tx.realized_pnl),
        "Payment Token": tx.payment_token,
        "Notes": review_notes(tx),
        "Transaction Hash": tx.origin_hash,
        "Tag": tx.position_tag.value,
    }


class ExportWriter:
    """
    Writes a merged batch as CSV.

    A batch holding both record types is written as two sections (standard
    first, then derivatives), each with its own header row, separated by a
    blank line.

    Usage:
        writer = ExportWriter()
        writer.write(result.transactions, sys.stdout)
        text = writer.render(result.transactions)
    """

    def write(self, records: Sequence[LedgerRecord], out: TextIO) -> int:
        """
        Write records to out.

        Args:
            records: Merged batch, already in output order.
            out: Any text stream (opened with newline="" for files).

        Returns:
            Number of data rows written.
        """
        standard = [r for r in records if isinstance(r, CanonicalTransaction)]
        derivatives = [r for r in records if isinstance(r, DerivativesTransaction)]

        written = 0
        if standard or not derivatives:
            written += self._write_section(out, STANDARD_COLUMNS, [standard_row(r) for r in standard])
        if derivatives:
            if standard:
                out.write("\r\n")
            written += self._write_section(out, DERIVATIVES_COLUMNS, [derivatives_row(r) for r in derivatives])

        logger.info(
            "ExportWriter wrote %d rows | standard=%d | derivatives=%d", written, len(standard), len(derivatives)
        )
        return written

    def render(self, records: Sequence[LedgerRecord]) -> str:
        buffer = io.StringIO(newline="")
        self.write(records, buffer)
        return buffer.getvalue()

    @staticmethod
    def _write_section(out: TextIO, columns: Sequence[str], rows: list[dict[str, Any]]) -> int:
        writer = csv.DictWriter(out, fieldnames=list(columns))
        writer.writeheader()
        writer.writerows(rows)
        return len(rows)

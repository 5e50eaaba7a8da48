"""
Unit tests for ExportWriter and its formatting helpers.

Tests cover:
- date, amount, fiat and P&L formatting
- standard rows: empty fee columns for zero fees, tag from classification
- derivatives rows: signed P&L, position tag
- review reasons appended to Notes for flagged entries
- section layout for standard-only, derivatives-only and mixed batches
"""

import csv
import io
from datetime import datetime, timezone

import pytest

from ledger_ingest.framework.models import (
    CanonicalTransaction,
    DerivativesTransaction,
    PositionTag,
    TransactionKind,
)
from ledger_ingest.producer.export_writer import (
    DERIVATIVES_COLUMNS,
    STANDARD_COLUMNS,
    ExportWriter,
    derivatives_row,
    format_amount,
    format_date,
    format_fiat,
    format_pnl,
    review_notes,
    standard_row,
)

TS = datetime(2024, 3, 1, 9, 5, 7, tzinfo=timezone.utc)


def _canonical(**overrides) -> CanonicalTransaction:
    fields = dict(
        id="H1",
        kind=TransactionKind.TRANSFER_RECEIVED,
        timestamp=TS,
        origin_hash="H1",
        received_amount=1.5,
        received_currency="OSMO",
        notes="Received from osmo1other...",
        source_id="osmosis",
    )
    fields.update(overrides)
    return CanonicalTransaction(**fields)


def _derivative(**overrides) -> DerivativesTransaction:
    fields = dict(
        id="fill-1",
        timestamp=TS,
        asset="BTC",
        amount=0.015,
        fee=0.48,
        realized_pnl=-12.5,
        payment_token="USDC",
        position_tag=PositionTag.CLOSE_POSITION,
        origin_hash="order-9",
        notes="SELL BTC-USD",
        source_id="dydx",
    )
    fields.update(overrides)
    return DerivativesTransaction(**fields)


class TestFormatting:
    def test_date_is_us_order_utc(self) -> None:
        assert format_date(_canonical()) == "03/01/2024 09:05:07"

    @pytest.mark.parametrize(
        "value,expected",
        [(None, ""), (0.0, "0"), (-0.0, "0"), (1.5, "1.5"), (0.000012, "0.000012"), (2.0, "2"), (1e-9, "0")],
    )
    def test_amount(self, value, expected) -> None:
        assert format_amount(value) == expected

    def test_fiat(self) -> None:
        assert format_fiat(1.5, 0.8) == "1.20"
        assert format_fiat(1.5, None) == ""
        assert format_fiat(None, 0.8) == ""

    def test_pnl_sign(self) -> None:
        assert format_pnl(12.5) == "+12.5"
        assert format_pnl(-0.75) == "-0.75"
        assert format_pnl(0.0) == "0"

    def test_review_notes(self) -> None:
        flagged = _canonical(ambiguity_flag=True, ambiguity_reasons=("Missing fiat price", "Zero value transaction"))
        assert review_notes(flagged) == (
            "Received from osmo1other... [REVIEW: Missing fiat price; Zero value transaction]"
        )
        assert review_notes(_canonical()) == "Received from osmo1other..."


class TestRows:
    def test_standard_row_without_fee(self) -> None:
        row = standard_row(_canonical(fiat_price_at_time=0.8))
        assert row["Received Quantity"] == "1.5"
        assert row["Received Currency"] == "OSMO"
        assert row["Received Fiat Amount"] == "1.20"
        assert row["Sent Quantity"] == ""
        assert row["Fee Amount"] == ""
        assert row["Fee Currency"] == ""
        assert row["Transaction Hash"] == "H1"
        assert row["Tag"] == "receive"

    def test_standard_row_with_fee(self) -> None:
        row = standard_row(
            _canonical(
                kind=TransactionKind.TRANSFER_SENT,
                received_amount=None,
                received_currency=None,
                sent_amount=3.0,
                sent_currency="KAS",
                fee_amount=0.0002,
                fee_currency="KAS",
            )
        )
        assert row["Sent Quantity"] == "3"
        assert row["Fee Amount"] == "0.0002"
        assert row["Fee Currency"] == "KAS"
        assert row["Tag"] == "payment"

    def test_derivatives_row(self) -> None:
        row = derivatives_row(_derivative())
        assert row == {
            "Date": "03/01/2024 09:05:07",
            "Asset": "BTC",
            "Amount": "0.015",
            "Fee": "0.48",
            "P&L": "-12.5",
            "Payment Token": "USDC",
            "Notes": "SELL BTC-USD",
            "Transaction Hash": "order-9",
            "Tag": "close_position",
        }


class TestExportWriter:
    def setup_method(self) -> None:
        self.writer = ExportWriter()

    def test_standard_only(self) -> None:
        text = self.writer.render([_canonical(), _canonical(id="H2", origin_hash="H2")])
        rows = list(csv.reader(io.StringIO(text)))
        assert rows[0] == list(STANDARD_COLUMNS)
        assert len(rows) == 3

    def test_derivatives_only(self) -> None:
        text = self.writer.render([_derivative()])
        rows = list(csv.reader(io.StringIO(text)))
        assert rows[0] == list(DERIVATIVES_COLUMNS)
        assert rows[1][4] == "-12.5"

    def test_empty_batch_writes_standard_header(self) -> None:
        text = self.writer.render([])
        assert list(csv.reader(io.StringIO(text))) == [list(STANDARD_COLUMNS)]

    def test_mixed_batch_has_two_sections(self) -> None:
        out = io.StringIO(newline="")
        written = self.writer.write([_derivative(), _canonical()], out)
        assert written == 2

        rows = list(csv.reader(io.StringIO(out.getvalue())))
        assert rows[0] == list(STANDARD_COLUMNS)
        assert rows[2] == []
        assert rows[3] == list(DERIVATIVES_COLUMNS)
        assert rows[4][1] == "BTC"

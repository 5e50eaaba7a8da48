"""
Unit tests for OsmosisConnector.

Tests cover:
- bank sends in both directions, fee only when the wallet signed
- multi-message transactions: indexed ids, single fee owner
- failed transactions normalize to a fee-only entry for the signer
- swaps, staking rewards, pool joins
- unknown message types reconstructed from coin_received / coin_spent events
- base64 event attributes behind the attributes_base64 flag
- denom → symbol/decimals mapping
- fetch: sender + recipient queries deduplicated by hash, newest first
"""

import asyncio
import base64
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from ledger_ingest.connectors.osmosis_connector import (
    MSG_DELEGATE,
    MSG_SEND,
    MSG_SWAP_IN,
    MSG_WITHDRAW_REWARD,
    OsmosisConnector,
    denom_decimals,
    denom_symbol,
    parse_coins,
)
from ledger_ingest.framework.date_filter import TimeRange
from ledger_ingest.framework.models import TransactionKind
from ledger_ingest.transport.fetch_with_retry import FetchResponse

WALLET = "osmo1wallet000000000000000000000000000000"
OTHER = "osmo1other0000000000000000000000000000000"
VALIDATOR = "osmovaloper1validator0000000000000000000"
ATOM = "ibc/27394FB092D2ECCD56123C74F36E4C1F926001CEADA9CA97EA622B25F41E5EB2"


def _tx_response(
    txhash: str,
    messages: list[dict[str, Any]],
    events: list[dict[str, Any]] | None = None,
    code: int = 0,
    fee: str = "2500",
    height: str = "100",
) -> dict[str, Any]:
    return {
        "txhash": txhash,
        "height": height,
        "code": code,
        "timestamp": "2024-03-01T12:00:00Z",
        "tx": {
            "body": {"messages": messages},
            "auth_info": {"fee": {"amount": [{"denom": "uosmo", "amount": fee}]}},
        },
        "events": events or [],
    }


def _event(event_type: str, *pairs: tuple[str, str]) -> dict[str, Any]:
    return {"type": event_type, "attributes": [{"key": k, "value": v} for k, v in pairs]}


def _send(from_address: str, to_address: str, amount: str = "1500000", denom: str = "uosmo") -> dict[str, Any]:
    return {
        "@type": MSG_SEND,
        "from_address": from_address,
        "to_address": to_address,
        "amount": [{"denom": denom, "amount": amount}],
    }


def _connector(config: dict[str, Any] | None = None, fetcher: Any = None) -> OsmosisConnector:
    limiter = MagicMock()
    limiter.wait_for_slot = AsyncMock()
    return OsmosisConnector(fetcher or MagicMock(), config, limiter=limiter)


class TestBankSend:
    def setup_method(self) -> None:
        self.connector = _connector()

    def test_received_has_no_fee(self) -> None:
        records = self.connector.normalize(_tx_response("H1", [_send(OTHER, WALLET)]), WALLET)
        assert len(records) == 1
        tx = records[0]
        assert tx.id == "H1"
        assert tx.kind == TransactionKind.TRANSFER_RECEIVED
        assert tx.received_amount == 1.5
        assert tx.received_currency == "OSMO"
        assert tx.sent_amount is None
        assert tx.fee_amount == 0.0
        assert tx.notes.startswith("Received from osmo1other00")

    def test_sent_carries_fee(self) -> None:
        tx = self.connector.normalize(_tx_response("H1", [_send(WALLET, OTHER)]), WALLET)[0]
        assert tx.kind == TransactionKind.TRANSFER_SENT
        assert tx.sent_amount == 1.5
        assert tx.fee_amount == 0.0025
        assert tx.fee_currency == "OSMO"
        assert tx.source_id == "osmosis"

    def test_timestamp_utc(self) -> None:
        tx = self.connector.normalize(_tx_response("H1", [_send(OTHER, WALLET)]), WALLET)[0]
        assert tx.timestamp.isoformat() == "2024-03-01T12:00:00+00:00"

    def test_price_lookup(self) -> None:
        tx = self.connector.normalize(
            _tx_response("H1", [_send(OTHER, WALLET)]), WALLET, {"2024-03-01": 0.8}.get
        )[0]
        assert tx.fiat_price_at_time == 0.8


class TestMultiMessage:
    def test_indexed_ids_and_single_fee(self) -> None:
        messages = [
            {"@type": MSG_DELEGATE, "delegator_address": WALLET, "validator_address": VALIDATOR,
             "amount": {"denom": "uosmo", "amount": "5000000"}},
            {"@type": MSG_WITHDRAW_REWARD, "delegator_address": WALLET, "validator_address": VALIDATOR},
        ]
        events = [_event("withdraw_rewards", ("amount", "120000uosmo"), ("validator", VALIDATOR))]
        records = _connector().normalize(_tx_response("H2", messages, events), WALLET)

        assert [r.id for r in records] == ["H2-0", "H2-1"]
        assert [r.kind for r in records] == [TransactionKind.STAKE, TransactionKind.REWARD]
        assert records[0].sent_amount == 5.0
        assert records[1].received_amount == 0.12
        assert [r.fee_amount for r in records] == [0.0025, 0.0]
        assert {r.origin_hash for r in records} == {"H2"}


class TestFailedTransaction:
    def test_signed_failure_is_fee_only(self) -> None:
        records = _connector().normalize(_tx_response("H3", [_send(WALLET, OTHER)], code=5), WALLET)
        assert len(records) == 1
        assert records[0].sent_amount is None
        assert records[0].received_amount is None
        assert records[0].fee_amount == 0.0025
        assert records[0].notes == "Failed transaction (code 5)"

    def test_unsigned_failure_is_ignored(self) -> None:
        assert _connector().normalize(_tx_response("H3", [_send(OTHER, WALLET)], code=5), WALLET) == []


class TestSwapAndPools:
    def test_swap_exact_in_is_trade(self) -> None:
        message = {
            "@type": MSG_SWAP_IN,
            "sender": WALLET,
            "routes": [{"pool_id": "1", "token_out_denom": ATOM}],
            "token_in": {"denom": "uosmo", "amount": "1000000"},
            "token_out_min_amount": "1",
        }
        events = [_event("coin_received", ("receiver", WALLET), ("amount", f"2500000{ATOM}"))]
        tx = _connector().normalize(_tx_response("H4", [message], events), WALLET)[0]
        assert tx.kind == TransactionKind.TRADE
        assert (tx.sent_amount, tx.sent_currency) == (1.0, "OSMO")
        assert (tx.received_amount, tx.received_currency) == (2.5, "IBC-27394F")
        assert tx.notes == "Swap OSMO for IBC-27394F"

    def test_join_pool_sends_each_coin(self) -> None:
        message = {
            "@type": "/osmosis.gamm.v1beta1.MsgJoinPool",
            "sender": WALLET,
            "pool_id": "1",
            "token_in_maxs": [{"denom": "uosmo", "amount": "1000000"}, {"denom": ATOM, "amount": "200000"}],
        }
        records = _connector().normalize(_tx_response("H5", [message]), WALLET)
        assert [r.sent_currency for r in records] == ["OSMO", "IBC-27394F"]
        assert all(r.notes == "Added liquidity to pool 1" for r in records)


class TestReconstruction:
    def test_unknown_message_rebuilt_from_events_without_fee_coin(self) -> None:
        message = {"@type": "/osmosis.concentratedliquidity.v1beta1.MsgCollectSpreadRewards", "sender": WALLET}
        events = [
            _event("coin_spent", ("spender", WALLET), ("amount", "2500uosmo")),
            _event("coin_received", ("receiver", WALLET), ("amount", "42000uosmo")),
        ]
        records = _connector().normalize(_tx_response("H6", [message], events), WALLET)
        assert len(records) == 1
        assert records[0].kind == TransactionKind.TRANSFER_RECEIVED
        assert records[0].received_amount == 0.042
        assert records[0].fee_amount == 0.0025

    def test_unknown_message_without_movements_is_fee_only(self) -> None:
        message = {"@type": "/cosmos.authz.v1beta1.MsgGrant", "sender": WALLET}
        records = _connector().normalize(_tx_response("H7", [message]), WALLET)
        assert len(records) == 1
        assert records[0].notes == "Transaction fee"


class TestBase64Attributes:
    def test_attributes_decoded_when_flag_set(self) -> None:
        def b64(text: str) -> str:
            return base64.b64encode(text.encode()).decode()

        message = {"@type": "/osmosis.unknown.MsgThing", "sender": OTHER}
        events = [{"type": "coin_received", "attributes": [
            {"key": b64("receiver"), "value": b64(WALLET)},
            {"key": b64("amount"), "value": b64("7000000uosmo")},
        ]}]
        raw = _tx_response("H8", [message], events)
        assert _connector().normalize(raw, WALLET) == []
        records = _connector({"attributes_base64": True}).normalize(raw, WALLET)
        assert records[0].received_amount == 7.0


class TestMalformed:
    def test_batch_skips_event_without_timestamp(self) -> None:
        broken = _tx_response("BAD", [_send(OTHER, WALLET)])
        del broken["timestamp"]
        records = _connector().normalize_batch([broken, _tx_response("OK", [_send(OTHER, WALLET)])], WALLET)
        assert [r.id for r in records] == ["OK"]


class TestDenoms:
    @pytest.mark.parametrize(
        "denom,symbol",
        [
            ("uosmo", "OSMO"),
            ("gamm/pool/1", "GAMM-1"),
            (ATOM, "IBC-27394F"),
            ("factory/osmo1xyz/alloyed/allBTC", "BTC"),
            ("uion", "UION"),
        ],
    )
    def test_symbol(self, denom: str, symbol: str) -> None:
        assert denom_symbol(denom) == symbol

    def test_decimals(self) -> None:
        assert denom_decimals("uosmo") == 6
        assert denom_decimals("gamm/pool/1") == 18
        assert denom_decimals("ibc/EA1D43981D5C9A1C4AAEA9C23BB1D4FA126BA9BC7020A25E0AE4AA841EA25DC5") == 18

    def test_parse_coins(self) -> None:
        coins = parse_coins(f"1000uosmo,25{ATOM}")
        assert [(c.amount, c.denom) for c in coins] == [(1000, "uosmo"), (25, ATOM)]


class TestFetch:
    def test_sender_and_recipient_queries_deduplicated(self) -> None:
        pages = {
            f"message.sender='{WALLET}'": [_tx_response("A", [], height="10"), _tx_response("B", [], height="30")],
            f"transfer.recipient='{WALLET}'": [_tx_response("B", [], height="30"), _tx_response("C", [], height="20")],
        }

        async def execute(url: str, **kwargs: Any) -> FetchResponse:
            batch = pages[kwargs["params"]["query"]]
            return FetchResponse(200, json.dumps({"tx_responses": batch, "total": str(len(batch))}).encode())

        fetcher = MagicMock()
        fetcher.execute = AsyncMock(side_effect=execute)
        connector = _connector(fetcher=fetcher)
        events = asyncio.run(connector.fetch_raw_activity(WALLET, TimeRange()))

        assert [e["txhash"] for e in events] == ["B", "C", "A"]
        assert fetcher.execute.await_count == 2
        url = fetcher.execute.await_args.args[0]
        assert url == "https://osmosis-rest.publicnode.com/cosmos/tx/v1beta1/txs"
        assert connector.limiter.wait_for_slot.await_count == 2

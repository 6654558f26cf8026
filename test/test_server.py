#!/usr/bin/env python3
"""Tests for the HTTP query service."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from stealth_indexer.errors import ConfigurationError, TransportError, UpstreamError, ValidationError
from stealth_indexer.models import (
    AggregatedCreditResult,
    BalanceResult,
    CreditResult,
    InvoiceStatusResult,
    PacketRecord,
    PayableIdentifier,
)
from stealth_indexer.server import ClientDisconnected, create_app, parse_amount, run_until_disconnect
from stealth_indexer.utils.packet_cache import PacketCache

from conftest import VAULT_ADDRESS, hex32, word

ONE_TOKEN = 10**18


def balance(raw: int = 10) -> BalanceResult:
    return BalanceResult(420420422, VAULT_ADDRESS, word(1), word(2), word(99), raw)


@pytest.fixture
def backend():
    backend = MagicMock()
    backend.query_stealth_balance = AsyncMock(return_value=balance())
    backend.query_stealth_credit = AsyncMock(
        return_value=CreditResult(balance(ONE_TOKEN // 2), ONE_TOKEN // 10)
    )
    backend.query_aggregated_credit = AsyncMock(
        return_value=AggregatedCreditResult(1, VAULT_ADDRESS, word(3), word(2), 20, 15, (word(4),))
    )
    backend.find_payable_identifiers = AsyncMock(
        return_value=[PayableIdentifier(word(4), 50), PayableIdentifier(word(5), 30)]
    )
    backend.query_invoice_status = AsyncMock(
        return_value=InvoiceStatusResult(1, VAULT_ADDRESS, word(7), word(8), 0)
    )
    return backend


@pytest.fixture
def cache(indexer_config):
    return PacketCache(indexer_config.cache.cache_file, indexer_config.cache.max_entries)


@pytest.fixture
def client(indexer_config, backend, cache):
    return TestClient(create_app(indexer_config, backend, cache))


class TestParseAmount:
    """Amount query parameter parsing."""

    @pytest.mark.parametrize("value, expected", [("0", 0), ("100", 100), ("0x10", 16), ("0XfF", 255), (" 7 ", 7)])
    def test_valid(self, value, expected):
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing(self, value):
        with pytest.raises(ValidationError, match="amount is required"):
            parse_amount(value)

    @pytest.mark.parametrize("value", ["-1", "-0x1"])
    def test_negative(self, value):
        with pytest.raises(ValidationError):
            parse_amount(value)

    @pytest.mark.parametrize("value", ["1.5", "ten", "0x", "0xzz", "1_000", "0x_10", "1 000", "+5"])
    def test_malformed(self, value):
        with pytest.raises(ValidationError, match="decimal or 0x-prefixed hex"):
            parse_amount(value)

    def test_too_large(self):
        with pytest.raises(ValidationError, match="uint256"):
            parse_amount(str(2**256))


class TestQueryEndpoints:
    """Vault query endpoints."""

    def test_stealth_balance(self, client, backend):
        response = client.get("/stealth-balance", params={"stealthId": hex32(1), "assetId": hex32(2)})

        assert response.status_code == 200
        payload = response.json()
        assert payload["raw"] == "10"
        assert payload["human"] == "0.0000"
        assert payload["chainId"] == "420420422"
        backend.query_stealth_balance.assert_awaited_once_with(word(1), word(2))

    def test_31_byte_stealth_id_is_rejected(self, client, backend):
        response = client.get("/stealth-balance", params={"stealthId": "0x" + "00" * 31, "assetId": hex32(2)})

        assert response.status_code == 400
        error = response.json()["error"]
        assert "stealthId" in error
        assert "32 bytes" in error
        backend.query_stealth_balance.assert_not_awaited()

    def test_spaced_hex_id_and_separated_amount_are_rejected(self, client, backend):
        spaced_id = "0x" + "00 " * 31 + "01"

        for params in (
            {"stealthId": spaced_id, "assetId": hex32(2), "amount": "1"},
            {"stealthId": hex32(1), "assetId": hex32(2), "amount": "1_000"},
        ):
            response = client.get("/stealth-credit", params=params)
            assert response.status_code == 400

        backend.query_stealth_credit.assert_not_awaited()

    def test_missing_asset_id(self, client):
        response = client.get("/stealth-balance", params={"stealthId": hex32(1)})

        assert response.status_code == 400
        assert "assetId" in response.json()["error"]

    def test_stealth_credit(self, client, backend):
        response = client.get(
            "/stealth-credit", params={"stealthId": hex32(1), "assetId": hex32(2), "amount": "0x10"}
        )

        assert response.status_code == 200
        assert response.json()["canPay"] is True
        assert response.json()["human"] == "0.5000"
        backend.query_stealth_credit.assert_awaited_once_with(word(1), word(2), 16)

    @pytest.mark.parametrize("amount", ["", "-5", "abc"])
    def test_stealth_credit_bad_amount(self, client, amount):
        response = client.get(
            "/stealth-credit", params={"stealthId": hex32(1), "assetId": hex32(2), "amount": amount}
        )

        assert response.status_code == 400
        assert "amount" in response.json()["error"]

    def test_aggregated_credit(self, client, backend):
        response = client.get(
            "/aggregated-stealth-credit",
            params={"stealthPublicId": "alice.stealth", "assetId": hex32(2), "amount": "15"},
        )

        assert response.status_code == 200
        payload = response.json()
        assert payload["receiverTag"] == hex32(3)
        assert payload["stealthIds"] == [hex32(4)]
        assert payload["canPay"] is True
        backend.query_aggregated_credit.assert_awaited_once_with("alice.stealth", word(2), 15)

    def test_aggregated_credit_requires_public_id(self, client):
        response = client.get("/aggregated-stealth-credit", params={"assetId": hex32(2), "amount": "1"})

        assert response.status_code == 400
        assert response.json() == {"error": "stealthPublicId is required"}

    def test_payable_stealth_ids(self, client, backend):
        response = client.get(
            "/payable-stealth-ids",
            params={"stealthPublicId": "alice.stealth", "assetId": hex32(2), "amount": "60"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "identifiers": [
                {"stealthId": hex32(4), "balance": "50"},
                {"stealthId": hex32(5), "balance": "30"},
            ],
            "total": "80",
            "requestedAmount": "60",
            "covered": True,
        }

    def test_payable_stealth_ids_shortfall(self, client, backend):
        backend.find_payable_identifiers.return_value = [PayableIdentifier(word(4), 5)]

        response = client.get(
            "/payable-stealth-ids",
            params={"stealthPublicId": "alice.stealth", "assetId": hex32(2), "amount": "60"},
        )

        assert response.json()["covered"] is False

    def test_invoice_status(self, client, backend):
        response = client.get("/invoice-status", params={"invoiceId": hex32(7)})

        assert response.status_code == 200
        assert response.json()["paid"] is False
        assert response.json()["invoiceId"] == hex32(7)


class TestErrorMapping:
    """Downstream failures become status codes."""

    def test_transport_error_is_500(self, client, backend):
        backend.query_invoice_status.side_effect = TransportError("Storage read failed: connection refused")

        response = client.get("/invoice-status", params={"invoiceId": hex32(7)})

        assert response.status_code == 500
        assert response.json() == {"error": "Storage read failed: connection refused"}

    def test_configuration_error_is_500(self, client, backend):
        backend.query_aggregated_credit.side_effect = ConfigurationError("HYPERBRIDGE_INDEXER_URL is not configured")

        response = client.get(
            "/aggregated-stealth-credit",
            params={"stealthPublicId": "alice.stealth", "assetId": hex32(2), "amount": "1"},
        )

        assert response.status_code == 500
        assert "HYPERBRIDGE_INDEXER_URL" in response.json()["error"]

    def test_upstream_error_is_502(self, client, backend):
        backend.query_stealth_balance.side_effect = UpstreamError("rpc unavailable", 503)

        response = client.get("/stealth-balance", params={"stealthId": hex32(1), "assetId": hex32(2)})

        assert response.status_code == 502
        assert response.json() == {"error": "rpc unavailable"}

    def test_unexpected_error_is_json_500(self, indexer_config, backend, cache, caplog):
        backend.query_invoice_status.side_effect = RuntimeError("boom")
        client = TestClient(create_app(indexer_config, backend, cache), raise_server_exceptions=False)

        response = client.get("/invoice-status", params={"invoiceId": hex32(7)})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert "boom" in caplog.text


class TestPacketsAndHealth:
    """Relay cache endpoints."""

    def test_packets_default_limit(self, client, cache):
        for index in range(60):
            cache.push_packet(PacketRecord(id=f"P{index}", height=index, timestamp=1))
        cache.push_receipt(PacketRecord(id="R1", height=3, timestamp=1))

        response = client.get("/packets")

        assert response.status_code == 200
        payload = response.json()
        assert len(payload["packets"]) == 50
        assert payload["packets"][0]["id"] == "P59"
        assert payload["receipts"][0]["id"] == "R1"
        assert payload["lastPacketHeight"] == 59
        assert payload["lastReceiptHeight"] == 3

    def test_packets_limit(self, client, cache):
        for index in range(5):
            cache.push_packet(PacketRecord(id=f"P{index}", timestamp=1))

        assert [item["id"] for item in client.get("/packets", params={"limit": 2}).json()["packets"]] == ["P4", "P3"]

    @pytest.mark.parametrize("limit", ["0", "513", "many"])
    def test_packets_limit_out_of_range(self, client, limit):
        response = client.get("/packets", params={"limit": limit})

        assert response.status_code == 400
        assert "limit" in response.json()["error"]

    def test_health(self, client, cache, indexer_config):
        cache.push_packet(PacketRecord(id="P1", height=12, timestamp=1))

        response = client.get("/health")

        assert response.status_code == 200
        payload = response.json()
        assert payload["ok"] is True
        assert payload["chainId"] == "420420422"
        assert payload["packetsCached"] == 1
        assert payload["lastPacketHeight"] == 12
        assert payload["config"]["port"] == 4545
        assert payload["config"]["source"] is None
        assert payload["config"]["dest"]["chainId"] == "420420422"


class TestDisconnect:
    """Cancellation of in-flight queries."""

    @pytest.mark.asyncio
    async def test_query_cancelled_when_client_disconnects(self, monkeypatch):
        monkeypatch.setattr("stealth_indexer.server.DISCONNECT_POLL_INTERVAL", 0.01)
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow_query():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=True)

        with pytest.raises(ClientDisconnected):
            await run_until_disconnect(request, slow_query())

        assert started.is_set()
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_query_result_returned(self):
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=False)

        async def quick_query():
            return 42

        assert await run_until_disconnect(request, quick_query()) == 42

"""
fitsettle/tests/test_gateway.py

Unit tests for Lightning payment gateways (httpx.MockTransport, no network).
"""

import json

import httpx
import pytest

from fitsettle.errors import PaymentGatewayError
from fitsettle.lightning.gateway import CoinosGateway, DryRunGateway, PaymentResult


# ============================================================================
# Fixtures
# ============================================================================

def coinos(handler):
    return CoinosGateway(
        api_token="secret-token",
        api_url="https://wallet.test/api/",
        timeout=3.0,
        transport=httpx.MockTransport(handler),
    )


# ============================================================================
# CoinosGateway Tests
# ============================================================================

class TestCoinosGateway:
    """Tests for the HTTP wallet gateway."""

    def test_requires_token(self):
        with pytest.raises(PaymentGatewayError):
            CoinosGateway(api_token="")

    @pytest.mark.trio
    async def test_send_payment(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "pay-123", "fee": 4})

        gateway = coinos(handler)
        result = await gateway.send_payment("alice@ln.test", 5000, "Reward [key-1]")

        assert result == PaymentResult(success=True, transaction_id="pay-123", fee_paid=4)
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://wallet.test/api/payments"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert json.loads(request.content) == {
            "payreq": "alice@ln.test",
            "amount": 5000,
            "memo": "Reward [key-1]",
        }
        assert gateway.get_stats()["payments_sent"] == 1

    @pytest.mark.trio
    async def test_hash_as_transaction_id(self):
        gateway = coinos(lambda request: httpx.Response(200, json={"hash": "abc"}))
        result = await gateway.send_payment("alice@ln.test", 10, "m")

        assert result.success is True
        assert result.transaction_id == "abc"
        assert result.fee_paid == 0

    @pytest.mark.trio
    async def test_string_fee(self):
        gateway = coinos(lambda request: httpx.Response(200, json={"id": "tx1", "fee": "1.5"}))
        result = await gateway.send_payment("alice@ln.test", 5000, "m")

        assert result.success is True
        assert result.transaction_id == "tx1"
        assert result.fee_paid == 1

    @pytest.mark.parametrize("fee", ["abc", [], {"sats": 2}, -3, "NaN"])
    @pytest.mark.trio
    async def test_unreadable_fee_keeps_payment_sent(self, fee):
        gateway = coinos(lambda request: httpx.Response(200, json={"id": "tx1", "fee": fee}))
        result = await gateway.send_payment("alice@ln.test", 5000, "m")

        assert result.success is True
        assert result.fee_paid == 0
        assert gateway.get_stats()["payments_sent"] == 1

    @pytest.mark.trio
    async def test_rejected_payment(self):
        gateway = coinos(lambda request: httpx.Response(400, json={"error": "Insufficient funds"}))
        result = await gateway.send_payment("alice@ln.test", 5000, "m")

        assert result.success is False
        assert result.error == "Insufficient funds"
        assert gateway.get_stats()["payments_failed"] == 1

    @pytest.mark.trio
    async def test_rejected_with_text_body(self):
        gateway = coinos(lambda request: httpx.Response(502, text="Bad Gateway"))
        result = await gateway.send_payment("alice@ln.test", 5000, "m")

        assert result.success is False
        assert result.error == "Bad Gateway"

    @pytest.mark.trio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await coinos(handler).send_payment("alice@ln.test", 5000, "m")

        assert result.success is False
        assert result.timed_out is True
        assert result.error == "Payment timed out"

    @pytest.mark.trio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await coinos(handler).send_payment("alice@ln.test", 5000, "m")

        assert result.success is False
        assert result.timed_out is False
        assert "refused" in result.error

    @pytest.mark.trio
    async def test_missing_transaction_id(self):
        gateway = coinos(lambda request: httpx.Response(200, json={"status": "ok"}))
        result = await gateway.send_payment("alice@ln.test", 5000, "m")

        assert result.success is False

    @pytest.mark.trio
    async def test_invalid_amount_not_sent(self):
        calls = []
        gateway = coinos(lambda request: calls.append(request) or httpx.Response(200, json={"id": "x"}))

        result = await gateway.send_payment("alice@ln.test", 0, "m")

        assert result.success is False
        assert calls == []

    @pytest.mark.trio
    async def test_lookup_payment(self):
        payments = [
            {"id": "p1", "memo": "Reward [other-key]", "confirmed": True},
            {"id": "p2", "memo": "Reward [key-7]", "fee": 2, "confirmed": True},
        ]
        gateway = coinos(lambda request: httpx.Response(200, json=payments))

        result = await gateway.lookup_payment("key-7")

        assert result.success is True
        assert result.transaction_id == "p2"
        assert result.fee_paid == 2

    @pytest.mark.trio
    async def test_lookup_wrapped_list(self):
        body = {"payments": [{"hash": "h9", "memo": "Reward [key-9]"}]}
        gateway = coinos(lambda request: httpx.Response(200, json=body))

        result = await gateway.lookup_payment("key-9")
        assert result.transaction_id == "h9"

    @pytest.mark.trio
    async def test_lookup_unconfirmed(self):
        payments = [{"id": "p2", "memo": "Reward [key-7]", "confirmed": False}]
        gateway = coinos(lambda request: httpx.Response(200, json=payments))

        assert await gateway.lookup_payment("key-7") is None

    @pytest.mark.trio
    async def test_lookup_string_fee(self):
        payments = [{"id": "p2", "memo": "Reward [key-7]", "fee": "2.0"}, {"id": "p3", "memo": "x", "fee": "junk"}]
        gateway = coinos(lambda request: httpx.Response(200, json=payments))

        result = await gateway.lookup_payment("key-7")
        assert result.transaction_id == "p2"
        assert result.fee_paid == 2

    @pytest.mark.trio
    async def test_lookup_unexpected_body(self):
        gateway = coinos(lambda request: httpx.Response(200, json={"payments": 5}))
        assert await gateway.lookup_payment("key-7") is None

    @pytest.mark.trio
    async def test_lookup_unknown_or_error(self):
        assert await coinos(lambda request: httpx.Response(200, json=[])).lookup_payment("k") is None
        assert await coinos(lambda request: httpx.Response(500)).lookup_payment("k") is None


# ============================================================================
# DryRunGateway Tests
# ============================================================================

class TestDryRunGateway:
    """Tests for the no-money gateway."""

    @pytest.mark.trio
    async def test_records_payments(self):
        gateway = DryRunGateway()
        result = await gateway.send_payment("alice@ln.test", 100, "Reward [key-1]")

        assert result.success is True
        assert result.transaction_id.startswith("dryrun-")
        assert gateway.sent[0]["amount_sats"] == 100

    @pytest.mark.trio
    async def test_lookup(self):
        gateway = DryRunGateway()
        sent = await gateway.send_payment("alice@ln.test", 100, "Reward [key-1]")

        found = await gateway.lookup_payment("key-1")
        assert found.transaction_id == sent.transaction_id
        assert await gateway.lookup_payment("key-2") is None

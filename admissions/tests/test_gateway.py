"""
Unit Tests for the Cashfree Gateway Client

Tests cover:
1. Gateway status mapping
2. Order creation and lookup requests
3. Timeout / HTTP / malformed response handling
"""

import json
from decimal import Decimal

import pytest
import requests

from admissions.exceptions import GatewayError, GatewayTimeout
from admissions.gateway import CashfreeGateway, map_gateway_status
from admissions.models import GatewayCustomer, PaymentStatus


def _response(status_code=200, body=None, raw=None):
    response = requests.Response()
    response.status_code = status_code
    response.encoding = "utf-8"
    response.url = "https://sandbox.cashfree.com/pg/orders"
    response._content = raw if raw is not None else json.dumps(body or {}).encode()
    return response


@pytest.fixture
def client():
    return CashfreeGateway("client-id", "client-secret", base_url="https://sandbox.cashfree.com/pg/", timeout=3)


@pytest.fixture
def calls(monkeypatch):
    """Captures outgoing requests; tests set ``calls.reply`` to a response or an exception."""

    class Recorder:
        reply = None
        made = []

    recorder = Recorder()
    recorder.made = []

    def fake_request(**kwargs):
        recorder.made.append(kwargs)
        if isinstance(recorder.reply, Exception):
            raise recorder.reply
        return recorder.reply

    monkeypatch.setattr("admissions.gateway.requests.request", fake_request)
    return recorder


class TestMapGatewayStatus:
    """Tests for mapping Cashfree order statuses."""

    @pytest.mark.parametrize("status", ["PAID", "SUCCESS", "paid"])
    def test_success(self, status):
        assert map_gateway_status(status) == PaymentStatus.SUCCESS

    @pytest.mark.parametrize("status", ["EXPIRED", "TERMINATED", "CANCELLED", "FAILED", "USER_DROPPED"])
    def test_failed(self, status):
        assert map_gateway_status(status) == PaymentStatus.FAILED

    @pytest.mark.parametrize("status", ["ACTIVE", "PENDING", "", None])
    def test_unresolved(self, status):
        assert map_gateway_status(status) is None


class TestCashfreeGateway:
    """Tests for the HTTP client."""

    def test_requires_credentials(self):
        with pytest.raises(GatewayError):
            CashfreeGateway("", "secret")

    def test_create_order(self, client, calls):
        calls.reply = _response(body={
            "order_id": "order_abc",
            "payment_session_id": "session_xyz",
            "order_status": "ACTIVE",
        })

        order = client.create_order(
            "order_abc", Decimal("10000.50"), "INR", GatewayCustomer(name="Ravi Kumar", phone="9876543210")
        )

        assert order.order_id == "order_abc"
        assert order.payment_session_id == "session_xyz"
        assert order.status == "ACTIVE"

        request = calls.made[0]
        assert request["method"] == "POST"
        assert request["url"] == "https://sandbox.cashfree.com/pg/orders"
        assert request["timeout"] == 3
        assert request["headers"]["x-client-id"] == "client-id"
        assert request["headers"]["x-api-version"] == "2023-08-01"
        assert request["json"]["order_amount"] == 10000.5
        assert request["json"]["customer_details"]["customer_id"] == "order_abc"
        assert request["json"]["customer_details"]["customer_name"] == "Ravi Kumar"

    def test_get_order(self, client, calls):
        calls.reply = _response(body={"order_id": "order_abc", "order_status": "PAID", "cf_order_id": 2149460581})

        order = client.get_order("order_abc")

        assert order.status == "PAID"
        assert order.reference_id == "2149460581"
        assert calls.made[0]["method"] == "GET"
        assert calls.made[0]["url"].endswith("/orders/order_abc")

    def test_timeout(self, client, calls):
        calls.reply = requests.exceptions.ReadTimeout("read timed out")

        with pytest.raises(GatewayTimeout) as exc_info:
            client.get_order("order_abc")

        assert isinstance(exc_info.value.original_error, requests.exceptions.Timeout)

    def test_connection_error(self, client, calls):
        calls.reply = requests.exceptions.ConnectionError("refused")

        with pytest.raises(GatewayError) as exc_info:
            client.get_order("order_abc")

        assert not isinstance(exc_info.value, GatewayTimeout)

    def test_http_error(self, client, calls):
        calls.reply = _response(status_code=500, body={"message": "internal"})

        with pytest.raises(GatewayError) as exc_info:
            client.get_order("order_abc")

        assert "500" in exc_info.value.message

    def test_non_json_body(self, client, calls):
        calls.reply = _response(raw=b"<html>maintenance</html>")

        with pytest.raises(GatewayError):
            client.get_order("order_abc")

    def test_missing_status(self, client, calls):
        calls.reply = _response(body={"order_id": "order_abc"})

        with pytest.raises(GatewayError):
            client.get_order("order_abc")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

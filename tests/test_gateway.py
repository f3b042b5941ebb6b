import json
from decimal import Decimal

import httpx
import pytest

from learnpay.errors import GatewayRejected, GatewayUnavailable
from learnpay.gateway import RazorpayGateway, compute_signature, to_minor_units


def _gateway(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return RazorpayGateway("rzp_test_key", "secret", api_url="https://gateway.test/v1", client=client)


def test_to_minor_units():
    assert to_minor_units(Decimal("699")) == 69900
    assert to_minor_units(Decimal("499.50")) == 49950
    assert to_minor_units(Decimal("0")) == 0


def test_create_order_posts_minor_units():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization", "")
        seen["body"] = json.loads(request.content)
        body = seen["body"]
        return httpx.Response(
            200,
            json={"id": "order_abc", "amount": body["amount"], "currency": body["currency"], "receipt": body["receipt"]},
        )

    order = _gateway(handler).create_order(Decimal("500"), "INR", "course_1234_5678_1", {"course_id": "c1"})

    assert seen["url"] == "https://gateway.test/v1/orders"
    assert seen["auth"].startswith("Basic ")
    assert seen["body"]["amount"] == 50000
    assert seen["body"]["notes"] == {"course_id": "c1"}
    assert order.id == "order_abc"
    assert order.amount == 50000
    assert order.receipt == "course_1234_5678_1"


def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayUnavailable) as info:
        _gateway(handler).create_order(Decimal("699"), "INR", "reg_1")
    assert info.value.retryable


def test_connection_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayUnavailable):
        _gateway(handler).create_order(Decimal("699"), "INR", "reg_1")


def test_client_error_is_rejected_and_final():
    def handler(request):
        return httpx.Response(400, json={"error": {"description": "bad amount"}})

    with pytest.raises(GatewayRejected) as info:
        _gateway(handler).create_order(Decimal("699"), "INR", "reg_1")
    assert info.value.upstream_status == 400
    assert not info.value.retryable


def test_server_error_is_rejected_and_retryable():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(GatewayRejected) as info:
        _gateway(handler).create_order(Decimal("699"), "INR", "reg_1")
    assert info.value.retryable


def test_signature_round_trip():
    gateway = RazorpayGateway("rzp_test_key", "secret")
    signature = compute_signature("secret", "order_1", "pay_1")

    assert gateway.verify_signature("order_1", "pay_1", signature)
    assert not gateway.verify_signature("order_1", "pay_2", signature)
    assert not gateway.verify_signature("order_1", "pay_1", compute_signature("other", "order_1", "pay_1"))
    assert not gateway.verify_signature("order_1", "pay_1", "")
    assert not gateway.verify_signature("", "pay_1", signature)


def test_non_json_success_reply_is_rejected():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(GatewayRejected) as info:
        _gateway(handler).create_order(Decimal("699"), "INR", "reg_1")
    assert info.value.upstream_status == 200
    assert info.value.message == "Malformed gateway response."


def test_success_reply_without_order_fields_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"error": "x"})

    with pytest.raises(GatewayRejected):
        _gateway(handler).create_order(Decimal("699"), "INR", "reg_1")


def test_rejection_category_follows_upstream_status():
    assert GatewayRejected("bad request", upstream_status=400).category == "validation"
    assert GatewayRejected("upstream down", upstream_status=503).category == "transient"
    assert GatewayRejected("no status").category == "transient"

import pytest
import requests

from storefront.payments import GatewayError, RazorpayClient, to_minor_units

from conftest import KEY_ID, KEY_SECRET, sign


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def razorpay():
    return RazorpayClient(KEY_ID, KEY_SECRET, base_url="https://api.example.com/v1/")


def test_minor_units():
    assert to_minor_units(2500) == 250000
    assert to_minor_units(19.99) == 1999


def test_create_order_posts_with_basic_auth(razorpay, monkeypatch):
    seen = {}

    def fake_post(url, auth=None, json=None, timeout=None):
        seen.update(url=url, auth=auth, json=json, timeout=timeout)
        return FakeResponse(body={"id": "order_abc", "amount": json["amount"], "currency": json["currency"]})

    monkeypatch.setattr(requests, "post", fake_post)
    order = razorpay.create_order(50000, "INR", "receipt_order_1")

    assert order["id"] == "order_abc"
    assert seen["url"] == "https://api.example.com/v1/orders"
    assert seen["auth"] == (KEY_ID, KEY_SECRET)
    assert seen["json"]["receipt"] == "receipt_order_1"
    assert seen["json"]["payment_capture"] == 1
    assert seen["timeout"] == 10


def test_gateway_error_status_is_forwarded(razorpay, monkeypatch):
    body = {"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too small"}}
    monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(400, body))
    with pytest.raises(GatewayError) as exc:
        razorpay.create_order(1, "INR")
    assert exc.value.status_code == 400
    assert exc.value.detail == body


def test_gateway_error_without_json(razorpay, monkeypatch):
    monkeypatch.setattr(requests, "post", lambda *a, **kw: FakeResponse(502, None, "Bad Gateway"))
    with pytest.raises(GatewayError) as exc:
        razorpay.create_order(100, "INR")
    assert exc.value.detail == {"message": "Bad Gateway"}


def test_timeout(razorpay, monkeypatch):
    def slow(*a, **kw):
        raise requests.Timeout()

    monkeypatch.setattr(requests, "post", slow)
    with pytest.raises(GatewayError) as exc:
        razorpay.create_order(100, "INR")
    assert exc.value.status_code == 504


def test_connection_error(razorpay, monkeypatch):
    def down(*a, **kw):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "post", down)
    with pytest.raises(GatewayError) as exc:
        razorpay.refund("pay_1", 100)
    assert exc.value.status_code == 502


def test_refund_path(razorpay, monkeypatch):
    seen = {}

    def fake_post(url, auth=None, json=None, timeout=None):
        seen.update(url=url, json=json)
        return FakeResponse(body={"id": "rfnd_1", "amount": 100})

    monkeypatch.setattr(requests, "post", fake_post)
    assert razorpay.refund("pay_1", 100)["id"] == "rfnd_1"
    assert seen == {"url": "https://api.example.com/v1/payments/pay_1/refund", "json": {"amount": 100}}


def test_missing_keys(monkeypatch):
    def never(*a, **kw):
        raise AssertionError("no request expected")

    monkeypatch.setattr(requests, "post", never)
    unconfigured = RazorpayClient(None, None)
    with pytest.raises(GatewayError) as exc:
        unconfigured.create_order(100, "INR")
    assert exc.value.status_code == 500
    assert exc.value.detail == "Razorpay not configured on server"


def test_verify_signature(razorpay):
    assert razorpay.verify_signature("order_1", "pay_1", sign("order_1", "pay_1"))
    assert not razorpay.verify_signature("order_1", "pay_2", sign("order_1", "pay_1"))
    assert not razorpay.verify_signature("order_1", "pay_1", sign("order_1", "pay_1", "other-secret"))

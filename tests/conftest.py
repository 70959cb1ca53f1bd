import hashlib
import hmac
import itertools
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from storefront.database import get_db, new_id
from storefront.events import EventHub, get_hub
from storefront.main import app
from storefront.payments import RazorpayClient, get_gateway
from storefront.settings import Settings, get_settings

KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"


def sign(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


class FakeGateway(RazorpayClient):
    """Razorpay client whose HTTP layer records calls instead of sending them."""

    def __init__(self, key_id=KEY_ID, key_secret=KEY_SECRET):
        super().__init__(key_id, key_secret)
        self.calls = []
        self._seq = itertools.count(1)

    def _post(self, path, data):
        self._require_keys()
        self.calls.append((path, data))
        n = next(self._seq)
        if path == "/orders":
            return {"id": f"order_{n}", "entity": "order", "status": "created", **data}
        return {"id": f"rfnd_{n}", "entity": "refund", **data}

    def paths(self):
        return [path for path, _ in self.calls]


@pytest.fixture
def settings():
    return Settings(
        razorpay_key_id=KEY_ID,
        razorpay_key_secret=KEY_SECRET,
        shipping_cost=0.0,
        reconcile_grace_seconds=0,
        admin_emails=("admin@example.com",),
    )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["storefront_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def hub():
    return EventHub()


@pytest.fixture
async def client(db, gateway, settings, hub):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_hub] = lambda: hub
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


# ---------- Seed helpers ----------

async def make_user(db, email="ada@example.com", display_name="Ada", is_admin=False, created_at=None):
    user_id = new_id()
    await db["users"].insert_one({
        "_id": user_id,
        "email": email,
        "display_name": display_name,
        "photo_url": "",
        "password_hash": "",
        "email_verified": True,
        "is_admin": is_admin,
        "created_at": created_at or datetime.now(timezone.utc),
    })
    token = f"tok-{user_id}"
    await db["sessions"].insert_one({"_id": token, "user_id": user_id})
    return {"id": user_id, "email": email, "display_name": display_name, "is_admin": is_admin, "token": token}


async def make_product(db, product_id="kit-basic", name="Starter Kit", price=1000.0, stock=10):
    await db["products"].insert_one({
        "_id": product_id,
        "name": name,
        "price": price,
        "stock": stock,
        "image": f"https://img.example.com/{product_id}.png",
    })
    return product_id


async def make_address(db, user_id, **overrides):
    address = {
        "_id": new_id(),
        "user_id": user_id,
        "name": "Ada Lovelace",
        "phone": "9876543210",
        "address_line1": "12 Analytical Lane",
        "address_line2": "",
        "city": "Pune",
        "state": "Maharashtra",
        "postal_code": "411001",
        "country": "India",
        "created_at": datetime.now(timezone.utc),
    }
    address.update(overrides)
    await db["addresses"].insert_one(address)
    return address["_id"]


async def make_order(db, user_id, status="paid", total=1000.0, created_at=None, order_id=None):
    order_id = order_id or new_id()
    await db["orders"].insert_one({
        "_id": order_id,
        "user_id": user_id,
        "status": status,
        "total": total,
        "payment_id": "pay_seed",
        "created_at": created_at or datetime.now(timezone.utc),
        "shipping_address": {},
    })
    return order_id


def days_ago(n):
    return datetime(2026, 1, 31, tzinfo=timezone.utc) - timedelta(days=n)


def auth_header(user):
    return {"Authorization": f"Bearer {user['token']}"}

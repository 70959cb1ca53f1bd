from storefront.cart import NOT_LOGGED_IN
from storefront.main import app
from storefront.payments import get_gateway

from conftest import FakeGateway, auth_header, make_order, make_product, make_user, sign

ADDRESS = {
    "name": "Ada Lovelace",
    "phone": "9876543210",
    "address_line1": "12 Analytical Lane",
    "city": "Pune",
    "state": "Maharashtra",
    "postal_code": "411001",
    "country": "India",
}


async def test_root(client):
    r = await client.get("/")
    assert r.status_code == 200
    assert r.json() == {"message": "Crabster Store API running"}


async def test_create_razorpay_order(client, gateway):
    r = await client.post("/api/create-razorpay-order", json={"amount": 49900, "currency": "INR"})
    assert r.status_code == 200
    body = r.json()
    assert body["id"].startswith("order_")
    assert body["amount"] == 49900
    assert gateway.calls[0][1]["receipt"].startswith("receipt_order_")


async def test_create_razorpay_order_rejects_bad_body(client, gateway):
    for payload in ({"amount": -5, "currency": "INR"}, {"amount": 0.5, "currency": "INR"},
                    {"amount": 100}, {"currency": "INR"}):
        r = await client.post("/api/create-razorpay-order", json=payload)
        assert r.status_code == 400
        assert r.json()["error"] == "Invalid request body"
    assert gateway.calls == []


async def test_create_razorpay_order_without_keys(client):
    app.dependency_overrides[get_gateway] = lambda: FakeGateway(None, None)
    r = await client.post("/api/create-razorpay-order", json={"amount": 100, "currency": "INR"})
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "Could not create order."


async def test_signup_then_login_needs_verification(client):
    r = await client.post("/api/auth/signup", json={"email": "ada@example.com", "password": "s3cret-pw"})
    assert r.status_code == 201
    r = await client.post("/api/auth/login", json={"email": "ada@example.com", "password": "s3cret-pw"})
    assert r.status_code == 403


async def test_add_to_cart_requires_login(client, db):
    await make_product(db, "kit-basic")
    r = await client.post("/api/cart/items", json={"product_id": "kit-basic"})
    assert r.status_code == 401
    assert r.json()["detail"] == NOT_LOGGED_IN
    assert await db["cart"].count_documents({}) == 0


async def test_cart_endpoints(client, db):
    user = await make_user(db)
    await make_product(db, "kit-basic", price=1000.0)
    await make_product(db, "kit-pro", name="Pro Kit", price=500.0)
    headers = auth_header(user)

    for pid in ("kit-basic", "kit-basic", "kit-pro"):
        r = await client.post("/api/cart/items", json={"product_id": pid}, headers=headers)
        assert r.status_code == 200

    cart = (await client.get("/api/cart", headers=headers)).json()
    assert cart["cart_count"] == 3
    assert cart["cart_subtotal"] == 2500

    r = await client.post("/api/cart/items/kit-basic/decrement", headers=headers)
    assert r.json()["item"]["quantity"] == 1
    await client.delete("/api/cart/items/kit-pro", headers=headers)
    cart = (await client.get("/api/cart", headers=headers)).json()
    assert [it["id"] for it in cart["items"]] == ["kit-basic"]

    assert (await client.delete("/api/cart", headers=headers)).json() == {"removed": 1}


async def test_address_validation(client, db):
    user = await make_user(db)
    r = await client.post("/api/addresses", json={**ADDRESS, "phone": "123"}, headers=auth_header(user))
    assert r.status_code == 400
    assert r.json()["details"][0]["loc"][-1] == "phone"


async def test_checkout_flow(client, db, gateway):
    user = await make_user(db)
    headers = auth_header(user)
    await make_product(db, "kit-basic", price=1000.0, stock=3)

    address = (await client.post("/api/addresses", json=ADDRESS, headers=headers)).json()
    await client.post("/api/cart/items", json={"product_id": "kit-basic"}, headers=headers)

    r = await client.post("/api/checkout/session", json={"address_id": address["id"]}, headers=headers)
    assert r.status_code == 200
    session = r.json()
    assert session["amount"] == 100000

    gw_order = session["razorpay_order_id"]
    r = await client.post("/api/checkout/confirm", headers=headers, json={
        "razorpay_order_id": gw_order,
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": sign(gw_order, "pay_1"),
    })
    assert r.status_code == 200
    order_id = r.json()["order_id"]
    assert r.json()["redirect"] == f"/order-confirmation/{order_id}"

    order = (await client.get(f"/api/orders/{order_id}", headers=headers)).json()["order"]
    assert order["status"] == "paid"
    assert order["items"][0]["product_id"] == "kit-basic"
    assert (await client.get("/api/cart", headers=headers)).json()["cart_count"] == 0

    # someone else's order is not visible
    stranger = await make_user(db, email="bob@example.com")
    r = await client.get(f"/api/orders/{order_id}", headers=auth_header(stranger))
    assert r.status_code == 404


async def test_checkout_without_address(client, db):
    user = await make_user(db)
    await make_product(db, "kit-basic")
    await client.post("/api/cart/items", json={"product_id": "kit-basic"}, headers=auth_header(user))
    r = await client.post("/api/checkout/session", json={}, headers=auth_header(user))
    assert r.status_code == 400
    assert r.json()["detail"].startswith("No Address Selected")


async def test_tutorials_locked_until_paid_order(client, db):
    admin = await make_user(db, email="admin@example.com", is_admin=True)
    user = await make_user(db)
    r = await client.post("/api/admin/tutorials/chapters", json={"title": "Basics", "order": 1},
                          headers=auth_header(admin))
    assert r.status_code == 201
    chapter_id = r.json()["id"]
    r = await client.post(f"/api/admin/tutorials/chapters/{chapter_id}/tutorials", headers=auth_header(admin), json={
        "title": "Blink",
        "description": "Make the onboard LED blink.",
        "level": "Beginner",
        "duration": "5 min",
        "image_id": "img-1",
        "video_id": "https://video.example.com/blink",
        "order": 1,
    })
    assert r.status_code == 201
    tutorial_id = r.json()["id"]

    anonymous = (await client.get("/api/tutorials")).json()
    assert anonymous["has_access"] is False
    assert "video_id" not in anonymous["chapters"][0]["tutorials"][0]

    r = await client.get(f"/api/tutorials/{tutorial_id}", headers=auth_header(user))
    assert r.json()["tutorial"]["locked"] is True

    await make_order(db, user["id"], status="paid")
    r = await client.get(f"/api/tutorials/{tutorial_id}", headers=auth_header(user))
    assert r.json()["has_access"] is True
    assert r.json()["tutorial"]["video_id"] == "https://video.example.com/blink"

    r = await client.delete(f"/api/admin/tutorials/chapters/{chapter_id}", headers=auth_header(admin))
    assert r.json() == {"deleted": chapter_id, "tutorials_deleted": 1}
    assert (await client.get(f"/api/tutorials/{tutorial_id}")).status_code == 404


async def test_reviews_need_paid_order(client, db):
    user = await make_user(db)
    await make_product(db, "kit-basic")
    review = {"rating": 5, "comment": "Great kit, clear instructions."}

    r = await client.post("/api/products/kit-basic/reviews", json=review, headers=auth_header(user))
    assert r.status_code == 403

    await make_order(db, user["id"], status="paid")
    r = await client.post("/api/products/kit-basic/reviews", json=review, headers=auth_header(user))
    assert r.status_code == 201
    r = await client.post("/api/products/kit-basic/reviews", json=review, headers=auth_header(user))
    assert r.status_code == 409
    assert len((await client.get("/api/products/kit-basic/reviews")).json()["reviews"]) == 1


async def test_contact_message(client, db):
    r = await client.post("/api/messages", json={"name": "Ada", "email": "not-an-email", "message": "Hello there!!"})
    assert r.status_code == 400
    r = await client.post("/api/messages", json={"name": "Ada", "email": "ada@example.com",
                                                 "message": "When is the pro kit back?"})
    assert r.status_code == 201
    assert r.json()["message"]["read"] is False


async def test_admin_routes_need_admin(client, db):
    user = await make_user(db)
    assert (await client.get("/api/admin/orders")).status_code == 401
    assert (await client.get("/api/admin/orders", headers=auth_header(user))).status_code == 403


async def test_admin_orders(client, db):
    admin = await make_user(db, email="admin@example.com", display_name="Admin", is_admin=True)
    user = await make_user(db, display_name="Ada")
    order_id = await make_order(db, user["id"], status="paid")
    headers = auth_header(admin)

    listing = (await client.get("/api/admin/orders", params={"q": "ada", "sort": "status_asc"},
                                headers=headers)).json()
    assert listing["total"] == 1
    assert listing["orders"][0]["user_name"] == "Ada"

    r = await client.patch(f"/api/admin/orders/{order_id}", json={"status": "shipped"}, headers=headers)
    assert r.json()["status"] == "shipped"
    r = await client.patch(f"/api/admin/orders/{order_id}", json={"status": "lost"}, headers=headers)
    assert r.status_code == 400
    r = await client.get("/api/admin/orders", params={"sort": "sideways"}, headers=headers)
    assert r.status_code == 400


async def test_admin_product_management(client, db):
    admin = await make_user(db, email="admin@example.com", is_admin=True)
    headers = auth_header(admin)
    product = {"id": "kit-new", "name": "New Kit", "price": 1499.0, "stock": 4, "image": "new.png"}

    assert (await client.post("/api/admin/products", json=product, headers=headers)).status_code == 201
    assert (await client.post("/api/admin/products", json=product, headers=headers)).status_code == 409

    r = await client.put("/api/admin/products/kit-new/stock", json={"stock": 9}, headers=headers)
    assert r.json()["stock"] == 9
    assert (await client.get("/api/products/kit-new")).json()["product"]["stock"] == 9

    assert (await client.delete("/api/admin/products/kit-new", headers=headers)).status_code == 204
    assert (await client.get("/api/products/kit-new")).status_code == 404

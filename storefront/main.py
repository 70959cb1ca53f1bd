from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from storefront import addresses as address_book
from storefront import auth, cart, catalog, checkout, tutorials
from storefront.access import AccessDenied, has_verified_purchase
from storefront.admin import router as admin_router
from storefront.database import ensure_indexes, get_db
from storefront.events import TUTORIALS_TOPIC, EventHub, cart_topic, get_hub, sse_stream
from storefront.payments import GatewayError, RazorpayClient, get_gateway, make_receipt
from storefront.schemas import (
    AddToCartRequest,
    AddressIn,
    AuthResponse,
    CheckoutCancelRequest,
    CheckoutConfirmRequest,
    CheckoutStartRequest,
    ContactMessageIn,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PaymentOrderRequest,
    ProfileUpdate,
    ReviewIn,
    SignupRequest,
    TokenRequest,
)
from storefront.settings import Settings, configure_logging, get_settings

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings())
    await ensure_indexes(await get_db())
    yield


app = FastAPI(title="Crabster Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)


# ---------- Errors ----------

@app.exception_handler(RequestValidationError)
async def invalid_body(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())})


@app.exception_handler(GatewayError)
async def gateway_failed(request: Request, exc: GatewayError):
    logger.error("gateway_error", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(AccessDenied)
@app.exception_handler(auth.AuthError)
@app.exception_handler(cart.CartError)
@app.exception_handler(checkout.CheckoutError)
@app.exception_handler(catalog.CatalogError)
@app.exception_handler(tutorials.NotFound)
async def domain_error(request: Request, exc: Exception):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


# ---------- Health ----------

@app.get("/")
def read_root():
    return {"message": "Crabster Store API running"}


@app.get("/test")
async def test_database(db: AsyncIOMotorDatabase = Depends(get_db), settings: Settings = Depends(get_settings)):
    """Test endpoint to check if database is available and accessible"""
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": settings.database_name,
        "razorpay": "✅ Configured" if settings.razorpay_configured else "❌ Not Set",
        "collections": [],
    }
    try:
        collections = await db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# ---------- Payments ----------

@app.post("/api/create-razorpay-order")
async def create_razorpay_order(payload: PaymentOrderRequest, gateway: RazorpayClient = Depends(get_gateway)):
    """
    Create a Razorpay order.

    ``amount`` is in minor units (paise for INR). Missing keys or a failing
    gateway answer 500 like any other server-side failure.
    """
    try:
        return await run_in_threadpool(gateway.create_order, payload.amount, payload.currency, make_receipt())
    except GatewayError as e:
        logger.error("create_razorpay_order_failed", status_code=e.status_code, detail=e.detail)
        raise HTTPException(status_code=500, detail={"error": "Could not create order.", "details": str(e.detail)})


# ---------- Auth ----------

@app.post("/api/auth/signup", status_code=201)
async def signup(payload: SignupRequest, db: AsyncIOMotorDatabase = Depends(get_db),
                 settings: Settings = Depends(get_settings)):
    user = await auth.signup(db, settings, payload.email, payload.password, payload.display_name)
    return {"user": user, "message": "Check your inbox to verify your email before logging in."}


@app.post("/api/auth/verify-email")
async def verify_email(payload: TokenRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"user": await auth.verify_email(db, payload.token)}


@app.post("/api/auth/login", response_model=AuthResponse)
async def login(payload: LoginRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await auth.login(db, payload.email, payload.password)


@app.post("/api/auth/logout", status_code=204)
async def logout(user: Dict[str, Any] = Depends(auth.current_user), db: AsyncIOMotorDatabase = Depends(get_db)):
    await auth.logout(db, user["token"])


@app.post("/api/auth/forgot-password")
async def forgot_password(payload: PasswordResetRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    await auth.request_password_reset(db, payload.email)
    return {"message": "If an account exists for that email, a reset link has been sent."}


@app.post("/api/auth/reset-password")
async def reset_password(payload: PasswordResetConfirm, db: AsyncIOMotorDatabase = Depends(get_db)):
    await auth.reset_password(db, payload.token, payload.password)
    return {"ok": True}


@app.get("/api/profile")
async def get_profile(user: Dict[str, Any] = Depends(auth.current_user)):
    return {k: v for k, v in user.items() if k != "token"}


@app.patch("/api/profile")
async def update_profile(payload: ProfileUpdate, user: Dict[str, Any] = Depends(auth.current_user),
                         db: AsyncIOMotorDatabase = Depends(get_db)):
    return await auth.update_profile(db, user["id"], payload.display_name)


# ---------- Catalog ----------

@app.get("/api/products")
async def list_products(db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"products": await catalog.list_products(db)}


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    product = await catalog.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": product}


@app.get("/api/products/{product_id}/reviews")
async def list_reviews(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"reviews": await catalog.list_reviews(db, product_id)}


@app.post("/api/products/{product_id}/reviews", status_code=201)
async def add_review(product_id: str, payload: ReviewIn, user: Dict[str, Any] = Depends(auth.current_user),
                     db: AsyncIOMotorDatabase = Depends(get_db)):
    review = await catalog.add_review(db, user, product_id, payload.rating, payload.comment)
    return {"review": review, "message": "Thank you for your feedback."}


@app.post("/api/messages", status_code=201)
async def contact(payload: ContactMessageIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"message": await catalog.add_message(db, payload.model_dump())}


# ---------- Cart ----------

@app.get("/api/cart")
async def get_cart(user: Dict[str, Any] = Depends(auth.current_user), db: AsyncIOMotorDatabase = Depends(get_db),
                   settings: Settings = Depends(get_settings)):
    return await cart.get_cart(db, user["id"], settings.shipping_cost)


@app.post("/api/cart/items")
async def add_to_cart(
    payload: AddToCartRequest,
    user: Optional[Dict[str, Any]] = Depends(auth.optional_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    return await cart.add_to_cart(db, user, payload.product_id, settings.shipping_cost, hub)


@app.post("/api/cart/items/{product_id}/decrement")
async def decrement_item(
    product_id: str,
    user: Dict[str, Any] = Depends(auth.current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    item = await cart.decrement_item(db, user["id"], product_id, settings.shipping_cost, hub)
    return {"item": item}


@app.delete("/api/cart/items/{product_id}")
async def remove_from_cart(
    product_id: str,
    user: Dict[str, Any] = Depends(auth.current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    await cart.remove_from_cart(db, user["id"], product_id, settings.shipping_cost, hub)
    return {"message": "Removed from cart"}


@app.delete("/api/cart")
async def clear_cart(
    user: Dict[str, Any] = Depends(auth.current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    removed = await cart.clear_cart(db, user["id"], shipping_cost=settings.shipping_cost, hub=hub)
    return {"removed": removed}


@app.get("/api/cart/events")
async def cart_events(
    user: Dict[str, Any] = Depends(auth.current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    initial = await cart.get_cart(db, user["id"], settings.shipping_cost)
    return StreamingResponse(sse_stream(hub, cart_topic(user["id"]), initial), media_type="text/event-stream")


# ---------- Addresses ----------

@app.get("/api/addresses")
async def list_addresses(user: Dict[str, Any] = Depends(auth.current_user),
                         db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"addresses": await address_book.list_addresses(db, user["id"])}


@app.post("/api/addresses", status_code=201)
async def create_address(payload: AddressIn, user: Dict[str, Any] = Depends(auth.current_user),
                         db: AsyncIOMotorDatabase = Depends(get_db)):
    return await address_book.create_address(db, user["id"], payload.model_dump())


@app.put("/api/addresses/{address_id}")
async def update_address(address_id: str, payload: AddressIn, user: Dict[str, Any] = Depends(auth.current_user),
                         db: AsyncIOMotorDatabase = Depends(get_db)):
    address = await address_book.update_address(db, user["id"], address_id, payload.model_dump())
    if address is None:
        raise HTTPException(status_code=404, detail="Address not found")
    return address


@app.delete("/api/addresses/{address_id}", status_code=204)
async def delete_address(address_id: str, user: Dict[str, Any] = Depends(auth.current_user),
                         db: AsyncIOMotorDatabase = Depends(get_db)):
    if not await address_book.delete_address(db, user["id"], address_id):
        raise HTTPException(status_code=404, detail="Address not found")


# ---------- Checkout ----------

@app.post("/api/checkout/session")
async def start_checkout(
    payload: CheckoutStartRequest,
    user: Dict[str, Any] = Depends(auth.current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return await checkout.start_checkout(db, gateway, settings, user, payload.address_id)


@app.post("/api/checkout/confirm")
async def confirm_checkout(
    payload: CheckoutConfirmRequest,
    user: Dict[str, Any] = Depends(auth.current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    return await checkout.confirm_payment(
        db, gateway, settings, user["id"],
        payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature, hub,
    )


@app.post("/api/checkout/cancel")
async def cancel_checkout(payload: CheckoutCancelRequest, user: Dict[str, Any] = Depends(auth.current_user),
                          db: AsyncIOMotorDatabase = Depends(get_db)):
    return await checkout.cancel_checkout(db, user["id"], payload.razorpay_order_id)


@app.get("/api/orders")
async def my_orders(user: Dict[str, Any] = Depends(auth.current_user), db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"orders": await checkout.list_user_orders(db, user["id"])}


@app.get("/api/orders/{order_id}")
async def order_confirmation(order_id: str, user: Dict[str, Any] = Depends(auth.current_user),
                             db: AsyncIOMotorDatabase = Depends(get_db)):
    order = await checkout.get_order(db, order_id, user_id=user["id"])
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"order": order}


# ---------- Tutorials ----------

@app.get("/api/tutorials")
async def tutorial_tree(user: Optional[Dict[str, Any]] = Depends(auth.optional_user),
                        db: AsyncIOMotorDatabase = Depends(get_db)):
    unlocked = await has_verified_purchase(db, user)
    return {"has_access": unlocked, "chapters": tutorials.gate_tree(await tutorials.get_tree(db), unlocked)}


@app.get("/api/tutorials/events")
async def tutorial_events(db: AsyncIOMotorDatabase = Depends(get_db), hub: EventHub = Depends(get_hub)):
    outline = tutorials.gate_tree(await tutorials.get_tree(db), False)
    return StreamingResponse(sse_stream(hub, TUTORIALS_TOPIC, outline), media_type="text/event-stream")


@app.get("/api/tutorials/{tutorial_id}")
async def tutorial_detail(tutorial_id: str, user: Optional[Dict[str, Any]] = Depends(auth.optional_user),
                          db: AsyncIOMotorDatabase = Depends(get_db)):
    tutorial = await tutorials.get_tutorial(db, tutorial_id)
    unlocked = await has_verified_purchase(db, user)
    return {"has_access": unlocked, "tutorial": tutorials.gate(tutorial, unlocked)}

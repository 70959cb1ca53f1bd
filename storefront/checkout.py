"""
Checkout and order commit.

A purchase runs in two phases so money never moves without a trace:

1. ``start_checkout`` snapshots the cart and shipping address, opens a gateway
   order and stores a ``payments`` record in state ``created``.
2. ``confirm_payment`` verifies the gateway signature, durably marks the
   payment ``captured``, then commits the order, its items and the stock
   decrements as one ``WriteBatch``. Success moves the payment to
   ``fulfilled``; a failed commit leaves it ``captured``.

``reconcile_payments`` settles payments left in ``captured`` past a grace
period. It claims each one (``reconciling``) so it never works alongside an
in-flight confirmation, then completes the order or refunds the payment. A
batch whose rollback left writes behind parks the payment in ``needs_review``
instead; it is never refunded automatically.

Payment states: created -> captured -> reconciling -> fulfilled | refunded | needs_review,
captured -> fulfilled | needs_review, created -> cancelled.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi.concurrency import run_in_threadpool
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from storefront import addresses as address_book
from storefront import cart as cart_store
from storefront.database import (
    CommitError, OutOfStock, RollbackIncomplete, WriteBatch, get_documents, new_id, now, serialize,
)
from storefront.events import EventHub
from storefront.payments import GatewayError, RazorpayClient, make_receipt, to_minor_units
from storefront.settings import Settings

logger = structlog.get_logger(__name__)

CREATED = "created"
CAPTURED = "captured"
FULFILLED = "fulfilled"
CANCELLED = "cancelled"
RECONCILING = "reconciling"
REFUNDED = "refunded"
NEEDS_REVIEW = "needs_review"

STORE_NAME = "crabster"


class CheckoutError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


def confirmation_path(order_id: str) -> str:
    return f"/order-confirmation/{order_id}"


async def start_checkout(
    db: AsyncIOMotorDatabase,
    gateway: RazorpayClient,
    settings: Settings,
    user: Dict[str, Any],
    address_id: Optional[str],
) -> Dict[str, Any]:
    items = await cart_store.get_items(db, user["id"])
    if not items:
        raise CheckoutError("Add items to your cart to proceed to checkout.")
    if not address_id:
        raise CheckoutError("No Address Selected: please select or add a shipping address.")
    address = await address_book.get_address(db, user["id"], address_id)
    if address is None:
        raise CheckoutError("No Address Selected: please select or add a shipping address.")

    summary = cart_store.summarize(items, settings.shipping_cost)
    total = summary["cart_total"]
    if total <= 0:
        raise CheckoutError("Cart total must be greater than zero.")

    shipping = address_book.snapshot(address)
    amount = to_minor_units(total)
    gateway_order = await run_in_threadpool(
        gateway.create_order,
        amount,
        settings.currency,
        make_receipt(),
        {"address": f"{shipping['address_line1']}, {shipping['city']}"},
    )

    ts = now()
    payment = {
        "_id": gateway_order["id"],
        "user_id": user["id"],
        "order_id": new_id(),
        "status": CREATED,
        "amount": total,
        "amount_minor": amount,
        "currency": settings.currency,
        "payment_id": None,
        "shipping_address": shipping,
        "lines": items,
        "created_at": ts,
        "updated_at": ts,
    }
    await db["payments"].insert_one(payment)
    logger.info("checkout_started", user_id=user["id"], gateway_order_id=payment["_id"],
                total=total, lines=len(items))

    return {
        "key_id": gateway.key_id,
        "razorpay_order_id": payment["_id"],
        "amount": amount,
        "currency": settings.currency,
        "name": STORE_NAME,
        "description": "E-Commerce Transaction",
        "prefill": {
            "name": user.get("display_name") or shipping["name"],
            "email": user.get("email"),
            "contact": shipping["phone"],
        },
        "summary": summary,
    }


async def _find_payment(db: AsyncIOMotorDatabase, user_id: str, gateway_order_id: str) -> Dict[str, Any]:
    payment = await db["payments"].find_one({"_id": gateway_order_id, "user_id": user_id})
    if payment is None:
        raise CheckoutError("Payment session not found", status_code=404)
    return payment


async def cancel_checkout(db: AsyncIOMotorDatabase, user_id: str, gateway_order_id: str) -> Dict[str, Any]:
    """The customer dismissed the payment overlay. Cart and stock stay as they were."""
    payment = await _find_payment(db, user_id, gateway_order_id)
    if payment["status"] != CREATED:
        raise CheckoutError(f"Payment already {payment['status']}", status_code=409)
    await db["payments"].update_one(
        {"_id": gateway_order_id, "status": CREATED},
        {"$set": {"status": CANCELLED, "updated_at": now()}},
    )
    logger.info("checkout_cancelled", user_id=user_id, gateway_order_id=gateway_order_id)
    return {"status": CANCELLED, "title": "Payment Cancelled", "message": "Your payment was not completed."}


async def commit_order(db: AsyncIOMotorDatabase, settings: Settings, payment: Dict[str, Any]) -> str:
    """
    Write the order, one item per cart line, and the stock decrements as one unit.

    Stock decrements are guarded: a line that would take a product below zero
    fails the whole batch with ``OutOfStock``. The order document goes in
    last, so an order that exists always has its items and decrements.
    Running it again for a payment whose order already exists is a no-op.
    """
    order_id = payment["order_id"]
    if await _order_exists(db, order_id):
        return order_id

    batch = WriteBatch(db, use_transactions=settings.use_transactions)
    for line in payment["lines"]:
        batch.insert("order_items", {
            "_id": new_id(),
            "order_id": order_id,
            "product_id": line["id"],
            "name": line["name"],
            "price": line["price"],
            "quantity": line["quantity"],
            "image": line["image"],
        })
        batch.decrement("products", line["id"], "stock", line["quantity"])
    batch.insert("orders", {
        "_id": order_id,
        "user_id": payment["user_id"],
        "created_at": now(),
        "total": payment["amount"],
        "status": "paid",
        "payment_id": payment["payment_id"],
        "gateway_order_id": payment["_id"],
        "shipping_address": payment["shipping_address"],
    })
    await batch.commit()
    logger.info("order_committed", order_id=order_id, user_id=payment["user_id"],
                payment_id=payment["payment_id"], items=len(payment["lines"]))
    return order_id


async def _order_exists(db: AsyncIOMotorDatabase, order_id: str) -> bool:
    return await db["orders"].find_one({"_id": order_id}, {"_id": 1}) is not None


async def _set_status(db: AsyncIOMotorDatabase, payment: Dict[str, Any], status: str,
                      expected: tuple, **fields) -> bool:
    res = await db["payments"].update_one(
        {"_id": payment["_id"], "status": {"$in": list(expected)}},
        {"$set": {"status": status, "updated_at": now(), **fields}},
    )
    return bool(res.matched_count)


async def _mark_fulfilled(db: AsyncIOMotorDatabase, payment: Dict[str, Any]) -> None:
    await _set_status(db, payment, FULFILLED, (CAPTURED, RECONCILING), fulfilled_at=now())


async def _clear_committed_lines(db, settings: Settings, payment: Dict[str, Any], hub: Optional[EventHub]) -> None:
    try:
        await cart_store.clear_cart(
            db, payment["user_id"], [line["id"] for line in payment["lines"]],
            shipping_cost=settings.shipping_cost, hub=hub,
        )
    except Exception:
        # the order stands; stale cart lines are only cosmetic
        logger.exception("cart_clear_failed", user_id=payment["user_id"], order_id=payment["order_id"])


async def confirm_payment(
    db: AsyncIOMotorDatabase,
    gateway: RazorpayClient,
    settings: Settings,
    user_id: str,
    gateway_order_id: str,
    payment_id: str,
    signature: str,
    hub: Optional[EventHub] = None,
) -> Dict[str, Any]:
    payment = await _find_payment(db, user_id, gateway_order_id)
    if payment["status"] == FULFILLED:
        return {"order_id": payment["order_id"], "redirect": confirmation_path(payment["order_id"])}
    if payment["status"] not in (CREATED, CAPTURED):
        raise CheckoutError(f"Payment already {payment['status']}", status_code=409)
    if not gateway.verify_signature(gateway_order_id, payment_id, signature):
        logger.warning("payment_signature_invalid", user_id=user_id, gateway_order_id=gateway_order_id)
        raise CheckoutError("Invalid payment signature")

    # phase one: the capture is on record before any order or stock write
    captured = await _set_status(db, payment, CAPTURED, (CREATED, CAPTURED),
                                 payment_id=payment_id, captured_at=now())
    if not captured:
        raise CheckoutError("Payment is already being settled", status_code=409)
    payment["status"] = CAPTURED
    payment["payment_id"] = payment_id
    logger.info("payment_captured", user_id=user_id, gateway_order_id=gateway_order_id, payment_id=payment_id)

    # phase two
    try:
        order_id = await commit_order(db, settings, payment)
    except RollbackIncomplete as e:
        await _set_status(db, payment, NEEDS_REVIEW, (CAPTURED,))
        logger.error("order_commit_failed", gateway_order_id=gateway_order_id, payment_id=payment_id,
                     reason="rollback_incomplete", writes_left=e.failed)
        raise CheckoutError(
            "Payment received but the order could not be recorded; it will be reviewed.",
            status_code=500,
        )
    except CommitError as e:
        if not await _order_exists(db, payment["order_id"]):
            raise _commit_failure(payment, e)
        # a concurrent settlement committed the same order
        order_id = payment["order_id"]

    await _mark_fulfilled(db, payment)
    await _clear_committed_lines(db, settings, payment, hub)
    return {"order_id": order_id, "redirect": confirmation_path(order_id)}


def _commit_failure(payment: Dict[str, Any], error: CommitError) -> CheckoutError:
    if isinstance(error, OutOfStock):
        logger.error("order_commit_failed", gateway_order_id=payment["_id"], payment_id=payment["payment_id"],
                     reason="out_of_stock", product_id=error.doc_id)
        return CheckoutError(
            "Payment received but an item went out of stock; the payment will be refunded.",
            status_code=409,
        )
    logger.error("order_commit_failed", gateway_order_id=payment["_id"], payment_id=payment["payment_id"],
                 error=str(error))
    return CheckoutError(
        "Payment received but the order could not be recorded; it will be reconciled.",
        status_code=500,
    )


async def _claim(db: AsyncIOMotorDatabase, candidate: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Take a payment for reconciliation unless someone touched it since it was read."""
    return await db["payments"].find_one_and_update(
        {"_id": candidate["_id"], "status": candidate["status"], "updated_at": candidate["updated_at"]},
        {"$set": {"status": RECONCILING, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )


async def reconcile_payments(
    db: AsyncIOMotorDatabase,
    gateway: RazorpayClient,
    settings: Settings,
    hub: Optional[EventHub] = None,
) -> Dict[str, int]:
    """Settle captured payments that have no completed order. Safe to run repeatedly."""
    report = {"completed": 0, "refunded": 0, "failed": 0}
    cutoff = now() - timedelta(seconds=settings.reconcile_grace_seconds)
    # a claim left behind by a crashed run is picked up again after the grace period
    stale = {"$or": [
        {"status": CAPTURED, "captured_at": {"$lte": cutoff}},
        {"status": RECONCILING, "updated_at": {"$lte": cutoff}},
    ]}
    candidates = [p async for p in db["payments"].find(stale)]
    for candidate in candidates:
        payment = await _claim(db, candidate)
        if payment is None:
            continue
        try:
            await commit_order(db, settings, payment)
        except RollbackIncomplete as e:
            await _set_status(db, payment, NEEDS_REVIEW, (RECONCILING,))
            logger.error("reconcile_rollback_incomplete", gateway_order_id=payment["_id"], writes_left=e.failed)
            report["failed"] += 1
            continue
        except CommitError as e:
            if not await _order_exists(db, payment["order_id"]):
                logger.warning("reconcile_commit_failed", gateway_order_id=payment["_id"], error=str(e))
                report[await _refund(db, gateway, payment)] += 1
                continue

        await _mark_fulfilled(db, payment)
        await _clear_committed_lines(db, settings, payment, hub)
        logger.info("payment_reconciled", gateway_order_id=payment["_id"], order_id=payment["order_id"])
        report["completed"] += 1
    return report


async def _refund(db: AsyncIOMotorDatabase, gateway: RazorpayClient, payment: Dict[str, Any]) -> str:
    try:
        refund = await run_in_threadpool(gateway.refund, payment["payment_id"], payment["amount_minor"])
    except GatewayError as ge:
        logger.error("reconcile_refund_failed", gateway_order_id=payment["_id"],
                     payment_id=payment["payment_id"], status_code=ge.status_code)
        # release the claim so the next run retries
        await _set_status(db, payment, CAPTURED, (RECONCILING,))
        return "failed"
    await _set_status(db, payment, REFUNDED, (RECONCILING,), refund_id=refund.get("id"))
    logger.info("payment_refunded", gateway_order_id=payment["_id"], payment_id=payment["payment_id"])
    return "refunded"


# ---------- Reading orders ----------

async def get_order_items(db: AsyncIOMotorDatabase, order_id: str) -> List[Dict[str, Any]]:
    return await get_documents(db, "order_items", {"order_id": order_id})


async def get_order(db: AsyncIOMotorDatabase, order_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    filter_dict: Dict[str, Any] = {"_id": order_id}
    if user_id is not None:
        filter_dict["user_id"] = user_id
    order = serialize(await db["orders"].find_one(filter_dict))
    if order is None:
        return None
    order["items"] = await get_order_items(db, order_id)
    return order


async def list_user_orders(db: AsyncIOMotorDatabase, user_id: str) -> List[Dict[str, Any]]:
    return await get_documents(db, "orders", {"user_id": user_id}, sort=[("created_at", -1)])

"""
Back office: order listing, dashboard, users, products, messages, tutorials.

Orders live in one top-level collection, so the listing is a single query
plus one ``$in`` lookup for the owners' display fields.
"""

from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from storefront import catalog, checkout, tutorials
from storefront.addresses import list_addresses
from storefront.auth import admin_user, public_user
from storefront.database import get_db, get_documents, now, serialize
from storefront.events import EventHub, get_hub
from storefront.payments import RazorpayClient, get_gateway
from storefront.schemas import ChapterIn, OrderStatusUpdate, Product, ProductUpdate, StockUpdate, TutorialIn
from storefront.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

STATUS_SORT_ORDER = ["paid", "shipped", "delivered", "cancelled"]

OrderSort = Literal["date_desc", "date_asc", "status_asc", "status_desc"]
UserSort = Literal["role_desc", "date_asc", "date_desc", "name_asc", "name_desc"]


def status_rank(status: str) -> int:
    try:
        return STATUS_SORT_ORDER.index(status)
    except ValueError:
        return len(STATUS_SORT_ORDER)


def filter_orders(orders: List[Dict[str, Any]], query: str) -> List[Dict[str, Any]]:
    q = (query or "").lower()
    if not q:
        return list(orders)

    def matches(order):
        fields = (order.get("id"), order.get("user_name"), order.get("user_email"),
                  order.get("status"), order.get("user_id"))
        return any(f and q in f.lower() for f in fields)

    return [o for o in orders if matches(o)]


def sort_orders(orders: List[Dict[str, Any]], sort: str = "date_desc") -> List[Dict[str, Any]]:
    by_date = sorted(orders, key=lambda o: o["created_at"], reverse=sort != "date_asc")
    if sort == "status_asc":
        return sorted(by_date, key=lambda o: status_rank(o["status"]))
    if sort == "status_desc":
        return sorted(by_date, key=lambda o: status_rank(o["status"]), reverse=True)
    return by_date


async def annotate_orders(db: AsyncIOMotorDatabase, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    user_ids = list({o["user_id"] for o in orders})
    users = {}
    if user_ids:
        async for u in db["users"].find({"_id": {"$in": user_ids}}, {"display_name": 1, "email": 1}):
            users[u["_id"]] = u
    out = []
    for o in orders:
        u = users.get(o["user_id"], {})
        out.append({**o, "user_name": u.get("display_name"), "user_email": u.get("email")})
    return out


async def list_orders(
    db: AsyncIOMotorDatabase,
    query: str = "",
    sort: str = "date_desc",
    limit: Optional[int] = None,
    offset: int = 0,
) -> Dict[str, Any]:
    if query:
        # the search spans the owners' names and emails, so it runs after the lookup
        orders = await annotate_orders(db, await get_documents(db, "orders"))
        orders = sort_orders(filter_orders(orders, query), sort)
        page = orders[offset:offset + limit] if limit else orders[offset:]
        return {"orders": page, "total": len(orders)}

    if sort in ("status_asc", "status_desc"):
        page = await _page_by_status(db, sort, limit, offset)
    else:
        cursor = db["orders"].find({}).sort("created_at", 1 if sort == "date_asc" else -1).skip(offset)
        if limit:
            cursor = cursor.limit(limit)
        page = [serialize(o) async for o in cursor]
    return {"orders": await annotate_orders(db, page), "total": await db["orders"].count_documents({})}


async def _page_by_status(db: AsyncIOMotorDatabase, sort: str, limit: Optional[int], offset: int) -> List[Dict[str, Any]]:
    """Walk the status groups in priority order, newest first within each, one indexed query per group."""
    groups = [{"status": s} for s in STATUS_SORT_ORDER] + [{"status": {"$nin": STATUS_SORT_ORDER}}]
    if sort == "status_desc":
        groups.reverse()
    page: List[Dict[str, Any]] = []
    skip = offset
    for group in groups:
        if limit and len(page) >= limit:
            break
        size = await db["orders"].count_documents(group)
        if skip >= size:
            skip -= size
            continue
        cursor = db["orders"].find(group).sort("created_at", -1).skip(skip)
        if limit:
            cursor = cursor.limit(limit - len(page))
        page.extend([serialize(o) async for o in cursor])
        skip = 0
    return page


async def dashboard(db: AsyncIOMotorDatabase) -> Dict[str, Any]:
    orders = await get_documents(db, "orders", sort=[("created_at", -1)])
    recent = await annotate_orders(db, orders[:5])
    return {
        "total_revenue": sum(o["total"] for o in orders),
        "total_orders": len(orders),
        "total_users": await db["users"].count_documents({}),
        "recent_orders": recent,
    }


async def update_order_status(db: AsyncIOMotorDatabase, order_id: str, status: str) -> Dict[str, Any]:
    res = await db["orders"].update_one({"_id": order_id}, {"$set": {"status": status, "updated_at": now()}})
    if not res.matched_count:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("order_status_changed", order_id=order_id, status=status)
    return await checkout.get_order(db, order_id)


def filter_users(users: List[Dict[str, Any]], query: str) -> List[Dict[str, Any]]:
    q = (query or "").lower()
    if not q:
        return list(users)
    return [
        u for u in users
        if q in (u.get("display_name") or "").lower()
        or q in (u.get("email") or "").lower()
        or (u.get("is_admin") and q in "admin")
        or (not u.get("is_admin") and q in "customer")
    ]


def sort_users(users: List[Dict[str, Any]], sort: str = "role_desc") -> List[Dict[str, Any]]:
    if sort == "date_asc":
        return sorted(users, key=lambda u: u["created_at"])
    if sort == "date_desc":
        return sorted(users, key=lambda u: u["created_at"], reverse=True)
    if sort == "name_asc":
        return sorted(users, key=lambda u: (u.get("display_name") or "").lower())
    if sort == "name_desc":
        return sorted(users, key=lambda u: (u.get("display_name") or "").lower(), reverse=True)
    # admins first, newest first within each group
    newest = sorted(users, key=lambda u: u["created_at"], reverse=True)
    return sorted(newest, key=lambda u: not u.get("is_admin"))


async def list_users(db: AsyncIOMotorDatabase, query: str = "", sort: str = "role_desc") -> List[Dict[str, Any]]:
    users = [public_user(u) async for u in db["users"].find({})]
    return sort_users(filter_users(users, query), sort)


async def user_detail(db: AsyncIOMotorDatabase, user_id: str) -> Dict[str, Any]:
    user = await db["users"].find_one({"_id": user_id})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "user": public_user(user),
        "orders": await checkout.list_user_orders(db, user_id),
        "addresses": await list_addresses(db, user_id),
    }


async def toggle_admin(db: AsyncIOMotorDatabase, user_id: str) -> Dict[str, Any]:
    user = await db["users"].find_one({"_id": user_id})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    is_admin = not user.get("is_admin", False)
    await db["users"].update_one({"_id": user_id}, {"$set": {"is_admin": is_admin}})
    logger.info("admin_flag_changed", user_id=user_id, is_admin=is_admin)
    return public_user({**user, "is_admin": is_admin})


# ---------- Routes ----------

router = APIRouter(prefix="/api/admin", dependencies=[Depends(admin_user)])


@router.get("/dashboard")
async def get_dashboard(db: AsyncIOMotorDatabase = Depends(get_db)):
    return await dashboard(db)


@router.get("/orders")
async def get_orders(
    q: str = "",
    sort: OrderSort = "date_desc",
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    return await list_orders(db, q, sort, limit, offset)


@router.get("/orders/{order_id}")
async def get_order_detail(order_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    order = await checkout.get_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    owner = await db["users"].find_one({"_id": order["user_id"]})
    order["user"] = public_user(owner) if owner else None
    return order


@router.patch("/orders/{order_id}")
async def patch_order_status(order_id: str, payload: OrderStatusUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await update_order_status(db, order_id, payload.status)


@router.post("/payments/reconcile")
async def post_reconcile(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    return await checkout.reconcile_payments(db, gateway, settings, hub)


@router.get("/users")
async def get_users(q: str = "", sort: UserSort = "role_desc", db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"users": await list_users(db, q, sort)}


@router.get("/users/{user_id}")
async def get_user(user_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await user_detail(db, user_id)


@router.post("/users/{user_id}/toggle-admin")
async def post_toggle_admin(user_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await toggle_admin(db, user_id)


@router.post("/products", status_code=201)
async def post_product(product: Product, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await catalog.create_product(db, product.model_dump())


@router.patch("/products/{product_id}")
async def patch_product(product_id: str, changes: ProductUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await catalog.update_product(db, product_id, changes.model_dump(exclude_unset=True))


@router.put("/products/{product_id}/stock")
async def put_stock(product_id: str, payload: StockUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await catalog.update_product(db, product_id, {"stock": payload.stock})


@router.delete("/products/{product_id}", status_code=204)
async def remove_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    await catalog.delete_product(db, product_id)


@router.get("/messages")
async def get_messages(db: AsyncIOMotorDatabase = Depends(get_db)):
    return {"messages": await catalog.list_messages(db)}


@router.post("/messages/{message_id}/toggle-read")
async def post_toggle_read(message_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await catalog.toggle_message_read(db, message_id)


@router.delete("/messages/{message_id}", status_code=204)
async def remove_message(message_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    await catalog.delete_message(db, message_id)


@router.post("/tutorials/chapters", status_code=201)
async def post_chapter(payload: ChapterIn, db: AsyncIOMotorDatabase = Depends(get_db),
                       hub: EventHub = Depends(get_hub)):
    return await tutorials.create_chapter(db, payload.model_dump(), hub)


@router.put("/tutorials/chapters/{chapter_id}")
async def put_chapter(chapter_id: str, payload: ChapterIn, db: AsyncIOMotorDatabase = Depends(get_db),
                      hub: EventHub = Depends(get_hub)):
    return await tutorials.update_chapter(db, chapter_id, payload.model_dump(), hub)


@router.delete("/tutorials/chapters/{chapter_id}")
async def remove_chapter(
    chapter_id: str,
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: EventHub = Depends(get_hub),
):
    removed = await tutorials.delete_chapter(db, chapter_id, settings.use_transactions, hub)
    return {"deleted": chapter_id, "tutorials_deleted": removed}


@router.post("/tutorials/chapters/{chapter_id}/tutorials", status_code=201)
async def post_tutorial(chapter_id: str, payload: TutorialIn, db: AsyncIOMotorDatabase = Depends(get_db),
                        hub: EventHub = Depends(get_hub)):
    return await tutorials.create_tutorial(db, chapter_id, payload.model_dump(), hub)


@router.put("/tutorials/{tutorial_id}")
async def put_tutorial(tutorial_id: str, payload: TutorialIn, db: AsyncIOMotorDatabase = Depends(get_db),
                       hub: EventHub = Depends(get_hub)):
    return await tutorials.update_tutorial(db, tutorial_id, payload.model_dump(), hub)


@router.delete("/tutorials/{tutorial_id}", status_code=204)
async def remove_tutorial(tutorial_id: str, db: AsyncIOMotorDatabase = Depends(get_db),
                          hub: EventHub = Depends(get_hub)):
    await tutorials.delete_tutorial(db, tutorial_id, hub)

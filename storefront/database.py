from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta, timezone

import structlog
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from storefront.settings import get_settings

logger = structlog.get_logger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None

# mongod purges verification and reset tokens past this age
AUTH_TOKEN_MAX_AGE = timedelta(hours=24)


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.database_url)
        _db = _client[settings.database_name]
    return _db


def new_id() -> str:
    return str(ObjectId())


def now() -> datetime:
    return datetime.now(timezone.utc)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return a copy of a stored document with ``_id`` exposed as ``id``."""
    if doc is None:
        return None
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc["_id"])
    return out


async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    ts = now()
    payload = {"_id": data.get("id") or new_id(), **{k: v for k, v in data.items() if k != "id"}}
    payload.setdefault("created_at", ts)
    payload["updated_at"] = ts
    await db[collection_name].insert_one(payload)
    return serialize(payload)


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    limit: int = 0,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    docs = []
    async for d in cursor:
        docs.append(serialize(d))
    return docs


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db["users"].create_index("email", unique=True)
    await db["cart"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    await db["addresses"].create_index("user_id")
    await db["orders"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    await db["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db["order_items"].create_index("order_id")
    await db["payments"].create_index([("status", ASCENDING), ("captured_at", ASCENDING)])
    await db["auth_tokens"].create_index("created_at", expireAfterSeconds=int(AUTH_TOKEN_MAX_AGE.total_seconds()))
    await db["reviews"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    await db["tutorials"].create_index([("chapter_id", ASCENDING), ("order", ASCENDING)])


# ---------- Atomic multi-write ----------

class CommitError(Exception):
    """A write batch could not be applied. Unless it is a ``RollbackIncomplete``, none of its writes remain."""


class OutOfStock(CommitError):
    def __init__(self, collection: str, doc_id: str, field: str, amount: int):
        self.collection = collection
        self.doc_id = doc_id
        self.field = field
        self.amount = amount
        super().__init__(f"{collection}/{doc_id}: cannot take {amount} from {field}")


class RollbackIncomplete(CommitError):
    """A failed batch could not be fully undone; some of its writes remain."""

    def __init__(self, message: str, failed: int):
        self.failed = failed
        super().__init__(message)


Compensator = Callable[[], Awaitable[None]]


class WriteBatch:
    """
    Collects writes and applies them as one unit.

    With transactions enabled the writes run inside a MongoDB transaction.
    Without them (standalone servers, tests) each applied write records a
    compensator; a failure runs the compensators in reverse before raising.
    """

    def __init__(self, db: AsyncIOMotorDatabase, use_transactions: bool = False):
        self.db = db
        self.use_transactions = use_transactions
        self._ops: List[Tuple[str, str, tuple]] = []

    def __len__(self) -> int:
        return len(self._ops)

    def insert(self, collection: str, doc: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("insert", collection, (doc,)))
        return self

    def set(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("set", collection, (doc_id, fields)))
        return self

    def decrement(self, collection: str, doc_id: str, field: str, amount: int, floor: int = 0) -> "WriteBatch":
        self._ops.append(("decrement", collection, (doc_id, field, amount, floor)))
        return self

    def delete_many(self, collection: str, filter_dict: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("delete_many", collection, (filter_dict,)))
        return self

    async def commit(self) -> None:
        if not self._ops:
            return
        if self.use_transactions:
            await self._commit_transaction()
        else:
            await self._commit_compensated()

    async def _commit_transaction(self) -> None:
        async with await self.db.client.start_session() as session:
            try:
                async with session.start_transaction():
                    for kind, collection, args in self._ops:
                        await self._apply(kind, collection, args, session)
            except CommitError:
                raise
            except Exception as e:
                raise CommitError(str(e)) from e

    async def _commit_compensated(self) -> None:
        compensators: List[Compensator] = []
        try:
            for kind, collection, args in self._ops:
                compensators.append(await self._apply(kind, collection, args, None))
        except Exception as e:
            failed = await self._rollback(compensators)
            logger.error("batch_rolled_back", ops=len(self._ops), applied=len(compensators),
                         compensators_failed=failed, error=str(e))
            if failed:
                raise RollbackIncomplete(f"{failed} of {len(compensators)} writes left behind: {e}", failed) from e
            if isinstance(e, CommitError):
                raise
            raise CommitError(str(e)) from e

    async def _rollback(self, compensators: List[Compensator]) -> int:
        failed = 0
        for comp in reversed(compensators):
            try:
                await comp()
            except Exception:
                failed += 1
                logger.exception("compensator_failed")
        return failed

    async def _apply(self, kind: str, collection: str, args: tuple, session) -> Compensator:
        coll = self.db[collection]
        kw = {"session": session} if session is not None else {}

        if kind == "insert":
            (doc,) = args
            await coll.insert_one(dict(doc), **kw)

            async def undo_insert():
                await coll.delete_one({"_id": doc["_id"]})
            return undo_insert

        if kind == "set":
            doc_id, fields = args
            before = await coll.find_one({"_id": doc_id}, **kw)
            if before is None:
                raise CommitError(f"{collection}/{doc_id} not found")
            await coll.update_one({"_id": doc_id}, {"$set": fields}, **kw)

            async def undo_set():
                await coll.replace_one({"_id": doc_id}, before)
            return undo_set

        if kind == "decrement":
            doc_id, field, amount, floor = args
            res = await coll.update_one(
                {"_id": doc_id, field: {"$gte": floor + amount}},
                {"$inc": {field: -amount}},
                **kw,
            )
            if res.matched_count == 0:
                raise OutOfStock(collection, doc_id, field, amount)

            async def undo_decrement():
                await coll.update_one({"_id": doc_id}, {"$inc": {field: amount}})
            return undo_decrement

        if kind == "delete_many":
            (filter_dict,) = args
            removed = [d async for d in coll.find(filter_dict, **kw)]
            await coll.delete_many(filter_dict, **kw)

            async def undo_delete():
                if removed:
                    await coll.insert_many(removed)
            return undo_delete

        raise ValueError(f"unknown batch operation {kind}")

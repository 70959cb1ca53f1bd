from typing import Any, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorDatabase

from storefront.database import WriteBatch, create_document, get_documents, now, serialize
from storefront.events import TUTORIALS_TOPIC, EventHub

logger = structlog.get_logger(__name__)

# Fields only shown to viewers who pass the purchase gate
BODY_FIELDS = ("video_id", "code", "transcript", "notes")


class NotFound(Exception):
    status_code = 404


def gate(tutorial: Dict[str, Any], unlocked: bool) -> Dict[str, Any]:
    if unlocked:
        return {**tutorial, "locked": False}
    return {**{k: v for k, v in tutorial.items() if k not in BODY_FIELDS}, "locked": True}


async def get_tree(db: AsyncIOMotorDatabase) -> List[Dict[str, Any]]:
    """Chapters by ``order``, each holding its tutorials by ``order``."""
    chapters = await get_documents(db, "tutorial_chapters", sort=[("order", 1)])
    by_chapter = {c["id"]: {**c, "tutorials": []} for c in chapters}
    for tutorial in await get_documents(db, "tutorials", sort=[("order", 1)]):
        chapter = by_chapter.get(tutorial["chapter_id"])
        if chapter is not None:
            chapter["tutorials"].append(tutorial)
    return list(by_chapter.values())


def gate_tree(tree: List[Dict[str, Any]], unlocked: bool) -> List[Dict[str, Any]]:
    return [{**c, "tutorials": [gate(t, unlocked) for t in c["tutorials"]]} for c in tree]


async def get_tutorial(db: AsyncIOMotorDatabase, tutorial_id: str) -> Dict[str, Any]:
    tutorial = serialize(await db["tutorials"].find_one({"_id": tutorial_id}))
    if tutorial is None:
        raise NotFound("Tutorial not found")
    chapter = serialize(await db["tutorial_chapters"].find_one({"_id": tutorial["chapter_id"]}))
    tutorial["chapter"] = {"id": chapter["id"], "title": chapter["title"], "order": chapter["order"]} if chapter else None
    return tutorial


async def _publish(db: AsyncIOMotorDatabase, hub: Optional[EventHub]) -> None:
    # subscribers get the outline only; bodies stay behind the purchase gate
    if hub is not None and hub.subscriber_count(TUTORIALS_TOPIC):
        hub.publish(TUTORIALS_TOPIC, gate_tree(await get_tree(db), False))


# ---------- Admin edits ----------

async def create_chapter(db, data: Dict[str, Any], hub: Optional[EventHub] = None) -> Dict[str, Any]:
    chapter = await create_document(db, "tutorial_chapters", data)
    logger.info("chapter_created", chapter_id=chapter["id"])
    await _publish(db, hub)
    return chapter


async def update_chapter(db, chapter_id: str, data: Dict[str, Any], hub: Optional[EventHub] = None) -> Dict[str, Any]:
    res = await db["tutorial_chapters"].update_one({"_id": chapter_id}, {"$set": {**data, "updated_at": now()}})
    if not res.matched_count:
        raise NotFound("Chapter not found")
    await _publish(db, hub)
    return serialize(await db["tutorial_chapters"].find_one({"_id": chapter_id}))


async def delete_chapter(db, chapter_id: str, use_transactions: bool = False,
                         hub: Optional[EventHub] = None) -> int:
    """Delete a chapter together with its tutorials. Returns how many tutorials went with it."""
    if not await db["tutorial_chapters"].find_one({"_id": chapter_id}, {"_id": 1}):
        raise NotFound("Chapter not found")
    count = await db["tutorials"].count_documents({"chapter_id": chapter_id})
    batch = WriteBatch(db, use_transactions=use_transactions)
    batch.delete_many("tutorials", {"chapter_id": chapter_id})
    batch.delete_many("tutorial_chapters", {"_id": chapter_id})
    await batch.commit()
    logger.info("chapter_deleted", chapter_id=chapter_id, tutorials=count)
    await _publish(db, hub)
    return count


async def create_tutorial(db, chapter_id: str, data: Dict[str, Any], hub: Optional[EventHub] = None) -> Dict[str, Any]:
    if not await db["tutorial_chapters"].find_one({"_id": chapter_id}, {"_id": 1}):
        raise NotFound("Chapter not found")
    tutorial = await create_document(db, "tutorials", {**data, "chapter_id": chapter_id})
    logger.info("tutorial_created", tutorial_id=tutorial["id"], chapter_id=chapter_id)
    await _publish(db, hub)
    return tutorial


async def update_tutorial(db, tutorial_id: str, data: Dict[str, Any], hub: Optional[EventHub] = None) -> Dict[str, Any]:
    res = await db["tutorials"].update_one({"_id": tutorial_id}, {"$set": {**data, "updated_at": now()}})
    if not res.matched_count:
        raise NotFound("Tutorial not found")
    await _publish(db, hub)
    return serialize(await db["tutorials"].find_one({"_id": tutorial_id}))


async def delete_tutorial(db, tutorial_id: str, hub: Optional[EventHub] = None) -> None:
    res = await db["tutorials"].delete_one({"_id": tutorial_id})
    if not res.deleted_count:
        raise NotFound("Tutorial not found")
    logger.info("tutorial_deleted", tutorial_id=tutorial_id)
    await _publish(db, hub)

"""MongoDB-backed message store using Motor (async).

Collections:
    messages:
        - _id: ObjectId (exposed as the message ``id``)
        - group_id, sender, body, attachment
        - sequence: per-group insertion order, unique with group_id
        - ts: server timestamp (seconds since epoch)
    message_counters:
        - _id: group_id
        - seq: last sequence handed out for that group

Sequences come from an atomic ``$inc`` on the counters collection, so
concurrent writers on different processes still get a strict per-group
order. A sequence whose insert fails is simply skipped; readers only rely on
the order, not on contiguity.
"""
import logging
import time
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from quorum.chat.errors import StorageError
from quorum.chat.schemas import NewMessage, StoredMessage

from .base import MessageStore

logger = logging.getLogger(__name__)


class MongoMessageStore(MessageStore):
    """Durable store on a MongoDB database.

    Args:
        database: Motor database handle.
        collection: Name of the messages collection.
        counters_collection: Name of the per-group sequence counters collection.
        client: Owning client, closed by ``close()`` when given.
    """

    name = "mongo"

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        collection: str = "messages",
        counters_collection: str = "message_counters",
        client: Optional[AsyncIOMotorClient] = None,
    ) -> None:
        self._db = database
        self._messages = database[collection]
        self._counters = database[counters_collection]
        self._client = client

    @classmethod
    def from_url(
        cls,
        url: str,
        database: str = "quorum",
        collection: str = "messages",
        counters_collection: str = "message_counters",
        server_selection_timeout_ms: int = 5000,
    ) -> "MongoMessageStore":
        """Create a store with its own client. Motor connects lazily."""
        client = AsyncIOMotorClient(url, serverSelectionTimeoutMS=server_selection_timeout_ms)
        return cls(
            client[database],
            collection=collection,
            counters_collection=counters_collection,
            client=client,
        )

    async def ensure_ready(self) -> None:
        try:
            await self._messages.create_index(
                [("group_id", ASCENDING), ("sequence", ASCENDING)],
                unique=True,
                name="group_sequence",
            )
        except PyMongoError as e:
            raise StorageError(f"Could not prepare message indexes: {e}") from e
        logger.info("[Store] Mongo indexes ready on %s", self._messages.name)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            logger.info("[Store] Mongo client closed")

    async def _next_sequence(self, group_id: str) -> int:
        counter = await self._counters.find_one_and_update(
            {"_id": group_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def append(self, message: NewMessage) -> StoredMessage:
        try:
            sequence = await self._next_sequence(message.group_id)
            doc: Dict[str, Any] = {
                "group_id": message.group_id,
                "sender": message.sender,
                "body": message.body,
                "attachment": message.attachment,
                "sequence": sequence,
                "ts": time.time(),
            }
            result = await self._messages.insert_one(doc)
        except PyMongoError as e:
            logger.error(f"[Store] Append to {message.group_id} failed: {e}")
            raise StorageError(f"Could not save message: {e}") from e

        doc["_id"] = result.inserted_id
        return _to_message(doc)

    async def query(
        self,
        group_id: str,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessage]:
        criteria: Dict[str, Any] = {"group_id": group_id}
        if since is not None:
            criteria["sequence"] = {"$gt": since}

        cursor = self._messages.find(criteria).sort("sequence", ASCENDING)
        if limit is not None:
            cursor = cursor.limit(limit)
        try:
            return [_to_message(doc) async for doc in cursor]
        except PyMongoError as e:
            logger.error(f"[Store] Query for {group_id} failed: {e}")
            raise StorageError(f"Could not load messages: {e}") from e


def _to_message(doc: Dict[str, Any]) -> StoredMessage:
    return StoredMessage(
        id=str(doc["_id"]),
        group_id=doc["group_id"],
        sender=doc["sender"],
        body=doc.get("body") or "",
        attachment=doc.get("attachment"),
        sequence=doc["sequence"],
        ts=doc["ts"],
    )

from __future__ import annotations

from typing import Any, List, Optional

from pymongo import ReturnDocument

from .db import InMemoryDatabase
from .utils import now_ms


class ChannelHistory:
    """Keep published channel messages so late joiners and pollers can replay them."""

    def __init__(self, database: InMemoryDatabase):
        self.counters_collection = database.channel_counters
        self.messages_collection = database.channel_messages

    async def append(self, channel: str, name: str, data: Any, client_id: Optional[str] = None) -> int:
        """Store a message for a channel and return its sequence number."""

        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": channel},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        seq = int(counter_doc["seq"])

        await self.messages_collection.insert_one(
            {
                "channel": channel,
                "seq": seq,
                "name": name,
                "data": data,
                "client_id": client_id,
                "timestamp": now_ms(),
            }
        )
        return seq

    async def list(
        self, channel: str, after: int | None = None, limit: int = 200, newest_first: bool = False
    ) -> List[dict[str, Any]]:
        """Return messages for a channel published after the given sequence."""

        query: dict[str, Any] = {"channel": channel}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = self.messages_collection.find(query).sort("seq", -1 if newest_first else 1).limit(limit)
        return [_public(doc) async for doc in cursor]


def _public(doc: dict[str, Any]) -> dict[str, Any]:
    return {
        "seq": doc["seq"],
        "name": doc.get("name"),
        "data": doc.get("data"),
        "clientId": doc.get("client_id"),
        "timestamp": doc.get("timestamp"),
    }

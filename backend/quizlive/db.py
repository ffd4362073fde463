from __future__ import annotations

import asyncio
import copy
import operator
from functools import lru_cache
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    API_KEY: Optional[str] = None
    TOKEN_TTL_SECONDS: int = 3600
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None

    ANSWER_RATE_LIMIT_MAX: int = 5
    ANSWER_RATE_LIMIT_WINDOW_MS: int = 10_000
    TOKEN_RATE_LIMIT_MAX: int = 30
    TOKEN_RATE_LIMIT_WINDOW_MS: int = 60_000

    HISTORY_LIMIT: int = 200
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()


_QUERY_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": operator.gt,
}


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort: Optional[tuple[str, int]] = None
        self._limit: Optional[int] = None
        self._docs: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._sort = (key, direction)
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def to_list(self) -> List[Dict[str, Any]]:
        return [doc async for doc in self]

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._docs is None:
            docs = await self._collection._find_all(self._query)
            if self._sort is not None:
                key, direction = self._sort
                docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
            if self._limit is not None:
                docs = docs[: self._limit]
            self._docs = iter(docs)
        try:
            return next(self._docs)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    """Just enough of the motor collection API for the session registry and channel history."""

    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if _matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._first(query)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, query: Optional[Dict[str, Any]] = None):
        return InMemoryCursor(self, query or {})

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def delete_one(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            doc = self._first(query)
            if doc is None:
                return 0
            self._docs.remove(doc)
            return 1

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        await self.find_one_and_update(query, update, upsert=upsert)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: ReturnDocument = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._first(query)
            if doc is None:
                if not upsert:
                    return None
                doc = {k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict)}
                self._docs.append(doc)
                original = None
            else:
                original = copy.deepcopy(doc)
            _apply_update(doc, update)
            if return_document == ReturnDocument.AFTER:
                return copy.deepcopy(doc)
            return original

    def _first(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for doc in self._docs:
            if _matches(doc, query):
                return doc
        return None


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    for op, payload in update.items():
        if op == "$set":
            for key, value in payload.items():
                doc[key] = copy.deepcopy(value)
        elif op == "$inc":
            for key, value in payload.items():
                doc[key] = doc.get(key, 0) + value
        else:  # pragma: no cover - only the above operators are used today
            raise ValueError(f"Unsupported update operator: {op}")


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in (query or {}).items():
        actual = doc.get(key)
        if isinstance(expected, dict):
            for op, operand in expected.items():
                compare = _QUERY_OPERATORS.get(op)
                if compare is None:  # pragma: no cover - extend as new operators are required
                    raise ValueError(f"Unsupported query operator: {op}")
                if actual is None or not compare(actual, operand):
                    return False
        elif actual != expected:
            return False
    return True


class InMemoryDatabase:
    def __init__(self):
        self.sessions = InMemoryCollection()
        self.channel_counters = InMemoryCollection()
        self.channel_messages = InMemoryCollection()



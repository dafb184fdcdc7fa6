"""
Redis-backed document store.

Each document is one hash at ``{prefix}:{collection}:{doc_id}``. Nested maps
are flattened into dotted hash fields and every field value is JSON encoded,
so integer counters stay plain decimal strings that HINCRBY can update in
place.

Lookups by field go through sorted-set indexes at
``{prefix}:{collection}:_by:{field}:{value}``, scored by the document's
``timestamp`` (or its write time), for the fields configured per collection.
Index entries are not removed when a document changes, so every hit is
checked against the stored document.
"""

import json
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from .base import DocumentStore, flatten, timestamp_of, unflatten

# Marker field that records which writer created a hash.
CREATED_FIELD = "_created"


class RedisDocumentStore(DocumentStore):
    """DocumentStore on top of Redis hashes."""

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "aigw",
        indexes: Optional[Dict[str, Iterable[str]]] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.indexes = {collection: tuple(fields) for collection, fields in (indexes or {}).items()}
        self.logger = get_logger("gateway.storage.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Connect and verify the server answers."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis document store started", key_prefix=self.key_prefix)
        except Exception as e:
            self.logger.error("Failed to start Redis document store", error=str(e))
            raise StoreUnavailableError(str(e))

    async def stop(self):
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis document store stopped")

    async def health_check(self) -> bool:
        try:
            return bool(await self._client().ping())
        except Exception as e:
            self.logger.warning("Redis health check failed", error=str(e))
            return False

    def _client(self) -> redis.Redis:
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self.redis

    def _key(self, collection: str, doc_id: str) -> str:
        return f"{self.key_prefix}:{collection}:{doc_id}"

    def _index_key(self, collection: str, field: str, value: Any) -> str:
        return f"{self.key_prefix}:{collection}:_by:{field}:{value}"

    def is_indexed(self, collection: str, field: str) -> bool:
        return field in self.indexes.get(collection, ())

    def _index(self, pipe, collection: str, doc_id: str, data: Dict[str, Any]):
        timestamp = timestamp_of(data)
        score = timestamp.timestamp() if timestamp else time.time()
        for field in self.indexes.get(collection, ()):
            value = data.get(field)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                pipe.zadd(self._index_key(collection, field, value), {doc_id: score})

    @staticmethod
    def _encode(data: Dict[str, Any]) -> Dict[str, str]:
        return {name: json.dumps(value) for name, value in flatten(data).items()}

    @staticmethod
    def _decode(raw: Dict[str, str]) -> Dict[str, Any]:
        return unflatten({
            name: json.loads(value) for name, value in raw.items() if name != CREATED_FIELD
        })

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._client().hgetall(self._key(collection, doc_id))
        if not raw:
            return None
        return self._decode(raw)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        key = self._key(collection, doc_id)
        encoded = self._encode(data)
        async with self._client().pipeline(transaction=True) as pipe:
            if not merge:
                pipe.delete(key)
            if encoded:
                pipe.hset(key, mapping=encoded)
            self._index(pipe, collection, doc_id, data)
            await pipe.execute()

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        key = self._key(collection, doc_id)
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, CREATED_FIELD, "true")
            # Fields already written by a concurrent increment are left alone.
            for name, value in self._encode(data).items():
                pipe.hsetnx(key, name, value)
            self._index(pipe, collection, doc_id, data)
            results = await pipe.execute()
        return bool(results[0])

    async def increment(
        self,
        collection: str,
        doc_id: str,
        amounts: Dict[str, int],
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        key = self._key(collection, doc_id)
        names = list(amounts.keys())
        async with self._client().pipeline(transaction=True) as pipe:
            for name in names:
                pipe.hincrby(key, name, int(amounts[name]))
            if fields:
                pipe.hset(key, mapping=self._encode(fields))
            results = await pipe.execute()
        return {name: int(results[index]) for index, name in enumerate(names)}

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        key = self._key(collection, doc_id)
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=self._encode(data) or {CREATED_FIELD: "true"})
            self._index(pipe, collection, doc_id, data)
            await pipe.execute()
        return doc_id

    async def find(
        self,
        collection: str,
        field: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        client = self._client()
        if self.is_indexed(collection, field):
            doc_ids = await client.zrange(self._index_key(collection, field, value), 0, -1)
        else:
            self.logger.debug("Unindexed lookup scans the collection", collection=collection, field=field)
            prefix = self._key(collection, "")
            doc_ids = [
                key[len(prefix):]
                async for key in client.scan_iter(match=f"{prefix}*")
                if not key[len(prefix):].startswith("_by:")
            ]

        results = []
        for doc_id, document in await self._load(collection, doc_ids):
            if document.get(field) != value:
                continue
            results.append({"id": doc_id, **document})
            if limit is not None and len(results) >= limit:
                break
        return results

    async def find_recent(
        self,
        collection: str,
        field: str,
        value: Any,
        since: datetime,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if self.is_indexed(collection, field):
            doc_ids = await self._client().zrevrangebyscore(
                self._index_key(collection, field, value),
                "+inf",
                since.timestamp(),
                start=0 if limit is not None else None,
                num=limit,
            )
            candidates = [{"id": doc_id, **document} for doc_id, document in await self._load(collection, doc_ids)]
        else:
            candidates = await self.find(collection, field, value)

        matches: List[Tuple[datetime, Dict[str, Any]]] = []
        for document in candidates:
            timestamp = timestamp_of(document)
            if document.get(field) == value and timestamp is not None and timestamp >= since:
                matches.append((timestamp, document))
        matches.sort(key=lambda match: match[0], reverse=True)
        return [document for _, document in matches[:limit]]

    async def _load(self, collection: str, doc_ids: List[str]) -> List[Tuple[str, Dict[str, Any]]]:
        """Fetch several documents in one round trip, skipping missing ones."""
        if not doc_ids:
            return []
        async with self._client().pipeline(transaction=False) as pipe:
            for doc_id in doc_ids:
                pipe.hgetall(self._key(collection, doc_id))
            raws = await pipe.execute()
        return [(doc_id, self._decode(raw)) for doc_id, raw in zip(doc_ids, raws) if raw]

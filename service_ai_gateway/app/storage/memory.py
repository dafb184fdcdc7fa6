"""
In-process document store.

Used for local development and unit tests. A single asyncio lock
serializes every operation, which gives ``increment`` and ``create`` the
same atomicity the Redis store provides.
"""

import asyncio
import copy
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import DocumentStore, split_path, timestamp_of


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed DocumentStore."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.reads = 0

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            self.reads += 1
            document = self._collection(collection).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        async with self._lock:
            documents = self._collection(collection)
            if merge and doc_id in documents:
                _deep_merge(documents[doc_id], copy.deepcopy(data))
            else:
                documents[doc_id] = copy.deepcopy(data)

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        async with self._lock:
            documents = self._collection(collection)
            if doc_id in documents:
                return False
            documents[doc_id] = copy.deepcopy(data)
            return True

    async def increment(
        self,
        collection: str,
        doc_id: str,
        amounts: Dict[str, int],
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        async with self._lock:
            document = self._collection(collection).setdefault(doc_id, {})
            if fields:
                _deep_merge(document, copy.deepcopy(fields))

            totals: Dict[str, int] = {}
            for path, amount in amounts.items():
                parts = split_path(path)
                target = document
                for part in parts[:-1]:
                    target = target.setdefault(part, {})
                target[parts[-1]] = int(target.get(parts[-1], 0) or 0) + int(amount)
                totals[path] = target[parts[-1]]
            return totals

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        async with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy(data)
        return doc_id

    async def find(
        self,
        collection: str,
        field: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            self.reads += 1
            results = []
            for doc_id, document in self._collection(collection).items():
                if document.get(field) == value:
                    results.append({"id": doc_id, **copy.deepcopy(document)})
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
        async with self._lock:
            self.reads += 1
            matches = []
            for doc_id, document in self._collection(collection).items():
                timestamp = timestamp_of(document)
                if document.get(field) == value and timestamp is not None and timestamp >= since:
                    matches.append((timestamp, {"id": doc_id, **copy.deepcopy(document)}))
            matches.sort(key=lambda match: match[0], reverse=True)
            return [document for _, document in matches[:limit]]

    def count(self, collection: str) -> int:
        """Number of documents in a collection (test helper)."""
        return len(self._collections.get(collection, {}))

    def documents(self, collection: str) -> List[Dict[str, Any]]:
        """Snapshot of every document in a collection, in insertion order."""
        return [copy.deepcopy(doc) for doc in self._collections.get(collection, {}).values()]


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value

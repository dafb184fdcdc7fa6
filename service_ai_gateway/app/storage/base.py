"""
Document store interface shared by the gateway components.

Documents are JSON-compatible dicts addressed by (collection, doc_id).
Field names passed to ``increment`` may be dotted paths
("usage_by_operation.image_generation") to address a key inside a nested
map; stores apply those increments atomically.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class DocumentStore(ABC):
    """Abstract persistent store for projects, counters and ledgers."""

    async def start(self) -> None:
        """Open connections. No-op by default."""

    async def stop(self) -> None:
        """Close connections. No-op by default."""

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document, or None if absent."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Write a document, replacing it unless ``merge`` is set."""

    @abstractmethod
    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        """Write ``data`` only if the document does not exist yet.

        Returns True when this call created the document.
        """

    @abstractmethod
    async def increment(
        self,
        collection: str,
        doc_id: str,
        amounts: Dict[str, int],
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, int]:
        """Atomically add ``amounts`` to numeric fields and merge ``fields``.

        Missing documents and fields start from zero. Returns the values of
        the incremented fields after the update.
        """

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Append a new document with a generated id and return the id."""

    @abstractmethod
    async def find(
        self,
        collection: str,
        field: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return documents whose top-level ``field`` equals ``value``.

        Each result carries its document id under ``"id"``.
        """

    @abstractmethod
    async def find_recent(
        self,
        collection: str,
        field: str,
        value: Any,
        since: datetime,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Like ``find``, restricted to documents timestamped at or after ``since``.

        Results are ordered newest first. Documents without a parseable
        ``timestamp`` field are skipped.
        """


def timestamp_of(document: Dict[str, Any]) -> Optional[datetime]:
    """The document's ``timestamp`` field as an aware datetime, if present."""
    value = document.get("timestamp")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def split_path(path: str) -> List[str]:
    return path.split(".")


def get_path(document: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted path from a nested dict."""
    current: Any = document
    for part in split_path(path):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def flatten(data: Dict[str, Any], parent: str = "") -> Dict[str, Any]:
    """Flatten nested maps into dotted keys. Lists are kept as values."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{parent}.{key}" if parent else key
        if isinstance(value, dict) and value:
            flat.update(flatten(value, name))
        else:
            flat[name] = value
    return flat


def unflatten(flat: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of ``flatten``."""
    document: Dict[str, Any] = {}
    for name, value in flat.items():
        parts = split_path(name)
        target = document
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        if value == {} and isinstance(target.get(parts[-1]), dict):
            continue
        target[parts[-1]] = value
    return document

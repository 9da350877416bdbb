from __future__ import annotations

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from .errors import BatchCommitError
from .models import InstanceEntity, PatternEntity
from .settings import get_settings

logger = logging.getLogger(__name__)

INSTANCES = "instances"
RECURRENCES = "recurrences"

# Fields a caller may change on an existing document.
INSTANCE_MUTABLE_FIELDS = {"name", "date", "completed", "is_recurring", "recurrence_id"}
PATTERN_MUTABLE_FIELDS = {"name", "rrule", "starts_on"}


@dataclass(frozen=True)
class InstanceQuery:
    """
    Filters for querying a user's instances. All set filters must match.

    - date: equality on the 'YYYY-MM-DD' date
    - date_from / date_to: inclusive date range
    - recurrence_id: equality on the owning pattern id
    - is_recurring: equality on the recurring flag

    Results are ordered by date, then created_at.
    """
    date: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    recurrence_id: Optional[str] = None
    is_recurring: Optional[bool] = None

    def matches(self, item: InstanceEntity) -> bool:
        if self.date is not None and item["date"] != self.date:
            return False
        if self.date_from is not None and item["date"] < self.date_from:
            return False
        if self.date_to is not None and item["date"] > self.date_to:
            return False
        if self.recurrence_id is not None and item["recurrence_id"] != self.recurrence_id:
            return False
        if self.is_recurring is not None and item["is_recurring"] != self.is_recurring:
            return False
        return True


@dataclass(frozen=True)
class BatchOp:
    """One write inside a WriteBatch."""
    kind: str  # 'delete' or 'update'
    collection: str  # INSTANCES or RECURRENCES
    doc_id: str
    changes: Dict[str, Any] = field(default_factory=dict)


class WriteBatch:
    """
    Collects deletes and updates for one user partition and commits them
    atomically: either every operation persists or none does.
    """

    def __init__(self, store: "Store", user_id: str, action: str = "update") -> None:
        self._store = store
        self.user_id = user_id
        self.action = action
        self.ops: List[BatchOp] = []
        self._committed = False

    def delete_instance(self, instance_id: str) -> "WriteBatch":
        self.ops.append(BatchOp("delete", INSTANCES, instance_id))
        return self

    def delete_pattern(self, pattern_id: str) -> "WriteBatch":
        self.ops.append(BatchOp("delete", RECURRENCES, pattern_id))
        return self

    def update_instance(self, instance_id: str, changes: Dict[str, Any]) -> "WriteBatch":
        check_fields(changes, INSTANCE_MUTABLE_FIELDS)
        self.ops.append(BatchOp("update", INSTANCES, instance_id, dict(changes)))
        return self

    def update_pattern(self, pattern_id: str, changes: Dict[str, Any]) -> "WriteBatch":
        check_fields(changes, PATTERN_MUTABLE_FIELDS)
        self.ops.append(BatchOp("update", RECURRENCES, pattern_id, dict(changes)))
        return self

    def __len__(self) -> int:
        return len(self.ops)

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("batch already committed")
        self._committed = True
        if not self.ops:
            return
        await self._store.commit_batch(self.user_id, list(self.ops), self.action)


def check_fields(changes: Dict[str, Any], allowed: set) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"fields cannot be changed: {', '.join(sorted(unknown))}")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def instance_sort_key(item: InstanceEntity) -> Tuple[str, datetime]:
    return item["date"], item["created_at"]


# PUBLIC_INTERFACE
class Store(ABC):
    """
    Abstract document store contract, partitioned per user.

    Every method is a suspension point. Timestamps (created_at, edited_at)
    are assigned by the store. Soft references (instance.recurrence_id) are
    not checked.
    """

    @abstractmethod
    async def create_instance(self, user_id: str, data: Dict[str, Any]) -> InstanceEntity:
        """Create an instance with a store-assigned id and return it."""

    @abstractmethod
    async def create_instance_if_absent(
        self, user_id: str, instance_id: str, data: Dict[str, Any]
    ) -> Optional[InstanceEntity]:
        """Create an instance under a caller-chosen id. Return None if the id is taken."""

    @abstractmethod
    async def get_instance(self, user_id: str, instance_id: str) -> Optional[InstanceEntity]:
        """Return an instance by id, or None if not found."""

    @abstractmethod
    async def update_instance(
        self, user_id: str, instance_id: str, changes: Dict[str, Any]
    ) -> Optional[InstanceEntity]:
        """Apply field changes, stamp edited_at, return the updated instance or None if not found."""

    @abstractmethod
    async def delete_instance(self, user_id: str, instance_id: str) -> bool:
        """Delete an instance. Return True if deleted, False if not found."""

    @abstractmethod
    async def query_instances(self, user_id: str, query: Optional[InstanceQuery] = None) -> List[InstanceEntity]:
        """Return instances matching the query, ordered by date then created_at."""

    @abstractmethod
    async def create_pattern(self, user_id: str, data: Dict[str, Any]) -> PatternEntity:
        """Create a recurrence pattern and return it."""

    @abstractmethod
    async def get_pattern(self, user_id: str, pattern_id: str) -> Optional[PatternEntity]:
        """Return a pattern by id, or None if not found."""

    @abstractmethod
    async def update_pattern(
        self, user_id: str, pattern_id: str, changes: Dict[str, Any]
    ) -> Optional[PatternEntity]:
        """Apply field changes, stamp edited_at, return the updated pattern or None if not found."""

    @abstractmethod
    async def list_patterns(self, user_id: str) -> List[PatternEntity]:
        """Return all of a user's patterns, newest first."""

    @abstractmethod
    async def list_user_ids(self) -> List[str]:
        """Return the ids of every user partition that holds data."""

    @abstractmethod
    async def commit_batch(self, user_id: str, ops: List[BatchOp], action: str = "update") -> None:
        """Apply all operations atomically. Raise BatchCommitError carrying ``action`` if any fails."""

    def batch(self, user_id: str, action: str = "update") -> WriteBatch:
        return WriteBatch(self, user_id, action)


def _build_instance(doc_id: str, data: Dict[str, Any], now: datetime) -> InstanceEntity:
    return {
        "id": doc_id,
        "name": data["name"],
        "date": data["date"],
        "completed": bool(data.get("completed", False)),
        "is_recurring": bool(data.get("is_recurring", False)),
        "recurrence_id": data.get("recurrence_id"),
        "created_at": now,
        "edited_at": None,
    }


def _build_pattern(doc_id: str, data: Dict[str, Any], now: datetime) -> PatternEntity:
    return {
        "id": doc_id,
        "name": data["name"],
        "rrule": data["rrule"],
        "starts_on": data.get("starts_on"),
        "created_at": now,
        "edited_at": None,
    }


class _Partition:
    def __init__(self) -> None:
        self.instances: Dict[str, InstanceEntity] = {}
        self.recurrences: Dict[str, PatternEntity] = {}

    def collection(self, name: str) -> Dict[str, Any]:
        return self.instances if name == INSTANCES else self.recurrences


class InMemoryStore(Store):
    """
    Lock-guarded in-memory store suitable for testing and default runtime.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._users: Dict[str, _Partition] = {}

    def _partition(self, user_id: str) -> _Partition:
        with self._lock:
            part = self._users.get(user_id)
            if part is None:
                part = self._users[user_id] = _Partition()
            return part

    async def create_instance(self, user_id: str, data: Dict[str, Any]) -> InstanceEntity:
        entity = _build_instance(new_id(), data, utc_now())
        with self._lock:
            self._partition(user_id).instances[entity["id"]] = entity
        return entity.copy()

    async def create_instance_if_absent(
        self, user_id: str, instance_id: str, data: Dict[str, Any]
    ) -> Optional[InstanceEntity]:
        with self._lock:
            items = self._partition(user_id).instances
            if instance_id in items:
                return None
            entity = _build_instance(instance_id, data, utc_now())
            items[instance_id] = entity
            return entity.copy()

    async def get_instance(self, user_id: str, instance_id: str) -> Optional[InstanceEntity]:
        with self._lock:
            item = self._partition(user_id).instances.get(instance_id)
            return None if item is None else item.copy()

    async def update_instance(
        self, user_id: str, instance_id: str, changes: Dict[str, Any]
    ) -> Optional[InstanceEntity]:
        check_fields(changes, INSTANCE_MUTABLE_FIELDS)
        with self._lock:
            items = self._partition(user_id).instances
            existing = items.get(instance_id)
            if existing is None:
                return None
            updated = existing.copy()
            updated.update(changes)  # type: ignore[typeddict-item]
            updated["edited_at"] = utc_now()
            items[instance_id] = updated
            return updated.copy()

    async def delete_instance(self, user_id: str, instance_id: str) -> bool:
        with self._lock:
            return self._partition(user_id).instances.pop(instance_id, None) is not None

    async def query_instances(self, user_id: str, query: Optional[InstanceQuery] = None) -> List[InstanceEntity]:
        q = query or InstanceQuery()
        with self._lock:
            matched = [t.copy() for t in self._partition(user_id).instances.values() if q.matches(t)]
        return sorted(matched, key=instance_sort_key)

    async def create_pattern(self, user_id: str, data: Dict[str, Any]) -> PatternEntity:
        entity = _build_pattern(new_id(), data, utc_now())
        with self._lock:
            self._partition(user_id).recurrences[entity["id"]] = entity
        return entity.copy()

    async def get_pattern(self, user_id: str, pattern_id: str) -> Optional[PatternEntity]:
        with self._lock:
            item = self._partition(user_id).recurrences.get(pattern_id)
            return None if item is None else item.copy()

    async def update_pattern(
        self, user_id: str, pattern_id: str, changes: Dict[str, Any]
    ) -> Optional[PatternEntity]:
        check_fields(changes, PATTERN_MUTABLE_FIELDS)
        with self._lock:
            items = self._partition(user_id).recurrences
            existing = items.get(pattern_id)
            if existing is None:
                return None
            updated = existing.copy()
            updated.update(changes)  # type: ignore[typeddict-item]
            updated["edited_at"] = utc_now()
            items[pattern_id] = updated
            return updated.copy()

    async def list_patterns(self, user_id: str) -> List[PatternEntity]:
        with self._lock:
            items = [p.copy() for p in self._partition(user_id).recurrences.values()]
        return sorted(items, key=lambda p: p["created_at"], reverse=True)

    async def list_user_ids(self) -> List[str]:
        with self._lock:
            return sorted(
                uid for uid, part in self._users.items() if part.instances or part.recurrences
            )

    def _apply(self, part: _Partition, op: BatchOp, now: datetime) -> None:
        docs = part.collection(op.collection)
        if op.kind == "delete":
            docs.pop(op.doc_id, None)
        elif op.kind == "update":
            if op.doc_id not in docs:
                raise KeyError(f"{op.collection}/{op.doc_id} does not exist")
            updated = dict(docs[op.doc_id])
            updated.update(op.changes)
            updated["edited_at"] = now
            docs[op.doc_id] = updated
        else:
            raise ValueError(f"unknown batch operation: {op.kind}")

    async def commit_batch(self, user_id: str, ops: List[BatchOp], action: str = "update") -> None:
        now = utc_now()
        with self._lock:
            part = self._partition(user_id)
            snapshot = (copy.deepcopy(part.instances), copy.deepcopy(part.recurrences))
            try:
                for op in ops:
                    self._apply(part, op, now)
            except Exception as e:
                part.instances, part.recurrences = snapshot
                logger.error("Batch of %d operations for user %s rolled back: %s", len(ops), user_id, e)
                raise BatchCommitError(action, f"batch rolled back: {e}") from e


_store: Optional[Store] = None


# PUBLIC_INTERFACE
def get_store() -> Store:
    """
    Return the process-wide store configured by settings.
    - memory: InMemoryStore
    - sqlite: SQLiteStore
    """
    global _store
    if _store is None:
        _store = build_store(get_settings().persistence_backend, get_settings().sqlite_db_path)
    return _store


def build_store(backend: str, sqlite_db_path: Optional[str] = None) -> Store:
    if backend == "sqlite":
        from .db import SQLiteStore

        return SQLiteStore(sqlite_db_path or "./data/habits.db")
    return InMemoryStore()


def reset_store(store: Optional[Store] = None) -> None:
    """Replace (or clear) the process-wide store."""
    global _store
    _store = store

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional

from .errors import BatchCommitError, StoreError
from .models import InstanceEntity, PatternEntity
from .repositories import (
    INSTANCE_MUTABLE_FIELDS,
    INSTANCES,
    PATTERN_MUTABLE_FIELDS,
    BatchOp,
    InstanceQuery,
    Store,
    check_fields,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _InstanceCols:
    table: str = "instances"
    user_id: str = "user_id"
    id: str = "id"
    name: str = "name"
    date: str = "date"
    completed: str = "completed"
    is_recurring: str = "is_recurring"
    recurrence_id: str = "recurrence_id"
    created_at: str = "created_at"
    edited_at: str = "edited_at"


@dataclass(frozen=True)
class _PatternCols:
    table: str = "recurrences"
    user_id: str = "user_id"
    id: str = "id"
    name: str = "name"
    rrule: str = "rrule"
    starts_on: str = "starts_on"
    created_at: str = "created_at"
    edited_at: str = "edited_at"


_I = _InstanceCols()
_P = _PatternCols()


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    if s is None:
        return None
    return datetime.fromisoformat(s)


class SQLiteStore(Store):
    """
    SQLite-backed document store. Each user's instances and recurrences live
    in shared tables keyed by (user_id, id).

    Blocking sqlite3 calls run in a worker thread so the event loop is never
    blocked; every connection is short-lived.
    """

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        try:
            self._init_db()
        except sqlite3.Error as e:
            raise StoreError("load", f"Failed to open database {db_path}: {e}") from e

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            # Uncommitted work (an exception inside the block) is rolled back on close.
            conn.close()

    async def _run(self, action: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.exception("SQLite %s failed", action)
            raise StoreError(action, f"Failed to {action} data: {e}") from e

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_I.table} (
                    {_I.user_id} TEXT NOT NULL,
                    {_I.id} TEXT NOT NULL,
                    {_I.name} TEXT NOT NULL,
                    {_I.date} TEXT NOT NULL,
                    {_I.completed} INTEGER NOT NULL DEFAULT 0,
                    {_I.is_recurring} INTEGER NOT NULL DEFAULT 0,
                    {_I.recurrence_id} TEXT NULL,
                    {_I.created_at} TEXT NOT NULL,
                    {_I.edited_at} TEXT NULL,
                    PRIMARY KEY ({_I.user_id}, {_I.id})
                )
                """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_P.table} (
                    {_P.user_id} TEXT NOT NULL,
                    {_P.id} TEXT NOT NULL,
                    {_P.name} TEXT NOT NULL,
                    {_P.rrule} TEXT NOT NULL,
                    {_P.starts_on} TEXT NULL,
                    {_P.created_at} TEXT NOT NULL,
                    {_P.edited_at} TEXT NULL,
                    PRIMARY KEY ({_P.user_id}, {_P.id})
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_I.table}_date ON {_I.table}({_I.user_id}, {_I.date})"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_I.table}_recurrence ON {_I.table}({_I.user_id}, {_I.recurrence_id})"
            )

    def _row_to_instance(self, row: sqlite3.Row) -> InstanceEntity:
        return {
            "id": str(row[_I.id]),
            "name": str(row[_I.name]),
            "date": str(row[_I.date]),
            "completed": bool(row[_I.completed]),
            "is_recurring": bool(row[_I.is_recurring]),
            "recurrence_id": row[_I.recurrence_id],
            "created_at": _parse_dt(row[_I.created_at]),  # type: ignore
            "edited_at": _parse_dt(row[_I.edited_at]),
        }

    def _row_to_pattern(self, row: sqlite3.Row) -> PatternEntity:
        return {
            "id": str(row[_P.id]),
            "name": str(row[_P.name]),
            "rrule": str(row[_P.rrule]),
            "starts_on": row[_P.starts_on],
            "created_at": _parse_dt(row[_P.created_at]),  # type: ignore
            "edited_at": _parse_dt(row[_P.edited_at]),
        }

    # Instances

    def _insert_instance(self, conn: sqlite3.Connection, user_id: str, doc_id: str, data: Dict[str, Any]) -> None:
        conn.execute(
            f"""
            INSERT INTO {_I.table} ({_I.user_id}, {_I.id}, {_I.name}, {_I.date}, {_I.completed},
                {_I.is_recurring}, {_I.recurrence_id}, {_I.created_at}, {_I.edited_at})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL)
            """,
            (
                user_id,
                doc_id,
                data["name"],
                data["date"],
                1 if data.get("completed") else 0,
                1 if data.get("is_recurring") else 0,
                data.get("recurrence_id"),
                utc_now().isoformat(),
            ),
        )

    def _fetch_instance(self, conn: sqlite3.Connection, user_id: str, doc_id: str) -> Optional[InstanceEntity]:
        row = conn.execute(
            f"SELECT * FROM {_I.table} WHERE {_I.user_id} = ? AND {_I.id} = ?", (user_id, doc_id)
        ).fetchone()
        return self._row_to_instance(row) if row else None

    def _create_instance(self, user_id: str, data: Dict[str, Any]) -> InstanceEntity:
        doc_id = new_id()
        with self._conn() as conn:
            self._insert_instance(conn, user_id, doc_id, data)
            created = self._fetch_instance(conn, user_id, doc_id)
            assert created is not None
            return created

    def _create_instance_if_absent(
        self, user_id: str, doc_id: str, data: Dict[str, Any]
    ) -> Optional[InstanceEntity]:
        with self._conn() as conn:
            try:
                self._insert_instance(conn, user_id, doc_id, data)
            except sqlite3.IntegrityError:
                return None
            return self._fetch_instance(conn, user_id, doc_id)

    def _get_instance(self, user_id: str, doc_id: str) -> Optional[InstanceEntity]:
        with self._conn() as conn:
            return self._fetch_instance(conn, user_id, doc_id)

    def _update_doc(self, conn: sqlite3.Connection, table: str, user_id: str, doc_id: str, changes: Dict[str, Any]) -> int:
        values = dict(changes)
        for flag in ("completed", "is_recurring"):
            if flag in values:
                values[flag] = 1 if values[flag] else 0
        values["edited_at"] = utc_now().isoformat()
        assignments = ", ".join(f"{col} = ?" for col in values)
        cur = conn.execute(
            f"UPDATE {table} SET {assignments} WHERE user_id = ? AND id = ?",
            [*values.values(), user_id, doc_id],
        )
        return cur.rowcount

    def _update_instance(self, user_id: str, doc_id: str, changes: Dict[str, Any]) -> Optional[InstanceEntity]:
        with self._conn() as conn:
            if not self._update_doc(conn, _I.table, user_id, doc_id, changes):
                return None
            return self._fetch_instance(conn, user_id, doc_id)

    def _delete_instance(self, user_id: str, doc_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                f"DELETE FROM {_I.table} WHERE {_I.user_id} = ? AND {_I.id} = ?", (user_id, doc_id)
            )
            return cur.rowcount > 0

    def _query_instances(self, user_id: str, q: InstanceQuery) -> List[InstanceEntity]:
        clauses = [f"{_I.user_id} = ?"]
        params: list = [user_id]
        if q.date is not None:
            clauses.append(f"{_I.date} = ?")
            params.append(q.date)
        if q.date_from is not None:
            clauses.append(f"{_I.date} >= ?")
            params.append(q.date_from)
        if q.date_to is not None:
            clauses.append(f"{_I.date} <= ?")
            params.append(q.date_to)
        if q.recurrence_id is not None:
            clauses.append(f"{_I.recurrence_id} = ?")
            params.append(q.recurrence_id)
        if q.is_recurring is not None:
            clauses.append(f"{_I.is_recurring} = ?")
            params.append(1 if q.is_recurring else 0)
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {_I.table}
                WHERE {' AND '.join(clauses)}
                ORDER BY {_I.date} ASC, {_I.created_at} ASC
                """,
                params,
            ).fetchall()
            return [self._row_to_instance(r) for r in rows]

    # Patterns

    def _create_pattern(self, user_id: str, data: Dict[str, Any]) -> PatternEntity:
        doc_id = new_id()
        with self._conn() as conn:
            conn.execute(
                f"""
                INSERT INTO {_P.table} ({_P.user_id}, {_P.id}, {_P.name}, {_P.rrule}, {_P.starts_on},
                    {_P.created_at}, {_P.edited_at})
                VALUES (?, ?, ?, ?, ?, ?, NULL)
                """,
                (user_id, doc_id, data["name"], data["rrule"], data.get("starts_on"), utc_now().isoformat()),
            )
            row = conn.execute(
                f"SELECT * FROM {_P.table} WHERE {_P.user_id} = ? AND {_P.id} = ?", (user_id, doc_id)
            ).fetchone()
            assert row is not None
            return self._row_to_pattern(row)

    def _get_pattern(self, user_id: str, doc_id: str) -> Optional[PatternEntity]:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT * FROM {_P.table} WHERE {_P.user_id} = ? AND {_P.id} = ?", (user_id, doc_id)
            ).fetchone()
            return self._row_to_pattern(row) if row else None

    def _update_pattern(self, user_id: str, doc_id: str, changes: Dict[str, Any]) -> Optional[PatternEntity]:
        with self._conn() as conn:
            if not self._update_doc(conn, _P.table, user_id, doc_id, changes):
                return None
        return self._get_pattern(user_id, doc_id)

    def _list_patterns(self, user_id: str) -> List[PatternEntity]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_P.table} WHERE {_P.user_id} = ? ORDER BY {_P.created_at} DESC",
                (user_id,),
            ).fetchall()
            return [self._row_to_pattern(r) for r in rows]

    def _list_user_ids(self) -> List[str]:
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT {_I.user_id} AS uid FROM {_I.table}
                UNION
                SELECT {_P.user_id} AS uid FROM {_P.table}
                ORDER BY uid
                """
            ).fetchall()
            return [str(r["uid"]) for r in rows]

    def _commit_batch(self, user_id: str, ops: List[BatchOp], action: str) -> None:
        with self._conn() as conn:
            for op in ops:
                table = _I.table if op.collection == INSTANCES else _P.table
                if op.kind == "delete":
                    conn.execute(f"DELETE FROM {table} WHERE user_id = ? AND id = ?", (user_id, op.doc_id))
                elif op.kind == "update":
                    if not self._update_doc(conn, table, user_id, op.doc_id, op.changes):
                        raise BatchCommitError(action, f"{op.collection}/{op.doc_id} does not exist")
                else:
                    raise BatchCommitError(action, f"unknown batch operation: {op.kind}")

    # Store interface

    async def create_instance(self, user_id: str, data: Dict[str, Any]) -> InstanceEntity:
        return await self._run("add", self._create_instance, user_id, data)

    async def create_instance_if_absent(
        self, user_id: str, instance_id: str, data: Dict[str, Any]
    ) -> Optional[InstanceEntity]:
        return await self._run("add", self._create_instance_if_absent, user_id, instance_id, data)

    async def get_instance(self, user_id: str, instance_id: str) -> Optional[InstanceEntity]:
        return await self._run("load", self._get_instance, user_id, instance_id)

    async def update_instance(
        self, user_id: str, instance_id: str, changes: Dict[str, Any]
    ) -> Optional[InstanceEntity]:
        check_fields(changes, INSTANCE_MUTABLE_FIELDS)
        return await self._run("update", self._update_instance, user_id, instance_id, changes)

    async def delete_instance(self, user_id: str, instance_id: str) -> bool:
        return await self._run("delete", self._delete_instance, user_id, instance_id)

    async def query_instances(self, user_id: str, query: Optional[InstanceQuery] = None) -> List[InstanceEntity]:
        return await self._run("load", self._query_instances, user_id, query or InstanceQuery())

    async def create_pattern(self, user_id: str, data: Dict[str, Any]) -> PatternEntity:
        return await self._run("add", self._create_pattern, user_id, data)

    async def get_pattern(self, user_id: str, pattern_id: str) -> Optional[PatternEntity]:
        return await self._run("load", self._get_pattern, user_id, pattern_id)

    async def update_pattern(
        self, user_id: str, pattern_id: str, changes: Dict[str, Any]
    ) -> Optional[PatternEntity]:
        check_fields(changes, PATTERN_MUTABLE_FIELDS)
        return await self._run("update", self._update_pattern, user_id, pattern_id, changes)

    async def list_patterns(self, user_id: str) -> List[PatternEntity]:
        return await self._run("load", self._list_patterns, user_id)

    async def list_user_ids(self) -> List[str]:
        return await self._run("load", self._list_user_ids)

    async def commit_batch(self, user_id: str, ops: List[BatchOp], action: str = "update") -> None:
        try:
            await asyncio.to_thread(self._commit_batch, user_id, ops, action)
        except sqlite3.Error as e:
            logger.exception("Batch of %d operations for user %s rolled back", len(ops), user_id)
            raise BatchCommitError(action, f"batch rolled back: {e}") from e

"""Generic SQLite row store shared by every pipeline component.

Each collection is a table keyed by a UUID ``id`` with ``created_at`` and
``updated_at`` timestamps. Components only ever select with equality filters,
insert a single row, or update a single row by primary key.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class RowStoreError(RuntimeError):
    """Raised when a row store operation fails or references unknown data."""


class RowNotFoundError(RowStoreError):
    """Raised when an update targets a missing row."""


# Column codecs: "text", "int", "real", "bool", "json".
TABLE_COLUMNS: dict[str, dict[str, str]] = {
    "brand_kits": {
        "user_id": "text",
        "kit_name": "text",
        "org_type": "text",
        "org_level": "text",
        "office_sought": "text",
        "state": "text",
        "district": "text",
        "brand_summary": "text",
        "tone": "text",
        "disclaimers": "text",
        "address": "text",
        "footer": "text",
        "colors": "json",
        "is_active": "bool",
    },
    "research_topics": {
        "user_id": "text",
        "title": "text",
        "summary": "text",
        "source_url": "text",
        "source_domain": "text",
        "content_snippet": "text",
        "relevance_score": "real",
        "suggested_by": "text",
        "used_in_draft": "bool",
        "published_at": "text",
    },
    "email_drafts": {
        "user_id": "text",
        "brand_kit_id": "text",
        "week_of": "text",
        "draft_type": "text",
        "subject_line": "text",
        "alt_subject_lines": "json",
        "preview_text": "text",
        "body_html": "text",
        "body_text": "text",
        "editor_blocks": "json",
        "template_used": "text",
        "ai_model": "text",
        "research_topic_ids": "json",
        "status": "text",
        "scheduled_for": "text",
        "sent_at": "text",
        "reply_to": "text",
        "action_network_message_id": "text",
        "mailchimp_campaign_id": "text",
    },
    "email_integrations": {
        "user_id": "text",
        "provider": "text",
        "access_token": "text",
        "server_prefix": "text",
        "list_id": "text",
        "metadata": "json",
        "is_active": "bool",
    },
    "subscriptions": {
        "user_id": "text",
        "tier": "text",
        "emails_per_week": "int",
        "rapid_response": "bool",
        "status": "text",
    },
    "profiles": {
        "email": "text",
        "organization_name": "text",
        "delivery_days": "json",
        "timezone": "text",
    },
    "content_embeddings": {
        "user_id": "text",
        "source_type": "text",
        "source_id": "text",
        "embedding": "json",
    },
}

_SQL_TYPES = {"text": "TEXT", "int": "INTEGER", "real": "REAL", "bool": "INTEGER", "json": "TEXT"}
_INDEXED_COLUMNS = ("user_id", "status", "provider", "source_id")


class RowStore:
    """Typed select/insert/update over the pipeline's collections."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def initialize(self) -> None:
        """Create tables and filter indexes if they do not exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            for table, columns in TABLE_COLUMNS.items():
                column_sql = ",\n".join(
                    f"{name} {_SQL_TYPES[kind]}" for name, kind in columns.items()
                )
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        {column_sql},
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                for column in _INDEXED_COLUMNS:
                    if column in columns:
                        conn.execute(
                            f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} "
                            f"ON {table} ({column})"
                        )

    def insert(self, table: str, values: Mapping[str, Any]) -> dict[str, Any]:
        """Insert one row, generating ``id`` and timestamps when absent."""
        columns = _columns_for(table)
        row = dict(values)
        row_id = str(row.pop("id", None) or uuid.uuid4())
        now = _now_iso()
        created_at = row.pop("created_at", None) or now
        _check_columns(table, row)

        names = ["id", *row.keys(), "created_at", "updated_at"]
        params = [
            row_id,
            *(_encode(columns[name], value) for name, value in row.items()),
            created_at,
            now,
        ]
        placeholders = ", ".join("?" for _ in names)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                    params,
                )
        except sqlite3.IntegrityError as exc:
            raise RowStoreError(f"Row already exists in {table}: {row_id}") from exc

        inserted = self.get(table, row_id)
        if inserted is None:
            raise RowStoreError(f"Failed to read inserted row {table}/{row_id}")
        return inserted

    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        rows = self.select(table, filters={"id": row_id}, limit=1)
        return rows[0] if rows else None

    def select(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows matching every filter.

        A list or tuple filter value means ``IN``; ``None`` means ``IS NULL``.
        """
        columns = _columns_for(table)
        where, params = _where_clause(table, filters or {})
        sql = f"SELECT * FROM {table}{where}"
        if order_by is not None:
            _check_columns(table, {order_by: None}, allow_meta=True)
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_decode_row(columns, row) for row in rows]

    def update(self, table: str, row_id: str, values: Mapping[str, Any]) -> dict[str, Any]:
        """Update one row by primary key and return the stored result."""
        columns = _columns_for(table)
        changes = dict(values)
        _check_columns(table, changes)
        if not changes:
            existing = self.get(table, row_id)
            if existing is None:
                raise RowNotFoundError(f"Row not found: {table}/{row_id}")
            return existing

        assignments = ", ".join(f"{name} = ?" for name in changes)
        params = [_encode(columns[name], value) for name, value in changes.items()]
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?",
                [*params, _now_iso(), row_id],
            )
            if cursor.rowcount == 0:
                raise RowNotFoundError(f"Row not found: {table}/{row_id}")

        updated = self.get(table, row_id)
        if updated is None:
            raise RowNotFoundError(f"Row not found: {table}/{row_id}")
        return updated

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()


def _columns_for(table: str) -> dict[str, str]:
    try:
        return TABLE_COLUMNS[table]
    except KeyError as exc:
        raise RowStoreError(f"Unknown table: {table}") from exc


def _check_columns(table: str, values: Mapping[str, Any], *, allow_meta: bool = False) -> None:
    known = set(TABLE_COLUMNS[table])
    if allow_meta:
        known |= {"id", "created_at", "updated_at"}
    unknown = sorted(set(values) - known)
    if unknown:
        raise RowStoreError(f"Unknown column(s) for {table}: {', '.join(unknown)}")


def _where_clause(table: str, filters: Mapping[str, Any]) -> tuple[str, list[Any]]:
    if not filters:
        return "", []
    _check_columns(table, filters, allow_meta=True)
    columns = TABLE_COLUMNS[table]
    clauses: list[str] = []
    params: list[Any] = []
    for name, value in filters.items():
        kind = columns.get(name, "text")
        if value is None:
            clauses.append(f"{name} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
            if not items:
                clauses.append("0 = 1")
                continue
            clauses.append(f"{name} IN ({', '.join('?' for _ in items)})")
            params.extend(_encode(kind, item) for item in items)
        else:
            clauses.append(f"{name} = ?")
            params.append(_encode(kind, value))
    return " WHERE " + " AND ".join(clauses), params


def _encode(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == "json":
        return json.dumps(value, sort_keys=True, default=str)
    if kind == "bool":
        return 1 if value else 0
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


def _decode_row(columns: dict[str, str], row: sqlite3.Row) -> dict[str, Any]:
    decoded: dict[str, Any] = {}
    for key in row.keys():
        raw = row[key]
        kind = columns.get(key, "text")
        if raw is None:
            decoded[key] = None
        elif kind == "json":
            decoded[key] = json.loads(raw)
        elif kind == "bool":
            decoded[key] = bool(raw)
        else:
            decoded[key] = raw
    return decoded


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()

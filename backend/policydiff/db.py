from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
from typing import Any, Iterator, Mapping
from uuid import uuid4

from policydiff.config import settings

POLICY_COLLECTION = "policy_compare_records"
STANDARD_COLLECTION = "standard_compare_records"

BEIJING_TZ = timezone(timedelta(hours=8))

# Columns stored as JSON text and decoded on read.
_JSON_COLUMNS = {
    POLICY_COLLECTION: {"raw_coze_response", "comparison_structured"},
    STANDARD_COLLECTION: {"raw_coze_response", "standard_items"},
}
_BOOL_COLUMNS = {"is_verified", "is_json_format"}

_COLUMNS = {
    POLICY_COLLECTION: (
        "id",
        "username",
        "company",
        "old_file_name",
        "new_file_name",
        "old_file_url",
        "new_file_url",
        "status",
        "raw_coze_response",
        "comparison_result",
        "comparison_structured",
        "is_json_format",
        "is_verified",
        "add_time",
        "retry_count",
        "max_retries",
        "next_retry_time",
        "error_message",
        "started_at",
        "completed_at",
        "create_time",
        "update_time",
    ),
    STANDARD_COLLECTION: (
        "id",
        "username",
        "city",
        "file_name",
        "file_url",
        "status",
        "standard_items",
        "raw_coze_response",
        "is_verified",
        "add_time",
        "create_time",
        "update_time",
    ),
}
# NOT NULL columns; an explicit None in an update leaves them unchanged.
_REQUIRED_COLUMNS = {
    POLICY_COLLECTION: frozenset(
        {
            "username",
            "company",
            "old_file_name",
            "new_file_name",
            "old_file_url",
            "new_file_url",
            "status",
            "is_json_format",
            "is_verified",
            "retry_count",
            "max_retries",
        }
    ),
    STANDARD_COLLECTION: frozenset({"username", "city", "file_name", "file_url", "status", "is_verified"}),
}
_LIST_ORDER = {
    POLICY_COLLECTION: "create_time",
    STANDARD_COLLECTION: "add_time",
}


def _database_path() -> Path:
    prefix = "sqlite:///"
    if not settings.database_url.startswith(prefix):
        raise RuntimeError("Only sqlite:/// DATABASE_URL is supported.")
    return Path(settings.database_url[len(prefix) :])


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def beijing_now_iso() -> str:
    return datetime.now(BEIJING_TZ).isoformat()


def init_db() -> None:
    db_path = _database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS policy_compare_records (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                company TEXT NOT NULL,
                old_file_name TEXT NOT NULL,
                new_file_name TEXT NOT NULL,
                old_file_url TEXT NOT NULL DEFAULT '',
                new_file_url TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                raw_coze_response TEXT,
                comparison_result TEXT,
                comparison_structured TEXT,
                is_json_format INTEGER NOT NULL DEFAULT 0,
                is_verified INTEGER NOT NULL DEFAULT 0,
                add_time TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                next_retry_time TEXT,
                error_message TEXT,
                started_at TEXT,
                completed_at TEXT,
                create_time TEXT NOT NULL,
                update_time TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_policy_records_user_status
                ON policy_compare_records(username, status, create_time DESC);
            CREATE INDEX IF NOT EXISTS idx_policy_records_queue
                ON policy_compare_records(status, next_retry_time, create_time ASC);

            CREATE TABLE IF NOT EXISTS standard_compare_records (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                city TEXT NOT NULL,
                file_name TEXT NOT NULL,
                file_url TEXT NOT NULL,
                status TEXT NOT NULL,
                standard_items TEXT,
                raw_coze_response TEXT,
                is_verified INTEGER NOT NULL DEFAULT 0,
                add_time TEXT,
                create_time TEXT NOT NULL,
                update_time TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_standard_records_user_status
                ON standard_compare_records(username, status, add_time DESC);
            """
        )


@contextmanager
def get_conn() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(_database_path())
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def _require_collection(collection: str) -> tuple[str, ...]:
    columns = _COLUMNS.get(collection)
    if columns is None:
        raise ValueError(f"Unknown collection '{collection}'.")
    return columns


def _encode(collection: str, column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_COLUMNS[collection]:
        return json.dumps(value, ensure_ascii=False)
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _decode_row(collection: str, row: sqlite3.Row) -> dict[str, object]:
    record = dict(row)
    for column in _JSON_COLUMNS[collection]:
        raw = record.get(column)
        if isinstance(raw, str):
            try:
                record[column] = json.loads(raw)
            except json.JSONDecodeError:
                record[column] = raw
    for column in _BOOL_COLUMNS:
        if column in record:
            record[column] = bool(record[column])
    return record


def create_record(collection: str, fields: Mapping[str, Any]) -> dict[str, object]:
    columns = _require_collection(collection)
    now = utc_now_iso()
    record: dict[str, Any] = {
        "id": uuid4().hex,
        "add_time": beijing_now_iso(),
        "is_verified": False,
        "create_time": now,
        "update_time": now,
    }
    record.update({key: value for key, value in fields.items() if key in columns and key != "id"})
    names = [column for column in columns if column in record]
    placeholders = ", ".join(f":{name}" for name in names)
    with get_conn() as conn:
        conn.execute(
            f"INSERT INTO {collection} ({', '.join(names)}) VALUES ({placeholders})",
            {name: _encode(collection, name, record[name]) for name in names},
        )
    record_id = str(record["id"])
    created = get_record(collection, record_id)
    if created is None:
        raise RuntimeError(f"Record '{record_id}' was not readable after insert into {collection}.")
    return created


def get_record(collection: str, record_id: str) -> dict[str, object] | None:
    _require_collection(collection)
    with get_conn() as conn:
        row = conn.execute(f"SELECT * FROM {collection} WHERE id = ?", (record_id,)).fetchone()
    if row is None:
        return None
    return _decode_row(collection, row)


def update_record(collection: str, record_id: str, fields: Mapping[str, Any]) -> int:
    """Apply ``fields`` to one record; ``update_time`` is always refreshed."""
    columns = _require_collection(collection)
    required = _REQUIRED_COLUMNS[collection]
    changes = {
        key: value
        for key, value in fields.items()
        if key in columns and key != "id" and not (value is None and key in required)
    }
    changes["update_time"] = utc_now_iso()
    assignments = ", ".join(f"{name} = :{name}" for name in changes)
    params = {name: _encode(collection, name, value) for name, value in changes.items()}
    params["record_id"] = record_id
    with get_conn() as conn:
        cursor = conn.execute(f"UPDATE {collection} SET {assignments} WHERE id = :record_id", params)
    return cursor.rowcount


def delete_record(collection: str, record_id: str) -> int:
    _require_collection(collection)
    with get_conn() as conn:
        cursor = conn.execute(f"DELETE FROM {collection} WHERE id = ?", (record_id,))
    return cursor.rowcount


def _list_filters(username: str, is_verified: bool | None) -> tuple[str, list[object]]:
    clause = "WHERE status = 'done' AND username = ?"
    params: list[object] = [username]
    if is_verified is not None:
        clause += " AND is_verified = ?"
        params.append(1 if is_verified else 0)
    return clause, params


def list_records(
    collection: str,
    *,
    username: str,
    offset: int = 0,
    limit: int = 100,
    is_verified: bool | None = None,
) -> list[dict[str, object]]:
    _require_collection(collection)
    clause, params = _list_filters(username, is_verified)
    order_column = _LIST_ORDER[collection]
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM {collection} {clause} ORDER BY {order_column} DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ).fetchall()
    return [_decode_row(collection, row) for row in rows]


def count_records(collection: str, *, username: str, is_verified: bool | None = None) -> int:
    _require_collection(collection)
    clause, params = _list_filters(username, is_verified)
    with get_conn() as conn:
        row = conn.execute(f"SELECT COUNT(*) AS total FROM {collection} {clause}", tuple(params)).fetchone()
    return int(row["total"]) if row is not None else 0


def list_due_policy_tasks(*, now_iso: str, limit: int) -> list[dict[str, object]]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT *
            FROM policy_compare_records
            WHERE status = 'pending'
               OR (status = 'retrying' AND next_retry_time IS NOT NULL AND next_retry_time <= ?)
            ORDER BY create_time ASC
            LIMIT ?
            """,
            (now_iso, limit),
        ).fetchall()
    return [_decode_row(POLICY_COLLECTION, row) for row in rows]


def claim_policy_task(record_id: str, *, started_at: str) -> bool:
    """Move a due task to ``processing``; ``False`` when another run claimed it first."""
    with get_conn() as conn:
        cursor = conn.execute(
            """
            UPDATE policy_compare_records
            SET status = 'processing', started_at = ?, update_time = ?
            WHERE id = ? AND status IN ('pending', 'retrying')
            """,
            (started_at, utc_now_iso(), record_id),
        )
    return cursor.rowcount == 1

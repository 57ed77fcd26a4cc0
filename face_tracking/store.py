import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .exceptions import StoreError
from .types import StoredObject


class ObjectStore:
    """Named-record store keeping JSON payloads grouped by kind."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS objects (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        object_id TEXT NOT NULL UNIQUE,
                        kind TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_objects_kind ON objects(kind, seq);
                    """
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to initialize object store: {exc}") from exc

    def create(self, kind: str, record: Dict[str, Any]) -> str:
        if not kind.strip():
            raise StoreError("Object kind cannot be empty.")
        try:
            payload = json.dumps(record)
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Record for kind {kind} is not serializable: {exc}") from exc

        object_id = uuid4().hex
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO objects (object_id, kind, payload, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (object_id, kind, payload, now),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to create {kind} object: {exc}") from exc
        return object_id

    def list(self, kind: str, limit: int = 100, newest_first: bool = True) -> List[StoredObject]:
        order = "DESC" if newest_first else "ASC"
        safe_limit = max(1, min(10_000, int(limit)))
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT object_id, kind, payload, created_at
                    FROM objects
                    WHERE kind = ?
                    ORDER BY seq {order}
                    LIMIT ?
                    """,
                    (kind, safe_limit),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to list {kind} objects: {exc}") from exc

        objects: List[StoredObject] = []
        for row in rows:
            try:
                data = json.loads(row["payload"])
            except ValueError as exc:
                raise StoreError(f"Corrupt payload for object {row['object_id']}: {exc}") from exc
            objects.append(
                StoredObject(
                    object_id=row["object_id"],
                    kind=row["kind"],
                    data=data,
                    created_at=row["created_at"],
                )
            )
        return objects

    def get(self, kind: str, object_id: str) -> Optional[StoredObject]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT object_id, kind, payload, created_at
                    FROM objects
                    WHERE kind = ? AND object_id = ?
                    """,
                    (kind, object_id),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to load {kind} object {object_id}: {exc}") from exc

        if row is None:
            return None
        return StoredObject(
            object_id=row["object_id"],
            kind=row["kind"],
            data=json.loads(row["payload"]),
            created_at=row["created_at"],
        )

    def delete(self, kind: str, object_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM objects WHERE kind = ? AND object_id = ?",
                    (kind, object_id),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to delete {kind} object {object_id}: {exc}") from exc

"""SQLite-backed repositories: same contract as the JSON file backend.

Uses WAL mode + NORMAL synchronous for write throughput while retaining
crash safety.  Each record is a single-row INSERT, so a record is either
fully present or absent.  Bodies are stored as the same pretty-printed
JSON text the file backend writes, keeping rows human-inspectable.
"""

from __future__ import annotations

import sqlite3
import time
from typing import Optional

from .common_types import Attachment
from .exceptions import RepositoryIOFailure
from .export import dumps_record
from .store import KIND_ATTACHMENT, AttachmentRepository, EntityRepository, T

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
  kind TEXT NOT NULL,
  id INTEGER NOT NULL,
  body TEXT NOT NULL,
  saved_ts REAL NOT NULL,
  PRIMARY KEY(kind, id)
);

CREATE TABLE IF NOT EXISTS blobs (
  kind TEXT NOT NULL,
  id INTEGER NOT NULL,
  data BLOB NOT NULL,
  PRIMARY KEY(kind, id)
);
"""


class SqliteStore:
    """Connection holder shared by every repository on one database file."""

    def __init__(self, path: str) -> None:
        try:
            self.conn = sqlite3.connect(path, isolation_level=None)
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")
            self.conn.execute("PRAGMA busy_timeout=5000;")
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise RepositoryIOFailure(f"cannot open sqlite store {path}: {exc}") from exc

    def insert(self, table: str, kind: str, entity_id: int, value: str | bytes) -> bool:
        """Return True if newly inserted; False if the key already exists."""
        try:
            if table == "records":
                self.conn.execute(
                    "INSERT INTO records(kind,id,body,saved_ts) VALUES(?,?,?,?)",
                    (kind, entity_id, value, time.time()),
                )
            else:
                self.conn.execute(
                    "INSERT INTO blobs(kind,id,data) VALUES(?,?,?)",
                    (kind, entity_id, value),
                )
            return True
        except sqlite3.IntegrityError:
            return False
        except sqlite3.Error as exc:
            raise RepositoryIOFailure(f"{kind} {entity_id}: sqlite insert failed: {exc}") from exc

    def select_one(self, sql: str, params: tuple) -> Optional[tuple]:
        try:
            return self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise RepositoryIOFailure(f"sqlite read failed: {exc}") from exc

    def close(self) -> None:
        self.conn.close()


class SqliteRepository(EntityRepository[T]):
    def __init__(self, db: SqliteStore, kind: str, model: type[T]) -> None:
        self.db = db
        self.kind = kind
        self.model = model

    def exists(self, entity_id: int) -> bool:
        row = self.db.select_one(
            "SELECT 1 FROM records WHERE kind=? AND id=?", (self.kind, int(entity_id))
        )
        return row is not None

    def save(self, entity: T) -> bool:
        body = dumps_record(entity.to_record())
        return self.db.insert("records", self.kind, int(entity.id), body)

    def find(self, entity_id: int) -> T | None:
        row = self.db.select_one(
            "SELECT body FROM records WHERE kind=? AND id=?", (self.kind, int(entity_id))
        )
        if row is None:
            return None
        return self._decode(row[0], f"records({self.kind}, {entity_id})")

    def all(self) -> list[T]:
        try:
            rows = self.db.conn.execute(
                "SELECT id, body FROM records WHERE kind=?", (self.kind,)
            ).fetchall()
        except sqlite3.Error as exc:
            raise RepositoryIOFailure(f"{self.kind}: sqlite scan failed: {exc}") from exc
        return [self._decode(body, f"records({self.kind}, {rid})") for rid, body in rows]

    def close(self) -> None:
        self.db.close()


class SqliteAttachmentRepository(AttachmentRepository, SqliteRepository[Attachment]):
    def __init__(self, db: SqliteStore, kind: str = KIND_ATTACHMENT) -> None:
        SqliteRepository.__init__(self, db, kind, Attachment)

    def has_payload(self, attachment_id: int) -> bool:
        row = self.db.select_one(
            "SELECT 1 FROM blobs WHERE kind=? AND id=?", (self.kind, int(attachment_id))
        )
        return row is not None

    def save_payload(self, attachment_id: int, data: bytes) -> bool:
        return self.db.insert("blobs", self.kind, int(attachment_id), sqlite3.Binary(data))

    def load_payload(self, attachment_id: int) -> bytes | None:
        row = self.db.select_one(
            "SELECT data FROM blobs WHERE kind=? AND id=?", (self.kind, int(attachment_id))
        )
        return bytes(row[0]) if row else None

"""Idempotent key-value persistence, one repository per entity kind.

Records are addressed by ``(kind, id)``.  ``save`` is first-write-wins:
once an id has been written, later saves are no-ops that return False,
which is what makes an entity "already seen".

Two backends implement the same contract:

* ``JsonFileRepository`` — one pretty-printed JSON file per record under
  ``<root>/<kind>/<id>.json`` (this module).
* ``SqliteRepository`` — rows in an embedded SQLite database
  (``store_sqlite``).

Attachments additionally keep a binary payload next to the record.  The
payload has its own existence check because it is fetched separately
from the metadata.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .common_types import Attachment, Message, NewsItem
from .exceptions import RepositoryIOFailure
from .export import atomic_write_bytes, atomic_write_json

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T", Attachment, Message, NewsItem)

KIND_NEWS_ITEM = "news_item"
KIND_MESSAGE = "message"
KIND_ATTACHMENT = "attachment"


class EntityRepository(ABC, Generic[T]):
    """Persistence contract for a single entity kind."""

    kind: str
    model: type[T]

    @abstractmethod
    def exists(self, entity_id: int) -> bool:
        """True iff a record for *entity_id* was previously saved."""

    @abstractmethod
    def save(self, entity: T) -> bool:
        """Write *entity* unless its id exists.  Return True iff written."""

    @abstractmethod
    def find(self, entity_id: int) -> T | None:
        """Rebuild the persisted entity, or None if never saved."""

    @abstractmethod
    def all(self) -> list[T]:
        """Every persisted entity of this kind, in no particular order."""

    def close(self) -> None:
        pass

    def _decode(self, raw: str | bytes, where: str) -> T:
        try:
            rec: Any = json.loads(raw)
            return self.model.from_record(rec)
        except (ValueError, KeyError, TypeError) as exc:
            raise RepositoryIOFailure(f"{self.kind}: unreadable record at {where}: {exc}") from exc


class AttachmentRepository(EntityRepository[Attachment]):
    """Attachment metadata plus an independently-addressable binary payload.

    Mixed in ahead of a concrete backend: ``save``/``find`` wrap the
    backend's record handling with the payload writes and reads.
    """

    @abstractmethod
    def has_payload(self, attachment_id: int) -> bool: ...

    @abstractmethod
    def save_payload(self, attachment_id: int, data: bytes) -> bool:
        """Store the payload unless one exists.  Return True iff written."""

    @abstractmethod
    def load_payload(self, attachment_id: int) -> bytes | None: ...

    def save(self, entity: Attachment) -> bool:
        # Payload first: metadata present implies the payload write was attempted.
        if entity.payload is not None:
            self.save_payload(entity.id, entity.payload)
        return super().save(entity.without_payload())  # type: ignore[safe-super]

    def find(self, entity_id: int) -> Attachment | None:
        att = super().find(entity_id)  # type: ignore[safe-super]
        if att is None:
            return None
        return att.with_payload(self.load_payload(entity_id))


# ── JSON file backend ───────────────────────────────────────────


class JsonFileRepository(EntityRepository[T]):
    """One ``<id>.json`` file per record, written atomically."""

    def __init__(self, root: str, kind: str, model: type[T]) -> None:
        self.kind = kind
        self.model = model
        self.dir = os.path.join(root, kind)
        try:
            os.makedirs(self.dir, exist_ok=True)
        except OSError as exc:
            raise RepositoryIOFailure(f"{kind}: cannot create {self.dir}: {exc}") from exc

    def _path(self, entity_id: int, suffix: str = ".json") -> str:
        return os.path.join(self.dir, f"{int(entity_id)}{suffix}")

    def exists(self, entity_id: int) -> bool:
        return os.path.isfile(self._path(entity_id))

    def save(self, entity: T) -> bool:
        if self.exists(entity.id):
            logger.debug("%s %d already stored — skipping write.", self.kind, entity.id)
            return False
        path = self._path(entity.id)
        try:
            atomic_write_json(path, entity.to_record())
        except (OSError, ValueError) as exc:
            raise RepositoryIOFailure(f"{self.kind} {entity.id}: write to {path} failed: {exc}") from exc
        return True

    def find(self, entity_id: int) -> T | None:
        path = self._path(entity_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RepositoryIOFailure(f"{self.kind} {entity_id}: read of {path} failed: {exc}") from exc
        return self._decode(raw, path)

    def all(self) -> list[T]:
        out: list[T] = []
        for name in os.listdir(self.dir):
            stem, ext = os.path.splitext(name)
            if ext != ".json" or not stem.isdigit():
                continue
            entity = self.find(int(stem))
            if entity is not None:
                out.append(entity)
        return out


class JsonAttachmentRepository(AttachmentRepository, JsonFileRepository[Attachment]):
    """Attachment records as JSON, payloads as ``<id>.bin`` next to them."""

    def __init__(self, root: str, kind: str = KIND_ATTACHMENT) -> None:
        JsonFileRepository.__init__(self, root, kind, Attachment)

    def has_payload(self, attachment_id: int) -> bool:
        return os.path.isfile(self._path(attachment_id, ".bin"))

    def save_payload(self, attachment_id: int, data: bytes) -> bool:
        if self.has_payload(attachment_id):
            return False
        path = self._path(attachment_id, ".bin")
        try:
            atomic_write_bytes(path, data)
        except OSError as exc:
            raise RepositoryIOFailure(f"attachment {attachment_id}: payload write failed: {exc}") from exc
        return True

    def load_payload(self, attachment_id: int) -> bytes | None:
        try:
            with open(self._path(attachment_id, ".bin"), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RepositoryIOFailure(f"attachment {attachment_id}: payload read failed: {exc}") from exc


# ── Wiring ──────────────────────────────────────────────────────


@dataclass
class Repositories:
    """The three repositories a synchronisation pass works against."""

    news_items: EntityRepository[NewsItem]
    messages: EntityRepository[Message]
    attachments: AttachmentRepository

    def close(self) -> None:
        for repo in (self.news_items, self.messages, self.attachments):
            repo.close()


def open_repositories(cfg: Config) -> Repositories:
    """Build repositories for the backend selected by ``cfg.storage``."""
    if cfg.storage == "sqlite":
        from .store_sqlite import SqliteAttachmentRepository, SqliteRepository, SqliteStore

        db_dir = os.path.dirname(cfg.sqlite_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        db = SqliteStore(cfg.sqlite_path)
        return Repositories(
            news_items=SqliteRepository(db, KIND_NEWS_ITEM, NewsItem),
            messages=SqliteRepository(db, KIND_MESSAGE, Message),
            attachments=SqliteAttachmentRepository(db),
        )
    if cfg.storage != "json":
        raise ValueError(f"Unknown storage backend {cfg.storage!r} (expected 'json' or 'sqlite')")
    return Repositories(
        news_items=JsonFileRepository(cfg.state_dir, KIND_NEWS_ITEM, NewsItem),
        messages=JsonFileRepository(cfg.state_dir, KIND_MESSAGE, Message),
        attachments=JsonAttachmentRepository(cfg.state_dir),
    )

"""Entity value objects shared by the store, the orchestrator and the composer.

Every Compass record is parsed into one of these before it touches a
repository.  Identity is the integer ``id``: two values with the same id
compare equal even when other fields differ.  Use ``to_record()`` when a
field-by-field comparison is needed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _ts_to_text(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def _ts_from_text(value: Any) -> datetime:
    if not value:
        return EPOCH
    ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _opt_int(value: Any) -> int | None:
    return None if value is None else int(value)


class _Entity:
    """Identity contract: equal iff same concrete type and same ``id``."""

    id: int

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.id == other.id  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.id))


@dataclass(frozen=True, eq=False)
class Attachment(_Entity):
    """File attached to a news item.  ``payload`` is never part of the record."""

    id: int
    name: str = ""
    original_filename: str = ""
    is_image: bool = False
    source_organisation_id: int | None = None
    url: str | None = None
    payload: bytes | None = field(default=None, repr=False)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "original_filename": self.original_filename,
            "is_image": self.is_image,
            "source_organisation_id": self.source_organisation_id,
            "url": self.url,
        }

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> Attachment:
        return cls(
            id=int(rec["id"]),
            name=str(rec.get("name") or ""),
            original_filename=str(rec.get("original_filename") or ""),
            is_image=bool(rec.get("is_image", False)),
            source_organisation_id=_opt_int(rec.get("source_organisation_id")),
            url=rec.get("url") or None,
        )

    def without_payload(self) -> Attachment:
        return self if self.payload is None else replace(self, payload=None)

    def with_payload(self, payload: bytes | None) -> Attachment:
        return replace(self, payload=payload)


@dataclass(frozen=True, eq=False)
class NewsItem(_Entity):
    """A post on the school news feed.  Owns its attachments."""

    id: int
    title: str = ""
    content: str = ""  # plain text
    content_html: str = ""  # rich text
    posted_at: datetime = EPOCH
    uploader: str = ""
    priority: bool = False
    attachments: tuple[Attachment, ...] = ()

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.posted_at, self.id)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "content_html": self.content_html,
            "posted_at": _ts_to_text(self.posted_at),
            "uploader": self.uploader,
            "priority": self.priority,
            "attachments": [a.to_record() for a in self.attachments],
        }

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> NewsItem:
        return cls(
            id=int(rec["id"]),
            title=str(rec.get("title") or ""),
            content=str(rec.get("content") or ""),
            content_html=str(rec.get("content_html") or ""),
            posted_at=_ts_from_text(rec.get("posted_at")),
            uploader=str(rec.get("uploader") or ""),
            priority=bool(rec.get("priority", False)),
            attachments=tuple(
                Attachment.from_record(a) for a in rec.get("attachments") or []
            ),
        )


@dataclass(frozen=True, eq=False)
class Message(_Entity):
    """A message addressed to the account, optionally tied to a news item."""

    id: int
    sent_at: datetime = EPOCH
    content: str = ""  # rich text
    sender_name: str = ""
    sender_id: int | None = None
    news_item_id: int | None = None  # weak reference, may never resolve

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.sent_at, self.id)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sent_at": _ts_to_text(self.sent_at),
            "content": self.content,
            "sender_name": self.sender_name,
            "sender_id": self.sender_id,
            "news_item_id": self.news_item_id,
        }

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> Message:
        return cls(
            id=int(rec["id"]),
            sent_at=_ts_from_text(rec.get("sent_at")),
            content=str(rec.get("content") or ""),
            sender_name=str(rec.get("sender_name") or ""),
            sender_id=_opt_int(rec.get("sender_id")),
            news_item_id=_opt_int(rec.get("news_item_id")),
        )


@dataclass(frozen=True)
class NotificationPayload:
    """Delivery-agnostic notification, identical in shape for every source kind."""

    recipients: tuple[str, ...]
    sender: str
    subject: str
    body: str
    html_body: str = ""
    attachments: tuple[Attachment, ...] = ()
    source_kind: str = ""  # "message" | "news_item"
    source_id: int | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "recipients": list(self.recipients),
            "sender": self.sender,
            "subject": self.subject,
            "body": self.body,
            "html_body": self.html_body,
            "attachments": [a.to_record() for a in self.attachments],
            "source_kind": self.source_kind,
            "source_id": self.source_id,
        }

"""Normalisation functions: raw Compass payloads → entity value objects.

The parsers are **schema-tolerant**: each field is looked up under the
spellings the mobile API has been seen to use, and every optional field
resolves to a documented default instead of failing:

    strings    → ""
    booleans   → False
    references → None
    timestamps → Unix epoch (UTC), with a warning

Only the integer id of each record is required; without it the record
cannot be deduplicated and ``MalformedResponse`` is raised.

News feed items (GetNewsFeed):
    NewsItemId, Title, Content1, Content2, PostDateTime, UserName,
    Priority, Attachments[]

Attachments:
    Id / AssetId, Name, OriginalFileName, IsImage, SourceOrganisationId, UiLink

Messages (GetMessages):
    Id / MessageId, Timestamp, Content, SenderName, SenderId, NewsItemId
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List

from dateutil import parser as dtparser

from .common_types import EPOCH, Attachment, Message, NewsItem
from .exceptions import MalformedResponse

logger = logging.getLogger(__name__)

# ASP.NET JSON date, e.g. "/Date(1583892000000+1100)/".  The millisecond
# value is already UTC; the offset only describes the server's local zone.
_ASPNET_DATE_RE = re.compile(r"^/?Date\((-?\d+)([+-]\d{4})?\)/?$")


# ── Response envelopes ──────────────────────────────────────────

def unwrap_response(payload: Any) -> Any:
    """Strip the ``{"d": …}`` and ``GenericMobileResponse`` envelopes.

    Anything that is not one of those envelopes is returned unchanged.
    """
    while isinstance(payload, dict):
        if "d" in payload:
            payload = payload["d"]
        elif str(payload.get("__type") or "").startswith("GenericMobileResponse") and "data" in payload:
            payload = payload["data"]
        else:
            break
    return payload


def as_record_list(x: Any, label: str) -> List[Dict[str, Any]]:
    """Safely coerce *x* to a list of dicts."""
    if not isinstance(x, list):
        if x is not None:
            logger.warning(
                "%s returned %s instead of list — 0 records ingested.",
                label, type(x).__name__,
            )
        return []
    return [rec for rec in x if isinstance(rec, dict)]


# ── Field helpers ───────────────────────────────────────────────

def _first(rec: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = rec.get(k)
        if v is not None:
            return v
    return None


def _text(rec: Dict[str, Any], *keys: str) -> str:
    v = _first(rec, *keys)
    return "" if v is None else str(v).strip()


def _flag(rec: Dict[str, Any], *keys: str) -> bool:
    v = _first(rec, *keys)
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes")
    return bool(v)


def _opt_int(rec: Dict[str, Any], *keys: str) -> int | None:
    v = _first(rec, *keys)
    if v is None or isinstance(v, bool) or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer reference %s=%r", keys[0], v)
        return None


def _required_id(rec: Any, kind: str, *keys: str) -> int:
    if not isinstance(rec, dict):
        raise MalformedResponse(f"{kind}: expected object, got {type(rec).__name__}")
    v = _first(rec, *keys)
    if v is None or isinstance(v, bool):
        raise MalformedResponse(f"{kind}: missing id (looked for {', '.join(keys)})")
    try:
        return int(v)
    except (TypeError, ValueError):
        raise MalformedResponse(f"{kind}: non-integer id {v!r}") from None


def _from_epoch(seconds: float, raw: Any) -> datetime:
    """Epoch seconds → UTC; out-of-range values fall back to the epoch."""
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.warning("Out-of-range timestamp %r — using epoch.", str(raw)[:80])
        return EPOCH


def to_utc(value: Any) -> datetime:
    """Parse a Compass timestamp to an aware UTC ``datetime``.

    Accepts ASP.NET ``/Date(ms±zzzz)/`` strings, ISO-8601 text, epoch
    seconds or an existing ``datetime``.  Naive values are assumed UTC.
    Missing or unparseable input returns the Unix epoch so that callers
    never fail on a bad date.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(value, value)
    else:
        s = str(value or "").strip()
        if not s:
            return EPOCH
        m = _ASPNET_DATE_RE.match(s)
        if m:
            return _from_epoch(int(m.group(1)) / 1000.0, s)
        try:
            dt = dtparser.parse(s)
        except (ValueError, OverflowError):
            logger.warning("Unparseable date %r — using epoch.", s[:80])
            return EPOCH
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ── Entities ────────────────────────────────────────────────────

def parse_attachment(rec: Any) -> Attachment:
    att_id = _required_id(rec, "attachment", "Id", "AssetId", "FileId", "id")
    return Attachment(
        id=att_id,
        name=_text(rec, "Name", "name"),
        original_filename=_text(rec, "OriginalFileName", "FileName", "original_filename"),
        is_image=_flag(rec, "IsImage", "is_image"),
        source_organisation_id=_opt_int(rec, "SourceOrganisationId", "source_organisation_id"),
        url=_text(rec, "UiLink", "Url", "url") or None,
    )


def parse_news_item(rec: Any) -> NewsItem:
    """Parse one GetNewsFeed record.  Malformed attachments are dropped, not fatal."""
    item_id = _required_id(rec, "news item", "NewsItemId", "Id", "id")
    raw_attachments = _first(rec, "Attachments", "attachments")
    if raw_attachments is not None and not isinstance(raw_attachments, list):
        logger.warning(
            "News item %d: Attachments is %s, not a list — ignoring.",
            item_id, type(raw_attachments).__name__,
        )
        raw_attachments = None
    attachments: list[Attachment] = []
    for raw_att in raw_attachments or []:
        try:
            attachments.append(parse_attachment(raw_att))
        except MalformedResponse as exc:
            logger.warning("News item %d: skipping attachment: %s", item_id, exc)
    return NewsItem(
        id=item_id,
        title=_text(rec, "Title", "title"),
        content=_text(rec, "Content1", "Content", "content"),
        content_html=_text(rec, "Content2", "ContentHtml", "content_html"),
        posted_at=to_utc(_first(rec, "PostDateTime", "PostDate", "posted_at")),
        uploader=_text(rec, "UserName", "Uploader", "uploader"),
        priority=_flag(rec, "Priority", "priority"),
        attachments=tuple(attachments),
    )


def parse_message(rec: Any) -> Message:
    msg_id = _required_id(rec, "message", "Id", "MessageId", "id")
    return Message(
        id=msg_id,
        sent_at=to_utc(_first(rec, "Timestamp", "SentDateTime", "sent_at")),
        content=_text(rec, "Content", "Body", "content"),
        sender_name=_text(rec, "SenderName", "FromName", "sender_name"),
        sender_id=_opt_int(rec, "SenderId", "FromUserId", "sender_id"),
        news_item_id=_opt_int(rec, "NewsItemId", "news_item_id"),
    )

"""Turn newly discovered entities into notification payloads.

Nothing is sent from here: the composer returns ``NotificationPayload``
values and the caller decides how to deliver them.  Attachment bytes are
not copied into payloads; a delivery layer reads them through
``AttachmentRepository.load_payload``.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Iterable, Sequence

from .common_types import Message, NewsItem, NotificationPayload
from .exceptions import RepositoryIOFailure
from .store import EntityRepository

logger = logging.getLogger(__name__)

# Strip HTML tags so rich-text message content can be used as a subject line.
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_MAX_SUBJECT_CHARS = 200


def html_to_text(s: str) -> str:
    text = html.unescape(_HTML_TAG_RE.sub(" ", s or ""))
    return " ".join(text.split())


class NotificationComposer:
    """Builds one payload per new message and per new news item."""

    def __init__(
        self,
        news_items: EntityRepository[NewsItem],
        recipients: Sequence[str],
        sender: str,
    ) -> None:
        self.news_items = news_items
        self.recipients = tuple(recipients)
        self.sender = sender

    def compose(
        self,
        new_messages: Iterable[Message],
        new_news_items: Iterable[NewsItem],
    ) -> list[NotificationPayload]:
        """Messages first, then news items, each in the order given."""
        payloads = [self.for_message(m) for m in new_messages]
        payloads.extend(self.for_news_item(n) for n in new_news_items)
        return payloads

    def for_message(self, msg: Message) -> NotificationPayload:
        related = self._resolve(msg.news_item_id)
        if related is None and msg.news_item_id is not None:
            logger.info(
                "message %d refers to unknown news item %d — sending without attachments.",
                msg.id, msg.news_item_id,
            )
        return NotificationPayload(
            recipients=self.recipients,
            sender=self.sender,
            subject=html_to_text(msg.content)[:_MAX_SUBJECT_CHARS],
            body=related.content if related else "",
            html_body=related.content_html if related else "",
            attachments=related.attachments if related else (),
            source_kind="message",
            source_id=msg.id,
        )

    def for_news_item(self, item: NewsItem) -> NotificationPayload:
        return NotificationPayload(
            recipients=self.recipients,
            sender=self.sender,
            subject=item.title,
            body=item.content,
            html_body=item.content_html,
            attachments=item.attachments,
            source_kind="news_item",
            source_id=item.id,
        )

    def _resolve(self, news_item_id: int | None) -> NewsItem | None:
        if news_item_id is None:
            return None
        try:
            return self.news_items.find(news_item_id)
        except RepositoryIOFailure as exc:
            logger.warning("Cannot read news item %d: %s", news_item_id, exc)
            return None

"""One synchronisation pass: Fetch → Parse → Sort → Dedup/Persist → Report.

A pass fetches the full message list and news feed, saves every entity
whose id the repositories have not seen, and returns only those newly
saved entities.  Running it again against unchanged remote data yields
empty results.

Failure policy:

* Fetching either list is all-or-nothing.  Both lists are fetched before
  any write, so a transport/auth failure leaves the repositories
  untouched.
* A record that cannot be parsed is logged and skipped.
* A news item whose attachment cannot be fetched or stored is not saved
  (and so is retried next pass); other items in the same pass proceed.
* An entity whose write fails is never reported as new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, TypeVar

from .common_types import Message, NewsItem
from .exceptions import MalformedResponse, RepositoryIOFailure, TransportFailure
from .ingest_compass import RemoteFeedClient
from .normalize import parse_message, parse_news_item
from .store import AttachmentRepository, EntityRepository

logger = logging.getLogger(__name__)

E = TypeVar("E", Message, NewsItem)


@dataclass
class SyncResult:
    """Outcome of one pass.  Both ``new_*`` lists are sorted oldest first."""

    new_messages: list[Message] = field(default_factory=list)
    new_news_items: list[NewsItem] = field(default_factory=list)
    skipped: int = 0
    attachments_fetched: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.new_messages or self.new_news_items)


class SyncOrchestrator:
    """Drives a pass against one remote client and three repositories."""

    def __init__(
        self,
        client: RemoteFeedClient,
        news_items: EntityRepository[NewsItem],
        messages: EntityRepository[Message],
        attachments: AttachmentRepository,
    ) -> None:
        self.client = client
        self.news_items = news_items
        self.messages = messages
        self.attachments = attachments

    def run_once(self) -> SyncResult:
        result = SyncResult()

        # 1) Fetch.  Errors propagate; nothing has been written yet.
        raw_messages = self.client.fetch_messages()
        raw_news = self.client.fetch_news_feed()

        # 2) Parse + 3) sort
        messages = self._parse_all(raw_messages, parse_message, "message", result)
        news_items = self._parse_all(raw_news, parse_news_item, "news item", result)
        messages.sort(key=lambda m: m.sort_key)
        news_items.sort(key=lambda n: n.sort_key)

        # 4) Messages
        for msg in messages:
            if self.messages.exists(msg.id):
                logger.debug("message %d already seen.", msg.id)
                continue
            if self._save(self.messages, msg, result):
                result.new_messages.append(msg)

        # 5) News items (attachments first, then the item itself)
        for item in news_items:
            if self.news_items.exists(item.id):
                logger.debug("news item %d already seen.", item.id)
                continue
            try:
                self._store_attachments(item, result)
            except (TransportFailure, RepositoryIOFailure) as exc:
                logger.warning("news item %d not saved: attachment failed: %s", item.id, exc)
                result.failures.append(f"news_item {item.id}: {exc}")
                continue
            if self._save(self.news_items, item, result):
                result.new_news_items.append(item)

        logger.info(
            "Sync pass: %d/%d new messages, %d/%d new news items, "
            "%d attachments fetched, %d skipped, %d failures.",
            len(result.new_messages), len(messages),
            len(result.new_news_items), len(news_items),
            result.attachments_fetched, result.skipped, len(result.failures),
        )
        return result

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _parse_all(
        records: List[Dict[str, Any]],
        parse: Callable[[Any], E],
        label: str,
        result: SyncResult,
    ) -> list[E]:
        out: list[E] = []
        for rec in records:
            try:
                out.append(parse(rec))
            except MalformedResponse as exc:
                logger.warning("Skipping malformed %s: %s", label, exc)
                result.skipped += 1
        return out

    @staticmethod
    def _save(repo: EntityRepository[Any], entity: Any, result: SyncResult) -> bool:
        try:
            return repo.save(entity)
        except RepositoryIOFailure as exc:
            logger.warning("%s %d not saved: %s", repo.kind, entity.id, exc)
            result.failures.append(f"{repo.kind} {entity.id}: {exc}")
            return False

    def _store_attachments(self, item: NewsItem, result: SyncResult) -> None:
        """Fetch (at most once per id, ever) and persist each attachment in order."""
        for att in item.attachments:
            if self.attachments.has_payload(att.id):
                logger.debug("attachment %d payload already stored.", att.id)
                self.attachments.save(att.without_payload())
                continue
            data = self.client.fetch_attachment_bytes(att.id)
            result.attachments_fetched += 1
            self.attachments.save(att.with_payload(data))

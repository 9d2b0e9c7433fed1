"""Pipeline: Compass → SyncOrchestrator → NotificationComposer → Outbox export.

``poll_once(cfg)`` runs a single pass and returns the composed
notification payloads.  ``run_pipeline(cfg)`` repeats it on
``cfg.poll_interval_s``, or runs once when the interval is 0.

Client and repositories can be passed in; otherwise they are built from
``cfg`` for the duration of the call and closed afterwards.  Passes never
overlap: the loop runs them back to back on the calling thread.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from .common_types import NotificationPayload
from .config import Config
from .export import export_notifications
from .ingest_compass import CompassClient, RemoteFeedClient
from .notify import NotificationComposer
from .store import Repositories, open_repositories
from .sync import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)


def build_client(cfg: Config) -> CompassClient:
    return CompassClient(cfg.hostname, cfg.username, cfg.password, timeout=cfg.http_timeout_s)


def poll_once(
    cfg: Config | None = None,
    client: RemoteFeedClient | None = None,
    repos: Repositories | None = None,
) -> list[NotificationPayload]:
    """Run one synchronisation pass and compose its notifications.

    Fetch-level errors (``AuthenticationFailure``, ``TransportFailure``)
    propagate to the caller.  New payloads are appended to the outbox;
    a pass with nothing new leaves it untouched.  A failed export is
    logged only: the entities are already persisted, so the payloads are
    still returned.
    """
    if cfg is None:
        cfg = Config()

    own_client = client is None
    own_repos = repos is None
    if repos is None:
        repos = open_repositories(cfg)
    try:
        if client is None:
            client = build_client(cfg)
        orchestrator = SyncOrchestrator(client, repos.news_items, repos.messages, repos.attachments)
        result = orchestrator.run_once()

        composer = NotificationComposer(repos.news_items, cfg.recipients, cfg.notify_sender)
        payloads = composer.compose(result.new_messages, result.new_news_items)
    finally:
        if own_client and client is not None and hasattr(client, "close"):
            client.close()
        if own_repos:
            repos.close()

    # Nothing new: leave any undelivered outbox untouched.
    if payloads:
        try:
            export_notifications(
                cfg.outbox_path,
                [p.to_record() for p in payloads],
                _meta(result),
            )
        except (OSError, ValueError) as exc:
            logger.error(
                "Outbox export to %s failed; %d notifications only returned to caller: %s",
                cfg.outbox_path, len(payloads), exc,
            )

    logger.info("compass poll: %d notifications composed.", len(payloads))
    return payloads


def _meta(result: SyncResult) -> dict[str, Any]:
    return {
        "generated_ts": time.time(),
        "new_messages": [m.id for m in result.new_messages],
        "new_news_items": [n.id for n in result.new_news_items],
        "attachments_fetched": result.attachments_fetched,
        "skipped": result.skipped,
        "failures": list(result.failures),
    }


def run_pipeline(cfg: Config | None = None) -> None:
    """Single pass, or an interval loop when ``poll_interval_s > 0``."""
    if cfg is None:
        cfg = Config()

    if cfg.poll_interval_s <= 0:
        poll_once(cfg)
        return

    logger.info("compass pipeline started (interval=%.1fs).", cfg.poll_interval_s)
    try:
        while True:
            t0 = time.time()
            try:
                poll_once(cfg)
            except Exception:
                logger.exception("Pipeline cycle error — will retry next tick.")
            dt = time.time() - t0
            time.sleep(max(0.2, cfg.poll_interval_s - dt))
    except KeyboardInterrupt:
        logger.info("compass pipeline stopped.")

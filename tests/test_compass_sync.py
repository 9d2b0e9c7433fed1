"""Tests for SyncOrchestrator — dedup, fetch-once, ordering, failure isolation."""

from __future__ import annotations

import pytest

from compass_sync.common_types import Message, NewsItem
from compass_sync.exceptions import (
    AuthenticationFailure,
    RepositoryIOFailure,
    TransportFailure,
)
from compass_sync.store import (
    JsonAttachmentRepository,
    JsonFileRepository,
    KIND_MESSAGE,
    KIND_NEWS_ITEM,
)
from compass_sync.store_sqlite import SqliteAttachmentRepository, SqliteRepository, SqliteStore
from compass_sync.sync import SyncOrchestrator


class FakeClient:
    """In-memory RemoteFeedClient that records attachment fetches."""

    def __init__(self, news=None, messages=None, failing_files=()):
        self.news = list(news or [])
        self.messages = list(messages or [])
        self.failing_files = set(failing_files)
        self.file_calls: list[int] = []

    def fetch_news_feed(self):
        return [dict(r) for r in self.news]

    def fetch_messages(self):
        return [dict(r) for r in self.messages]

    def fetch_attachment_bytes(self, attachment_id):
        self.file_calls.append(attachment_id)
        if attachment_id in self.failing_files:
            raise TransportFailure(f"HTTP 500 for file {attachment_id}")
        return f"bytes-{attachment_id}".encode()


def _news(item_id, posted="2024-03-01T00:00:00Z", attachment_ids=()):
    return {
        "NewsItemId": item_id,
        "Title": f"News {item_id}",
        "Content1": f"Body {item_id}",
        "PostDateTime": posted,
        "Attachments": [{"Id": a, "Name": f"file{a}"} for a in attachment_ids],
    }


def _msg(msg_id, ts="2024-03-01T00:00:00Z", news_item_id=None, **extra):
    rec = {"Id": msg_id, "Timestamp": ts, "Content": f"Message {msg_id}", "SenderName": "Office"}
    if news_item_id is not None:
        rec["NewsItemId"] = news_item_id
    rec.update(extra)
    return rec


@pytest.fixture(params=["json", "sqlite"])
def repos(request, tmp_path):
    if request.param == "json":
        yield (
            JsonFileRepository(str(tmp_path), KIND_NEWS_ITEM, NewsItem),
            JsonFileRepository(str(tmp_path), KIND_MESSAGE, Message),
            JsonAttachmentRepository(str(tmp_path)),
        )
    else:
        db = SqliteStore(str(tmp_path / "state.db"))
        yield (
            SqliteRepository(db, KIND_NEWS_ITEM, NewsItem),
            SqliteRepository(db, KIND_MESSAGE, Message),
            SqliteAttachmentRepository(db),
        )
        db.close()


def _orchestrator(client, repos):
    news, messages, atts = repos
    return SyncOrchestrator(client, news, messages, atts)


# ── Dedup ──────────────────────────────────────────────────────


class TestDedup:
    def test_first_pass_reports_everything_new(self, repos):
        client = FakeClient(news=[_news(1), _news(2)], messages=[_msg(10)])
        result = _orchestrator(client, repos).run_once()
        assert [n.id for n in result.new_news_items] == [1, 2]
        assert [m.id for m in result.new_messages] == [10]
        assert result.changed

    def test_second_pass_is_empty(self, repos):
        client = FakeClient(news=[_news(1, attachment_ids=[5])], messages=[_msg(10)])
        orch = _orchestrator(client, repos)
        orch.run_once()
        again = orch.run_once()
        assert again.new_news_items == []
        assert again.new_messages == []
        assert not again.changed
        assert client.file_calls == [5]

    def test_only_unseen_ids_reported(self, repos):
        client = FakeClient(news=[_news(1)], messages=[_msg(10)])
        orch = _orchestrator(client, repos)
        orch.run_once()
        client.news.append(_news(2))
        client.messages.append(_msg(11))
        result = orch.run_once()
        assert [n.id for n in result.new_news_items] == [2]
        assert [m.id for m in result.new_messages] == [11]

    def test_changed_content_for_seen_id_is_ignored(self, repos):
        client = FakeClient(news=[_news(1)])
        orch = _orchestrator(client, repos)
        orch.run_once()
        client.news = [dict(_news(1), Title="Edited title")]
        assert orch.run_once().new_news_items == []
        assert repos[0].find(1).title == "News 1"

    def test_new_items_are_persisted(self, repos):
        news, messages, atts = repos
        client = FakeClient(news=[_news(1, attachment_ids=[5])], messages=[_msg(10, news_item_id=1)])
        _orchestrator(client, repos).run_once()
        assert news.exists(1)
        assert messages.find(10).news_item_id == 1
        assert atts.exists(5)
        assert atts.load_payload(5) == b"bytes-5"


# ── Ordering ───────────────────────────────────────────────────


class TestOrdering:
    def test_news_sorted_by_post_time(self, repos):
        client = FakeClient(news=[
            _news(3, posted="2024-03-03T00:00:00Z"),
            _news(1, posted="2024-03-01T00:00:00Z"),
            _news(2, posted="2024-03-02T00:00:00Z"),
        ])
        result = _orchestrator(client, repos).run_once()
        assert [n.id for n in result.new_news_items] == [1, 2, 3]

    def test_ties_broken_by_id(self, repos):
        client = FakeClient(messages=[_msg(9), _msg(3), _msg(5, ts="2024-02-01T00:00:00Z")])
        result = _orchestrator(client, repos).run_once()
        assert [m.id for m in result.new_messages] == [5, 3, 9]


# ── Attachments: fetch-once ────────────────────────────────────


class TestAttachmentFetchOnce:
    def test_distinct_ids_of_new_items_only(self, repos):
        client = FakeClient(news=[_news(1, attachment_ids=[7])])
        orch = _orchestrator(client, repos)
        orch.run_once()
        client.file_calls.clear()

        client.news += [
            _news(2, attachment_ids=[5, 6]),
            _news(3, attachment_ids=[5]),
        ]
        result = orch.run_once()
        assert client.file_calls == [5, 6]
        assert result.attachments_fetched == 2

    def test_payload_from_aborted_pass_not_refetched(self, repos):
        client = FakeClient(news=[_news(1, attachment_ids=[1, 2])], failing_files={2})
        orch = _orchestrator(client, repos)
        assert orch.run_once().new_news_items == []
        assert client.file_calls == [1, 2]

        client.failing_files.clear()
        client.file_calls.clear()
        result = orch.run_once()
        assert [n.id for n in result.new_news_items] == [1]
        assert client.file_calls == [2]

    def test_attachments_fetched_in_item_order(self, repos):
        client = FakeClient(news=[_news(1, attachment_ids=[30, 10, 20])])
        _orchestrator(client, repos).run_once()
        assert client.file_calls == [30, 10, 20]


# ── Failure handling ───────────────────────────────────────────


class TestFailureIsolation:
    def test_attachment_failure_isolated_to_its_item(self, repos):
        news, _, _ = repos
        client = FakeClient(
            news=[
                _news(1, posted="2024-03-01T00:00:00Z", attachment_ids=[10]),
                _news(2, posted="2024-03-02T00:00:00Z", attachment_ids=[20]),
            ],
            failing_files={10},
        )
        result = _orchestrator(client, repos).run_once()
        assert [n.id for n in result.new_news_items] == [2]
        assert not news.exists(1)
        assert news.exists(2)
        assert len(result.failures) == 1
        assert "news_item 1" in result.failures[0]

    def test_fetch_failure_aborts_before_any_write(self, repos):
        news, messages, _ = repos

        class BrokenFeed(FakeClient):
            def fetch_news_feed(self):
                raise TransportFailure("GetNewsFeed: HTTP 502")

        client = BrokenFeed(messages=[_msg(10)])
        with pytest.raises(TransportFailure):
            _orchestrator(client, repos).run_once()
        assert messages.all() == []
        assert news.all() == []

    def test_auth_failure_on_attachment_is_fatal(self, repos):
        class ExpiredSession(FakeClient):
            def fetch_attachment_bytes(self, attachment_id):
                raise AuthenticationFailure("session rejected")

        client = ExpiredSession(news=[_news(1, attachment_ids=[4])])
        with pytest.raises(AuthenticationFailure):
            _orchestrator(client, repos).run_once()

    def test_malformed_records_skipped(self, repos):
        client = FakeClient(
            news=[{"Title": "no id"}, _news(2)],
            messages=[{"Content": "no id"}, _msg(10)],
        )
        result = _orchestrator(client, repos).run_once()
        assert [n.id for n in result.new_news_items] == [2]
        assert [m.id for m in result.new_messages] == [10]
        assert result.skipped == 2

    def test_out_of_range_timestamps_do_not_abort_pass(self, repos):
        news, messages, _ = repos
        client = FakeClient(
            news=[{"NewsItemId": 1, "PostDateTime": 1583892000000}, {"NewsItemId": 2}],
            messages=[_msg(10, ts="/Date(99999999999999999)/")],
        )
        result = _orchestrator(client, repos).run_once()
        assert sorted(n.id for n in result.new_news_items) == [1, 2]
        assert [m.id for m in result.new_messages] == [10]
        assert result.skipped == 0
        assert news.exists(1) and news.exists(2)
        assert messages.exists(10)

    def test_non_list_attachments_do_not_abort_pass(self, repos):
        news, _, _ = repos
        client = FakeClient(news=[{"NewsItemId": 1, "Attachments": 5}, _news(2)])
        result = _orchestrator(client, repos).run_once()
        assert sorted(n.id for n in result.new_news_items) == [1, 2]
        assert news.find(1).attachments == ()
        assert client.file_calls == []

    def test_missing_sender_is_not_an_error(self, repos):
        rec = _msg(10)
        del rec["SenderName"]
        result = _orchestrator(FakeClient(messages=[rec]), repos).run_once()
        assert result.new_messages[0].sender_name == ""
        assert result.skipped == 0


class TestWriteFailure:
    def test_failed_write_not_reported_as_new(self, tmp_path):
        class FlakyMessages(JsonFileRepository):
            def save(self, entity):
                if entity.id == 11:
                    raise RepositoryIOFailure("disk full")
                return super().save(entity)

        news = JsonFileRepository(str(tmp_path), KIND_NEWS_ITEM, NewsItem)
        messages = FlakyMessages(str(tmp_path), KIND_MESSAGE, Message)
        atts = JsonAttachmentRepository(str(tmp_path))
        client = FakeClient(messages=[_msg(10), _msg(11), _msg(12)])

        result = SyncOrchestrator(client, news, messages, atts).run_once()
        assert [m.id for m in result.new_messages] == [10, 12]
        assert not messages.exists(11)
        assert any("message 11" in f for f in result.failures)

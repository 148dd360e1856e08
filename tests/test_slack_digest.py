"""Tests for the Slack digest scan agent."""

import logging
from datetime import datetime, timedelta, timezone

import pytest
from slack_sdk.errors import SlackApiError

from inbox_triage.config import Config
from inbox_triage.item_store import InMemoryItemStore
from inbox_triage.models import Item, Message, ScanContext
from inbox_triage.slack_digest import POSTED_LABEL, format_digest, scan

CATEGORIES = ["needs-reply", "review", "todo", "digest"]
NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def make_item(item_id, labels=("digest",), days_ago=0) -> Item:
    return Item(
        id=item_id,
        subject=f"Newsletter {item_id}",
        messages=[
            Message(sender="news@example.com", timestamp=NOW - timedelta(days=days_ago), body="...")
        ],
        labels=set(labels),
    )


def make_ctx(store, **config_overrides) -> ScanContext:
    config = Config(slack_channel="#digest")
    for key, value in config_overrides.items():
        setattr(config, key, value)
    return ScanContext(
        category="digest",
        global_config=config,
        dry_run=False,
        item_store=store,
        log=logging.getLogger("test").info,
    )


def make_store(*items) -> InMemoryItemStore:
    return InMemoryItemStore(CATEGORIES, list(items), clock=lambda: NOW)


@pytest.fixture
def slack_token(monkeypatch):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")


class TestFormatDigest:
    def test_lists_subject_and_sender(self):
        text = format_digest([make_item("a"), make_item("b")])
        assert text.splitlines() == [
            "*Email digest* (2 threads)",
            "• Newsletter a — news@example.com",
            "• Newsletter b — news@example.com",
        ]

    def test_singular(self):
        assert format_digest([make_item("a")]).startswith("*Email digest* (1 thread)")


class TestScan:
    def test_not_configured_without_token(self, monkeypatch):
        monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)
        result = scan(make_ctx(make_store(make_item("a"))))
        assert result["status"] == "not-configured"

    def test_not_configured_without_channel(self, slack_token):
        result = scan(make_ctx(make_store(make_item("a")), slack_channel=None))
        assert result["status"] == "not-configured"

    def test_posts_and_marks_items(self, slack_token, mocker):
        client_cls = mocker.patch("inbox_triage.slack_digest.WebClient")
        store = make_store(make_item("a"), make_item("b"), make_item("c", labels=("todo",)))

        result = scan(make_ctx(store))

        client_cls.assert_called_once_with(token="xoxb-test")
        kwargs = client_cls.return_value.chat_postMessage.call_args[1]
        assert kwargs["channel"] == "#digest"
        assert "Newsletter a" in kwargs["text"]
        assert "Newsletter c" not in kwargs["text"]
        assert result == {"status": "ok", "info": "posted 2 items"}
        assert POSTED_LABEL in store.get_labels(make_item("a"))
        assert POSTED_LABEL not in store.get_labels(make_item("c"))

    def test_already_posted_items_not_reposted(self, slack_token, mocker):
        client_cls = mocker.patch("inbox_triage.slack_digest.WebClient")
        store = make_store(make_item("a", labels=("digest", POSTED_LABEL)))

        result = scan(make_ctx(store))

        client_cls.return_value.chat_postMessage.assert_not_called()
        assert result["info"] == "nothing to post"

    def test_second_scan_is_noop(self, slack_token, mocker):
        client_cls = mocker.patch("inbox_triage.slack_digest.WebClient")
        store = make_store(make_item("a"))

        scan(make_ctx(store))
        scan(make_ctx(store))

        assert client_cls.return_value.chat_postMessage.call_count == 1

    def test_respects_max_items(self, slack_token, mocker):
        client_cls = mocker.patch("inbox_triage.slack_digest.WebClient")
        store = make_store(*(make_item(str(n)) for n in range(5)))

        result = scan(make_ctx(store, digest_max_items=2))

        text = client_cls.return_value.chat_postMessage.call_args[1]["text"]
        assert text.startswith("*Email digest* (2 threads)")
        assert result["info"] == "posted 2 items"

    def test_marking_failure_does_not_stop_other_items(self, slack_token, mocker, caplog):
        mocker.patch("inbox_triage.slack_digest.WebClient")
        store = make_store(make_item("a"), make_item("b"))
        real_add = store.add_label

        def flaky_add(item, label):
            if item.id == "a":
                raise OSError("store down")
            real_add(item, label)

        mocker.patch.object(store, "add_label", side_effect=flaky_add)

        with caplog.at_level(logging.ERROR):
            result = scan(make_ctx(store))

        assert result == {"status": "ok", "info": "posted 2 items; 1 not marked"}
        assert POSTED_LABEL not in store.get_labels(make_item("a"))
        assert POSTED_LABEL in store.get_labels(make_item("b"))
        assert "could not mark" in caplog.text

    def test_old_items_ignored(self, slack_token, mocker):
        client_cls = mocker.patch("inbox_triage.slack_digest.WebClient")
        store = make_store(make_item("old", days_ago=3))

        scan(make_ctx(store, digest_max_age_days=1))

        client_cls.return_value.chat_postMessage.assert_not_called()


class TestSlackErrors:
    def make_error(self, mocker, status_code, headers=None):
        response = mocker.Mock()
        response.status_code = status_code
        response.headers = headers or {}
        return SlackApiError("slack said no", response)

    def test_rate_limit_returns_retry_after(self, slack_token, mocker):
        client_cls = mocker.patch("inbox_triage.slack_digest.WebClient")
        client_cls.return_value.chat_postMessage.side_effect = self.make_error(
            mocker, 429, {"Retry-After": "12"}
        )
        store = make_store(make_item("a"))

        result = scan(make_ctx(store))

        assert result == {"status": "rate-limited", "retry_after_ms": 12000}
        assert POSTED_LABEL not in store.get_labels(make_item("a"))

    def test_other_errors_propagate(self, slack_token, mocker):
        client_cls = mocker.patch("inbox_triage.slack_digest.WebClient")
        client_cls.return_value.chat_postMessage.side_effect = self.make_error(mocker, 500)
        store = make_store(make_item("a"))

        with pytest.raises(SlackApiError):
            scan(make_ctx(store))

        assert POSTED_LABEL not in store.get_labels(make_item("a"))

"""Tests for fantasyyc.content: parsing, noise filter, pagination, in-flight registry."""

import threading
import time
import urllib.error
from datetime import datetime, timezone

import pytest

from fantasyyc.classifier import ContentItem
from fantasyyc.content import (
    ContentSource,
    ContentSourceError,
    InFlightRegistry,
    build_query,
    filter_noise,
    in_window,
    is_noise,
    parse_created_at,
    parse_item,
)


def _raw(id_, text="hello", created="Tue Jan 14 10:00:00 +0000 2025", **extra):
    return {"id": id_, "text": text, "createdAt": created, "likeCount": 3, "retweetCount": 1, **extra}


class TestParsing:
    def test_query_covers_one_utc_day(self):
        q = build_query("@acme", "2025-01-14")
        assert q == "from:acme since:2025-01-14_00:00:00_UTC until:2025-01-15_00:00:00_UTC"

    def test_created_at_formats(self):
        expected = datetime(2025, 1, 14, 10, 0, tzinfo=timezone.utc)
        assert parse_created_at("Tue Jan 14 10:00:00 +0000 2025") == expected
        assert parse_created_at("2025-01-14T10:00:00Z") == expected
        assert parse_created_at("garbage") is None
        assert parse_created_at(None) is None

    def test_parse_item_fields(self):
        item = parse_item(_raw("42", viewCount="1200", isReply=False, quoted_tweet={"id": 7}))
        assert item.id == "42"
        assert item.like_count == 3
        assert item.repost_count == 1
        assert item.view_count == 1200
        assert item.quoted_id == "7"
        assert not item.is_repost

    def test_window_excludes_next_day(self):
        item = parse_item(_raw("1", created="Wed Jan 15 00:00:00 +0000 2025"))
        assert not in_window(item, "2025-01-14")
        assert in_window(parse_item(_raw("2")), "2025-01-14")


class TestNoiseFilter:
    def test_reply_is_noise(self):
        assert is_noise(ContentItem(id="1", text="thanks!", is_reply=True))
        assert is_noise(ContentItem(id="1", text="thanks!", in_reply_to_id="9"))

    def test_leading_mention_is_noise(self):
        assert is_noise(ContentItem(id="1", text="@bob congrats"))

    def test_repost_is_noise(self):
        assert is_noise(ContentItem(id="1", text="RT @bob: big news"))
        assert is_noise(ContentItem(id="1", text="big news", is_repost=True))

    def test_bare_quote_is_noise(self):
        assert is_noise(ContentItem(id="1", text="https://t.co/abc", quoted_id="5"))
        assert not is_noise(ContentItem(id="1", text="We shipped this https://t.co/abc", quoted_id="5"))

    def test_own_post_kept(self):
        items = [ContentItem(id="1", text="We raised $5M"), ContentItem(id="2", text="@x hi")]
        assert [i.id for i in filter_noise(items)] == ["1"]


class ScriptedSource(ContentSource):
    """ContentSource whose HTTP layer replays a script of responses/exceptions."""

    def __init__(self, script, **kwargs):
        super().__init__(api_key="key", retry_delay=0, page_delay=0, **kwargs)
        self.script = list(script)
        self.requests = []
        self._sleep = lambda s: None

    def _request(self, params):
        self.requests.append(dict(params))
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class TestPagination:
    def test_follows_cursor(self):
        source = ScriptedSource(
            [
                {"tweets": [_raw("1")], "has_next_page": True, "next_cursor": "c1"},
                {"tweets": [_raw("2")], "has_next_page": False, "next_cursor": ""},
            ]
        )
        items = source.fetch_day("acme", "2025-01-14")
        assert [i.id for i in items] == ["1", "2"]
        assert source.requests[1]["cursor"] == "c1"
        assert source.requests[0]["queryType"] == "Latest"

    def test_page_limit(self):
        page = {"tweets": [_raw("1")], "has_next_page": True, "next_cursor": "more"}
        source = ScriptedSource([page] * 10, page_limit=3)
        source.fetch_day("acme", "2025-01-14")
        assert len(source.requests) == 3

    def test_retries_then_succeeds(self):
        source = ScriptedSource(
            [urllib.error.URLError("reset"), {"tweets": [_raw("1")], "has_next_page": False}],
            retries=2,
        )
        assert len(source.fetch_day("acme", "2025-01-14")) == 1

    def test_first_page_failure_raises(self):
        source = ScriptedSource([urllib.error.URLError("down")] * 3, retries=2)
        with pytest.raises(ContentSourceError):
            source.fetch_day("acme", "2025-01-14")
        assert len(source.requests) == 3

    def test_later_page_failure_keeps_partial(self):
        source = ScriptedSource(
            [
                {"tweets": [_raw("1")], "has_next_page": True, "next_cursor": "c1"},
                urllib.error.URLError("down"),
                urllib.error.URLError("down"),
                urllib.error.URLError("down"),
            ],
            retries=2,
        )
        assert [i.id for i in source.fetch_day("acme", "2025-01-14")] == ["1"]

    def test_error_status_is_retried(self):
        source = ScriptedSource(
            [{"status": "error", "msg": "rate limited"}, {"tweets": [], "has_next_page": False}]
        )
        assert source.fetch_day("acme", "2025-01-14") == []

    def test_missing_key_raises(self):
        source = ContentSource(api_key=None)
        with pytest.raises(ContentSourceError):
            source.fetch_day("acme", "2025-01-14")


class TestInFlightRegistry:
    def test_signature_ignores_key_order(self):
        assert InFlightRegistry.signature({"a": 1, "b": 2}) == InFlightRegistry.signature({"b": 2, "a": 1})

    def test_concurrent_identical_requests_share_one_call(self):
        registry = InFlightRegistry(ttl=10)
        calls = []
        release = threading.Event()

        def slow():
            calls.append(1)
            release.wait(5)
            return "result"

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(registry.run({"q": 1}, slow)))
            for _ in range(4)
        ]
        threads[0].start()
        while not calls:
            time.sleep(0.01)
        for t in threads[1:]:
            t.start()
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(5)

        assert results == ["result"] * 4
        assert len(calls) == 1
        assert len(registry) == 0

    def test_waiter_reissues_after_leader_failure(self):
        registry = InFlightRegistry(ttl=10)
        started = threading.Event()
        release = threading.Event()

        def failing():
            started.set()
            release.wait(5)
            raise RuntimeError("boom")

        errors = []

        def leader():
            try:
                registry.run({"q": 2}, failing)
            except RuntimeError as e:
                errors.append(e)

        t = threading.Thread(target=leader)
        t.start()
        started.wait(5)
        follower_result = []
        f = threading.Thread(target=lambda: follower_result.append(registry.run({"q": 2}, lambda: "retry")))
        f.start()
        time.sleep(0.05)
        release.set()
        t.join(5)
        f.join(5)

        assert len(errors) == 1
        assert follower_result == ["retry"]

    def test_expired_entry_is_replaced(self):
        registry = InFlightRegistry(ttl=0)
        assert registry.run({"q": 3}, lambda: 1) == 1
        assert registry.run({"q": 3}, lambda: 2) == 2

"""
fantasyyc/content.py - Content source client (twitterapi.io advanced search).

Fetches one UTC day of posts for a handle, follows the result cursor, and
parses raw posts into ContentItems. Also holds the noise filter applied
before classification, and the in-flight registry that collapses identical
concurrent fetches into one upstream request.
"""

import hashlib
import json
import logging
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Any, Callable

from .classifier import ContentItem

logger = logging.getLogger(__name__)

_URL = re.compile(r"https?://\S+")


class ContentSourceError(RuntimeError):
    """A fetch failed after all retries."""


# ============================================================================
# Date window
# ============================================================================


def day_window(day: str) -> tuple[datetime, datetime]:
    """[start, end) of a UTC calendar day given as YYYY-MM-DD."""
    start = datetime.combine(date.fromisoformat(day), dtime.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def build_query(handle: str, day: str) -> str:
    start, end = day_window(day)
    fmt = "%Y-%m-%d_%H:%M:%S_UTC"
    return f"from:{handle.lstrip('@')} since:{start.strftime(fmt)} until:{end.strftime(fmt)}"


def parse_created_at(raw: str | None) -> datetime | None:
    """Parse "Tue Dec 10 07:00:30 +0000 2024" or an ISO timestamp."""
    if not raw:
        return None
    try:
        return datetime.strptime(raw, "%a %b %d %H:%M:%S %z %Y")
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def in_window(item: ContentItem, day: str) -> bool:
    """True when the item was created inside the UTC day. Undated items are kept."""
    if item.created_at is None:
        return True
    start, end = day_window(day)
    return start <= item.created_at < end


# ============================================================================
# Parsing & noise filter
# ============================================================================


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_item(raw: dict) -> ContentItem:
    """Build a ContentItem from one raw post object."""
    retweeted = raw.get("retweeted_tweet")
    quoted = raw.get("quoted_tweet")
    return ContentItem(
        id=str(raw.get("id", "")),
        text=raw.get("text") or "",
        created_at=parse_created_at(raw.get("createdAt")),
        like_count=_int(raw.get("likeCount")),
        repost_count=_int(raw.get("retweetCount")),
        view_count=_int(raw.get("viewCount")),
        reply_count=_int(raw.get("replyCount")),
        is_reply=bool(raw.get("isReply")),
        in_reply_to_id=raw.get("inReplyToId") or None,
        is_repost=bool(retweeted),
        quoted_id=str(quoted.get("id")) if isinstance(quoted, dict) and quoted.get("id") else None,
    )


def is_noise(item: ContentItem) -> bool:
    """Replies, mention-led posts, reposts and bare quotes carry no own news."""
    text = item.text.strip()
    if item.is_reply or item.in_reply_to_id:
        return True
    if text.startswith("@"):
        return True
    if item.is_repost or text.startswith("RT @"):
        return True
    if item.quoted_id and not _URL.sub("", text).strip():
        return True
    return False


def filter_noise(items: list[ContentItem]) -> list[ContentItem]:
    return [item for item in items if not is_noise(item)]


# ============================================================================
# In-flight registry
# ============================================================================


@dataclass
class _InFlight:
    expires_at: float
    done: threading.Event = field(default_factory=threading.Event)
    result: Any = None
    error: BaseException | None = None


class InFlightRegistry:
    """Collapses identical concurrent requests into one call.

    The first caller for a signature runs the request; later callers wait for
    its result. Entries expire after `ttl` seconds, and a waiter whose leader
    failed or expired issues the request itself.
    """

    def __init__(self, ttl: float = 300.0):
        self.ttl = ttl
        self._lock = threading.Lock()
        self._entries: dict[str, _InFlight] = {}

    @staticmethod
    def signature(request: dict) -> str:
        payload = json.dumps(request, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(payload.encode()).hexdigest()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def run(self, request: dict, fn: Callable[[], Any]) -> Any:
        key = self.signature(request)
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= now:
                del self._entries[key]
                entry = None
            leader = entry is None
            if leader:
                entry = _InFlight(expires_at=now + self.ttl)
                self._entries[key] = entry

        if leader:
            try:
                entry.result = fn()
                return entry.result
            except BaseException as e:
                entry.error = e
                raise
            finally:
                entry.done.set()
                with self._lock:
                    if self._entries.get(key) is entry:
                        del self._entries[key]

        remaining = max(entry.expires_at - time.monotonic(), 0.0)
        if entry.done.wait(timeout=remaining) and entry.error is None:
            return entry.result
        logger.debug(f"In-flight leader for {key[:12]} failed or expired, re-issuing")
        return fn()


# ============================================================================
# Client
# ============================================================================


class ContentSource:
    """Client for the advanced-search endpoint.

    Args:
        api_key: Sent as the X-API-Key header.
        base_url: API root, without trailing slash.
        page_limit: Maximum pages followed per search.
        page_delay: Seconds between page requests.
        retries: Extra attempts per page after the first failure.
        retry_delay: Seconds between attempts.
        timeout: Per-request socket timeout.
        registry: Shared in-flight registry (one is created if omitted).
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.twitterapi.io/twitter",
        page_limit: int = 5,
        page_delay: float = 1.0,
        retries: int = 2,
        retry_delay: float = 3.0,
        timeout: float = 20.0,
        registry: InFlightRegistry | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.page_limit = page_limit
        self.page_delay = page_delay
        self.retries = retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.registry = registry or InFlightRegistry()
        self._sleep = time.sleep

    @classmethod
    def from_config(cls, content_config) -> "ContentSource":
        return cls(
            api_key=content_config.api_key,
            base_url=content_config.base_url,
            page_limit=content_config.page_limit,
            page_delay=content_config.page_delay,
            retries=content_config.retries,
            retry_delay=content_config.retry_delay,
            timeout=content_config.timeout,
        )

    def _request(self, params: dict[str, str]) -> dict:
        url = f"{self.base_url}/tweet/advanced_search?{urllib.parse.urlencode(params)}"
        req = urllib.request.Request(url, headers={"X-API-Key": self.api_key or ""})
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            return json.loads(resp.read())

    def _get_page(self, params: dict[str, str]) -> dict:
        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            if attempt:
                self._sleep(self.retry_delay)
            try:
                data = self._request(params)
            except (urllib.error.URLError, OSError, ValueError) as e:
                last_error = e
                logger.warning(
                    f"Search request failed ({attempt + 1}/{self.retries + 1}) "
                    f"for {params.get('query')!r}: {e}"
                )
                continue
            if not isinstance(data, dict):
                last_error = ValueError(f"unexpected response type {type(data).__name__}")
                continue
            if data.get("status") == "error":
                last_error = ValueError(data.get("msg") or data.get("message") or "error status")
                logger.warning(f"Search API error for {params.get('query')!r}: {last_error}")
                continue
            return data
        raise ContentSourceError(f"Search failed for {params.get('query')!r}: {last_error}")

    def search(self, query: str) -> list[dict]:
        """All raw posts for a query, following the cursor up to page_limit pages.

        A failure on the first page raises ContentSourceError. A failure on a
        later page stops pagination and keeps what was already fetched.
        """
        if not self.api_key:
            raise ContentSourceError("No content source API key configured")

        posts: list[dict] = []
        cursor = ""
        for page in range(self.page_limit):
            if page:
                self._sleep(self.page_delay)
            params = {"query": query, "queryType": "Latest"}
            if cursor:
                params["cursor"] = cursor
            try:
                data = self._get_page(params)
            except ContentSourceError:
                if page == 0:
                    raise
                logger.warning(f"Stopping pagination for {query!r} after {page} pages, keeping {len(posts)} posts")
                break
            posts.extend(p for p in data.get("tweets") or [] if isinstance(p, dict))
            cursor = data.get("next_cursor") or ""
            if not data.get("has_next_page") or not cursor:
                break
        return posts

    def fetch_day(self, handle: str, day: str) -> list[ContentItem]:
        """Posts authored by `handle` during one UTC day, oldest first."""
        query = build_query(handle, day)
        raw = self.registry.run(
            {"op": "advanced_search", "query": query, "pages": self.page_limit},
            lambda: self.search(query),
        )
        items = [parse_item(p) for p in raw]
        kept = [item for item in items if in_window(item, day)]
        if len(kept) != len(items):
            logger.debug(f"@{handle} {day}: dropped {len(items) - len(kept)} posts outside the day")
        kept.sort(key=lambda item: item.created_at or datetime.min.replace(tzinfo=timezone.utc))
        return kept

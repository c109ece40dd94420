"""Historical message sources: the mentions API and the fallback log search."""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx

from linkfeed.cache import MentionCache
from linkfeed.models import Message, SourceResult

logger = logging.getLogger(__name__)

DEFAULT_MENTIONS_URL = "https://polecat.me/api/mentions"
DEFAULT_SEARCH_URL = "https://api-v2.rustlesearch.dev/anon/search"
DEFAULT_RETRY_AFTER = 60.0
USER_AGENT = "linkfeed/0.1 (+https://github.com/linkfeed/linkfeed)"


class SourceError(Exception):
    """A source returned something we could not use."""


class RateLimitedError(SourceError):
    """The source asked us to back off."""

    def __init__(self, retry_after: float):
        super().__init__(f"rate limited, retry after {retry_after:.0f}s")
        self.retry_after = retry_after


def to_epoch_ms(value: Any) -> int | None:
    """Coerce epoch seconds/millis or an ISO-8601 string to epoch milliseconds."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        # Anything below 1e12 is too small to be a millisecond timestamp.
        return int(value * 1000) if value < 1e12 else int(value)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        if value.isdigit():
            return to_epoch_ms(int(value))
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def parse_retry_after(response: httpx.Response) -> float:
    """Seconds to wait, from a Retry-After header (delta or HTTP date)."""
    header = response.headers.get("retry-after", "").strip()
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(header)
            return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
        except (TypeError, ValueError):
            pass
    try:
        body = response.json()
        if isinstance(body, dict) and body.get("retryAfter") is not None:
            return max(0.0, float(body["retryAfter"]))
    except (ValueError, TypeError):
        pass
    return DEFAULT_RETRY_AFTER


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code == 429:
        raise RateLimitedError(parse_retry_after(response))
    response.raise_for_status()


def normalize_mention(item: Any, term: str, platform: str, channel: str) -> Message | None:
    """Mentions API item -> Message. Returns None for malformed items."""
    if not isinstance(item, dict):
        return None
    date = to_epoch_ms(item.get("date"))
    nick = item.get("nick")
    text = item.get("text")
    if date is None or not isinstance(nick, str) or not nick or not isinstance(text, str):
        return None
    return Message(
        platform=platform,
        channel=channel,
        date=date,
        nick=nick,
        text=text,
        matched_terms={term} if term else set(),
    )


def normalize_search_hit(item: Any, platform: str, channel: str) -> Message | None:
    """Log search hit -> Message. Accepts the few field spellings the API has used."""
    if not isinstance(item, dict):
        return None
    date = to_epoch_ms(item.get("ts", item.get("timestamp", item.get("date"))))
    nick = item.get("username", item.get("nick"))
    text = item.get("text")
    if date is None or not isinstance(nick, str) or not nick or not isinstance(text, str):
        return None
    return Message(
        platform=platform,
        channel=str(item.get("channel") or channel),
        date=date,
        nick=nick,
        text=text,
    )


class MentionsSource:
    """Primary source: per-term mentions search, paged by offset."""

    def __init__(
        self,
        base_url: str = DEFAULT_MENTIONS_URL,
        platform: str = "dgg",
        channel: str = "destinygg",
        client: httpx.AsyncClient | None = None,
        cache: MentionCache | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.platform = platform
        self.channel = channel
        self._client = client
        self._cache = cache
        self._timeout = timeout

    async def _get_json(self, url: str, params: dict) -> Any:
        if self._client is not None:
            response = await self._client.get(url, params=params)
            _raise_for_status(response)
            return response.json()

        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=self._timeout,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            response = await client.get(url, params=params)
            _raise_for_status(response)
            return response.json()

    async def fetch(self, term: str, size: int, offset: int = 0) -> SourceResult:
        """Fetch one page of mentions for a term.

        Only deeper pages are served from the cache; the first page is
        always fetched fresh.
        """
        items = None
        if self._cache is not None and offset > 0:
            items = self._cache.get(term, size, offset)

        if items is None:
            url = f"{self.base_url}/{quote(term, safe='')}"
            try:
                payload = await self._get_json(url, {"size": size, "offset": offset})
            except RateLimitedError as e:
                logger.warning("Mentions for %r rate limited (%.0fs)", term, e.retry_after)
                return SourceResult(error=str(e), retry_after=e.retry_after)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Mentions fetch for %r failed: %s", term, e)
                return SourceResult(error=str(e) or type(e).__name__)

            if not isinstance(payload, list):
                logger.warning("Mentions for %r: unexpected payload %s", term, type(payload).__name__)
                return SourceResult(error="unexpected payload")
            items = payload
            if self._cache is not None:
                self._cache.set(term, size, offset, items)

        messages = []
        for item in items:
            message = normalize_mention(item, term, self.platform, self.channel)
            if message is None:
                logger.debug("Skipping malformed mention: %r", item)
                continue
            messages.append(message)

        return SourceResult(
            messages=messages,
            has_more=len(items) >= size,
            raw_count=len(items),
        )


class SearchSource:
    """Fallback source: full-text log search, paged by an opaque cursor."""

    def __init__(
        self,
        base_url: str = DEFAULT_SEARCH_URL,
        platform: str = "dgg",
        channel: str = "destinygg",
        search_channel: str = "Destinygg",
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url
        self.platform = platform
        self.channel = channel
        self.search_channel = search_channel
        self._token = token
        self._client = client
        self._timeout = timeout

    def _headers(self) -> dict:
        headers = {"User-Agent": USER_AGENT}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _params(self, terms: list[str], cursor: str | None, size: int) -> dict:
        params: dict[str, Any] = {"channel": self.search_channel, "size": size}
        if terms:
            params["text"] = " | ".join(terms)
        if cursor is not None:
            params["search_after"] = cursor
        return params

    async def _get(self, params: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(self.base_url, params=params, headers=self._headers())
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=self._timeout,
            headers=self._headers(),
        ) as client:
            return await client.get(self.base_url, params=params)

    async def fetch(self, terms: list[str], cursor: str | None = None, size: int = 150) -> SourceResult:
        """Fetch one page of search hits. Empty terms browse the whole channel."""
        try:
            response = await self._get(self._params(terms, cursor, size))
            _raise_for_status(response)
            payload = response.json()
        except RateLimitedError as e:
            logger.warning("Search rate limited, retry after %.0fs", e.retry_after)
            return SourceResult(error=str(e), retry_after=e.retry_after)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Search failed: %s", e)
            return SourceResult(error=str(e) or type(e).__name__)

        if not isinstance(payload, dict):
            return SourceResult(error="unexpected payload")
        body = payload.get("data") if isinstance(payload.get("data"), dict) else payload

        hits = body.get("messages")
        if not isinstance(hits, list):
            return SourceResult(error="unexpected payload")

        messages = []
        for item in hits:
            message = normalize_search_hit(item, self.platform, self.channel)
            if message is None:
                logger.debug("Skipping malformed search hit: %r", item)
                continue
            messages.append(message)

        next_cursor = body.get("searchAfter", body.get("search_after"))
        has_more = body.get("hasMore", body.get("has_more"))
        if has_more is None:
            has_more = len(hits) >= size

        return SourceResult(
            messages=messages,
            has_more=bool(has_more),
            next_cursor=str(next_cursor) if next_cursor is not None else None,
            raw_count=len(hits),
        )

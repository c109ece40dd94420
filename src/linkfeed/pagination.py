"""Pagination and primary -> fallback source policy.

One CursorManager tracks paging for the active filter term set:

1) No terms: browse the channel through the fallback search only.
2) Terms: query the primary (mentions) source per term. If the first page
   merges nothing, switch to the fallback for the rest of the session.
3) Primary paging: offset advances by the longest page any term returned;
   more pages are assumed while any term returned a full page.
4) Fallback paging: follow the opaque cursor until the source says stop.
5) A fallback rate limit suspends fallback calls until the retry time.
"""

import time
from typing import Callable, Iterable

from linkfeed.models import PaginationCursor, SourceResult


class CursorManager:
    """Owns the PaginationCursor for one filter term set at a time."""

    def __init__(self, page_size: int = 150, clock: Callable[[], float] = time.time):
        self.page_size = page_size
        self._clock = clock
        self.cursor = PaginationCursor()

    def reset(self, terms: Iterable[str]) -> PaginationCursor:
        """Fresh cursor for a (possibly new) term set.

        A pending rate limit belongs to the source, not the term set, so it
        carries over.
        """
        terms = tuple(terms)
        limited_until = self.cursor.rate_limited_until if self.rate_limit_remaining() > 0 else None
        self.cursor = PaginationCursor(
            terms=terms,
            using_fallback=not terms,
            rate_limited_until=limited_until,
        )
        return self.cursor

    @property
    def uses_primary(self) -> bool:
        return bool(self.cursor.terms) and not self.cursor.using_fallback

    @property
    def has_more(self) -> bool:
        return self.cursor.has_more

    def rate_limit_remaining(self) -> float:
        """Seconds until fallback calls are allowed again (0 if not limited)."""
        until = self.cursor.rate_limited_until
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    def can_fetch(self, append: bool) -> bool:
        """Whether a cycle may call a source right now."""
        if append and not self.cursor.has_more:
            return False
        if not self.uses_primary and self.rate_limit_remaining() > 0:
            return False
        return True

    def record_primary(self, page_lengths: list[int], merged: int, append: bool) -> bool:
        """Advance after a primary cycle. Returns True if the fallback should take over."""
        cursor = self.cursor
        if not append and merged == 0:
            self.engage_fallback()
            return True

        longest = max(page_lengths, default=0)
        cursor.offset += longest
        cursor.has_more = any(length >= self.page_size for length in page_lengths)
        return False

    def engage_fallback(self) -> None:
        cursor = self.cursor
        cursor.using_fallback = True
        cursor.fallback_cursor = None
        cursor.has_more = True

    def record_fallback(self, result: SourceResult) -> str | None:
        """Advance after a fallback call. Returns a user-facing error, if any."""
        cursor = self.cursor
        if result.retry_after is not None:
            cursor.rate_limited_until = self._clock() + result.retry_after
            return f"Search rate limited; retry after {int(round(result.retry_after))}s"
        if not result.ok:
            return f"Search failed: {result.error}"

        cursor.rate_limited_until = None
        cursor.fallback_cursor = result.next_cursor
        cursor.has_more = bool(result.has_more and result.next_cursor is not None)
        return None

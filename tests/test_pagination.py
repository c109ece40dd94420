"""Tests for the primary/fallback pagination policy."""

from linkfeed.models import SourceResult
from linkfeed.pagination import CursorManager


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestPrimaryPaging:
    """Tests for offset paging against the mentions source."""

    def setup_method(self):
        self.clock = FakeClock()
        self.cursors = CursorManager(page_size=10, clock=self.clock)
        self.cursors.reset(["alice", "bob"])

    def test_uses_primary_with_terms(self):
        """Terms mean the primary source is used first."""
        assert self.cursors.uses_primary
        assert not self.cursors.cursor.using_fallback

    def test_offset_advances_by_longest_page(self):
        """Offset grows by the longest page, not by new unique records."""
        self.cursors.record_primary([10, 4], merged=3, append=False)
        assert self.cursors.cursor.offset == 10
        self.cursors.record_primary([10, 0], merged=0, append=True)
        assert self.cursors.cursor.offset == 20

    def test_offset_never_decreases(self):
        """Repeated pages only move the offset forward."""
        offsets = []
        for lengths in ([10, 10], [10, 3], [0, 0]):
            self.cursors.record_primary(lengths, merged=1, append=True)
            offsets.append(self.cursors.cursor.offset)
        assert offsets == sorted(offsets)

    def test_has_more_from_any_full_page(self):
        """More pages are assumed while any term filled a page."""
        self.cursors.record_primary([10, 2], merged=12, append=False)
        assert self.cursors.has_more
        self.cursors.record_primary([9, 2], merged=11, append=True)
        assert not self.cursors.has_more
        assert not self.cursors.can_fetch(append=True)

    def test_empty_first_page_engages_fallback(self):
        """Zero merged results on the first call switches sources for good."""
        assert self.cursors.record_primary([0, 0], merged=0, append=False) is True
        assert self.cursors.cursor.using_fallback
        assert not self.cursors.uses_primary
        assert self.cursors.has_more

    def test_empty_append_page_does_not_switch(self):
        """Only the initial call can trigger the fallback."""
        self.cursors.record_primary([10, 10], merged=20, append=False)
        assert self.cursors.record_primary([0, 0], merged=0, append=True) is False
        assert self.cursors.uses_primary


class TestFallbackPaging:
    """Tests for cursor paging against the search source."""

    def setup_method(self):
        self.clock = FakeClock()
        self.cursors = CursorManager(page_size=10, clock=self.clock)

    def test_no_terms_means_fallback_only(self):
        """An empty term set browses through the fallback."""
        self.cursors.reset([])
        assert self.cursors.cursor.using_fallback
        assert not self.cursors.uses_primary

    def test_cursor_followed_until_exhausted(self):
        """The opaque cursor advances until the source says stop."""
        self.cursors.reset([])
        assert self.cursors.record_fallback(SourceResult(has_more=True, next_cursor="c1")) is None
        assert self.cursors.cursor.fallback_cursor == "c1"
        assert self.cursors.can_fetch(append=True)

        self.cursors.record_fallback(SourceResult(has_more=False, next_cursor="c2"))
        assert not self.cursors.has_more
        assert not self.cursors.can_fetch(append=True)

    def test_missing_cursor_ends_paging(self):
        """hasMore without a cursor still means no more pages."""
        self.cursors.reset([])
        self.cursors.record_fallback(SourceResult(has_more=True, next_cursor=None))
        assert not self.cursors.has_more

    def test_rate_limit_suspends_until_retry(self):
        """A rate limit blocks fallback calls until the retry time passes."""
        self.cursors.reset([])
        error = self.cursors.record_fallback(SourceResult(error="429", retry_after=30))
        assert error == "Search rate limited; retry after 30s"
        assert not self.cursors.can_fetch(append=False)
        assert self.cursors.rate_limit_remaining() == 30

        self.clock.now += 31
        assert self.cursors.rate_limit_remaining() == 0
        assert self.cursors.can_fetch(append=False)

    def test_generic_failure_message(self):
        """Other failures produce a distinct message and keep paging state."""
        self.cursors.reset([])
        self.cursors.record_fallback(SourceResult(has_more=True, next_cursor="c1"))
        error = self.cursors.record_fallback(SourceResult(error="boom"))
        assert error == "Search failed: boom"
        assert self.cursors.cursor.fallback_cursor == "c1"
        assert self.cursors.has_more

    def test_reset_clears_paging_state(self):
        """A new term set starts from offset zero with no cursor."""
        self.cursors.reset(["alice"])
        self.cursors.record_primary([10], merged=10, append=False)
        self.cursors.reset(["bob"])
        assert self.cursors.uses_primary
        assert self.cursors.cursor.offset == 0
        assert self.cursors.cursor.fallback_cursor is None

    def test_reset_keeps_pending_rate_limit(self):
        """Changing terms does not lift a rate limit that is still running."""
        self.cursors.reset([])
        self.cursors.record_fallback(SourceResult(error="429", retry_after=30))
        self.cursors.reset([])
        assert not self.cursors.can_fetch(append=False)

        self.clock.now += 31
        self.cursors.reset([])
        assert self.cursors.cursor.rate_limited_until is None

"""Tests for the merged, deduplicated message store."""

import itertools

from linkfeed.models import Message
from linkfeed.store import MessageStore


def make_message(date: int, nick: str = "bob", text: str = "hi", terms=()) -> Message:
    return Message(
        platform="dgg",
        channel="destinygg",
        date=date,
        nick=nick,
        text=text,
        matched_terms=set(terms),
    )


class TestDedup:
    """Tests for merging the same message from several sources."""

    def setup_method(self):
        self.store = MessageStore()

    def test_same_message_twice_unions_terms(self):
        """Two sources, one record, union of matched terms."""
        self.store.merge_historical([make_message(100, terms={"alice"})])
        self.store.merge_historical([make_message(100, terms={"bob"})], append=True)
        assert len(self.store) == 1
        assert self.store.messages()[0].matched_terms == {"alice", "bob"}

    def test_existing_record_wins(self):
        """The first-seen record is kept; later copies do not replace it."""
        first = make_message(100, text="original")
        self.store.merge_historical([first])
        self.store.merge_historical([make_message(100, text="changed")])
        assert self.store.messages()[0] is first

    def test_returns_only_new(self):
        """merge_historical reports what was new."""
        self.store.merge_historical([make_message(100)])
        added = self.store.merge_historical([make_message(100), make_message(200)])
        assert [m.date for m in added] == [200]

    def test_duplicate_push_is_noop(self):
        """A live push for a message already in history changes nothing."""
        self.store.merge_historical([make_message(100, terms={"alice"})])
        pushed = make_message(100, terms={"other"})
        assert self.store.merge_streaming(pushed) is False
        assert len(self.store) == 1
        assert self.store.messages()[0].matched_terms == {"alice"}

    def test_push_adds_new(self):
        """A new live push is stored."""
        assert self.store.merge_streaming(make_message(300)) is True
        assert len(self.store) == 1

    def test_malformed_entries_skipped(self):
        """Non-message entries in a batch are ignored."""
        self.store.merge_historical([make_message(100), None, {"nick": "x"}])
        assert len(self.store) == 1


class TestOrdering:
    """Tests for consumption order."""

    def test_newest_first(self):
        """Messages always come back strictly by date, descending."""
        store = MessageStore()
        store.merge_historical([make_message(d, nick=f"u{d}") for d in (5, 1, 9)])
        store.merge_streaming(make_message(7, nick="live"))
        store.merge_historical([make_message(3, nick="old")], append=True)
        dates = [m.date for m in store.messages()]
        assert dates == sorted(dates, reverse=True)
        assert dates == [9, 7, 5, 3, 1]

    def test_order_independent_of_merge_order(self):
        """Any merge order of distinct-date batches gives the same sequence."""
        batches = [
            [make_message(10, nick="a"), make_message(40, nick="b")],
            [make_message(30, nick="c")],
            [make_message(20, nick="d"), make_message(40, nick="b")],
        ]
        results = set()
        for order in itertools.permutations(batches):
            store = MessageStore()
            for batch in order:
                store.merge_historical([make_message(m.date, m.nick) for m in batch])
            results.add(tuple(m.id for m in store.messages()))
        assert len(results) == 1

    def test_same_date_keeps_batch_order(self):
        """Ties on date follow insertion order within a batch."""
        store = MessageStore()
        store.merge_historical([make_message(5, nick="first"), make_message(5, nick="second")])
        assert [m.nick for m in store.messages()] == ["first", "second"]

    def test_same_date_append_goes_after(self):
        """An appended tie lands behind existing records."""
        store = MessageStore()
        store.merge_historical([make_message(5, nick="head")])
        store.merge_historical([make_message(5, nick="tail")], append=True)
        assert [m.nick for m in store.messages()] == ["head", "tail"]

    def test_clear(self):
        """clear empties the store."""
        store = MessageStore()
        store.merge_historical([make_message(1)])
        store.clear()
        assert len(store) == 0
        assert store.messages() == []

"""Tests for the feed engine: fetch cycles, live merging and user actions."""

import asyncio
import json

from linkfeed.feed import Feed
from linkfeed.live import DggChatStream, LiveEvent
from linkfeed.models import FilterSettings, Message, SourceResult

NOW = 1_700_000_000.0


def make_message(date: int, nick: str, text: str, terms=()) -> Message:
    return Message(
        platform="dgg",
        channel="destinygg",
        date=date,
        nick=nick,
        text=text,
        matched_terms=set(terms),
    )


def dgg_msg(nick: str, text: str, ts: int) -> str:
    return "MSG " + json.dumps({"nick": nick, "data": text, "timestamp": ts})


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeMentions:
    """Mentions source answering from a per-term function."""

    def __init__(self, respond):
        self.respond = respond
        self.calls = []

    async def fetch(self, term: str, size: int, offset: int = 0) -> SourceResult:
        self.calls.append((term, offset))
        return await self.respond(term, size, offset)


class FakeSearch:
    """Search source replaying a list of results."""

    def __init__(self, results=()):
        self.results = list(results)
        self.calls = []

    async def fetch(self, terms, cursor=None, size=150) -> SourceResult:
        self.calls.append((tuple(terms), cursor))
        if self.results:
            return self.results.pop(0)
        return SourceResult(has_more=False)


async def empty_page(term, size, offset):
    return SourceResult(raw_count=0)


class TestFallbackSwitch:
    """Tests for switching from the mentions source to search."""

    def test_empty_primary_switches_and_sticks(self):
        """No mentions on the first call: search takes over, even for load more."""
        mentions = FakeMentions(empty_page)
        search = FakeSearch([
            SourceResult(messages=[make_message(2000, "a", "alice https://a.com/1.png")], has_more=True, next_cursor="c1"),
            SourceResult(messages=[make_message(1000, "b", "alice https://b.com/2.png")], has_more=False),
        ])
        feed = Feed(FilterSettings(filter_terms=["alice"]), mentions=mentions, search=search)

        async def run():
            await feed.start(connect=False)
            await feed.load_more()

        asyncio.run(run())
        assert mentions.calls == [("alice", 0)]
        assert search.calls == [(("alice",), None), (("alice",), "c1")]
        assert [c.nick for c in feed.visible_cards()] == ["a", "b"]
        assert not feed.has_more

    def test_no_terms_skips_mentions(self):
        """An empty term set only ever uses search."""
        mentions = FakeMentions(empty_page)
        search = FakeSearch([SourceResult(messages=[make_message(1, "a", "https://a.com")], has_more=False)])
        feed = Feed(FilterSettings(), mentions=mentions, search=search)

        asyncio.run(feed.refresh())
        assert mentions.calls == []
        assert len(search.calls) == 1
        assert feed.message_count == 1

    def test_primary_paging(self):
        """Load more asks for the next offset while pages are full."""
        async def respond(term, size, offset):
            messages = [make_message(10_000 - offset - i, term, f"{term} https://x.com/{offset + i}.png") for i in range(size)]
            return SourceResult(messages=messages, raw_count=size, has_more=True)

        mentions = FakeMentions(respond)
        feed = Feed(FilterSettings(filter_terms=["alice"]), mentions=mentions, search=FakeSearch(), page_size=3)

        async def run():
            await feed.refresh()
            await feed.load_more()

        asyncio.run(run())
        assert mentions.calls == [("alice", 0), ("alice", 3)]
        assert feed.message_count == 6
        assert feed.has_more


class TestCycleGuard:
    """Tests for the one-cycle-at-a-time guard."""

    def test_second_trigger_dropped(self):
        """A load more while a cycle is running is dropped, not queued."""
        async def run():
            gate = asyncio.Event()

            async def respond(term, size, offset):
                await gate.wait()
                return SourceResult(messages=[make_message(1, "a", "alice https://a.com")], raw_count=1)

            mentions = FakeMentions(respond)
            feed = Feed(FilterSettings(filter_terms=["alice"]), mentions=mentions, search=FakeSearch())
            first = asyncio.create_task(feed.refresh())
            await asyncio.sleep(0)
            assert feed.is_fetching
            dropped = await feed.load_more()
            gate.set()
            completed = await first
            return dropped, completed, mentions.calls, feed.is_fetching

        dropped, completed, calls, fetching = asyncio.run(run())
        assert dropped is False
        assert completed is True
        assert calls == [("alice", 0)]
        assert fetching is False

    def test_guard_released_after_error(self):
        """A source that raises still leaves the feed able to fetch."""
        class BrokenSearch(FakeSearch):
            async def fetch(self, terms, cursor=None, size=150):
                self.calls.append((tuple(terms), cursor))
                raise RuntimeError("boom")

        search = BrokenSearch()
        feed = Feed(FilterSettings(), search=search)

        async def run():
            await feed.refresh()
            await feed.refresh()

        asyncio.run(run())
        assert len(search.calls) == 2
        assert feed.error == "Search failed: boom"
        assert not feed.is_fetching

    def test_late_results_discarded(self):
        """Results for a replaced term set never reach the store."""
        async def run():
            gate = asyncio.Event()

            async def respond(term, size, offset):
                if term == "alice":
                    await gate.wait()
                    return SourceResult(messages=[make_message(1000, "old", "alice https://a.com")], raw_count=1)
                return SourceResult(messages=[make_message(2000, "new", "bob https://b.com")], raw_count=1)

            feed = Feed(FilterSettings(filter_terms=["alice"]), mentions=FakeMentions(respond), search=FakeSearch())
            stale = asyncio.create_task(feed.refresh())
            await asyncio.sleep(0)
            await feed.set_filter_terms(["bob"])
            gate.set()
            stale_result = await stale
            return feed, stale_result

        feed, stale_result = asyncio.run(run())
        assert stale_result is False
        assert [m.nick for m in feed.store.messages()] == ["new"]
        assert feed.cursors.cursor.terms == ("bob",)
        assert feed.cursors.cursor.offset == 1


class TestErrors:
    """Tests for isolated failures and rate limits."""

    def test_per_term_failure_isolated(self):
        """One term failing or raising does not lose the others."""
        async def respond(term, size, offset):
            if term == "bad":
                raise RuntimeError("kaboom")
            if term == "worse":
                return SourceResult(error="HTTP 500")
            return SourceResult(messages=[make_message(1, "a", "good https://a.com")], raw_count=1)

        search = FakeSearch()
        feed = Feed(FilterSettings(filter_terms=["good", "bad", "worse"]), mentions=FakeMentions(respond), search=search)
        asyncio.run(feed.refresh())
        assert feed.message_count == 1
        assert search.calls == []
        assert feed.error is None
        assert feed.cursors.cursor.offset == 1

    def test_rate_limit_suspends_search(self):
        """A rate limit shows a retry message and blocks calls until it passes."""
        clock = FakeClock()
        search = FakeSearch([
            SourceResult(error="rate limited", retry_after=30),
            SourceResult(messages=[make_message(1, "a", "https://a.com")], has_more=False),
        ])
        feed = Feed(FilterSettings(), search=search, clock=clock)

        async def run():
            await feed.refresh()
            assert feed.error == "Search rate limited; retry after 30s"
            assert await feed.load_more() is False
            assert await feed.refresh() is False
            assert len(search.calls) == 1
            clock.now += 31
            await feed.refresh()

        asyncio.run(run())
        assert len(search.calls) == 2
        assert feed.error is None
        assert feed.message_count == 1

    def test_no_search_source(self):
        """Without a search source the feed reports it and stops paging."""
        feed = Feed(FilterSettings())
        asyncio.run(feed.refresh())
        assert feed.error == "No search source configured"
        assert not feed.has_more


class TestLoadMoreTrigger:
    """Tests for the proximity trigger."""

    def test_only_near_the_end(self):
        """Far from the end nothing loads; close to it the next page loads."""
        search = FakeSearch([
            SourceResult(messages=[make_message(2, "a", "https://a.com")], has_more=True, next_cursor="c1"),
            SourceResult(messages=[make_message(1, "b", "https://b.com")], has_more=False),
        ])
        feed = Feed(FilterSettings(), search=search, load_more_threshold=200)

        async def run():
            await feed.refresh()
            far = await feed.maybe_load_more(1000)
            near = await feed.maybe_load_more(50)
            done = await feed.maybe_load_more(0)
            return far, near, done

        far, near, done = asyncio.run(run())
        assert (far, near, done) == (False, True, False)
        assert search.calls == [((), None), ((), "c1")]


class TestLiveStreams:
    """Tests for merging live streams into the feed."""

    def test_history_timeout_does_not_block(self):
        """A stream that never sends history does not stop the first fetch."""
        stream = DggChatStream("wss://chat.test/ws", "destinygg")
        search = FakeSearch([SourceResult(messages=[make_message(1, "a", "https://a.com")])])
        feed = Feed(FilterSettings(), search=search, streams=[stream], history_timeout=0.01)

        async def run():
            await asyncio.wait_for(feed.start(connect=False), timeout=2)
            await feed.stop()

        asyncio.run(run())
        assert len(search.calls) == 1
        assert feed.message_count == 1

    def test_pushes_merge_during_fetch(self):
        """Live pushes land while a cycle is still waiting on its source."""
        async def run():
            gate = asyncio.Event()

            async def respond(term, size, offset):
                await gate.wait()
                return SourceResult(messages=[make_message(2_000_000, "mention", "alice https://m.com/2.png")], raw_count=1)

            stream = DggChatStream("wss://chat.test/ws", "destinygg")
            stream.handle_frame("HISTORY " + json.dumps([dgg_msg("hist", "alice https://h.com/1.png", 1000)]))
            feed = Feed(
                FilterSettings(filter_terms=["alice"]),
                mentions=FakeMentions(respond),
                search=FakeSearch(),
                streams=[stream],
                history_timeout=1.0,
            )
            start = asyncio.create_task(feed.start(connect=False))
            await asyncio.sleep(0.01)
            stream.handle_frame(dgg_msg("live", "hey @Alice https://l.com/3.png", 3000))
            stream.handle_frame(dgg_msg("other", "unrelated https://o.com/4.png", 3500))
            await asyncio.sleep(0.01)
            during = ([m.nick for m in feed.store.messages()], feed.is_fetching)
            gate.set()
            await start
            cards = feed.visible_cards()
            await feed.stop()
            return during, cards

        (nicks, fetching), cards = asyncio.run(run())
        assert fetching is True
        assert set(nicks) == {"hist", "live", "other"}
        assert [c.nick for c in cards] == ["live", "mention", "hist"]
        assert cards[0].is_streaming
        assert not cards[-1].is_streaming

    def test_duplicate_push_ignored(self):
        """A push for a message already in history is a no-op."""
        feed = Feed(FilterSettings())
        history = make_message(1000, "a", "https://a.com")
        assert feed.apply_live_event(LiveEvent(messages=[history], is_history=True)) == 1
        push = make_message(1000, "a", "https://a.com")
        assert feed.apply_live_event(LiveEvent(messages=[push])) == 0
        assert feed.message_count == 1

    def test_refresh_replays_history(self):
        """After a reset the last history burst is merged again."""
        stream = DggChatStream("wss://chat.test/ws", "destinygg")
        stream.handle_frame("HISTORY " + json.dumps([dgg_msg("hist", "bob https://h.com/1.png", 1000)]))
        feed = Feed(FilterSettings(filter_terms=["alice"]), search=FakeSearch(), streams=[stream])

        async def run():
            await feed.set_filter_terms(["bob"])

        asyncio.run(run())
        assert [c.nick for c in feed.visible_cards()] == ["hist"]

    def test_replay_drops_terms_of_previous_set(self):
        """Replayed history only carries terms from the active set."""
        stream = DggChatStream("wss://chat.test/ws", "destinygg")
        stream.handle_frame("HISTORY " + json.dumps([dgg_msg("hist", "alice and bob https://h.com/1.png", 1000)]))
        feed = Feed(FilterSettings(filter_terms=["alice"]), search=FakeSearch(), streams=[stream])
        feed.apply_live_event(LiveEvent(messages=list(stream.history), is_history=True))
        assert feed.store.messages()[0].matched_terms == {"alice"}

        asyncio.run(feed.set_filter_terms(["bob"]))
        assert feed.store.messages()[0].matched_terms == {"bob"}
        assert stream.history[0].matched_terms == set()


class TestUserActions:
    """Tests for mutations that re-evaluate the visible cards."""

    def setup_method(self):
        self.saved = []
        self.clock = FakeClock()
        self.feed = Feed(FilterSettings(), save_settings=self.saved.append, clock=self.clock)
        self.feed.apply_live_event(LiveEvent(messages=[
            make_message(2000, "Troll", "https://a.com/x.png"),
            make_message(1000, "friend", "https://b.com/y.png"),
        ]))

    def nicks(self):
        return [c.nick for c in self.feed.visible_cards()]

    def test_ban_and_unban_user(self):
        """Banning hides the user's cards; unbanning brings them back."""
        self.feed.ban_user("dgg", "troll")
        assert self.nicks() == ["friend"]
        self.feed.unban_user("DGG", "Troll")
        assert self.nicks() == ["Troll", "friend"]
        assert len(self.saved) == 2

    def test_ban_other_platform_no_effect(self):
        """A ban on another platform does not hide this user."""
        self.feed.ban_user("kick", "troll")
        assert self.nicks() == ["Troll", "friend"]

    def test_trust_user(self):
        """Trusted users' cards are flagged."""
        self.feed.trust_user("dgg", "friend")
        cards = {c.nick: c for c in self.feed.visible_cards()}
        assert cards["friend"].is_trusted
        assert not cards["Troll"].is_trusted

        self.feed.untrust_user("DGG", "Friend")
        cards = {c.nick: c for c in self.feed.visible_cards()}
        assert not cards["friend"].is_trusted
        assert len(self.saved) == 2

    def test_mute_expires(self):
        """A mute hides the user until it runs out."""
        self.feed.mute_user("dgg", "troll", seconds=60)
        assert self.nicks() == ["friend"]
        self.clock.now += 61
        assert self.nicks() == ["Troll", "friend"]

    def test_mute_replaces_previous(self):
        """Muting again replaces the old expiry."""
        self.feed.mute_user("dgg", "troll", seconds=60)
        self.feed.mute_user("dgg", "troll", seconds=600)
        assert len(self.feed.settings.muted_users) == 1

    def test_ban_link(self):
        """A banned link hides its card whatever the case or fragment."""
        self.feed.ban_link("https://B.com/y.png#frag")
        assert self.nicks() == ["Troll"]

    def test_ban_message(self):
        """Banning a message id hides its cards."""
        message_id = self.feed.visible_cards()[0].message_id
        self.feed.ban_message(message_id)
        assert self.nicks() == ["friend"]

    def test_ban_term(self):
        """Banned terms apply immediately."""
        self.feed.ban_term("a.com")
        assert self.nicks() == ["friend"]
        self.feed.ban_term("   ")
        assert len(self.saved) == 1

    def test_reload_card(self):
        """Reload rebuilds one card without changing its identity or order."""
        before = self.feed.visible_cards()
        self.feed.reload_card(before[1].id)
        after = self.feed.visible_cards()
        assert [c.id for c in after] == [c.id for c in before]
        assert after[0] is before[0]
        assert after[1] is not before[1]
        assert after[1].reload_token == before[1].reload_token + 1

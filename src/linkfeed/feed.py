"""The feed engine: sources -> store -> filter -> cards.

A Feed owns one MessageStore, one CursorManager and the card cache for the
active filter term set. Historical fetches run as *cycles* (all terms at
once); live streams are drained independently and merged as they arrive.
Both paths run on the event loop, so the store has a single writer.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Iterable

from linkfeed.fetcher import MentionsSource, SearchSource
from linkfeed.filter import FilterPipeline, matching_terms, normalize_terms
from linkfeed.links import CardCache, normalize_link
from linkfeed.live import HISTORY_TIMEOUT, ChatStream, LiveEvent
from linkfeed.models import FilterSettings, LinkCard, Message, MutedUser, SourceResult, UserKey
from linkfeed.pagination import CursorManager
from linkfeed.store import MessageStore

logger = logging.getLogger(__name__)

LOAD_MORE_THRESHOLD = 200


class Feed:
    """Aggregated, filtered, paginated feed of link cards."""

    def __init__(
        self,
        settings: FilterSettings,
        mentions: MentionsSource | None = None,
        search: SearchSource | None = None,
        streams: Iterable[ChatStream] = (),
        page_size: int = 150,
        history_timeout: float = HISTORY_TIMEOUT,
        load_more_threshold: float = LOAD_MORE_THRESHOLD,
        save_settings: Callable[[FilterSettings], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.mentions = mentions
        self.search = search
        self.streams = list(streams)
        self.page_size = page_size
        self.history_timeout = history_timeout
        self.load_more_threshold = load_more_threshold
        self._save_settings = save_settings
        self._clock = clock

        self.pipeline = FilterPipeline(settings, clock)
        self.store = MessageStore()
        self.cards = CardCache()
        self.cursors = CursorManager(page_size, clock)
        self.cursors.reset(self.terms)
        self.error: str | None = None

        self._generation = 0
        self._inflight: int | None = None
        self._drain_tasks: list[asyncio.Task] = []

    # -- state ---------------------------------------------------------------

    @property
    def terms(self) -> tuple[str, ...]:
        return normalize_terms(self.settings.filter_terms)

    @property
    def has_more(self) -> bool:
        return self.cursors.has_more

    @property
    def is_fetching(self) -> bool:
        return self._inflight == self._generation

    @property
    def message_count(self) -> int:
        """Unfiltered number of messages, for summaries."""
        return len(self.store)

    def visible_cards(self) -> list[LinkCard]:
        """Ordered, filtered cards for rendering (newest first)."""
        cards = self.pipeline.visible_cards(self.store.messages(), self.cards)
        if len(self.cards) > 2 * len(cards) + 64:
            self.cards.prune({card.id for card in cards})
        return cards

    # -- lifecycle -----------------------------------------------------------

    async def start(self, connect: bool = True) -> None:
        """Start live streams, wait (bounded) for their history, then fetch."""
        for stream in self.streams:
            if connect:
                stream.start()
            self._drain_tasks.append(asyncio.create_task(self._drain(stream)))

        if self.streams:
            await asyncio.gather(*(s.wait_for_history(self.history_timeout) for s in self.streams))
            # Let the drains merge whatever arrived before the first cycle.
            await asyncio.sleep(0)

        await self._fetch_cycle(append=False)

    async def stop(self) -> None:
        for task in self._drain_tasks:
            task.cancel()
        for task in self._drain_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_tasks = []
        for stream in self.streams:
            await stream.stop()

    async def _drain(self, stream: ChatStream) -> None:
        while True:
            event = await stream.events.get()
            self.apply_live_event(event)

    def apply_live_event(self, event: LiveEvent) -> int:
        """Merge one live event. Returns how many messages were new.

        The store gets its own copies, so a stream's kept history never
        carries terms from an earlier term set into a replay.
        """
        messages = [replace(m, matched_terms=set(m.matched_terms)) for m in event.messages]
        self._annotate(messages)
        if event.is_history:
            return len(self.store.merge_historical(messages, append=False))
        return sum(1 for message in messages if self.store.merge_streaming(message))

    def _annotate(self, messages: Iterable[Message]) -> None:
        terms = self.terms
        if not terms:
            return
        for message in messages:
            message.matched_terms |= matching_terms(message.text, terms)

    # -- fetching ------------------------------------------------------------

    def _reset(self) -> None:
        """Drop everything tied to the previous term set."""
        self._generation += 1
        self.store.clear()
        self.cards.clear()
        self.cursors.reset(self.terms)
        self.error = None
        for stream in self.streams:
            if stream.history:
                self.apply_live_event(LiveEvent(messages=list(stream.history), is_history=True))

    async def refresh(self) -> bool:
        """Full reset and first page for the current terms."""
        self._reset()
        return await self._fetch_cycle(append=False)

    async def set_filter_terms(self, terms: Iterable[str]) -> bool:
        """Switch term sets. Late results for the old terms are discarded."""
        self.settings.filter_terms = [t for t in terms if t.strip()]
        self._persist()
        return await self.refresh()

    async def load_more(self) -> bool:
        """Fetch the next older page. Dropped if a cycle is already running."""
        return await self._fetch_cycle(append=True)

    async def maybe_load_more(self, distance_to_end: float) -> bool:
        """Scroll hook: only loads when within the threshold of the end."""
        if distance_to_end > self.load_more_threshold:
            return False
        if not self.has_more or self.is_fetching:
            return False
        return await self.load_more()

    async def _fetch_cycle(self, append: bool) -> bool:
        generation = self._generation
        if self._inflight == generation:
            logger.debug("Fetch cycle already running, dropping trigger")
            return False
        if not self.cursors.can_fetch(append):
            remaining = self.cursors.rate_limit_remaining()
            if remaining > 0:
                self.error = f"Search rate limited; retry after {int(round(remaining))}s"
            return False

        self._inflight = generation
        try:
            if self.cursors.uses_primary and self.mentions is not None:
                await self._primary_cycle(generation, append)
            else:
                if not self.cursors.cursor.using_fallback:
                    self.cursors.engage_fallback()
                await self._fallback_cycle(generation, append)
        finally:
            if self._inflight == generation:
                self._inflight = None
        return generation == self._generation

    async def _fetch_term(self, term: str, offset: int) -> SourceResult:
        return await self.mentions.fetch(term, self.page_size, offset)

    async def _primary_cycle(self, generation: int, append: bool) -> None:
        terms = self.cursors.cursor.terms
        offset = self.cursors.cursor.offset if append else 0

        results = await asyncio.gather(
            *(self._fetch_term(term, offset) for term in terms),
            return_exceptions=True,
        )
        if generation != self._generation:
            logger.debug("Discarding mentions for superseded terms %s", terms)
            return

        page_lengths = []
        batch: list[Message] = []
        for term, result in zip(terms, results):
            if isinstance(result, BaseException):
                logger.warning("Mentions fetch for %r raised: %s", term, result)
                page_lengths.append(0)
                continue
            if not result.ok:
                logger.warning("Mentions fetch for %r failed: %s", term, result.error)
                page_lengths.append(0)
                continue
            page_lengths.append(result.raw_count)
            batch.extend(result.messages)

        self._annotate(batch)
        self.store.merge_historical(batch, append=append)
        self.error = None

        if self.cursors.record_primary(page_lengths, len(batch), append):
            logger.info("No mentions for %s, switching to search", ", ".join(terms))
            remaining = self.cursors.rate_limit_remaining()
            if remaining > 0:
                self.error = f"Search rate limited; retry after {int(round(remaining))}s"
                return
            await self._fallback_cycle(generation, append=False)

    async def _fallback_cycle(self, generation: int, append: bool) -> None:
        cursor = self.cursors.cursor
        if self.search is None:
            self.error = "No search source configured"
            cursor.has_more = False
            return

        try:
            result = await self.search.fetch(
                list(cursor.terms),
                cursor.fallback_cursor if append else None,
                self.page_size,
            )
        except Exception as e:
            logger.warning("Search raised: %s", e, exc_info=True)
            result = SourceResult(error=str(e) or type(e).__name__)

        if generation != self._generation:
            logger.debug("Discarding search results for superseded terms %s", cursor.terms)
            return

        error = self.cursors.record_fallback(result)
        if error:
            self.error = error
            return

        self.error = None
        self._annotate(result.messages)
        self.store.merge_historical(result.messages, append=append)

    # -- user actions ----------------------------------------------------------

    def _persist(self) -> None:
        if self._save_settings is not None:
            self._save_settings(self.settings)

    def ban_user(self, platform: str, nick: str) -> None:
        self.settings.banned_users.add(UserKey.of(platform, nick))
        self._persist()

    def unban_user(self, platform: str, nick: str) -> None:
        self.settings.banned_users.discard(UserKey.of(platform, nick))
        self._persist()

    def trust_user(self, platform: str, nick: str) -> None:
        self.settings.trusted_users.add(UserKey.of(platform, nick))
        self._persist()

    def untrust_user(self, platform: str, nick: str) -> None:
        self.settings.trusted_users.discard(UserKey.of(platform, nick))
        self._persist()

    def mute_user(self, platform: str, nick: str, seconds: float) -> None:
        user = UserKey.of(platform, nick)
        expires = int((self._clock() + seconds) * 1000)
        self.settings.muted_users = [m for m in self.settings.muted_users if m.user != user]
        self.settings.muted_users.append(MutedUser(user=user, expires_at=expires))
        self._persist()

    def ban_link(self, url: str) -> None:
        self.settings.banned_links.add(normalize_link(url))
        self._persist()

    def ban_message(self, message_id: str) -> None:
        self.settings.banned_messages.add(message_id)
        self._persist()

    def ban_term(self, term: str) -> None:
        if term.strip():
            self.settings.banned_terms.add(term.strip())
            self._persist()

    def reload_card(self, card_id: str) -> None:
        """Ask the renderer to recreate one card's embed; its position is kept."""
        self.cards.bump(card_id)

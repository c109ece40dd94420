"""Visibility filtering for messages and link cards."""

import re
import time
from typing import Callable, Iterable

from linkfeed.links import CardCache, normalize_link, project_cards
from linkfeed.models import DisplayMode, FilterSettings, LinkCard, LinkKind, Message, UserKey

NSFW_PATTERN = re.compile(r"NSFW", re.IGNORECASE)
NSFL_PATTERN = re.compile(r"NSFL", re.IGNORECASE)


def normalize_term(term: str) -> str:
    """Lower-case a filter term and drop a leading @ (``@Alice`` == ``alice``)."""
    return term.strip().lstrip("@").strip().lower()


def normalize_terms(terms: Iterable[str]) -> tuple[str, ...]:
    """Normalized, de-duplicated terms in first-seen order."""
    seen: dict[str, None] = {}
    for term in terms:
        norm = normalize_term(term)
        if norm:
            seen.setdefault(norm, None)
    return tuple(seen)


def _term_pattern(term: str) -> re.Pattern:
    # Whole word: not preceded or followed by a word character. "@" is not a
    # word character, so "@alice" in text matches the term "alice".
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)


def matching_terms(text: str, terms: Iterable[str]) -> set[str]:
    """Return the normalized terms that occur in text as whole words."""
    return {term for term in normalize_terms(terms) if _term_pattern(term).search(text or "")}


def contains_banned_term(text: str, banned_terms: Iterable[str]) -> str | None:
    """Case-insensitive substring match. Deliberately not word-bounded."""
    lowered = (text or "").lower()
    for term in banned_terms:
        needle = term.strip().lower()
        if needle and needle in lowered:
            return term
    return None


class FilterPipeline:
    """Decides which messages and cards are visible under a FilterSettings.

    Message rules run before projection; link and display-mode rules run per
    card because they depend on the card's classification.
    """

    def __init__(self, settings: FilterSettings, clock: Callable[[], float] = time.time):
        self.settings = settings
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def terms(self) -> tuple[str, ...]:
        return normalize_terms(self.settings.filter_terms)

    def is_trusted(self, platform: str, nick: str) -> bool:
        return UserKey.of(platform, nick) in self.settings.trusted_users

    def is_muted(self, platform: str, nick: str) -> bool:
        return UserKey.of(platform, nick) in self.settings.active_mutes(self._now_ms())

    def hidden_reason(self, message: Message) -> str | None:
        """Return why a message is hidden, or None if it is visible."""
        settings = self.settings
        text = message.text or ""
        user = UserKey.of(message.platform, message.nick)

        if message.id in settings.banned_messages:
            return "banned message"
        if user in settings.banned_users:
            return f"banned user {user}"
        if user in settings.active_mutes(self._now_ms()):
            return f"muted user {user}"
        if not settings.show_nsfw and NSFW_PATTERN.search(text):
            return "nsfw"
        if not settings.show_nsfl and NSFL_PATTERN.search(text):
            return "nsfl"
        banned = contains_banned_term(text, settings.banned_terms)
        if banned:
            return f"banned term {banned!r}"

        terms = self.terms
        if terms and not matching_terms(text, terms):
            return "no filter term"
        return None

    def message_visible(self, message: Message) -> bool:
        return self.hidden_reason(message) is None

    def card_visible(self, card: LinkCard) -> bool:
        if card.message_id in self.settings.banned_messages:
            return False
        banned_links = self.settings.banned_links
        if banned_links and (
            normalize_link(card.url) in banned_links
            or normalize_link(card.original_url) in banned_links
        ):
            return False
        return self.settings.display_mode(card.kind) is not DisplayMode.FILTER

    def show_embed(self, kind: LinkKind) -> bool:
        return self.settings.display_mode(kind) is DisplayMode.EMBED

    def project(self, message: Message, cache: CardCache) -> list[LinkCard]:
        """Build (or reuse) every card for one message, unfiltered."""
        trusted = self.is_trusted(message.platform, message.nick)
        return project_cards(message, cache, trusted, self.show_embed)

    def visible_cards(self, messages: Iterable[Message], cache: CardCache) -> list[LinkCard]:
        """Filter messages, project them into cards, then filter the cards."""
        cards = []
        for message in messages:
            if not self.message_visible(message):
                continue
            cards.extend(card for card in self.project(message, cache) if self.card_visible(card))
        return cards

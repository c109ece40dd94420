"""Data models for LinkFeed."""

from dataclasses import dataclass, field
from enum import Enum


def build_message_id(platform: str, channel: str, date: int, nick: str) -> str:
    """Composite identity shared by every source: platform:channel:epochMillis:nick."""
    return f"{platform.lower()}:{channel.lower()}:{int(date)}:{nick}"


class LinkKind(Enum):
    """Closed set of link variants a card can be classified into.

    Classification precedence lives in ``links.CLASSIFIERS``.
    """
    IMAGE = "image"
    VIDEO = "video"
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    TIKTOK = "tiktok"
    REDDIT = "reddit"
    KICK = "kick"
    TWITCH = "twitch"
    STREAMABLE = "streamable"
    IMGUR = "imgur"
    BLUESKY = "bluesky"
    WIKIPEDIA = "wikipedia"
    LINK = "link"

    @property
    def is_direct_media(self) -> bool:
        return self in (LinkKind.IMAGE, LinkKind.VIDEO)


class DisplayMode(Enum):
    """Per-link-kind display mode."""
    FILTER = "filter"  # hide the card entirely
    TEXT = "text"  # keep the card, no rich embed
    EMBED = "embed"  # keep the card, render the embed


@dataclass(frozen=True)
class KickEmote:
    """Positional emote overlay from a Kick chat payload."""

    id: int
    name: str | None = None
    start: int | None = None
    end: int | None = None


@dataclass
class Message:
    """One observed chat event, from any source."""

    platform: str
    channel: str
    date: int  # epoch milliseconds
    nick: str
    text: str
    matched_terms: set[str] = field(default_factory=set)
    is_streaming: bool = False  # True when pushed by a live source
    kick_emotes: list[KickEmote] | None = None

    @property
    def id(self) -> str:
        return build_message_id(self.platform, self.channel, self.date, self.nick)


@dataclass(frozen=True)
class LinkCard:
    """A renderable projection of one URL found in one message."""

    id: str
    message_id: str
    url: str  # resolved target (redirectors unwrapped)
    original_url: str  # as written in the message
    kind: LinkKind
    platform: str
    channel: str
    nick: str
    date: int
    text: str
    embed_url: str | None = None
    is_trusted: bool = False
    is_streaming: bool = False
    show_embed: bool = True
    reload_token: int = 0

    @property
    def is_direct_media(self) -> bool:
        return self.kind.is_direct_media

    @property
    def media_type(self) -> str | None:
        """'image' or 'video' for directly playable media, else None."""
        if self.kind.is_direct_media:
            return self.kind.value
        return None


@dataclass
class PaginationCursor:
    """Paging state for one filter term set."""

    terms: tuple[str, ...] = ()
    offset: int = 0
    fallback_cursor: str | None = None
    using_fallback: bool = False
    has_more: bool = True
    rate_limited_until: float | None = None  # epoch seconds


@dataclass
class SourceResult:
    """Normalized outcome of one source fetch."""

    messages: list[Message] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None
    error: str | None = None
    retry_after: float | None = None  # seconds, set when the source rate limited us
    raw_count: int = 0  # items in the payload before normalization

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class UserKey:
    """A user on one platform. Bans and trust never cross platforms."""

    platform: str
    nick: str

    @classmethod
    def of(cls, platform: str, nick: str) -> "UserKey":
        return cls(platform.strip().lower(), nick.strip().lower())

    def __str__(self) -> str:
        return f"{self.platform}:{self.nick}"


@dataclass
class MutedUser:
    """A time-boxed mute."""

    user: UserKey
    expires_at: int  # epoch milliseconds

    def is_active(self, now_ms: int) -> bool:
        return self.expires_at > now_ms


@dataclass
class FilterSettings:
    """User-editable visibility settings (persisted in settings.yaml)."""

    filter_terms: list[str] = field(default_factory=list)
    show_nsfw: bool = False
    show_nsfl: bool = False
    banned_terms: set[str] = field(default_factory=set)
    banned_users: set[UserKey] = field(default_factory=set)
    trusted_users: set[UserKey] = field(default_factory=set)
    banned_links: set[str] = field(default_factory=set)  # normalized via links.normalize_link
    banned_messages: set[str] = field(default_factory=set)
    muted_users: list[MutedUser] = field(default_factory=list)
    display_modes: dict[LinkKind, DisplayMode] = field(default_factory=dict)

    def display_mode(self, kind: LinkKind) -> DisplayMode:
        return self.display_modes.get(kind, DisplayMode.EMBED)

    def sweep_mutes(self, now_ms: int) -> int:
        """Drop expired mutes. Returns how many were removed."""
        before = len(self.muted_users)
        self.muted_users = [m for m in self.muted_users if m.is_active(now_ms)]
        return before - len(self.muted_users)

    def active_mutes(self, now_ms: int) -> set[UserKey]:
        return {m.user for m in self.muted_users if m.is_active(now_ms)}

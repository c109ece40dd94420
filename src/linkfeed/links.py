"""Link extraction and classification - turn message text into link cards."""

import hashlib
import re
from typing import Callable
from urllib.parse import parse_qs, urlencode, urlsplit, SplitResult

from linkfeed.models import LinkCard, LinkKind, Message

# URL regex pattern
URL_PATTERN = re.compile(
    r'https?://[^\s<>"{}|\\^`]+',
    re.IGNORECASE
)

TRAILING_PUNCTUATION = ".,;:!?'\""

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".svg")
VIDEO_EXTENSIONS = (".mp4", ".webm", ".ogg", ".mov", ".avi", ".mkv")
TWIMG_IMAGE_FORMATS = {"jpg", "jpeg", "png", "gif", "webp"}

# (host, path) -> query parameter that carries the real destination
REDIRECTORS = {
    ("reddit.com", "/media"): "url",
    ("google.com", "/url"): "q",
    ("l.facebook.com", "/l.php"): "u",
}

TWITTER_STATUS = re.compile(r"/[^/]+/status/\d+")
TIKTOK_VIDEO = re.compile(r"/@[\w.-]+/video/\d+")
REDDIT_POST = re.compile(r"/r/\w+/comments/\w+")
BLUESKY_POST = re.compile(r"/profile/[^/]+/post/[^/]+")


def _host_matches(host: str, domain: str) -> bool:
    """True if host is domain or a subdomain of it."""
    return host == domain or host.endswith("." + domain)


def _has_extension(path: str, extensions: tuple[str, ...]) -> bool:
    return path.lower().endswith(extensions)


def _is_media_path(path: str) -> bool:
    return _has_extension(path, IMAGE_EXTENSIONS) or _has_extension(path, VIDEO_EXTENSIONS)


def clean_url(url: str) -> str:
    """Strip trailing punctuation picked up from prose.

    A closing bracket is only stripped when it is unbalanced, so
    ``https://en.wikipedia.org/wiki/Foo_(bar)`` survives intact.
    """
    while url:
        last = url[-1]
        if last in TRAILING_PUNCTUATION:
            url = url[:-1]
        elif last == ")" and url.count("(") < url.count(")"):
            url = url[:-1]
        elif last == "]" and url.count("[") < url.count("]"):
            url = url[:-1]
        else:
            break
    return url


def extract_urls(text: str) -> list[str]:
    """Extract URLs from message text in order of appearance."""
    urls = []
    for raw in URL_PATTERN.findall(text or ""):
        url = clean_url(raw)
        if url and not url.endswith("://"):
            urls.append(url)
    return urls


def resolve_redirect(url: str) -> str:
    """Unwrap proxy links that carry the real target in a query parameter.

    Returns the input unchanged if it is not a known redirector or if the
    embedded value is not itself an http(s) URL.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    host = (parts.hostname or "").lower()
    for (domain, path), param in REDIRECTORS.items():
        if not _host_matches(host, domain) or parts.path != path:
            continue
        values = parse_qs(parts.query).get(param)
        if values and values[0].lower().startswith(("http://", "https://")):
            return values[0]
    return url


def normalize_link(url: str) -> str:
    """Normalize a URL for ban comparisons: fragment stripped, lower-cased."""
    return clean_url(url.strip()).split("#", 1)[0].lower()


# =============================================================================
# Classifiers - one per variant, evaluated in CLASSIFIERS order.
# Platform rules reject media-extension paths so at most one rule matches.
# =============================================================================

def _is_image(parts: SplitResult, host: str) -> bool:
    if _host_matches(host, "pbs.twimg.com"):
        return True
    if _host_matches(host, "twimg.com"):
        fmt = parse_qs(parts.query).get("format", [""])[0].lower()
        if fmt in TWIMG_IMAGE_FORMATS:
            return True
    return _has_extension(parts.path, IMAGE_EXTENSIONS)


def _is_video(parts: SplitResult, host: str) -> bool:
    return _has_extension(parts.path, VIDEO_EXTENSIONS) and not _is_image(parts, host)


def _is_youtube(parts: SplitResult, host: str) -> bool:
    return any(_host_matches(host, d) for d in ("youtube.com", "youtu.be", "youtube-nocookie.com"))


def _is_twitter(parts: SplitResult, host: str) -> bool:
    if not (_host_matches(host, "twitter.com") or _host_matches(host, "x.com")):
        return False
    return bool(TWITTER_STATUS.match(parts.path))


def _is_tiktok(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "tiktok.com") and bool(TIKTOK_VIDEO.match(parts.path))


def _is_reddit(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "reddit.com") and bool(REDDIT_POST.match(parts.path))


def _is_kick(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "kick.com")


def _is_twitch(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "twitch.tv")


def _is_streamable(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "streamable.com")


def _is_imgur(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "imgur.com")


def _is_bluesky(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "bsky.app") and bool(BLUESKY_POST.match(parts.path))


def _is_wikipedia(parts: SplitResult, host: str) -> bool:
    return _host_matches(host, "wikipedia.org") and parts.path.startswith("/wiki/")


def _platform_rule(rule: Callable[[SplitResult, str], bool]) -> Callable[[SplitResult, str], bool]:
    def check(parts: SplitResult, host: str) -> bool:
        return not _is_media_path(parts.path) and rule(parts, host)
    return check


CLASSIFIERS: list[tuple[LinkKind, Callable[[SplitResult, str], bool]]] = [
    (LinkKind.IMAGE, _is_image),
    (LinkKind.VIDEO, _is_video),
    (LinkKind.YOUTUBE, _platform_rule(_is_youtube)),
    (LinkKind.TWITTER, _platform_rule(_is_twitter)),
    (LinkKind.TIKTOK, _platform_rule(_is_tiktok)),
    (LinkKind.REDDIT, _platform_rule(_is_reddit)),
    (LinkKind.KICK, _platform_rule(_is_kick)),
    (LinkKind.TWITCH, _platform_rule(_is_twitch)),
    (LinkKind.STREAMABLE, _platform_rule(_is_streamable)),
    (LinkKind.IMGUR, _platform_rule(_is_imgur)),
    (LinkKind.BLUESKY, _platform_rule(_is_bluesky)),
    (LinkKind.WIKIPEDIA, _platform_rule(_is_wikipedia)),
]


def classify_url(url: str) -> LinkKind:
    """Classify a URL into exactly one LinkKind. Unparseable URLs are plain links."""
    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
    except ValueError:
        return LinkKind.LINK

    for kind, rule in CLASSIFIERS:
        if rule(parts, host):
            return kind
    return LinkKind.LINK


def get_youtube_embed_url(url: str) -> str | None:
    """Derive an embeddable player URL from the common YouTube URL shapes."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None

    host = (parts.hostname or "").lower()
    query = parse_qs(parts.query)

    if host == "youtu.be":
        video_id = parts.path.lstrip("/").split("/")[0]
        return f"https://www.youtube.com/embed/{video_id}?rel=0" if video_id else None

    if not _host_matches(host, "youtube.com") and not _host_matches(host, "youtube-nocookie.com"):
        return None

    playlist = query.get("list", [None])[0]
    if playlist and parts.path in ("/playlist", "/watch") and "v" not in query:
        return f"https://www.youtube.com/embed/videoseries?list={playlist}&rel=0"

    for prefix in ("/shorts/", "/v/", "/live/"):
        if parts.path.startswith(prefix):
            video_id = parts.path[len(prefix):].split("/")[0]
            return f"https://www.youtube.com/embed/{video_id}?rel=0" if video_id else None

    video_id = query.get("v", [None])[0]
    if video_id:
        return f"https://www.youtube.com/embed/{video_id}?rel=0"

    if parts.path.startswith("/embed/"):
        embed_id = parts.path[len("/embed/"):].split("/")[0]
        if not embed_id:
            return None
        params = {k: v[0] for k, v in query.items()}
        params.setdefault("rel", "0")
        return f"https://www.youtube.com/embed/{embed_id}?{urlencode(params)}"

    return None


def card_id(message_id: str, index: int, url: str) -> str:
    """Stable card identity: same message + same URL at same index -> same id."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]
    return f"{message_id}#{index}:{digest}"


class CardCache:
    """Content-addressed cache of built cards, keyed by card id.

    A card is rebuilt only when one of its derivation inputs changes, so an
    unchanged card comes back as the very same object.
    """

    def __init__(self):
        self._entries: dict[str, tuple[tuple, LinkCard]] = {}
        self._reload_tokens: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cid: str) -> bool:
        return cid in self._entries

    def bump(self, cid: str) -> int:
        """Force the next build of this card to produce a new object."""
        self._reload_tokens[cid] = self._reload_tokens.get(cid, 0) + 1
        return self._reload_tokens[cid]

    def get_or_build(
        self,
        message: Message,
        index: int,
        url: str,
        is_trusted: bool,
        embed_for: Callable[[LinkKind], bool],
    ) -> LinkCard:
        cid = card_id(message.id, index, url)
        token = self._reload_tokens.get(cid, 0)

        cached = self._entries.get(cid)
        if cached is not None and cached[1].original_url == url:
            target, kind = cached[1].url, cached[1].kind
        else:
            target = resolve_redirect(url)
            kind = classify_url(target)

        show_embed = embed_for(kind)
        inputs = (url, message.text, is_trusted, message.is_streaming, show_embed, token)
        if cached is not None and cached[0] == inputs:
            return cached[1]

        card = LinkCard(
            id=cid,
            message_id=message.id,
            url=target,
            original_url=url,
            kind=kind,
            platform=message.platform,
            channel=message.channel,
            nick=message.nick,
            date=message.date,
            text=message.text,
            embed_url=get_youtube_embed_url(target) if kind is LinkKind.YOUTUBE else None,
            is_trusted=is_trusted,
            is_streaming=message.is_streaming,
            show_embed=show_embed,
            reload_token=token,
        )
        self._entries[cid] = (inputs, card)
        return card

    def prune(self, keep: set[str]) -> int:
        """Drop entries not in keep. Returns number removed."""
        stale = [cid for cid in self._entries if cid not in keep]
        for cid in stale:
            del self._entries[cid]
            self._reload_tokens.pop(cid, None)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        self._reload_tokens.clear()


def project_cards(
    message: Message,
    cache: CardCache,
    is_trusted: bool = False,
    embed_for: Callable[[LinkKind], bool] = lambda kind: True,
) -> list[LinkCard]:
    """One card per URL in the message, in text order."""
    return [
        cache.get_or_build(message, index, url, is_trusted, embed_for)
        for index, url in enumerate(extract_urls(message.text))
    ]

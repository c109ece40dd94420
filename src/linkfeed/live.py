"""Live chat sources: websocket streams that push messages as they happen."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
import websockets
from websockets.exceptions import WebSocketException

from linkfeed.fetcher import USER_AGENT, to_epoch_ms
from linkfeed.models import KickEmote, Message

logger = logging.getLogger(__name__)

HISTORY_TIMEOUT = 5.0  # seconds to wait for a history burst before giving up
RECONNECT_DELAY_MIN = 1.0
RECONNECT_DELAY_MAX = 60.0

KICK_PUSHER_URL = (
    "wss://ws-us2.pusher.com/app/32cbd69e4b950bf97679"
    "?protocol=7&client=js&version=8.4.0&flash=false"
)
KICK_HISTORY_URL = "https://kick.com/api/v2/channels/{chatroom_id}/messages"
KICK_MESSAGE_EVENT = "App\\Events\\ChatMessageEvent"


@dataclass
class LiveEvent:
    """One item on a stream's channel: a history burst or a single push."""

    messages: list[Message] = field(default_factory=list)
    is_history: bool = False


class ChatStream:
    """Base live source.

    Subclasses turn raw frames into LiveEvents via ``parse_frame``. Every
    normalized event goes onto ``events``; the feed is the only consumer.
    """

    platform = "unknown"

    def __init__(self, url: str, channel: str):
        self.url = url
        self.channel = channel
        self.events: asyncio.Queue[LiveEvent] = asyncio.Queue()
        self.history: list[Message] = []
        self._history_received = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def name(self) -> str:
        return f"{self.platform}:{self.channel}"

    # -- channel -------------------------------------------------------------

    def publish_history(self, messages: list[Message]) -> None:
        for message in messages:
            message.is_streaming = False
        self.history = list(messages)
        self._history_received.set()
        self.events.put_nowait(LiveEvent(messages=list(messages), is_history=True))

    def publish(self, message: Message) -> None:
        message.is_streaming = True
        self.events.put_nowait(LiveEvent(messages=[message]))

    def handle_frame(self, raw: str | bytes) -> LiveEvent | None:
        """Parse a frame and publish whatever it carried."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        event = self.parse_frame(raw)
        if event is None:
            return None
        if event.is_history:
            self.publish_history(event.messages)
        else:
            for message in event.messages:
                self.publish(message)
        return event

    async def wait_for_history(self, timeout: float = HISTORY_TIMEOUT) -> bool:
        """Wait for the first history burst. False if it did not arrive in time."""
        try:
            await asyncio.wait_for(self._history_received.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            logger.info("No history from %s after %.1fs, continuing without it", self.name, timeout)
            return False

    # -- to override ----------------------------------------------------------

    def parse_frame(self, raw: str) -> LiveEvent | None:
        raise NotImplementedError

    async def on_connect(self, websocket) -> None:
        """Hook run right after the socket opens (subscriptions, history)."""

    # -- transport ------------------------------------------------------------

    async def run(self) -> None:
        """Connect and read frames forever, reconnecting with backoff."""
        delay = RECONNECT_DELAY_MIN
        self._running = True
        while self._running:
            try:
                async with websockets.connect(self.url, open_timeout=10) as websocket:
                    logger.info("Connected to %s", self.name)
                    delay = RECONNECT_DELAY_MIN
                    await self.on_connect(websocket)
                    async for raw in websocket:
                        self.handle_frame(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning("%s disconnected: %s (retry in %.0fs)", self.name, e, delay)

            if not self._running:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, RECONNECT_DELAY_MAX)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("%s failed while stopping: %s", self.name, e)
        elif not task.cancelled() and task.exception() is not None:
            logger.error("%s stopped with an error: %s", self.name, task.exception())


# =============================================================================
# destiny.gg-style chat: "MSG {...}" pushes, one "HISTORY [...]" burst
# =============================================================================

def normalize_dgg_message(data: Any, channel: str) -> Message | None:
    """Chat MSG payload -> Message. Returns None for malformed payloads."""
    if not isinstance(data, dict):
        return None
    nick = data.get("nick")
    text = data.get("data")
    date = to_epoch_ms(data.get("timestamp"))
    if not isinstance(nick, str) or not nick or not isinstance(text, str) or date is None:
        return None
    return Message(platform="dgg", channel=channel, date=date, nick=nick, text=text)


def _split_frame(raw: str) -> tuple[str, str]:
    kind, _, body = raw.partition(" ")
    return kind, body


class DggChatStream(ChatStream):
    """Chat socket that sends a HISTORY array on connect, then MSG frames."""

    platform = "dgg"

    def _parse_msg(self, body: str) -> Message | None:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            logger.debug("Malformed MSG frame: %s", body[:100])
            return None
        return normalize_dgg_message(data, self.channel)

    def parse_frame(self, raw: str) -> LiveEvent | None:
        kind, body = _split_frame(raw)
        if kind == "MSG":
            message = self._parse_msg(body)
            return LiveEvent(messages=[message]) if message else None

        if kind == "HISTORY":
            try:
                entries = json.loads(body)
            except json.JSONDecodeError:
                logger.debug("Malformed HISTORY frame (%d chars)", len(body))
                return LiveEvent(is_history=True)
            messages = []
            for entry in entries if isinstance(entries, list) else []:
                if not isinstance(entry, str):
                    continue
                entry_kind, entry_body = _split_frame(entry)
                if entry_kind != "MSG":
                    continue
                message = self._parse_msg(entry_body)
                if message:
                    messages.append(message)
            return LiveEvent(messages=messages, is_history=True)

        return None


# =============================================================================
# Kick: pusher websocket for pushes, HTTP endpoint for history
# =============================================================================

def _int_or_none(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number


def extract_kick_emotes(raw: Any) -> list[KickEmote] | None:
    """Pull emote overlays out of the several payload shapes Kick uses."""
    if not isinstance(raw, dict):
        return None

    message = raw.get("message") if isinstance(raw.get("message"), dict) else {}
    candidates = [raw.get("emotes"), raw.get("emoticons"), message.get("emotes"), message.get("emoticons")]
    listed = next((c for c in candidates if isinstance(c, list)), None)

    # Fragment form: content is [{"type": "text", ...}, {"type": "emote", "id": ...}]
    if listed is None and isinstance(raw.get("content"), list):
        emotes = []
        offset = 0
        for fragment in raw["content"]:
            if not isinstance(fragment, dict):
                continue
            kind = str(fragment.get("type") or fragment.get("kind") or "").lower()
            text = fragment.get("content") if isinstance(fragment.get("content"), str) else str(fragment.get("text") or "")
            if kind in ("emote", "emoticon"):
                emote_id = _int_or_none(fragment.get("id") or fragment.get("emote_id"))
                if emote_id and emote_id > 0:
                    name = fragment.get("name") if isinstance(fragment.get("name"), str) else None
                    emotes.append(KickEmote(id=emote_id, name=name, start=offset, end=offset + len(text)))
            offset += len(text)
        return emotes or None

    if listed is None:
        return None

    emotes = []
    for entry in listed:
        if not isinstance(entry, dict):
            continue
        emote_id = _int_or_none(entry.get("id") or entry.get("emote_id"))
        if not emote_id or emote_id <= 0:
            continue
        name = entry.get("name") if isinstance(entry.get("name"), str) else entry.get("code")
        name = name if isinstance(name, str) else None

        if isinstance(entry.get("positions"), list):
            for position in entry["positions"]:
                if not isinstance(position, dict):
                    continue
                start = _int_or_none(position.get("start", position.get("from")))
                end = _int_or_none(position.get("end", position.get("to")))
                if start is not None and end is not None and 0 <= start < end:
                    emotes.append(KickEmote(id=emote_id, name=name, start=start, end=end))
            continue

        start = _int_or_none(entry.get("start", entry.get("from")))
        end = _int_or_none(entry.get("end", entry.get("to")))
        if start is not None and end is not None and 0 <= start < end:
            emotes.append(KickEmote(id=emote_id, name=name, start=start, end=end))
        else:
            emotes.append(KickEmote(id=emote_id, name=name))

    return emotes or None


def normalize_kick_message(raw: Any, channel: str) -> Message | None:
    """Kick chat payload (live or history) -> Message."""
    if not isinstance(raw, dict):
        return None

    sender = raw.get("sender") or raw.get("user") or raw.get("author") or {}
    if not isinstance(sender, dict):
        sender = {}
    nick = sender.get("username") or sender.get("slug") or sender.get("name")

    content = raw.get("content", raw.get("message", raw.get("body")))
    if isinstance(content, list):
        text = "".join(
            f.get("content") if isinstance(f, dict) and isinstance(f.get("content"), str)
            else (f.get("text", "") if isinstance(f, dict) else str(f))
            for f in content
        )
    elif isinstance(content, str):
        text = content
    else:
        text = ""

    date = to_epoch_ms(raw.get("created_at", raw.get("createdAt", raw.get("timestamp"))))
    if not isinstance(nick, str) or not nick or not text or date is None:
        return None

    return Message(
        platform="kick",
        channel=channel,
        date=date,
        nick=nick,
        text=text,
        kick_emotes=extract_kick_emotes(raw),
    )


class KickChatStream(ChatStream):
    """Kick chatroom over pusher. History comes from a separate HTTP call."""

    platform = "kick"

    def __init__(
        self,
        channel: str,
        chatroom_id: int,
        url: str = KICK_PUSHER_URL,
        history_url: str | None = KICK_HISTORY_URL,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(url, channel)
        self.chatroom_id = chatroom_id
        self.history_url = history_url
        self._client = client

    def parse_frame(self, raw: str) -> LiveEvent | None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(frame, dict) or frame.get("event") != KICK_MESSAGE_EVENT:
            return None

        data = frame.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Malformed Kick event data: %s", data[:100])
                return None
        message = normalize_kick_message(data, self.channel)
        return LiveEvent(messages=[message]) if message else None

    def parse_history(self, payload: Any) -> list[Message]:
        body = payload.get("data", payload) if isinstance(payload, dict) else payload
        items = body.get("messages") if isinstance(body, dict) else body
        messages = []
        for item in items if isinstance(items, list) else []:
            message = normalize_kick_message(item, self.channel)
            if message is not None:
                messages.append(message)
        # History endpoints return newest first; keep the burst oldest first.
        messages.sort(key=lambda m: m.date)
        return messages

    async def fetch_history(self) -> list[Message]:
        if not self.history_url:
            return []
        url = self.history_url.format(chatroom_id=self.chatroom_id, channel=self.channel)
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=10.0, headers={"User-Agent": USER_AGENT}) as client:
                    response = await client.get(url)
            response.raise_for_status()
            return self.parse_history(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Kick history for %s failed: %s", self.channel, e)
            return []

    async def on_connect(self, websocket) -> None:
        await websocket.send(json.dumps({
            "event": "pusher:subscribe",
            "data": {"auth": "", "channel": f"chatrooms.{self.chatroom_id}.v2"},
        }))
        if not self._history_received.is_set():
            history = await self.fetch_history()
            if history:
                self.publish_history(history)


def build_streams(stream_configs: list[dict]) -> list[ChatStream]:
    """Create live streams from the ``live_streams`` config entries."""
    streams: list[ChatStream] = []
    for entry in stream_configs or []:
        kind = str(entry.get("type", "")).lower()
        channel = str(entry.get("channel") or kind)
        if kind == "dgg" and entry.get("url"):
            streams.append(DggChatStream(entry["url"], channel))
        elif kind == "kick" and entry.get("chatroom_id") is not None:
            streams.append(KickChatStream(
                channel,
                int(entry["chatroom_id"]),
                url=entry.get("url") or KICK_PUSHER_URL,
            ))
        else:
            logger.warning("Ignoring live stream config %r", entry)
    return streams

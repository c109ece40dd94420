"""Masonry layout and the live terminal view of the feed."""

import asyncio
import select
import sys
import termios
import tty
import webbrowser
from datetime import datetime
from threading import Thread
from queue import Queue, Empty

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.text import Text
from rich.table import Table
from rich.align import Align
from rich import box

from linkfeed.models import LinkCard, LinkKind


# Rough rendered heights (terminal rows) per card kind. Only relative sizes
# matter: the layout balances columns on these estimates, never on measurement.
CARD_HEIGHTS = {
    LinkKind.IMAGE: 12,
    LinkKind.VIDEO: 12,
    LinkKind.YOUTUBE: 11,
    LinkKind.TWITTER: 9,
    LinkKind.TIKTOK: 14,
    LinkKind.REDDIT: 9,
    LinkKind.KICK: 11,
    LinkKind.TWITCH: 11,
    LinkKind.STREAMABLE: 11,
    LinkKind.IMGUR: 12,
    LinkKind.BLUESKY: 8,
    LinkKind.WIKIPEDIA: 7,
    LinkKind.LINK: 5,
}
TEXT_CARD_HEIGHT = 5


def estimate_height(card: LinkCard) -> int:
    """Estimated card height, from its kind and whether it shows an embed."""
    if not card.show_embed:
        return TEXT_CARD_HEIGHT
    return CARD_HEIGHTS.get(card.kind, TEXT_CARD_HEIGHT)


def column_count(width: int, min_column_width: int = 360, max_columns: int = 6) -> int:
    """Columns that fit a viewport of ``width`` units, at least one."""
    if min_column_width <= 0:
        return 1
    return max(1, min(max_columns, width // min_column_width))


class MasonryLayout:
    """Assigns cards to columns and keeps placed cards put across updates.

    Updates that only add a contiguous block of cards at the front (live
    arrivals) and/or the back (older pages) place just the new cards. Any
    other change, or a column count change, redistributes everything.
    """

    def __init__(self, columns: int = 1):
        self.columns = max(1, columns)
        self._columns: list[list[LinkCard]] = [[] for _ in range(self.columns)]
        self._heights: list[int] = [0] * self.columns
        self._order: list[str] = []

    def _shortest(self) -> int:
        # min() returns the first minimum, so ties go to the lowest index
        return min(range(self.columns), key=lambda i: self._heights[i])

    def full_redistribute(self, cards: list[LinkCard]) -> None:
        """Greedy placement in list order. Same input, same assignment."""
        self._columns = [[] for _ in range(self.columns)]
        self._heights = [0] * self.columns
        for card in cards:
            col = self._shortest()
            self._columns[col].append(card)
            self._heights[col] += estimate_height(card)
        self._order = [card.id for card in cards]

    def _find_block(self, ids: list[str]) -> int:
        """Index where the previous id list sits as a contiguous block, or -1."""
        old = self._order
        if not old:
            return -1
        try:
            start = ids.index(old[0])
        except ValueError:
            return -1
        if ids[start:start + len(old)] != old:
            return -1
        return start

    def update(self, cards: list[LinkCard]) -> str:
        """Lay out the new card list. Returns the kind of update applied.

        One of "none", "prepend", "append", "both" or "full".
        """
        ids = [card.id for card in cards]
        if ids == self._order:
            self._refresh_cards(cards)
            return "none"

        start = self._find_block(ids)
        if start < 0:
            self.full_redistribute(cards)
            return "full"

        self._refresh_cards(cards)
        end = start + len(self._order)
        prepended = cards[:start]
        appended = cards[end:]

        if prepended:
            cursors = [0] * self.columns
            for card in prepended:
                col = self._shortest()
                self._columns[col].insert(cursors[col], card)
                cursors[col] += 1
                self._heights[col] += estimate_height(card)

        for card in appended:
            col = self._shortest()
            self._columns[col].append(card)
            self._heights[col] += estimate_height(card)

        self._order = ids
        if prepended and appended:
            return "both"
        return "prepend" if prepended else "append"

    def _refresh_cards(self, cards: list[LinkCard]) -> None:
        """Swap in newer card objects (same id) without moving them."""
        by_id = {card.id: card for card in cards}
        for col, column in enumerate(self._columns):
            for i, card in enumerate(column):
                fresh = by_id.get(card.id)
                if fresh is not None and fresh is not card:
                    self._heights[col] += estimate_height(fresh) - estimate_height(card)
                    column[i] = fresh

    def resize(self, columns: int, cards: list[LinkCard] | None = None) -> bool:
        """Change column count. Returns True if a redistribute happened."""
        columns = max(1, columns)
        if columns == self.columns:
            return False
        current = cards if cards is not None else self.cards_in_order()
        self.columns = columns
        self.full_redistribute(current)
        return True

    def cards_in_order(self) -> list[LinkCard]:
        by_id = {card.id: card for column in self._columns for card in column}
        return [by_id[cid] for cid in self._order if cid in by_id]

    def assignment(self) -> dict[str, tuple[int, int]]:
        """Card id -> (column, position in column)."""
        return {
            card.id: (col, pos)
            for col, column in enumerate(self._columns)
            for pos, card in enumerate(column)
        }

    def column_cards(self) -> list[list[LinkCard]]:
        return [list(column) for column in self._columns]

    @property
    def heights(self) -> list[int]:
        return list(self._heights)


# =============================================================================
# Terminal rendering
# =============================================================================

class KeyboardListener:
    """Non-blocking keyboard listener for terminal using select()."""

    def __init__(self):
        self.queue: Queue[str] = Queue()
        self._running = False
        self._thread: Thread | None = None
        self._old_settings = None

    def start(self):
        if self._running:
            return
        self._running = True
        try:
            self._old_settings = termios.tcgetattr(sys.stdin)
            tty.setcbreak(sys.stdin.fileno())
        except (termios.error, ValueError, OSError):
            self._old_settings = None  # Not a tty

        self._thread = Thread(target=self._listen, daemon=True)
        self._thread.start()

    def stop(self):
        """Stop listening and restore terminal."""
        self._running = False
        if self._old_settings:
            try:
                termios.tcsetattr(sys.stdin, termios.TCSADRAIN, self._old_settings)
            except termios.error:
                pass
            self._old_settings = None

    def _listen(self):
        while self._running:
            try:
                readable, _, _ = select.select([sys.stdin], [], [], 0.05)
                if readable and self._running:
                    ch = sys.stdin.read(1)
                    if ch:
                        self.queue.put(ch)
            except (OSError, ValueError):
                break

    def drain_keys(self) -> list[str]:
        """Get all queued keypresses, non-blocking."""
        keys = []
        while True:
            try:
                keys.append(self.queue.get_nowait())
            except Empty:
                break
        return keys


KIND_STYLES = {
    LinkKind.IMAGE: ("🖼", "bright_magenta"),
    LinkKind.VIDEO: ("🎞", "magenta"),
    LinkKind.YOUTUBE: ("▶", "red"),
    LinkKind.TWITTER: ("𝕏", "bright_white"),
    LinkKind.TIKTOK: ("♪", "cyan"),
    LinkKind.REDDIT: ("◉", "bright_red"),
    LinkKind.KICK: ("K", "bright_green"),
    LinkKind.TWITCH: ("T", "purple"),
    LinkKind.STREAMABLE: ("▷", "blue"),
    LinkKind.IMGUR: ("i", "green"),
    LinkKind.BLUESKY: ("🦋", "bright_blue"),
    LinkKind.WIKIPEDIA: ("W", "white"),
    LinkKind.LINK: ("🔗", "dim"),
}


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max(0, max_len - 1)] + "…"


def render_card(card: LinkCard, width: int, shortcut: int | None = None) -> Panel:
    """One card as a panel. Its height follows ``estimate_height``."""
    icon, color = KIND_STYLES.get(card.kind, KIND_STYLES[LinkKind.LINK])
    content_width = max(10, width - 4)
    body_lines = max(1, estimate_height(card) - 3)

    header = Text()
    if shortcut is not None:
        header.append(f"{shortcut} ", style="bold black on bright_yellow")
    header.append(f"{icon} ", style=color)
    header.append(card.nick, style="bold green" if card.is_trusted else "bold")
    if card.is_streaming:
        header.append(" ●", style="bright_red")
    stamp = datetime.fromtimestamp(card.date / 1000).strftime("%H:%M")
    header.append(f"  {stamp}", style="dim")

    lines = [header, Text(truncate(card.url, content_width), style=f"underline {color}")]
    if card.show_embed and card.embed_url and card.embed_url != card.url:
        lines.append(Text(truncate(card.embed_url, content_width), style="dim"))
    remaining = body_lines - len(lines) + 1
    if remaining > 0:
        text = truncate(card.text, content_width * remaining)
        lines.append(Text(text, overflow="fold"))

    return Panel(
        Group(*lines),
        width=width,
        height=estimate_height(card),
        border_style=color if card.show_embed else "dim",
        box=box.ROUNDED if card.show_embed else box.MINIMAL,
        title=card.kind.value if card.show_embed else None,
        title_align="right",
    )


class MosaicDisplay:
    """Live masonry view of a Feed."""

    def __init__(self, feed, min_column_width: int = 40, max_columns: int = 6, page_cards: int = 60):
        self.feed = feed
        self.console = Console()
        self.min_column_width = min_column_width
        self.max_columns = max_columns
        self.page_cards = page_cards
        self.layout = MasonryLayout(self._columns_for_width())
        self.shortcuts: dict[int, str] = {}
        self.status = "Connecting..."

    def _columns_for_width(self) -> int:
        return column_count(self.console.width, self.min_column_width, self.max_columns)

    def sync(self) -> str:
        """Bring the layout up to date with the feed.

        Visibility can change with nothing merged (a mute running out), so
        the visible ids are compared on every tick rather than a version.
        """
        columns = self._columns_for_width()
        cards = self.feed.visible_cards()
        if self.layout.resize(columns, cards):
            return "full"
        return self.layout.update(cards)

    def render_header(self) -> Text:
        header = Text()
        header.append(" LINKFEED ", style="bold black on bright_cyan")
        terms = ", ".join(self.feed.terms) or "all messages"
        header.append(f"  {terms}", style="bold")
        header.append(f"  {self.feed.message_count} messages", style="dim")
        if self.feed.is_fetching:
            header.append("  loading…", style="yellow")
        elif not self.feed.has_more:
            header.append("  end of history", style="dim")
        if self.feed.error:
            header.append(f"  {self.feed.error}", style="bold red")
        return header

    def render(self) -> Group:
        columns = self.layout.column_cards()
        width = max(20, self.console.width // self.layout.columns - 1)
        per_column = max(1, self.page_cards // self.layout.columns)

        self.shortcuts = {}
        shortcut = 1
        for column in columns:
            if column and shortcut <= 9:
                self.shortcuts[shortcut] = column[0].url
                shortcut += 1

        elements: list[RenderableType] = [Align.center(self.render_header()), Text()]
        if not any(columns):
            elements.append(Align.center(Text(self.status if self.feed.is_fetching else "No links yet...", style="dim italic")))
        else:
            table = Table.grid(padding=(0, 1))
            for _ in columns:
                table.add_column(width=width)
            shortcut_for = {url: n for n, url in self.shortcuts.items()}
            cells = []
            for column in columns:
                panels = []
                for i, card in enumerate(column[:per_column]):
                    num = shortcut_for.get(card.url) if i == 0 else None
                    panels.append(render_card(card, width, num))
                cells.append(Group(*panels))
            table.add_row(*cells)
            elements.append(table)

        elements.append(Text())
        elements.append(Align.center(Text("[1-9] open  [m]ore  [r]efresh  [q]uit", style="dim")))
        return Group(*elements)


def set_terminal_title(status: str = "") -> None:
    title = f"LinkFeed - {status}" if status else "LinkFeed"
    sys.stdout.write(f"\033]0;{title}\007")
    sys.stdout.flush()


async def run_mosaic(feed, connect: bool = True, min_column_width: int = 40, max_columns: int = 6):
    """Run the live masonry view until the user quits."""
    console = Console()
    mosaic = MosaicDisplay(feed, min_column_width=min_column_width, max_columns=max_columns)
    set_terminal_title("Loading...")

    keyboard = KeyboardListener()
    keyboard.start()
    start_task = asyncio.create_task(feed.start(connect=connect))
    fetch_task: asyncio.Task | None = None

    try:
        with Live(mosaic.render(), console=console, refresh_per_second=10, screen=True) as live:
            try:
                while True:
                    if start_task is not None and start_task.done():
                        error = start_task.exception()
                        set_terminal_title(f"Error: {error}" if error else ", ".join(feed.terms))
                        start_task = None

                    if fetch_task is not None and fetch_task.done():
                        error = fetch_task.exception()
                        if error:
                            set_terminal_title(f"Error: {error}")
                        fetch_task = None

                    should_quit = False
                    for key in keyboard.drain_keys():
                        if key == "q":
                            should_quit = True
                            break
                        elif key == "r" and fetch_task is None:
                            fetch_task = asyncio.create_task(feed.refresh())
                        elif key == "m" and fetch_task is None:
                            fetch_task = asyncio.create_task(feed.maybe_load_more(0))
                        elif key.isdigit() and key != "0":
                            url = mosaic.shortcuts.get(int(key))
                            if url:
                                webbrowser.open(url)

                    if should_quit:
                        break

                    mosaic.sync()
                    live.update(mosaic.render())
                    await asyncio.sleep(0.1)
            except KeyboardInterrupt:
                pass
    finally:
        for task in (start_task, fetch_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await feed.stop()
        keyboard.stop()
        sys.stdout.write("\033]0;\007")
        sys.stdout.flush()

    console.print("\n[dim]Feed stopped.[/dim]")

"""CLI interface for LinkFeed."""

import asyncio
import json
import logging
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from linkfeed.cache import MentionCache
from linkfeed.config import (
    CONFIG_DIR,
    get_search_token,
    load_config,
    load_filter_settings,
    save_filter_settings,
)
from linkfeed.feed import Feed
from linkfeed.fetcher import MentionsSource, SearchSource
from linkfeed.live import build_streams
from linkfeed.models import DisplayMode, FilterSettings, LinkCard, LinkKind, UserKey


console = Console()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_feed(cfg: dict, settings: FilterSettings, live: bool = False, persist: bool = True) -> Feed:
    """Wire sources and settings from config into a Feed."""
    timeout = float(cfg.get("request_timeout", 10.0))
    mentions = MentionsSource(
        cfg["mentions_url"],
        platform=cfg["platform"],
        channel=cfg["channel"],
        cache=MentionCache(expiry_hours=float(cfg.get("mention_cache_hours", 24))),
        timeout=timeout,
    )
    search = SearchSource(
        cfg["search_url"],
        platform=cfg["platform"],
        channel=cfg["channel"],
        search_channel=cfg["search_channel"],
        token=get_search_token(),
        timeout=timeout,
    )
    return Feed(
        settings,
        mentions=mentions,
        search=search,
        streams=build_streams(cfg.get("live_streams", [])) if live else (),
        page_size=int(cfg["page_size"]),
        history_timeout=float(cfg["history_timeout"]),
        load_more_threshold=float(cfg["load_more_threshold"]),
        save_settings=(lambda s: save_filter_settings(s)) if persist else None,
    )


def parse_user(value: str, default_platform: str) -> UserKey:
    """'platform:nick' or a bare nick on the default platform."""
    if ":" in value:
        platform, nick = value.split(":", 1)
        return UserKey.of(platform, nick)
    return UserKey.of(default_platform, value)


def split_terms(terms: tuple[str, ...]) -> list[str]:
    return [part.strip() for term in terms for part in term.split(",") if part.strip()]


def card_to_dict(card: LinkCard) -> dict:
    return {
        "id": card.id,
        "message_id": card.message_id,
        "url": card.url,
        "original_url": card.original_url,
        "kind": card.kind.value,
        "platform": card.platform,
        "channel": card.channel,
        "nick": card.nick,
        "date": card.date,
        "text": card.text,
        "embed_url": card.embed_url,
        "media_type": card.media_type,
        "playable": card.is_direct_media,
        "trusted": card.is_trusted,
    }


def print_card(card: LinkCard) -> None:
    """Print a link card to the console."""
    stamp = datetime.fromtimestamp(card.date / 1000).strftime("%Y-%m-%d %H:%M")
    nick_style = "bold green" if card.is_trusted else "bold"
    header = f"[{nick_style}]{card.nick}[/{nick_style}] [dim]{card.platform}/{card.channel}[/dim] · {stamp}"

    text = card.text
    if len(text) > 280:
        text = text[:277] + "..."

    body = f"[link={card.url}]{card.url}[/link]"
    if card.original_url != card.url:
        body += f"\n[dim]via {card.original_url}[/dim]"
    if card.show_embed and card.embed_url:
        body += f"\n[dim]embed: {card.embed_url}[/dim]"
    body += f"\n\n{text}"

    console.print(Panel(
        body,
        title=f"{header}  [cyan][{card.kind.value}][/cyan]",
        title_align="left",
        border_style="dim" if not card.show_embed else "cyan",
    ))


@click.group()
@click.version_option()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose: bool):
    """LinkFeed - Links from chat, merged, filtered and laid out."""
    setup_logging(verbose)


@main.command()
@click.argument("terms", nargs=-1)
@click.option("--pages", "-p", default=1, help="Pages to fetch (default: 1)")
@click.option("--json-output", "--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--explain", is_flag=True, help="Show why hidden messages were hidden")
def fetch(terms: tuple[str, ...], pages: int, json_output: bool, explain: bool):
    """Fetch links once and print them. TERMS override the saved filter."""
    cfg = load_config()
    settings = load_filter_settings(default_platform=cfg["platform"])
    if terms:
        settings.filter_terms = split_terms(terms)
    feed = build_feed(cfg, settings, persist=False)

    async def run() -> None:
        await feed.start(connect=False)
        for _ in range(max(0, pages - 1)):
            if not feed.has_more:
                break
            await feed.load_more()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task("Fetching messages...", total=None)
        asyncio.run(run())

    cards = feed.visible_cards()

    if json_output:
        click.echo(json.dumps([card_to_dict(c) for c in cards], indent=2))
        return

    if feed.error:
        console.print(f"[yellow]Warning:[/yellow] {feed.error}")

    console.print(
        f"[dim]{len(cards)} links from {feed.message_count} messages"
        f"{'' if feed.has_more else ' (end of history)'}[/dim]\n"
    )
    for card in cards:
        print_card(card)

    if explain:
        table = Table(title="Hidden messages")
        table.add_column("Message", style="cyan")
        table.add_column("Reason")
        for message in feed.store.messages():
            reason = feed.pipeline.hidden_reason(message)
            if reason:
                table.add_row(message.id, reason)
        console.print(table)


@main.command()
@click.argument("terms", nargs=-1)
@click.option("--live/--no-live", default=True, help="Connect to live chat streams")
def watch(terms: tuple[str, ...], live: bool):
    """Live masonry view. Keys: [m]ore, [r]efresh, [q]uit."""
    from linkfeed.mosaic import run_mosaic

    cfg = load_config()
    settings = load_filter_settings(default_platform=cfg["platform"])
    if terms:
        settings.filter_terms = split_terms(terms)
    feed = build_feed(cfg, settings, live=live)

    # Terminal columns are far narrower than pixels.
    min_width = max(30, int(cfg["min_column_width"]) // 9)
    try:
        asyncio.run(run_mosaic(feed, connect=live, min_column_width=min_width, max_columns=int(cfg["max_columns"])))
    except KeyboardInterrupt:
        pass


@main.command()
@click.option("--show", is_flag=True, help="Show current configuration")
@click.option("--terms", help="Set filter terms (comma-separated, empty to clear)")
@click.option("--nsfw/--no-nsfw", default=None, help="Show NSFW-tagged messages")
@click.option("--nsfl/--no-nsfl", default=None, help="Show NSFL-tagged messages")
@click.option("--mode", nargs=2, type=str, default=None, metavar="KIND MODE", help="Display mode for a link kind (filter|text|embed)")
def config(show: bool, terms: str | None, nsfw: bool | None, nsfl: bool | None, mode: tuple[str, str] | None):
    """Configure LinkFeed settings."""
    cfg = load_config()
    settings = load_filter_settings(default_platform=cfg["platform"])

    if show:
        table = Table(title="LinkFeed Configuration")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Filter Terms", ", ".join(settings.filter_terms) or "[dim]none (all messages)[/dim]")
        table.add_row("Show NSFW", str(settings.show_nsfw))
        table.add_row("Show NSFL", str(settings.show_nsfl))
        for kind, kind_mode in sorted(settings.display_modes.items(), key=lambda kv: kv[0].value):
            table.add_row(f"Display: {kind.value}", kind_mode.value)
        table.add_row("Channel", f"{cfg['platform']}/{cfg['channel']}")
        table.add_row("Page Size", str(cfg["page_size"]))
        table.add_row("Search Token", "set" if get_search_token() else "[dim]Not set[/dim]")
        table.add_row("Config Directory", str(CONFIG_DIR))

        console.print(table)
        return

    changed = False
    if terms is not None:
        settings.filter_terms = split_terms((terms,))
        changed = True
    if nsfw is not None:
        settings.show_nsfw = nsfw
        changed = True
    if nsfl is not None:
        settings.show_nsfl = nsfl
        changed = True
    if mode:
        try:
            settings.display_modes[LinkKind(mode[0].lower())] = DisplayMode(mode[1].lower())
        except ValueError:
            kinds = ", ".join(k.value for k in LinkKind)
            console.print(f"[red]Error:[/red] Unknown kind or mode. Kinds: {kinds}; modes: filter, text, embed")
            sys.exit(1)
        changed = True

    if changed:
        save_filter_settings(settings)
        console.print("[green]✓ Settings saved[/green]")
    else:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())


@main.group()
def filters():
    """Manage bans, trust and mutes."""
    pass


def _settings_feed() -> tuple[Feed, str]:
    cfg = load_config()
    settings = load_filter_settings(default_platform=cfg["platform"])
    return Feed(settings, save_settings=lambda s: save_filter_settings(s)), cfg["platform"]


@filters.command("show")
def filters_show():
    """List every ban, trust and active mute."""
    feed, _ = _settings_feed()
    settings = feed.settings

    table = Table(title="Filters")
    table.add_column("Rule", style="cyan")
    table.add_column("Value")

    for user in sorted(settings.banned_users, key=str):
        table.add_row("banned user", str(user))
    for user in sorted(settings.trusted_users, key=str):
        table.add_row("trusted user", str(user))
    for mute in settings.muted_users:
        until = datetime.fromtimestamp(mute.expires_at / 1000).strftime("%Y-%m-%d %H:%M")
        table.add_row("muted user", f"{mute.user} until {until}")
    for term in sorted(settings.banned_terms):
        table.add_row("banned term", term)
    for link in sorted(settings.banned_links):
        table.add_row("banned link", link)
    for message_id in sorted(settings.banned_messages):
        table.add_row("banned message", message_id)

    if not table.row_count:
        console.print("[dim]No filters set.[/dim]")
        return
    console.print(table)


@filters.command("ban-user")
@click.argument("user")
def filters_ban_user(user: str):
    """Ban USER ('platform:nick' or nick)."""
    feed, platform = _settings_feed()
    key = parse_user(user, platform)
    feed.ban_user(key.platform, key.nick)
    console.print(f"[green]✓ Banned {key}[/green]")


@filters.command("unban-user")
@click.argument("user")
def filters_unban_user(user: str):
    """Lift a ban on USER."""
    feed, platform = _settings_feed()
    key = parse_user(user, platform)
    if key not in feed.settings.banned_users:
        console.print(f"[yellow]{key} is not banned[/yellow]")
        return
    feed.unban_user(key.platform, key.nick)
    console.print(f"[green]✓ Unbanned {key}[/green]")


@filters.command("trust-user")
@click.argument("user")
def filters_trust_user(user: str):
    """Mark USER as trusted."""
    feed, platform = _settings_feed()
    key = parse_user(user, platform)
    feed.trust_user(key.platform, key.nick)
    console.print(f"[green]✓ Trusted {key}[/green]")


@filters.command("untrust-user")
@click.argument("user")
def filters_untrust_user(user: str):
    """Remove USER from the trusted list."""
    feed, platform = _settings_feed()
    key = parse_user(user, platform)
    if key not in feed.settings.trusted_users:
        console.print(f"[yellow]{key} is not trusted[/yellow]")
        return
    feed.untrust_user(key.platform, key.nick)
    console.print(f"[green]✓ No longer trusting {key}[/green]")


@filters.command("mute-user")
@click.argument("user")
@click.option("--minutes", "-m", default=60.0, help="Mute duration in minutes (default: 60)")
def filters_mute_user(user: str, minutes: float):
    """Hide USER for a while."""
    feed, platform = _settings_feed()
    key = parse_user(user, platform)
    feed.mute_user(key.platform, key.nick, minutes * 60)
    console.print(f"[green]✓ Muted {key} for {minutes:g} minutes[/green]")


@filters.command("ban-link")
@click.argument("url")
def filters_ban_link(url: str):
    """Hide every card for URL."""
    feed, _ = _settings_feed()
    feed.ban_link(url)
    console.print("[green]✓ Link banned[/green]")


@filters.command("ban-term")
@click.argument("term")
def filters_ban_term(term: str):
    """Hide messages containing TERM."""
    feed, _ = _settings_feed()
    feed.ban_term(term)
    console.print(f"[green]✓ Banned term {term!r}[/green]")


@filters.command("ban-message")
@click.argument("message_id")
def filters_ban_message(message_id: str):
    """Hide one message by id (platform:channel:millis:nick)."""
    feed, _ = _settings_feed()
    feed.ban_message(message_id)
    console.print("[green]✓ Message banned[/green]")


@main.group()
def cache():
    """Manage the mentions page cache."""
    pass


@cache.command("stats")
def cache_stats():
    """Show cache statistics."""
    stats = MentionCache().get_stats()

    table = Table(title="Mentions Cache")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Cached Pages", str(stats["pages"]))
    table.add_row("Terms", str(stats["terms"]))
    table.add_row("Database", stats["db_path"])
    console.print(table)


@cache.command("clear")
@click.option("--expired", is_flag=True, help="Only remove expired pages")
def cache_clear(expired: bool):
    """Clear cached mention pages."""
    mention_cache = MentionCache()
    count = mention_cache.clear_expired() if expired else mention_cache.clear_all()
    console.print(f"[green]Removed {count} cached pages.[/green]")


if __name__ == "__main__":
    main()

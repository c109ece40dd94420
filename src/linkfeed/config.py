"""Configuration management for LinkFeed."""

import copy
import logging
import os
import time
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
import yaml

from linkfeed.links import normalize_link
from linkfeed.models import DisplayMode, FilterSettings, LinkKind, MutedUser, UserKey

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("LINKFEED_HOME", Path.home() / ".linkfeed"))
CONFIG_FILE = CONFIG_DIR / "config.yaml"
SETTINGS_FILE = CONFIG_DIR / "settings.yaml"
ENV_FILE = CONFIG_DIR / ".env"

# Load .env from multiple locations
_project_root = Path(__file__).parent.parent.parent
load_dotenv(_project_root / ".env")  # Project directory
load_dotenv(ENV_FILE)  # Config directory

SETTINGS_VERSION = 3
# Mutes migrated from shapes that had no expiry last until year 2100.
FAR_FUTURE_MS = 4_102_444_800_000

DEFAULT_CONFIG = {
    "page_size": 150,
    "platform": "dgg",
    "channel": "destinygg",
    "mentions_url": "https://polecat.me/api/mentions",
    "search_url": "https://api-v2.rustlesearch.dev/anon/search",
    "search_channel": "Destinygg",
    # Live sources: [{"type": "dgg"|"kick", "url": ..., "channel": ...}]
    "live_streams": [
        {"type": "dgg", "url": "wss://chat.destiny.gg/ws", "channel": "destinygg"},
    ],
    "history_timeout": 5.0,  # Seconds to wait for a live history burst
    "load_more_threshold": 200,  # Distance from the end that triggers load more
    "min_column_width": 360,
    "max_columns": 6,
    "mention_cache_hours": 24,
    "request_timeout": 10.0,
}


def ensure_config_dir() -> None:
    """Create config directory if it doesn't exist."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


def load_config(path: Path | None = None) -> dict:
    """Load configuration from file."""
    path = path or CONFIG_FILE
    if path == CONFIG_FILE:
        ensure_config_dir()

    if not path.exists():
        save_config(DEFAULT_CONFIG, path)
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.warning("Could not parse %s, using defaults: %s", path, e)
        config = {}

    if not isinstance(config, dict):
        config = {}

    # Merge with defaults for any missing keys
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = copy.deepcopy(value)

    return config


def save_config(config: dict, path: Path | None = None) -> None:
    """Save configuration to file."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config, f, default_flow_style=False)


def get_search_token() -> str | None:
    """Bearer token for the fallback search API, from .env or environment."""
    return os.environ.get("LINKFEED_SEARCH_TOKEN") or None


# =============================================================================
# Filter settings: versioned, with migration of older shapes
# =============================================================================

def _as_list(value: Any) -> list[str]:
    """Accept a list, a comma-separated string, or nothing."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(v).strip() for v in value if str(v).strip()]
    return []


def _parse_user(value: Any, default_platform: str) -> UserKey | None:
    if isinstance(value, dict):
        nick = value.get("nick") or value.get("username")
        if not nick:
            return None
        return UserKey.of(value.get("platform") or default_platform, str(nick))
    if isinstance(value, str) and value.strip():
        if ":" in value:
            platform, nick = value.split(":", 1)
            return UserKey.of(platform, nick)
        return UserKey.of(default_platform, value)
    return None


def _parse_users(values: Any, default_platform: str) -> set[UserKey]:
    if isinstance(values, str):
        values = _as_list(values)
    users = set()
    for value in values or []:
        user = _parse_user(value, default_platform)
        if user is not None:
            users.add(user)
    return users


def _parse_mutes(values: Any, default_platform: str) -> list[MutedUser]:
    mutes = []
    for value in values or []:
        user = _parse_user(value, default_platform)
        if user is None:
            continue
        expires = FAR_FUTURE_MS
        if isinstance(value, dict):
            raw = value.get("expires_at", value.get("muteExpiry", value.get("expiry")))
            try:
                expires = int(raw) if raw is not None else FAR_FUTURE_MS
            except (TypeError, ValueError):
                expires = FAR_FUTURE_MS
        mutes.append(MutedUser(user=user, expires_at=expires))
    return mutes


def _parse_display_modes(values: Any) -> dict[LinkKind, DisplayMode]:
    modes = {}
    if not isinstance(values, dict):
        return modes
    for kind_name, mode_name in values.items():
        try:
            modes[LinkKind(str(kind_name).lower())] = DisplayMode(str(mode_name).lower())
        except ValueError:
            logger.debug("Ignoring display mode %r=%r", kind_name, mode_name)
    return modes


def migrate_settings(raw: dict) -> dict:
    """Bring an older settings mapping up to the current key names.

    Unversioned data is the original single-user shape
    (``filter``, ``bannedTerms``, ``showNSFW``...).
    """
    data = dict(raw)
    version = data.get("version", 0)
    if not isinstance(version, int):
        version = 0

    if version < 1:
        for single in ("filter", "username"):
            if single in data and "filter_terms" not in data:
                data["filter_terms"] = data.pop(single)
        renames = {
            "filterTerms": "filter_terms",
            "showNSFW": "show_nsfw",
            "showNSFL": "show_nsfl",
            "bannedTerms": "banned_terms",
            "bannedUsers": "banned_users",
            "trustedUsers": "trusted_users",
            "bannedLinks": "banned_links",
            "bannedMessages": "banned_messages",
            "mutedUsers": "muted_users",
            "platformDisplayModes": "display_modes",
        }
        for old, new in renames.items():
            if old in data and new not in data:
                data[new] = data.pop(old)

    data["version"] = SETTINGS_VERSION
    if version < SETTINGS_VERSION:
        logger.info("Migrated filter settings from version %s to %s", version, SETTINGS_VERSION)
    return data


def settings_from_dict(raw: dict, default_platform: str = "dgg") -> FilterSettings:
    """Build FilterSettings from any known shape, defaulting absent fields."""
    data = migrate_settings(raw or {})
    return FilterSettings(
        filter_terms=_as_list(data.get("filter_terms")),
        show_nsfw=bool(data.get("show_nsfw", False)),
        show_nsfl=bool(data.get("show_nsfl", False)),
        banned_terms=set(_as_list(data.get("banned_terms"))),
        banned_users=_parse_users(data.get("banned_users"), default_platform),
        trusted_users=_parse_users(data.get("trusted_users"), default_platform),
        banned_links={normalize_link(u) for u in _as_list(data.get("banned_links"))},
        banned_messages=set(_as_list(data.get("banned_messages"))),
        muted_users=_parse_mutes(data.get("muted_users"), default_platform),
        display_modes=_parse_display_modes(data.get("display_modes")),
    )


def _user_dict(user: UserKey) -> dict:
    return {"platform": user.platform, "nick": user.nick}


def settings_to_dict(settings: FilterSettings) -> dict:
    return {
        "version": SETTINGS_VERSION,
        "filter_terms": list(settings.filter_terms),
        "show_nsfw": settings.show_nsfw,
        "show_nsfl": settings.show_nsfl,
        "banned_terms": sorted(settings.banned_terms),
        "banned_users": [_user_dict(u) for u in sorted(settings.banned_users, key=str)],
        "trusted_users": [_user_dict(u) for u in sorted(settings.trusted_users, key=str)],
        "banned_links": sorted(settings.banned_links),
        "banned_messages": sorted(settings.banned_messages),
        "muted_users": [
            {**_user_dict(m.user), "expires_at": m.expires_at} for m in settings.muted_users
        ],
        "display_modes": {kind.value: mode.value for kind, mode in settings.display_modes.items()},
    }


def load_filter_settings(
    path: Path | None = None,
    default_platform: str = "dgg",
    now_ms: int | None = None,
) -> FilterSettings:
    """Load filter settings, migrating old shapes and sweeping expired mutes."""
    path = path or SETTINGS_FILE
    raw: Any = {}
    if path.exists():
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.warning("Could not parse %s, using default filter settings: %s", path, e)
            raw = {}
    if not isinstance(raw, dict):
        raw = {}

    settings = settings_from_dict(raw, default_platform)
    settings.sweep_mutes(now_ms if now_ms is not None else int(time.time() * 1000))
    return settings


def save_filter_settings(
    settings: FilterSettings,
    path: Path | None = None,
    now_ms: int | None = None,
) -> None:
    """Save filter settings (expired mutes are swept first)."""
    path = path or SETTINGS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    settings.sweep_mutes(now_ms if now_ms is not None else int(time.time() * 1000))

    with open(path, "w") as f:
        yaml.dump(settings_to_dict(settings), f, default_flow_style=False, sort_keys=False)

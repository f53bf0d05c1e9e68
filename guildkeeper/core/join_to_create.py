"""
Join to Create configuration.

One JSON document per guild at guild:<id>:jointocreate holds the trigger channels, their
per-trigger options and the registry of live temporary channels. JoinToCreateConfigService
is the only code that reads or writes that document.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import unicodedata
from dataclasses import dataclass, field
from typing import Any

from .errors import BotError, ErrorType
from .storage.keys import join_to_create_key

log = logging.getLogger(__name__)

DEFAULT_NAME_TEMPLATE = "{username}'s Room"
DEFAULT_BITRATE = 64000
DEFAULT_USER_LIMIT = 0

BITRATE_MIN = 8000
BITRATE_MAX = 384000
USER_LIMIT_MAX = 99

CHANNEL_NAME_MAX_LENGTH = 100
CHANNEL_VARIABLE_MAX_LENGTH = 32
FALLBACK_CHANNEL_NAME = "Voice Channel"

_CONTROL_AND_INVISIBLE = re.compile(r"[\x00-\x1f\x7f\u200b-\u200d\ufeff]")
_FORBIDDEN_IN_TEMPLATE = re.compile(r"[@#:`]")
_FORBIDDEN_IN_NAME = re.compile(r"[@#:`\n\r\t]")
_PLACEHOLDER = re.compile(r"\{[^}]+\}")
_WHITESPACE = re.compile(r"\s+")

# placeholder -> (variable name, fallback)
PLACEHOLDERS: dict[str, tuple[str, str]] = {
    "{username}": ("username", "User"),
    "{user_tag}": ("user_tag", "User#0000"),
    "{displayName}": ("display_name", "User"),
    "{display_name}": ("display_name", "User"),
    "{guildName}": ("guild_name", "Server"),
    "{guild_name}": ("guild_name", "Server"),
    "{channelName}": ("channel_name", FALLBACK_CHANNEL_NAME),
    "{channel_name}": ("channel_name", FALLBACK_CHANNEL_NAME),
}

# ============================================================================
# VALIDATION AND NAMES
# ============================================================================

def _clean(text: str) -> str:
    return _CONTROL_AND_INVISIBLE.sub("", unicodedata.normalize("NFKC", text))


def validate_name_template(template: Any) -> str:
    if not isinstance(template, str) or not template.strip():
        raise BotError("Invalid channel template", ErrorType.VALIDATION, "Channel name template must be valid text.")
    cleaned = _clean(template).strip()
    if not cleaned:
        raise BotError("Empty channel template", ErrorType.VALIDATION, "Channel name template must be valid text.")
    if len(cleaned) > CHANNEL_NAME_MAX_LENGTH:
        raise BotError(
            "Channel template too long",
            ErrorType.VALIDATION,
            f"Channel name template must be {CHANNEL_NAME_MAX_LENGTH} characters or less.",
        )
    if _FORBIDDEN_IN_TEMPLATE.search(cleaned):
        raise BotError(
            "Channel template contains forbidden characters",
            ErrorType.VALIDATION,
            "Channel name template cannot contain @, #, : or ` characters.",
        )
    unknown = [p for p in _PLACEHOLDER.findall(cleaned) if p not in PLACEHOLDERS]
    if unknown:
        raise BotError(
            f"Unknown template placeholders: {unknown}",
            ErrorType.VALIDATION,
            f"Unknown placeholder {unknown[0]}. Allowed: {', '.join(PLACEHOLDERS)}",
        )
    return cleaned


def _as_int(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BotError(f"{what} must be a number", ErrorType.VALIDATION, f"Please enter a valid number for {what}.") from None


def validate_bitrate(bitrate: Any) -> int:
    """Bitrate in bits per second; accepted range is 8-384 kbps."""
    value = _as_int(bitrate, "bitrate")
    if not BITRATE_MIN <= value <= BITRATE_MAX:
        raise BotError(
            "Bitrate out of range",
            ErrorType.VALIDATION,
            f"Bitrate must be between {BITRATE_MIN // 1000} and {BITRATE_MAX // 1000} kbps.",
        )
    return value


def validate_user_limit(limit: Any) -> int:
    value = _as_int(limit, "user limit")
    if not 0 <= value <= USER_LIMIT_MAX:
        raise BotError(
            "User limit out of range",
            ErrorType.VALIDATION,
            f"User limit must be between 0 (no limit) and {USER_LIMIT_MAX}.",
        )
    return value


def clamp_bitrate(bitrate: Any) -> int:
    try:
        value = int(bitrate)
    except (TypeError, ValueError):
        return DEFAULT_BITRATE
    return max(BITRATE_MIN, min(BITRATE_MAX, value))


def clamp_user_limit(limit: Any) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return DEFAULT_USER_LIMIT
    return max(0, min(USER_LIMIT_MAX, value))


def format_channel_name(template: str | None, **variables: Any) -> str:
    """
    Render a channel name. Variables: username, user_tag, display_name, guild_name,
    channel_name. Missing or blank values use a fallback; the result never contains
    forbidden characters and is between 1 and 100 characters long.
    """
    try:
        text = validate_name_template(template or DEFAULT_NAME_TEMPLATE)
    except BotError:
        log.warning("Stored channel template %r is invalid, using the default", template)
        text = DEFAULT_NAME_TEMPLATE

    sanitized: dict[str, str] = {}
    for name, value in variables.items():
        if value is None:
            continue
        sanitized[name] = _FORBIDDEN_IN_NAME.sub("", _clean(str(value))).strip()[:CHANNEL_VARIABLE_MAX_LENGTH]

    for placeholder, (name, fallback) in PLACEHOLDERS.items():
        text = text.replace(placeholder, sanitized.get(name) or fallback)

    text = _FORBIDDEN_IN_NAME.sub("", _clean(text))
    text = _WHITESPACE.sub(" ", text).strip()
    if not text:
        return FALLBACK_CHANNEL_NAME
    return text[:CHANNEL_NAME_MAX_LENGTH]

# ============================================================================
# MODEL
# ============================================================================

def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class TriggerOptions:
    name_template: str | None = None
    user_limit: int | None = None
    bitrate: int | None = None
    category_id: int | None = None
    created_at: int | None = None

    @classmethod
    def from_dict(cls, data: Any) -> "TriggerOptions":
        data = data if isinstance(data, dict) else {}
        return cls(
            name_template=data.get("nameTemplate") or None,
            user_limit=_opt_int(data.get("userLimit")),
            bitrate=_opt_int(data.get("bitrate")),
            category_id=_opt_int(data.get("categoryId")),
            created_at=_opt_int(data.get("createdAt")),
        )

    def to_dict(self) -> dict:
        return {
            "nameTemplate": self.name_template,
            "userLimit": self.user_limit,
            "bitrate": self.bitrate,
            "categoryId": str(self.category_id) if self.category_id is not None else None,
            "createdAt": self.created_at,
        }


@dataclass
class TemporaryChannel:
    channel_id: int
    owner_id: int
    trigger_channel_id: int
    created_at: int = 0

    @classmethod
    def from_dict(cls, channel_id: int, data: dict) -> "TemporaryChannel":
        return cls(
            channel_id=channel_id,
            owner_id=int(data["ownerId"]),
            trigger_channel_id=int(data["triggerChannelId"]),
            created_at=_opt_int(data.get("createdAt")) or 0,
        )

    def to_dict(self) -> dict:
        return {
            "ownerId": str(self.owner_id),
            "triggerChannelId": str(self.trigger_channel_id),
            "createdAt": self.created_at,
        }


@dataclass
class ResolvedOptions:
    name_template: str
    user_limit: int
    bitrate: int
    category_id: int | None


@dataclass
class JoinToCreateConfig:
    enabled: bool = False
    trigger_channels: set[int] = field(default_factory=set)
    channel_options: dict[int, TriggerOptions] = field(default_factory=dict)
    temporary_channels: dict[int, TemporaryChannel] = field(default_factory=dict)
    category_id: int | None = None
    channel_name_template: str = DEFAULT_NAME_TEMPLATE
    user_limit: int = DEFAULT_USER_LIMIT
    bitrate: int = DEFAULT_BITRATE

    @classmethod
    def from_dict(cls, data: Any) -> "JoinToCreateConfig":
        """Lenient: malformed entries are dropped rather than failing the whole document."""
        if not isinstance(data, dict):
            return cls()
        triggers = {t for t in (_opt_int(x) for x in data.get("triggerChannels") or []) if t is not None}
        options: dict[int, TriggerOptions] = {}
        for raw_id, raw in (data.get("channelOptions") or {}).items():
            channel_id = _opt_int(raw_id)
            if channel_id is not None:
                options[channel_id] = TriggerOptions.from_dict(raw)
        temporary: dict[int, TemporaryChannel] = {}
        for raw_id, raw in (data.get("temporaryChannels") or {}).items():
            channel_id = _opt_int(raw_id)
            try:
                temporary[channel_id] = TemporaryChannel.from_dict(channel_id, raw)
            except (KeyError, TypeError, ValueError):
                log.debug("Dropping malformed temporary channel record %r", raw_id)
        bitrate = _opt_int(data.get("bitrate"))
        user_limit = _opt_int(data.get("userLimit"))
        return cls(
            enabled=bool(data.get("enabled", False)),
            trigger_channels=triggers,
            channel_options=options,
            temporary_channels={k: v for k, v in temporary.items() if k is not None},
            category_id=_opt_int(data.get("categoryId")),
            channel_name_template=data.get("channelNameTemplate") or DEFAULT_NAME_TEMPLATE,
            user_limit=user_limit if user_limit is not None else DEFAULT_USER_LIMIT,
            bitrate=bitrate if bitrate is not None else DEFAULT_BITRATE,
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "triggerChannels": [str(c) for c in sorted(self.trigger_channels)],
            "channelOptions": {str(k): v.to_dict() for k, v in self.channel_options.items()},
            "temporaryChannels": {str(k): v.to_dict() for k, v in self.temporary_channels.items()},
            "categoryId": str(self.category_id) if self.category_id is not None else None,
            "channelNameTemplate": self.channel_name_template,
            "userLimit": self.user_limit,
            "bitrate": self.bitrate,
        }

    def options_for(self, trigger_id: int) -> ResolvedOptions:
        opts = self.channel_options.get(trigger_id) or TriggerOptions()
        return ResolvedOptions(
            name_template=opts.name_template or self.channel_name_template or DEFAULT_NAME_TEMPLATE,
            user_limit=opts.user_limit if opts.user_limit is not None else self.user_limit,
            bitrate=opts.bitrate or self.bitrate or DEFAULT_BITRATE,
            category_id=opts.category_id if opts.category_id is not None else self.category_id,
        )

    def owned_channel(self, user_id: int) -> TemporaryChannel | None:
        for record in self.temporary_channels.values():
            if record.owner_id == user_id:
                return record
        return None

    def drop_trigger(self, trigger_id: int) -> bool:
        """Forget a trigger and its options. Temporary channels it spawned stay tracked until they empty."""
        if trigger_id not in self.trigger_channels:
            return False
        self.trigger_channels.discard(trigger_id)
        self.channel_options.pop(trigger_id, None)
        self.enabled = bool(self.trigger_channels)
        return True

    def drop_category(self, category_id: int) -> bool:
        """Clear every reference to a category. The feature is disabled when one was found."""
        found = False
        if self.category_id == category_id:
            self.category_id = None
            found = True
        for opts in self.channel_options.values():
            if opts.category_id == category_id:
                opts.category_id = None
                found = True
        if found:
            self.enabled = False
        return found

# ============================================================================
# SERVICE
# ============================================================================

class JoinToCreateConfigService:
    def __init__(self, storage):
        self.storage = storage
        self._locks: dict[int, asyncio.Lock] = {}

    def lock(self, guild_id: int) -> asyncio.Lock:
        """Held around every read-modify-write of a guild's document."""
        lock = self._locks.get(guild_id)
        if lock is None:
            lock = self._locks[guild_id] = asyncio.Lock()
        return lock

    async def get_config(self, guild_id: int) -> JoinToCreateConfig:
        return JoinToCreateConfig.from_dict(await self.storage.get(join_to_create_key(guild_id)))

    async def save_config(self, guild_id: int, config: JoinToCreateConfig) -> bool:
        if not config.trigger_channels and not config.temporary_channels:
            return await self.storage.delete(join_to_create_key(guild_id))
        return await self.storage.set(join_to_create_key(guild_id), config.to_dict())

    async def initialize_trigger(
        self,
        guild_id: int,
        channel_id: int,
        *,
        name_template: str | None = None,
        user_limit: int | None = None,
        bitrate: int | None = None,
        category_id: int | None = None,
    ) -> JoinToCreateConfig:
        if name_template is not None:
            name_template = validate_name_template(name_template)
        if bitrate is not None:
            bitrate = validate_bitrate(bitrate)
        if user_limit is not None:
            user_limit = validate_user_limit(user_limit)

        async with self.lock(guild_id):
            config = await self.get_config(guild_id)
            if channel_id in config.trigger_channels:
                raise BotError(
                    "Channel already configured as trigger",
                    ErrorType.VALIDATION,
                    "This channel is already set up as a Join to Create trigger.",
                )
            if config.trigger_channels:
                raise BotError(
                    "Guild already has a trigger",
                    ErrorType.VALIDATION,
                    "This server already has a Join to Create channel configured. Use `/jointocreate config` "
                    "to modify it, or remove it before creating a new one.",
                    {"guild_id": guild_id, "existing": next(iter(config.trigger_channels))},
                )

            config.trigger_channels.add(channel_id)
            config.enabled = True
            config.channel_options[channel_id] = TriggerOptions(
                name_template=name_template,
                user_limit=user_limit,
                bitrate=bitrate,
                category_id=category_id,
                created_at=int(time.time() * 1000),
            )
            await self.save_config(guild_id, config)
        log.info("Join to Create trigger %s set up in guild %s", channel_id, guild_id)
        return config

    async def update_trigger_options(self, guild_id: int, channel_id: int, **updates: Any) -> TriggerOptions:
        """Apply option changes. Reconfiguring a trigger turns the feature back on."""
        async with self.lock(guild_id):
            config = await self.get_config(guild_id)
            if channel_id not in config.trigger_channels:
                raise BotError(
                    "Channel is not a trigger", ErrorType.VALIDATION, "This channel is not a Join to Create trigger."
                )
            opts = config.channel_options.setdefault(channel_id, TriggerOptions())
            if updates.get("name_template") is not None:
                opts.name_template = validate_name_template(updates["name_template"])
            if updates.get("bitrate") is not None:
                opts.bitrate = validate_bitrate(updates["bitrate"])
            if updates.get("user_limit") is not None:
                opts.user_limit = validate_user_limit(updates["user_limit"])
            if "category_id" in updates:
                opts.category_id = updates["category_id"]
            if not config.enabled:
                log.info("Join to Create re-enabled in guild %s", guild_id)
            config.enabled = True
            await self.save_config(guild_id, config)
        return opts

    async def remove_trigger(self, guild_id: int, channel_id: int) -> JoinToCreateConfig:
        async with self.lock(guild_id):
            config = await self.get_config(guild_id)
            if not config.drop_trigger(channel_id):
                raise BotError(
                    "Channel is not a trigger", ErrorType.VALIDATION, "This channel is not a Join to Create trigger."
                )
            await self.save_config(guild_id, config)
        log.info("Join to Create trigger %s removed from guild %s", channel_id, guild_id)
        return config

    async def register_temporary_channel(
        self, guild_id: int, channel_id: int, owner_id: int, trigger_channel_id: int
    ) -> TemporaryChannel:
        async with self.lock(guild_id):
            config = await self.get_config(guild_id)
            record = TemporaryChannel(channel_id, owner_id, trigger_channel_id, int(time.time() * 1000))
            config.temporary_channels[channel_id] = record
            await self.save_config(guild_id, config)
        return record

    async def unregister_temporary_channel(self, guild_id: int, channel_id: int) -> bool:
        async with self.lock(guild_id):
            config = await self.get_config(guild_id)
            if config.temporary_channels.pop(channel_id, None) is None:
                return False
            await self.save_config(guild_id, config)
        return True

    async def get_temporary_channel(self, guild_id: int, channel_id: int) -> TemporaryChannel | None:
        config = await self.get_config(guild_id)
        return config.temporary_channels.get(channel_id)

    async def transfer_ownership(self, guild_id: int, channel_id: int, new_owner_id: int) -> TemporaryChannel | None:
        async with self.lock(guild_id):
            config = await self.get_config(guild_id)
            record = config.temporary_channels.get(channel_id)
            if record is None:
                return None
            record.owner_id = new_owner_id
            await self.save_config(guild_id, config)
        return record

    async def list_temporary_channels(self, guild_id: int) -> list[TemporaryChannel]:
        config = await self.get_config(guild_id)
        return list(config.temporary_channels.values())

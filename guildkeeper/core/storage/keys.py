"""
Key layout.

Builders for the colon-separated keys the bot writes, and the translator that maps any key
onto the relational table that stores it. Translation is an ordered rule table: the first
rule whose segments match wins, anything unmatched is stored in the generic temp table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class KeyKind(str, Enum):
    GUILD_CONFIG = "guild_config"
    GUILD_BIRTHDAYS = "guild_birthdays"
    GUILD_GIVEAWAYS = "guild_giveaways"
    WELCOME_CONFIG = "welcome_config"
    LEVELING_CONFIG = "leveling_config"
    USER_LEVEL = "user_level"
    ECONOMY = "economy"
    AFK_STATUS = "afk_status"
    TICKET = "ticket"
    TEMP = "temp"
    CACHE = "cache"


@dataclass(frozen=True)
class KeyDescriptor:
    kind: KeyKind
    full_key: str
    guild_id: str | None = None
    user_id: str | None = None
    channel_id: str | None = None


# ============================================================================
# TRANSLATOR
# ============================================================================

# "{name}" captures one non-empty segment into the descriptor field of that name;
# "**" as the last element matches the rest of the key (at least one segment).
_RULE_TABLE: tuple[tuple[str, KeyKind], ...] = (
    ("temp:**", KeyKind.TEMP),
    ("cache:**", KeyKind.CACHE),
    ("guild:{guild_id}:config", KeyKind.GUILD_CONFIG),
    ("guild:{guild_id}:birthdays", KeyKind.GUILD_BIRTHDAYS),
    ("guild:{guild_id}:giveaways", KeyKind.GUILD_GIVEAWAYS),
    ("guild:{guild_id}:welcome", KeyKind.WELCOME_CONFIG),
    ("guild:{guild_id}:leveling:config", KeyKind.LEVELING_CONFIG),
    ("guild:{guild_id}:leveling:users:{user_id}", KeyKind.USER_LEVEL),
    ("guild:{guild_id}:economy:{user_id}", KeyKind.ECONOMY),
    ("guild:{guild_id}:afk:{user_id}", KeyKind.AFK_STATUS),
    ("guild:{guild_id}:ticket:{channel_id}", KeyKind.TICKET),
)


@dataclass(frozen=True)
class _Rule:
    segments: tuple[str, ...]
    kind: KeyKind
    pattern: str

    @property
    def open_ended(self) -> bool:
        return self.segments[-1] == "**"

    def match(self, parts: list[str]) -> dict[str, str] | None:
        fixed = self.segments[:-1] if self.open_ended else self.segments
        if self.open_ended:
            if len(parts) <= len(fixed):
                return None
        elif len(parts) != len(fixed):
            return None
        captured: dict[str, str] = {}
        for want, got in zip(fixed, parts):
            if want.startswith("{") and want.endswith("}"):
                if not got:
                    return None
                captured[want[1:-1]] = got
            elif want != got:
                return None
        return captured


RULES: tuple[_Rule, ...] = tuple(
    _Rule(tuple(pattern.split(":")), kind, pattern) for pattern, kind in _RULE_TABLE
)


def parse_key(key: str) -> KeyDescriptor:
    """Classify a key. Total over str: unknown shapes are TEMP."""
    if not isinstance(key, str):
        raise TypeError(f"Storage keys must be str, not {type(key).__name__}")
    parts = key.split(":")
    for rule in RULES:
        captured = rule.match(parts)
        if captured is not None:
            return KeyDescriptor(rule.kind, key, **captured)
    return KeyDescriptor(KeyKind.TEMP, key)


def build_key(kind: KeyKind, **fields: str) -> str:
    """Inverse of parse_key for the structured kinds."""
    for rule in RULES:
        if rule.kind == kind and not rule.open_ended:
            return ":".join(
                str(fields[s[1:-1]]) if s.startswith("{") else s for s in rule.segments
            )
    raise ValueError(f"{kind.value} keys have no fixed layout")


# ============================================================================
# BUILDERS
# ============================================================================

def guild_config_key(guild_id) -> str:
    return f"guild:{guild_id}:config"


def birthdays_key(guild_id) -> str:
    return f"guild:{guild_id}:birthdays"


def giveaways_key(guild_id) -> str:
    return f"guild:{guild_id}:giveaways"


def welcome_key(guild_id) -> str:
    return f"guild:{guild_id}:welcome"


def leveling_config_key(guild_id) -> str:
    return f"guild:{guild_id}:leveling:config"


def user_level_key(guild_id, user_id) -> str:
    return f"guild:{guild_id}:leveling:users:{user_id}"


def economy_key(guild_id, user_id) -> str:
    return f"guild:{guild_id}:economy:{user_id}"


def afk_key(guild_id, user_id) -> str:
    return f"guild:{guild_id}:afk:{user_id}"


def ticket_key(guild_id, channel_id) -> str:
    return f"guild:{guild_id}:ticket:{channel_id}"


def join_to_create_key(guild_id) -> str:
    return f"guild:{guild_id}:jointocreate"


def temp_key(*parts) -> str:
    return ":".join(["temp", *map(str, parts)])


def cache_key(*parts) -> str:
    return ":".join(["cache", *map(str, parts)])

"""
Join to Create voice channel lifecycle.

VoiceLifecycleManager reacts to voice state changes: joining a trigger channel creates a
temporary channel owned by the member and moves them into it; the channel is deleted when
the last member leaves, and ownership passes to someone still inside when the owner leaves.
Channel operations go through a ChannelPlatform so the manager can run without a gateway.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Any, Callable

import discord

from .errors import BotError, ErrorType
from .join_to_create import (
    JoinToCreateConfig,
    JoinToCreateConfigService,
    TemporaryChannel,
    clamp_bitrate,
    clamp_user_limit,
    format_channel_name,
)

log = logging.getLogger(__name__)

OWNER_PERMISSIONS = ("connect", "speak", "priority_speaker", "move_members")
EVERYONE_PERMISSIONS = ("connect", "speak")

EMPTY_CHANNEL_REASON = "Temporary voice channel - empty"
CREATE_FAILED_MESSAGE = "Failed to create your temporary voice channel. Please contact a server administrator."

# ============================================================================
# PLATFORM
# ============================================================================

class ChannelPlatform:
    """The channel operations the manager needs. Raise BotError(PERMISSION) on permission failures."""

    async def create_voice_channel(
        self, guild, *, name: str, category_id: int | None, bitrate: int, user_limit: int,
        owner, overwrites: dict[str, tuple[str, ...]],
    ):
        raise NotImplementedError

    async def delete_channel(self, channel, reason: str):
        raise NotImplementedError

    async def move_member(self, member, channel):
        raise NotImplementedError

    async def set_channel_name(self, channel, name: str):
        raise NotImplementedError

    async def send_direct_message(self, user, content: str):
        raise NotImplementedError

    def get_channel(self, guild, channel_id: int):
        raise NotImplementedError


def _permission_error(action: str, error: discord.Forbidden) -> BotError:
    return BotError(
        f"Missing permission to {action}: {error}",
        ErrorType.PERMISSION,
        "I don't have permission to manage voice channels here.",
    )


class DiscordChannelPlatform(ChannelPlatform):
    async def create_voice_channel(self, guild, *, name, category_id, bitrate, user_limit, owner, overwrites):
        category = guild.get_channel(category_id) if category_id else None
        if category is not None and not isinstance(category, discord.CategoryChannel):
            category = None
        perms = {
            guild.default_role: discord.PermissionOverwrite(**{p: True for p in overwrites["everyone"]}),
            owner: discord.PermissionOverwrite(**{p: True for p in overwrites["owner"]}),
        }
        try:
            return await guild.create_voice_channel(
                name,
                category=category,
                bitrate=min(bitrate, int(guild.bitrate_limit)),
                user_limit=user_limit,
                overwrites=perms,
                reason=f"Join to Create channel for {owner}",
            )
        except discord.Forbidden as e:
            raise _permission_error("create voice channels", e) from e
        except discord.HTTPException as e:
            raise BotError(f"Voice channel creation failed: {e}", ErrorType.DISCORD_API) from e

    async def delete_channel(self, channel, reason):
        try:
            await channel.delete(reason=reason)
        except discord.NotFound:
            return
        except discord.Forbidden as e:
            raise _permission_error("delete channels", e) from e

    async def move_member(self, member, channel):
        try:
            await member.move_to(channel)
        except discord.Forbidden as e:
            raise _permission_error("move members", e) from e

    async def set_channel_name(self, channel, name):
        try:
            await channel.edit(name=name)
        except discord.Forbidden as e:
            raise _permission_error("rename channels", e) from e

    async def send_direct_message(self, user, content):
        await user.send(content)

    def get_channel(self, guild, channel_id):
        return guild.get_channel(channel_id)

# ============================================================================
# MANAGER
# ============================================================================

def _channel_id(channel) -> int | None:
    return getattr(channel, "id", None) if channel is not None else None


def _in_channel(member, channel) -> bool:
    voice = getattr(member, "voice", None)
    current = getattr(voice, "channel", None)
    return current is not None and current.id == channel.id


def _name_variables(member, guild, trigger_name: str | None) -> dict[str, Any]:
    name = getattr(member, "name", None)
    discriminator = getattr(member, "discriminator", None)
    if name and discriminator and discriminator != "0":
        tag = f"{name}#{discriminator}"
    else:
        tag = name
    return {
        "username": name,
        "user_tag": tag,
        "display_name": getattr(member, "display_name", None),
        "guild_name": getattr(guild, "name", None),
        "channel_name": trigger_name,
    }


class VoiceLifecycleManager:
    def __init__(
        self,
        storage,
        platform: ChannelPlatform,
        *,
        debounce_seconds: float = 2.0,
        cooldown_capacity: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.configs = JoinToCreateConfigService(storage)
        self.platform = platform
        self.debounce_seconds = debounce_seconds
        self.cooldown_capacity = cooldown_capacity
        self.clock = clock
        self._cooldowns: OrderedDict[tuple[int, int], float] = OrderedDict()

    # ------------------------------------------------------------------
    # Cooldowns
    # ------------------------------------------------------------------

    def _prune_cooldowns(self):
        cutoff = self.clock() - self.debounce_seconds
        while self._cooldowns:
            key, started = next(iter(self._cooldowns.items()))
            if started > cutoff:
                break
            self._cooldowns.popitem(last=False)

    def on_cooldown(self, guild_id: int, user_id: int) -> bool:
        self._prune_cooldowns()
        return (guild_id, user_id) in self._cooldowns

    def _mark_cooldown(self, key: tuple[int, int]):
        self._cooldowns[key] = self.clock()
        self._cooldowns.move_to_end(key)
        while len(self._cooldowns) > self.cooldown_capacity:
            self._cooldowns.popitem(last=False)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_voice_state(self, member, before, after):
        """before/after are the member's voice channels (None when not connected)."""
        if getattr(member, "bot", False):
            return
        old_id, new_id = _channel_id(before), _channel_id(after)
        if old_id == new_id:
            return

        guild = member.guild
        config = await self.configs.get_config(guild.id)
        active = config.enabled and bool(config.trigger_channels)
        # spawned channels outlive a removed trigger or a disabled feature until they empty
        if not active and not config.temporary_channels:
            return

        if before is not None:
            await self._on_leave(member, before)
            if after is not None:
                # leaving may have rewritten the document
                config = await self.configs.get_config(guild.id)
        if after is not None and active:
            await self._on_join(member, after, config)

    async def handle_channel_delete(self, channel):
        guild = channel.guild
        async with self.configs.lock(guild.id):
            config = await self.configs.get_config(guild.id)
            changed = False
            if config.drop_trigger(channel.id):
                log.info("Join to Create trigger %s deleted in guild %s", channel.id, guild.id)
                changed = True
            if config.temporary_channels.pop(channel.id, None) is not None:
                changed = True
            if config.drop_category(channel.id):
                log.warning("Join to Create category %s deleted in guild %s, feature disabled", channel.id, guild.id)
                changed = True
            if changed:
                await self.configs.save_config(guild.id, config)

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------

    async def _on_join(self, member, channel, config: JoinToCreateConfig):
        if channel.id not in config.trigger_channels:
            return
        guild = member.guild

        existing = config.owned_channel(member.id)
        if existing is not None:
            live = self.platform.get_channel(guild, existing.channel_id)
            if live is not None:
                try:
                    await self.platform.move_member(member, live)
                except Exception as e:
                    log.warning("Could not move %s back to their channel %s: %s", member.id, live.id, e)
                return
            await self.configs.unregister_temporary_channel(guild.id, existing.channel_id)

        if self.on_cooldown(guild.id, member.id):
            log.debug("Join to Create cooldown active for %s in guild %s", member.id, guild.id)
            return
        if not _in_channel(member, channel):
            log.debug("%s left trigger %s before a channel was created", member.id, channel.id)
            return

        key = (guild.id, member.id)
        self._mark_cooldown(key)
        await self._create_temporary_channel(member, channel, config, key)

    async def _create_temporary_channel(self, member, trigger, config: JoinToCreateConfig, key):
        guild = member.guild
        options = config.options_for(trigger.id)
        name = format_channel_name(options.name_template, **_name_variables(member, guild, trigger.name))
        created = None
        try:
            created = await self.platform.create_voice_channel(
                guild,
                name=name,
                category_id=options.category_id,
                bitrate=clamp_bitrate(options.bitrate),
                user_limit=clamp_user_limit(options.user_limit),
                owner=member,
                overwrites={"owner": OWNER_PERMISSIONS, "everyone": EVERYONE_PERMISSIONS},
            )
            if not _in_channel(member, trigger):
                log.debug("%s left trigger %s while their channel was being created", member.id, trigger.id)
                await self.platform.delete_channel(created, "Join to Create: owner left before setup finished")
                return
            await self.configs.register_temporary_channel(guild.id, created.id, member.id, trigger.id)
            await self.platform.move_member(member, created)
            log.info("Created temporary channel %s for %s in guild %s", created.id, member.id, guild.id)
        except Exception as e:
            self._cooldowns.pop(key, None)
            if isinstance(e, BotError) and e.error_type == ErrorType.PERMISSION:
                log.warning("Join to Create in guild %s: %s", guild.id, e)
            else:
                log.exception("Failed to create temporary channel for %s in guild %s", member.id, guild.id)
            if created is not None:
                await self._discard(guild.id, created)
            await self._notify(member, CREATE_FAILED_MESSAGE)

    async def _discard(self, guild_id: int, channel):
        try:
            await self.configs.unregister_temporary_channel(guild_id, channel.id)
            await self.platform.delete_channel(channel, "Join to Create: setup failed")
        except Exception as e:
            log.warning("Could not clean up channel %s: %s", channel.id, e)

    async def _notify(self, member, content: str):
        try:
            await self.platform.send_direct_message(member, content)
        except Exception as e:
            log.debug("Could not DM %s: %s", getattr(member, "id", member), e)

    # ------------------------------------------------------------------
    # Leave
    # ------------------------------------------------------------------

    async def _on_leave(self, member, channel):
        guild = member.guild
        record = await self.configs.get_temporary_channel(guild.id, channel.id)
        if record is None:
            return
        remaining = [m for m in channel.members if m.id != member.id]
        if not remaining:
            await self._delete_empty(guild.id, channel)
        elif record.owner_id == member.id:
            await self._transfer(member.guild, channel, record, remaining[0])

    async def _delete_empty(self, guild_id: int, channel):
        await self.configs.unregister_temporary_channel(guild_id, channel.id)
        try:
            await self.platform.delete_channel(channel, EMPTY_CHANNEL_REASON)
            log.info("Deleted empty temporary channel %s in guild %s", channel.id, guild_id)
        except Exception as e:
            log.warning("Could not delete empty temporary channel %s: %s", channel.id, e)

    async def _transfer(self, guild, channel, record: TemporaryChannel, new_owner):
        updated = await self.configs.transfer_ownership(guild.id, channel.id, new_owner.id)
        if updated is None:
            return
        config = await self.configs.get_config(guild.id)
        trigger = self.platform.get_channel(guild, record.trigger_channel_id)
        options = config.options_for(record.trigger_channel_id)
        name = format_channel_name(
            options.name_template, **_name_variables(new_owner, guild, getattr(trigger, "name", None))
        )
        try:
            await self.platform.set_channel_name(channel, name)
        except Exception as e:
            log.warning("Could not rename channel %s after ownership transfer: %s", channel.id, e)
        log.info("Transferred channel %s from %s to %s", channel.id, record.owner_id, new_owner.id)

    async def cleanup_stale(self, guild) -> int:
        """Drop records whose channel no longer exists and delete tracked channels that are empty."""
        removed = 0
        for record in await self.configs.list_temporary_channels(guild.id):
            channel = self.platform.get_channel(guild, record.channel_id)
            if channel is None:
                await self.configs.unregister_temporary_channel(guild.id, record.channel_id)
                removed += 1
            elif not channel.members:
                await self._delete_empty(guild.id, channel)
                removed += 1
        return removed

from __future__ import annotations

import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from ..core.configurations import JoinToCreateSettings
from ..core.errors import BotError, user_message_for
from ..core.join_to_create import BITRATE_MAX, BITRATE_MIN, USER_LIMIT_MAX
from ..core.voice_lifecycle import DiscordChannelPlatform, VoiceLifecycleManager
from ..utils.embed_utils import create_embed, error_embed, success_embed

log = logging.getLogger(__name__)

TITLE = "Join to Create"


def is_admin(m: discord.Member) -> bool:
    return m.guild_permissions.administrator or m.guild_permissions.manage_guild

# ============================================================================
# COMMANDS
# ============================================================================

class JoinToCreateGroup(app_commands.Group):
    def __init__(self, bot: commands.Bot, manager: VoiceLifecycleManager):
        super().__init__(name="jointocreate", description="Temporary voice channels", guild_only=True)
        self.bot = bot
        self.manager = manager
        self.configs = manager.configs

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if not interaction.guild or not isinstance(interaction.user, discord.Member):
            await interaction.response.send_message(embed=error_embed("Server only."), ephemeral=True)
            return False
        if not is_admin(interaction.user):
            await interaction.response.send_message(embed=error_embed("You need Manage Server for this.", TITLE), ephemeral=True)
            return False
        return True

    async def on_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        original = getattr(error, "original", error)
        if not isinstance(original, BotError):
            log.exception("jointocreate command failed", exc_info=original)
        embed = error_embed(user_message_for(original), TITLE)
        if interaction.response.is_done():
            await interaction.followup.send(embed=embed, ephemeral=True)
        else:
            await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="setup", description="Make a voice channel spawn temporary channels.")
    @app_commands.describe(
        channel="Voice channel members join to get their own channel",
        category="Category for the temporary channels",
        name_template="Name template, e.g. {username}'s Room",
        user_limit="Member limit for new channels (0 = unlimited)",
        bitrate="Bitrate in kbps",
    )
    async def setup_trigger(
        self,
        interaction: discord.Interaction,
        channel: discord.VoiceChannel,
        category: discord.CategoryChannel | None = None,
        name_template: str | None = None,
        user_limit: Optional[app_commands.Range[int, 0, USER_LIMIT_MAX]] = None,
        bitrate: Optional[app_commands.Range[int, BITRATE_MIN // 1000, BITRATE_MAX // 1000]] = None,
    ):
        await self.configs.initialize_trigger(
            interaction.guild.id,
            channel.id,
            name_template=name_template,
            user_limit=user_limit,
            bitrate=bitrate * 1000 if bitrate is not None else None,
            category_id=category.id if category else channel.category_id,
        )
        embed = success_embed(f"Joining {channel.mention} now creates a temporary voice channel.", TITLE)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="config", description="Change the options of a trigger channel.")
    @app_commands.describe(
        channel="The trigger channel",
        category="Category for the temporary channels",
        name_template="Name template",
        user_limit="Member limit (0 = unlimited)",
        bitrate="Bitrate in kbps",
    )
    async def configure(
        self,
        interaction: discord.Interaction,
        channel: discord.VoiceChannel,
        category: discord.CategoryChannel | None = None,
        name_template: str | None = None,
        user_limit: Optional[app_commands.Range[int, 0, USER_LIMIT_MAX]] = None,
        bitrate: Optional[app_commands.Range[int, BITRATE_MIN // 1000, BITRATE_MAX // 1000]] = None,
    ):
        updates = {
            "name_template": name_template,
            "user_limit": user_limit,
            "bitrate": bitrate * 1000 if bitrate is not None else None,
        }
        if category is not None:
            updates["category_id"] = category.id
        opts = await self.configs.update_trigger_options(interaction.guild.id, channel.id, **updates)
        embed = success_embed(
            f"Updated {channel.mention}.\n"
            f"Template: `{opts.name_template or 'default'}`\n"
            f"User limit: {opts.user_limit if opts.user_limit is not None else 'default'}\n"
            f"Bitrate: {f'{opts.bitrate // 1000} kbps' if opts.bitrate else 'default'}",
            TITLE,
        )
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="remove", description="Stop a channel from spawning temporary channels.")
    async def remove(self, interaction: discord.Interaction, channel: discord.VoiceChannel):
        await self.configs.remove_trigger(interaction.guild.id, channel.id)
        await interaction.response.send_message(
            embed=success_embed(f"{channel.mention} is no longer a Join to Create channel.", TITLE), ephemeral=True
        )

    @app_commands.command(name="status", description="Show the Join to Create setup for this server.")
    async def status(self, interaction: discord.Interaction):
        guild = interaction.guild
        config = await self.configs.get_config(guild.id)
        if not config.trigger_channels:
            return await interaction.response.send_message(
                embed=create_embed("Not set up. Use `/jointocreate setup`.", TITLE, color="info"), ephemeral=True
            )
        fields = []
        for trigger_id in sorted(config.trigger_channels):
            opts = config.options_for(trigger_id)
            category = f"<#{opts.category_id}>" if opts.category_id else "none"
            fields.append({
                "name": f"Trigger <#{trigger_id}>",
                "value": (
                    f"Template: `{opts.name_template}`\nUser limit: {opts.user_limit or 'unlimited'}\n"
                    f"Bitrate: {opts.bitrate // 1000} kbps\nCategory: {category}"
                ),
            })
        fields.append({"name": "Active channels", "value": str(len(config.temporary_channels))})
        embed = create_embed(
            "Enabled" if config.enabled else "Disabled", TITLE, color="success" if config.enabled else "warning",
            fields=fields,
        )
        await interaction.response.send_message(embed=embed, ephemeral=True)

# ============================================================================
# LISTENERS
# ============================================================================

class JoinToCreate(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        settings = JoinToCreateSettings.from_config(bot.cfg)
        self.manager = VoiceLifecycleManager(
            bot.storage,
            DiscordChannelPlatform(),
            debounce_seconds=settings.debounce_seconds,
            cooldown_capacity=settings.cooldown_capacity,
        )
        self.group = JoinToCreateGroup(bot, self.manager)

    @commands.Cog.listener()
    async def on_voice_state_update(self, member: discord.Member, before: discord.VoiceState, after: discord.VoiceState):
        try:
            await self.manager.handle_voice_state(member, before.channel, after.channel)
        except Exception:
            log.exception("Join to Create failed handling voice update for %s", member.id)

    @commands.Cog.listener()
    async def on_guild_channel_delete(self, channel: discord.abc.GuildChannel):
        if not isinstance(channel, (discord.VoiceChannel, discord.CategoryChannel)):
            return
        try:
            await self.manager.handle_channel_delete(channel)
        except Exception:
            log.exception("Join to Create failed handling deletion of channel %s", channel.id)

    @commands.Cog.listener()
    async def on_ready(self):
        for guild in self.bot.guilds:
            removed = await self.manager.cleanup_stale(guild)
            if removed:
                log.info("Cleaned up %s stale temporary channels in guild %s", removed, guild.id)


async def setup(bot: commands.Bot):
    cog = JoinToCreate(bot)
    await bot.add_cog(cog)
    bot.tree.add_command(cog.group, override=True)

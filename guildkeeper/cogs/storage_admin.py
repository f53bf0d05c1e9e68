from __future__ import annotations

import logging

import discord
from discord import app_commands
from discord.ext import commands, tasks

from ..core.configurations import StorageSettings
from ..utils.embed_utils import create_embed

log = logging.getLogger(__name__)


class StorageGroup(app_commands.Group):
    def __init__(self, bot: commands.Bot):
        super().__init__(
            name="storage",
            description="Storage backend tools",
            guild_only=True,
            default_permissions=discord.Permissions(administrator=True),
        )
        self.bot = bot

    @app_commands.command(name="status", description="Show which storage backend is in use.")
    async def status(self, interaction: discord.Interaction):
        storage = self.bot.storage
        if storage.degraded:
            state = "Degraded: running on in-memory fallback, data will not survive a restart."
            color = "warning"
        elif storage.is_available():
            state = "Healthy"
            color = "success"
        else:
            state = "Not initialised"
            color = "error"
        embed = create_embed(
            state,
            title="Storage",
            color=color,
            fields=[
                {"name": "Backend", "value": storage.get_connection_type(), "inline": True},
                {"name": "Configured", "value": storage.settings.primary, "inline": True},
            ],
        )
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="purge", description="Delete expired entries now.")
    async def purge(self, interaction: discord.Interaction):
        removed = await self.bot.storage.purge_expired()
        await interaction.response.send_message(
            embed=create_embed(f"Removed {removed} expired entries.", title="Storage", color="success"),
            ephemeral=True,
        )


class StorageAdmin(commands.Cog):
    """Periodic sweep of expired entries; reads already ignore them, this reclaims space."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.group = StorageGroup(bot)
        settings = getattr(bot.storage, "settings", None) or StorageSettings()
        self.purge_loop.change_interval(minutes=max(1, settings.purge_interval_minutes))
        self.purge_loop.start()

    def cog_unload(self):
        self.purge_loop.cancel()

    @tasks.loop(minutes=60)
    async def purge_loop(self):
        removed = await self.bot.storage.purge_expired()
        if removed:
            log.info("Purged %s expired storage entries", removed)

    @purge_loop.before_loop
    async def before_purge_loop(self):
        await self.bot.wait_until_ready()


async def setup(bot: commands.Bot):
    cog = StorageAdmin(bot)
    await bot.add_cog(cog)
    bot.tree.add_command(cog.group, override=True)

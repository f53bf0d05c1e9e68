from __future__ import annotations

import asyncio
import logging
import os
import sys

import discord
from discord import app_commands
from discord.ext import commands

from .core.configurations import Config, StorageSettings
from .core.errors import BotError, StorageUnavailable, user_message_for
from .core.logs import setup_logging
from .core.storage import Storage

log = logging.getLogger(__name__)

COGS = [
    "guildkeeper.cogs.join_to_create",   # Join to Create listeners and /jointocreate
    "guildkeeper.cogs.storage_admin",    # /storage and the expiry sweep
]

# Config template for environment variable creation
DEFAULT_CONFIG_TEMPLATE = """token: "{token}"

guilds:
  - {guild_id}

storage:
  primary: redis            # redis | postgres | sqlite
  allow_fallback: true      # set false in production to refuse running on in-memory storage
  transactional_writes: false
  purge_interval_minutes: 60
  retries: 3
  backoff_base: 0.1
  backoff_multiplier: 2
  redis:
    url: "redis://localhost:6379/0"
    connect_timeout: 5
  postgres:
    url: "postgresql://postgres@localhost:5432/guildkeeper"
    min_pool: 1
    max_pool: 10
  sqlite:
    path: "guildkeeper.sqlite3"

join_to_create:
  debounce_seconds: 2
  cooldown_capacity: 1000

logging:
  level: INFO
  dir: logs
"""


def parse_guild_ids(raw) -> list[int]:
    """Guild ids from a YAML list, a comma separated string or a single value."""
    if not raw:
        return []
    items = raw if isinstance(raw, (list, tuple)) else str(raw).split(",")
    ids = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text.isdigit():
            ids.append(int(text))
        elif text:
            log.warning("Ignoring invalid guild id %r", text)
    return ids


class GuildKeeperBot(commands.Bot):
    def __init__(self, cfg: Config, storage: Storage):
        intents = discord.Intents.default()
        intents.members = True
        intents.voice_states = True

        super().__init__(
            command_prefix=commands.when_mentioned_or("!"),
            intents=intents,
        )
        self.cfg = cfg
        self.storage = storage
        self.guild_ids = parse_guild_ids(cfg.get("guilds", default=[]))
        self._commands_synced = False

    async def setup_hook(self):
        """Connect storage and load cogs before the gateway connects."""
        await self.storage.init()
        if self.storage.degraded:
            log.warning("Running on in-memory storage; configured backend %s is unreachable", self.storage.settings.primary)

        self.tree.on_error = self.on_app_command_error
        for ext in COGS:
            await self.load_extension(ext)
            log.info("Loaded %s", ext)

    async def on_ready(self):
        log.info("Logged in as %s (ID: %s), %s guild(s)", self.user, self.user.id, len(self.guilds))
        if self._commands_synced:
            return
        self._commands_synced = True
        try:
            if self.guild_ids:
                for gid in self.guild_ids:
                    guild_obj = discord.Object(id=gid)
                    self.tree.copy_global_to(guild=guild_obj)
                    synced = await self.tree.sync(guild=guild_obj)
                    log.info("Synced %s commands to guild %s", len(synced), gid)
            else:
                synced = await self.tree.sync()
                log.info("Synced %s global commands", len(synced))
        except discord.HTTPException as e:
            log.error("Command sync failed (HTTP %s): %s", e.status, e)

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Global error handler for app commands."""
        error_messages = {
            app_commands.CommandOnCooldown: lambda e: f"This command is on cooldown. Try again in {e.retry_after:.1f} seconds.",
            app_commands.MissingPermissions: "You don't have permission to use this command.",
            app_commands.BotMissingPermissions: "I don't have the required permissions to execute this command.",
        }

        message = None
        for error_type, msg in error_messages.items():
            if isinstance(error, error_type):
                message = msg(error) if callable(msg) else msg
                break

        if message is None:
            original = getattr(error, "original", error)
            if not isinstance(original, BotError):
                log.error("Unhandled command error", exc_info=original)
            message = user_message_for(original)

        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException as e:
            log.debug("Could not report command error: %s", e)

    async def on_error(self, event_method: str, *args, **kwargs):
        """Global error handler for events."""
        log.exception("Error in event %s", event_method)

    async def close(self):
        await super().close()
        await self.storage.close()


def load_config(config_path: str) -> Config:
    """Load config.yml, creating it from DISCORD_BOT_TOKEN / DISCORD_GUILDS when missing."""
    if not os.path.exists(config_path):
        token = os.getenv("DISCORD_BOT_TOKEN")
        if not token:
            log.error("%s not found and DISCORD_BOT_TOKEN is not set", config_path)
            sys.exit(1)
        guild_id = os.getenv("DISCORD_GUILDS", "")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(DEFAULT_CONFIG_TEMPLATE.format(token=token, guild_id=guild_id))
        log.info("Created %s from environment variables", config_path)
    return Config.load(config_path)


async def main():
    config_path = os.getenv("GUILDKEEPER_CONFIG", "config.yml")
    setup_logging()
    cfg = load_config(config_path)
    setup_logging(cfg.get("logging", "level"), cfg.get("logging", "dir"))

    token = os.getenv("DISCORD_BOT_TOKEN") or cfg.get("token")
    if not token or token == "PUT_YOUR_BOT_TOKEN_HERE":
        log.error("Bot token not configured; set token in %s or DISCORD_BOT_TOKEN", config_path)
        sys.exit(1)

    storage = Storage(StorageSettings.from_config(cfg))
    bot = GuildKeeperBot(cfg, storage)

    # Retry logic for rate limiting
    max_retries = 5
    for attempt in range(max_retries):
        try:
            await bot.start(token)
            break
        except discord.HTTPException as e:
            if e.status == 429 and attempt < max_retries - 1:
                wait_time = 5 * (2 ** attempt)
                log.warning("Rate limited (429). Waiting %ss before retry (%s/%s)", wait_time, attempt + 1, max_retries)
                await asyncio.sleep(wait_time)
                continue
            raise
        except discord.LoginFailure as e:
            log.error("Discord login failure: %s", e)
            sys.exit(1)
        except StorageUnavailable as e:
            log.error("Storage unavailable: %s", e)
            sys.exit(1)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Shutdown requested")


if __name__ == "__main__":
    run()

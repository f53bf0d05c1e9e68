"""
Centralized embed helpers for guildkeeper replies.
"""
from __future__ import annotations
import discord

# Embed colors for different message types
COLORS = {
    "info": 0x3498DB,
    "success": 0x2ECC71,
    "warning": 0xF39C12,
    "error": 0xE74C3C,
    "neutral": 0x95A5A6,
    "system": 0x673AB7,
}


def create_embed(
    description: str,
    title: str | None = None,
    color: str | int = "neutral",
    fields: list[dict] | None = None,
    footer: str | None = None,
) -> discord.Embed:
    """
    Create a standardized embed.

    Args:
        description: The embed description
        title: Optional embed title
        color: Color name (from COLORS) or hex int
        fields: List of field dicts with 'name', 'value', and optional 'inline'
        footer: Optional footer text
    """
    embed_color = COLORS.get(color, COLORS["neutral"]) if isinstance(color, str) else color
    embed = discord.Embed(title=title, description=description, color=embed_color)
    for field in fields or []:
        embed.add_field(name=field.get("name", ""), value=field.get("value", ""), inline=field.get("inline", False))
    if footer:
        embed.set_footer(text=footer)
    return embed


def success_embed(desc: str, title: str | None = None) -> discord.Embed:
    return create_embed(desc, title=title, color="success")


def error_embed(desc: str, title: str | None = None) -> discord.Embed:
    return create_embed(desc, title=title, color="error")

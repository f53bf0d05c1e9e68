"""
Error types shared by services and cogs.

BotError carries a category and an optional user-facing message so command handlers can
reply without leaking internals. Storage errors never reach command handlers: the storage
facade converts them into default values.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

import discord


class ErrorType(str, Enum):
    VALIDATION = "validation"
    PERMISSION = "permission"
    CONFIGURATION = "configuration"
    DATABASE = "database"
    NETWORK = "network"
    DISCORD_API = "discord_api"
    USER_INPUT = "user_input"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class BotError(Exception):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        user_message: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.user_message = user_message
        self.context = context or {}
        self.ts = int(time.time())

    def __repr__(self) -> str:
        return f"BotError({self.error_type.value}: {self.args[0]!r})"


class StorageError(Exception):
    """A backend operation failed."""


class StorageUnavailable(StorageError):
    """The backend cannot be reached (connection refused, pool closed, timeout)."""


class MigrationError(Exception):
    pass


def categorize_error(error: BaseException) -> ErrorType:
    """Map an arbitrary exception onto an ErrorType."""
    if isinstance(error, BotError):
        return error.error_type
    if isinstance(error, (StorageError, MigrationError)):
        return ErrorType.DATABASE
    if isinstance(error, discord.Forbidden):
        return ErrorType.PERMISSION
    if isinstance(error, discord.HTTPException):
        if error.status == 429:
            return ErrorType.RATE_LIMIT
        return ErrorType.DISCORD_API
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorType.NETWORK
    if isinstance(error, (ValueError, TypeError)):
        return ErrorType.VALIDATION
    return ErrorType.UNKNOWN


USER_MESSAGES = {
    ErrorType.VALIDATION: "That input isn't valid.",
    ErrorType.PERMISSION: "I don't have the permissions needed to do that.",
    ErrorType.CONFIGURATION: "This feature isn't configured correctly for this server.",
    ErrorType.DATABASE: "Storage is having trouble right now. Please try again later.",
    ErrorType.NETWORK: "A network error occurred. Please try again.",
    ErrorType.DISCORD_API: "Discord rejected that request. Please try again.",
    ErrorType.USER_INPUT: "I couldn't understand that input.",
    ErrorType.RATE_LIMIT: "Slow down a little and try again in a moment.",
    ErrorType.UNKNOWN: "An error occurred while executing this command.",
}


def user_message_for(error: BaseException) -> str:
    if isinstance(error, BotError) and error.user_message:
        return error.user_message
    return USER_MESSAGES[categorize_error(error)]

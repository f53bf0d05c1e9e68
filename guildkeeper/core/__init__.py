# Core package - centralized exports
# - configurations.py: Config, StorageSettings, JoinToCreateSettings
# - errors.py: ErrorType, BotError, storage and migration errors
# - storage/: key-value backends and the Storage facade
# - join_to_create.py / voice_lifecycle.py: temporary voice channels
# - migration.py: copy a keyspace between backends

# Configurations
from .configurations import Config, StorageSettings, JoinToCreateSettings

# Errors
from .errors import ErrorType, BotError, StorageError, StorageUnavailable, MigrationError, categorize_error

# Storage
from .storage import Storage, MemoryStore, RedisStore, RelationalStore, parse_key

# Join to Create
from .join_to_create import JoinToCreateConfig, JoinToCreateConfigService, format_channel_name
from .voice_lifecycle import ChannelPlatform, DiscordChannelPlatform, VoiceLifecycleManager

# Migration
from .migration import KeyspaceMigrator, MigrationReport

__all__ = [
    # Configurations
    'Config', 'StorageSettings', 'JoinToCreateSettings',
    # Errors
    'ErrorType', 'BotError', 'StorageError', 'StorageUnavailable', 'MigrationError', 'categorize_error',
    # Storage
    'Storage', 'MemoryStore', 'RedisStore', 'RelationalStore', 'parse_key',
    # Join to Create
    'JoinToCreateConfig', 'JoinToCreateConfigService', 'format_channel_name',
    'ChannelPlatform', 'DiscordChannelPlatform', 'VoiceLifecycleManager',
    # Migration
    'KeyspaceMigrator', 'MigrationReport',
]

"""
Configuration loading.
Config is the YAML file as a dict; the settings dataclasses resolve typed values from it,
with environment variables taking precedence for deployment secrets and endpoints.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

import yaml

# ============================================================================
# CONFIG FILE
# ============================================================================

class Config(dict):
    @staticmethod
    def load(path: str) -> "Config":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Config(data)

    def get(self, *keys, default=None):
        cur: Any = self
        for k in keys:
            if isinstance(cur, dict) and k in cur:
                cur = cur[k]
            else:
                return default
        return cur


def _as_bool(value: Any, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _pick(env: Mapping[str, str], env_key: str, cfg_value: Any, default: Any) -> Any:
    if env.get(env_key):
        return env[env_key]
    if cfg_value is not None:
        return cfg_value
    return default

# ============================================================================
# STORAGE SETTINGS
# ============================================================================

PRIMARY_BACKENDS = ("redis", "postgres", "sqlite")


@dataclass
class StorageSettings:
    primary: str = "redis"
    redis_url: str = "redis://localhost:6379/0"
    redis_connect_timeout: float = 5.0
    postgres_url: str = "postgresql://postgres@localhost:5432/guildkeeper"
    postgres_min_pool: int = 1
    postgres_max_pool: int = 10
    postgres_command_timeout: float = 30.0
    sqlite_path: str = "guildkeeper.sqlite3"
    connect_retries: int = 3
    backoff_base: float = 0.1
    backoff_multiplier: float = 2.0
    allow_fallback: bool = True
    transactional_writes: bool = False
    purge_interval_minutes: int = 60

    def __post_init__(self):
        self.primary = str(self.primary).strip().lower()
        if self.primary not in PRIMARY_BACKENDS:
            raise ValueError(f"Unknown storage backend {self.primary!r}; expected one of {PRIMARY_BACKENDS}")

    @classmethod
    def from_config(cls, cfg: Config | None = None, env: Mapping[str, str] | None = None) -> "StorageSettings":
        cfg = cfg if cfg is not None else Config()
        env = env if env is not None else os.environ
        section = lambda *keys: cfg.get("storage", *keys)  # noqa: E731
        d = cls()
        return cls(
            primary=_pick(env, "STORAGE_PRIMARY", section("primary"), d.primary),
            redis_url=_pick(env, "REDIS_URL", section("redis", "url"), d.redis_url),
            redis_connect_timeout=float(section("redis", "connect_timeout") or d.redis_connect_timeout),
            postgres_url=_pick(env, "POSTGRES_URL", section("postgres", "url"), d.postgres_url),
            postgres_min_pool=int(section("postgres", "min_pool") or d.postgres_min_pool),
            postgres_max_pool=int(section("postgres", "max_pool") or d.postgres_max_pool),
            postgres_command_timeout=float(section("postgres", "command_timeout") or d.postgres_command_timeout),
            sqlite_path=_pick(env, "SQLITE_PATH", section("sqlite", "path"), d.sqlite_path),
            connect_retries=int(_pick(env, "STORAGE_RETRIES", section("retries"), d.connect_retries)),
            backoff_base=float(section("backoff_base") or d.backoff_base),
            backoff_multiplier=float(section("backoff_multiplier") or d.backoff_multiplier),
            allow_fallback=_as_bool(
                _pick(env, "STORAGE_ALLOW_FALLBACK", section("allow_fallback"), None), d.allow_fallback
            ),
            transactional_writes=_as_bool(section("transactional_writes"), d.transactional_writes),
            purge_interval_minutes=int(section("purge_interval_minutes") or d.purge_interval_minutes),
        )

# ============================================================================
# JOIN TO CREATE SETTINGS
# ============================================================================

@dataclass
class JoinToCreateSettings:
    debounce_seconds: float = 2.0
    cooldown_capacity: int = 1000

    @classmethod
    def from_config(cls, cfg: Config | None = None) -> "JoinToCreateSettings":
        cfg = cfg if cfg is not None else Config()
        d = cls()
        return cls(
            debounce_seconds=float(cfg.get("join_to_create", "debounce_seconds", default=d.debounce_seconds)),
            cooldown_capacity=int(cfg.get("join_to_create", "cooldown_capacity", default=d.cooldown_capacity)),
        )

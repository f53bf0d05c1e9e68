"""
Keyspace migration between storage backends (Redis -> relational in practice).

Every key is copied with its remaining TTL; a failing key is recorded and the run goes on.
Copies overwrite, so a partial run can simply be repeated.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any

from .errors import MigrationError
from .storage.base import MISSING, KeyValueBackend

log = logging.getLogger(__name__)

# Reporting taxonomy, matched in order. Independent of the relational key translator.
KEY_GROUPS: tuple[tuple[str, Any], ...] = (
    ("leveling_config", lambda k: k.startswith("guild:") and ":leveling:config" in k),
    ("user_levels", lambda k: k.startswith("guild:") and ":leveling:users:" in k),
    ("guild_config", lambda k: k.startswith("guild:") and ":config" in k),
    ("guild_birthdays", lambda k: k.startswith("guild:") and ":birthdays" in k),
    ("guild_giveaways", lambda k: k.startswith("guild:") and ":giveaways" in k),
    ("welcome_config", lambda k: k.startswith("guild:") and ":welcome" in k),
    ("economy", lambda k: k.startswith("guild:") and ":economy:" in k),
    ("afk_status", lambda k: ":afk:" in k),
    ("tickets", lambda k: k.startswith("guild:") and ":ticket:" in k),
    ("temp", lambda k: k.startswith("temp:")),
    ("cache", lambda k: k.startswith("cache:")),
)
OTHER_GROUP = "other"


def group_keys(keys) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {name: [] for name, _ in KEY_GROUPS}
    groups[OTHER_GROUP] = []
    for key in keys:
        for name, matches in KEY_GROUPS:
            if matches(key):
                groups[name].append(key)
                break
        else:
            groups[OTHER_GROUP].append(key)
    return groups


@dataclass
class VerificationResult:
    source_count: int = 0
    destination_count: int = 0
    sample_total: int = 0
    sample_matched: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


@dataclass
class MigrationReport:
    total: int = 0
    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    elapsed: float = 0.0
    groups: dict[str, int] = field(default_factory=dict)
    failed_keys: list[str] = field(default_factory=list)
    verification: VerificationResult | None = None

    @property
    def success_rate(self) -> float:
        return (self.migrated / self.total * 100.0) if self.total else 100.0

    @property
    def exit_code(self) -> int:
        return 0 if self.failed == 0 else 1

    def format_summary(self) -> str:
        lines = [
            "Migration summary",
            f"  Total keys:   {self.total}",
            f"  Migrated:     {self.migrated}",
            f"  Failed:       {self.failed}",
            f"  Skipped:      {self.skipped}",
            f"  Duration:     {self.elapsed:.2f}s",
            f"  Success rate: {self.success_rate:.1f}%",
        ]
        non_empty = {name: count for name, count in self.groups.items() if count}
        if non_empty:
            lines.append("  Groups:")
            lines.extend(f"    {name}: {count}" for name, count in non_empty.items())
        if self.verification is not None:
            v = self.verification
            lines.append(
                f"  Verification: {v.sample_matched}/{v.sample_total} sampled keys match, "
                f"{v.source_count} source / {v.destination_count} destination keys"
            )
            lines.extend(f"  WARNING: {w}" for w in v.warnings)
        return "\n".join(lines)


class KeyspaceMigrator:
    def __init__(
        self,
        source: KeyValueBackend,
        destination: KeyValueBackend,
        *,
        sample_size: int = 10,
        max_keys: int | None = None,
        rng: random.Random | None = None,
    ):
        self.source = source
        self.destination = destination
        self.sample_size = sample_size
        self.max_keys = max_keys
        self.rng = rng or random.Random()

    async def enumerate_keys(self) -> list[str]:
        keys = await self.source.keys_all()
        if self.max_keys is not None and len(keys) > self.max_keys:
            raise MigrationError(
                f"Source holds {len(keys)} keys, more than the configured limit of {self.max_keys}"
            )
        return keys

    async def migrate_key(self, key: str) -> bool:
        """Copy one key. Returns False when the key vanished before it could be read."""
        value = await self.source.get(key, MISSING)
        if value is MISSING:
            return False
        remaining = await self.source.ttl(key)
        ttl = remaining if remaining > 0 else None
        if not await self.destination.set(key, value, ttl):
            raise MigrationError(f"Destination refused write for {key}")
        return True

    async def run(self, verify: bool = True) -> MigrationReport:
        started = time.monotonic()
        report = MigrationReport()
        keys = await self.enumerate_keys()
        report.total = len(keys)
        log.info("Found %s keys to migrate", report.total)

        groups = group_keys(keys)
        report.groups = {name: len(members) for name, members in groups.items()}
        for name, members in groups.items():
            if not members:
                continue
            log.info("Migrating %s group (%s keys)", name, len(members))
            for key in members:
                try:
                    copied = await self.migrate_key(key)
                except Exception as e:
                    report.failed += 1
                    report.failed_keys.append(key)
                    log.error("Failed to migrate key %s: %s", key, e)
                    continue
                if copied:
                    report.migrated += 1
                else:
                    report.skipped += 1
                    log.debug("Skipped %s: value disappeared", key)

        if verify:
            report.verification = await self.verify(keys)
        report.elapsed = time.monotonic() - started
        log.info(
            "Migration finished: %s migrated, %s failed, %s skipped in %.2fs",
            report.migrated, report.failed, report.skipped, report.elapsed,
        )
        return report

    async def verify(self, keys: list[str]) -> VerificationResult:
        result = VerificationResult(source_count=len(keys))
        try:
            result.destination_count = len(await self.destination.keys_all())
        except Exception as e:
            result.warnings.append(f"Could not count destination keys: {e}")
        else:
            if result.destination_count != result.source_count:
                result.warnings.append(
                    f"Key count mismatch: source has {result.source_count}, destination has {result.destination_count}"
                )

        sample = self.rng.sample(keys, min(self.sample_size, len(keys)))
        result.sample_total = len(sample)
        for key in sample:
            try:
                expected = await self.source.get(key, MISSING)
                actual = await self.destination.get(key, MISSING)
            except Exception as e:
                result.warnings.append(f"Could not compare {key}: {e}")
                continue
            if expected == actual:
                result.sample_matched += 1
            else:
                result.warnings.append(f"Value mismatch for {key}")

        for warning in result.warnings:
            log.warning("Verification: %s", warning)
        log.info("Sample verification: %s/%s keys match", result.sample_matched, result.sample_total)
        return result

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from eguard.config import Settings
from eguard.logging import get_logger

logger = get_logger(__name__)

# Never spin faster than this even if misconfigured
MIN_SWEEP_INTERVAL_SECONDS = 60


class SweepStore(Protocol):
    def delete_blacklisted_tokens_before(self, cutoff: datetime) -> int: ...

    def delete_two_factor_challenges_before(self, cutoff: datetime) -> int: ...


@dataclass(frozen=True)
class SweepResult:
    blacklisted_tokens_removed: int
    challenges_removed: int


class SweepJob:
    """Age-based purge of blacklist entries and spent two-factor challenges.

    Idempotent; skipping runs only lets the tables grow.
    """

    def __init__(self, store: SweepStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        blacklist_cutoff = now - timedelta(days=self.settings.blacklist_retention_days)
        challenge_cutoff = now - timedelta(hours=self.settings.challenge_retention_hours)
        result = SweepResult(
            blacklisted_tokens_removed=self.store.delete_blacklisted_tokens_before(blacklist_cutoff),
            challenges_removed=self.store.delete_two_factor_challenges_before(challenge_cutoff),
        )
        logger.info(
            "sweep_completed",
            blacklisted_tokens_removed=result.blacklisted_tokens_removed,
            challenges_removed=result.challenges_removed,
        )
        return result


async def run_sweep_loop(job: SweepJob, interval_seconds: int) -> None:
    """Background loop started from the app lifespan."""

    interval = max(interval_seconds, MIN_SWEEP_INTERVAL_SECONDS)
    try:
        while True:
            try:
                await asyncio.to_thread(job.run)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("sweep_failed", error_type=type(exc).__name__, error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("sweep_task_cancelled")

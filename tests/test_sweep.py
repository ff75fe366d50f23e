"""Retention sweep for blacklist entries and two-factor challenges."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from eguard.service.sweep import SweepJob, SweepResult, run_sweep_loop


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestSweepJob:
    """Purges by age only."""

    def test_purges_old_rows_and_keeps_recent(self, store, settings, tenancy):
        store.blacklist_token("old-token", NOW - timedelta(days=31))
        store.blacklist_token("recent-token", NOW - timedelta(days=29))
        store.create_two_factor_challenge(tenancy.worker.id, "123456", NOW - timedelta(hours=25))
        recent = store.create_two_factor_challenge(tenancy.worker.id, "654321", NOW - timedelta(hours=1))

        result = SweepJob(store, settings).run(now=NOW)

        assert result == SweepResult(blacklisted_tokens_removed=1, challenges_removed=1)
        assert not store.is_token_blacklisted("old-token")
        assert store.is_token_blacklisted("recent-token")
        assert list(store.challenges) == [recent.id]

    def test_rerun_is_noop(self, store, settings):
        store.blacklist_token("old-token", NOW - timedelta(days=40))
        job = SweepJob(store, settings)
        job.run(now=NOW)
        assert job.run(now=NOW) == SweepResult(0, 0)

    def test_retention_windows_follow_settings(self, store, settings):
        store.blacklist_token("token", NOW - timedelta(days=3))
        job = SweepJob(store, settings.model_copy(update={"blacklist_retention_days": 2}))
        assert job.run(now=NOW).blacklisted_tokens_removed == 1


async def test_loop_survives_failures_and_stops_on_cancel():
    job = MagicMock()
    job.run.side_effect = [RuntimeError("db down"), SweepResult(0, 0)]

    task = asyncio.create_task(run_sweep_loop(job, 0))
    await asyncio.sleep(0.05)
    task.cancel()
    await task

    assert job.run.call_count == 1
    assert task.done()

"""Tests for the periodic compliance job runner."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from src.models.audit import AuditEvent
from src.models.enums import AuditAction
from src.services.jobs import (
    JOB_COMPLIANCE_SCAN,
    JOB_ERASURE,
    JOB_PSD2_CLEANUP,
    JOB_RECONCILE,
    JOB_RETENTION_SWEEP,
    ComplianceJobRunner,
)


def _runner(services, settings) -> ComplianceJobRunner:
    return ComplianceJobRunner(
        services.recorder,
        services.retention,
        services.scanner,
        services.erasure,
        services.sca,
        settings,
    )


class TestRunJob:
    async def test_job_names(self, services) -> None:
        assert services.jobs.job_names == [
            JOB_RECONCILE,
            JOB_PSD2_CLEANUP,
            JOB_ERASURE,
            JOB_COMPLIANCE_SCAN,
            JOB_RETENTION_SWEEP,
        ]

    async def test_unknown_job(self, services) -> None:
        with pytest.raises(KeyError):
            await services.jobs.run_job("defragment")

    async def test_successful_run_is_recorded(self, services) -> None:
        result = await services.jobs.run_job(JOB_PSD2_CLEANUP)
        assert result == 0
        assert JOB_PSD2_CLEANUP in services.jobs.last_runs

    async def test_failure_is_contained(self, services) -> None:
        async def broken() -> None:
            raise RuntimeError("boom")

        services.jobs._jobs[JOB_RECONCILE] = broken
        assert await services.jobs.run_job(JOB_RECONCILE) is None, (
            "a failing job is logged and reported as None"
        )
        assert JOB_RECONCILE not in services.jobs.last_runs

    async def test_reconcile_job_repairs_ledger_gap(self, services, ledger) -> None:
        ledger.fail_next(1)
        record = await services.recorder.record(
            AuditEvent(action=AuditAction.CREATE, entity_type="Client", entity_id="1")
        )
        assert record.ledger_verified is False

        result = await services.jobs.run_job(JOB_RECONCILE)
        assert result.verified == 1
        assert (await services.recorder.get(record.record_id)).ledger_verified is True

    async def test_compliance_scan_skips_unknown_types(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "Jan"})
        results = await services.jobs.run_compliance_scan(["client", "spaceship"])
        assert [r.entity_type for r in results] == ["client"]
        assert results[0].new_issues == 1

    async def test_compliance_scan_uses_configured_types(self, services) -> None:
        results = await services.jobs.run_job(JOB_COMPLIANCE_SCAN)
        assert [r.entity_type for r in results] == ["user_profile", "creditor", "client", "invoice"]


class TestSchedule:
    async def test_daily_jobs_not_rerun_within_a_day(self, services) -> None:
        first = await services.jobs.run_due(datetime.now(UTC))
        assert first == services.jobs.job_names, "every job is due on the first pass"

        soon = datetime.now(UTC) + timedelta(hours=1)
        assert await services.jobs.run_due(soon) == [JOB_RECONCILE, JOB_PSD2_CLEANUP, JOB_ERASURE]

        later = datetime.now(UTC) + timedelta(days=2)
        assert await services.jobs.run_due(later) == services.jobs.job_names


class TestLifecycle:
    async def test_start_and_stop(self, services, test_settings) -> None:
        runner = _runner(services, test_settings.model_copy(update={"enable_auto_jobs": True}))
        runner.start()
        await asyncio.sleep(0)
        assert runner.is_running is True

        await runner.stop()
        assert runner.is_running is False

    async def test_disabled_loop_returns(self, services, test_settings) -> None:
        runner = _runner(services, test_settings)
        await runner.start_background_scheduler()
        assert runner.is_running is False

"""Periodic compliance jobs.

Development mode
    An ``asyncio`` background task in the FastAPI event loop checks every
    ``job_check_interval_seconds`` which jobs are due and runs them.

Production mode
    Jobs are triggered externally (cron, cloud scheduler) through the
    admin ``/api/v1/jobs/*`` endpoints; no background loop is started.

Schedule
--------
- **Ledger reconciliation, PSD2 cleanup, erasure executor**: every check.
- **Compliance scan**: daily, over ``compliance_scan_entity_types``.
- **Retention sweep**: daily.

Every job runs inside :meth:`ComplianceJobRunner._safe_run`, so a failing
job is logged and never stops the loop or the other jobs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Final

import structlog

if TYPE_CHECKING:
    from src.models.audit import ReconcileResult
    from src.models.compliance import ScanResult
    from src.models.erasure import ErasureRunSummary, RetentionSweepResult
    from src.services.audit_recorder import AuditRecorder
    from src.services.compliance_scanner import ComplianceCheckEngine
    from src.services.erasure import ErasureWorkflow
    from src.services.psd2 import SCAService
    from src.services.retention import RetentionEngine

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JOB_RECONCILE: Final[str] = "reconcile"
JOB_PSD2_CLEANUP: Final[str] = "psd2_cleanup"
JOB_ERASURE: Final[str] = "erasure_executor"
JOB_COMPLIANCE_SCAN: Final[str] = "compliance_scan"
JOB_RETENTION_SWEEP: Final[str] = "retention_sweep"

_DAILY: Final = timedelta(days=1)
_JOB_INTERVALS: Final[dict[str, timedelta]] = {
    JOB_RECONCILE: timedelta(0),
    JOB_PSD2_CLEANUP: timedelta(0),
    JOB_ERASURE: timedelta(0),
    JOB_COMPLIANCE_SCAN: _DAILY,
    JOB_RETENTION_SWEEP: _DAILY,
}

_STARTUP_DELAY_SECONDS: Final[int] = 60


# ---------------------------------------------------------------------------
# ComplianceJobRunner
# ---------------------------------------------------------------------------


class ComplianceJobRunner:
    """Runs reconciliation, scans, sweeps and the erasure executor.

    Parameters
    ----------
    settings:
        Application settings object (used for ``enable_auto_jobs``,
        ``job_check_interval_seconds`` and ``compliance_scan_entity_types``).
    """

    def __init__(
        self,
        recorder: AuditRecorder,
        retention: RetentionEngine,
        scanner: ComplianceCheckEngine,
        erasure: ErasureWorkflow,
        sca: SCAService,
        settings: object,
    ) -> None:
        self._recorder = recorder
        self._retention = retention
        self._scanner = scanner
        self._erasure = erasure
        self._sca = sca
        self._settings = settings
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._running = False
        self._last_runs: dict[str, datetime] = {}
        self._jobs: dict[str, Callable[[], Awaitable[Any]]] = {
            JOB_RECONCILE: self.run_reconcile,
            JOB_PSD2_CLEANUP: self.run_psd2_cleanup,
            JOB_ERASURE: self.run_erasure_executor,
            JOB_COMPLIANCE_SCAN: self.run_compliance_scan,
            JOB_RETENTION_SWEEP: self.run_retention_sweep,
        }

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Whether the background loop is currently active."""
        return self._running

    @property
    def last_runs(self) -> dict[str, datetime]:
        """Completion time of the last successful run per job."""
        return dict(self._last_runs)

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_reconcile(self, limit: int = 100) -> ReconcileResult:
        return await self._recorder.reconcile(limit)

    async def run_psd2_cleanup(self) -> int:
        return await self._sca.cleanup_expired()

    async def run_erasure_executor(self) -> ErasureRunSummary:
        return await self._erasure.execute_due()

    async def run_compliance_scan(self, entity_types: list[str] | None = None) -> list[ScanResult]:
        types = entity_types or list(getattr(self._settings, "compliance_scan_entity_types", []))
        results = []
        for entity_type in types:
            try:
                results.append(await self._scanner.run_scan(entity_type))
            except Exception:
                logger.error("jobs.compliance_scan_failed", entity_type=entity_type, exc_info=True)
        return results

    async def run_retention_sweep(self) -> RetentionSweepResult:
        return await self._retention.sweep()

    # ------------------------------------------------------------------
    # Background loop (development mode)
    # ------------------------------------------------------------------

    async def start_background_scheduler(self) -> None:
        """Run due jobs every ``job_check_interval_seconds`` until stopped.

        Returns only when the loop ends; wrap it in a task.
        """
        if not getattr(self._settings, "enable_auto_jobs", True):
            logger.info("jobs.auto_jobs_disabled")
            return

        self._running = True
        logger.info("jobs.background_started")
        interval = getattr(self._settings, "job_check_interval_seconds", 900)

        try:
            await asyncio.sleep(_STARTUP_DELAY_SECONDS)
            while self._running:
                await self.run_due(datetime.now(UTC))
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("jobs.background_cancelled")
        except Exception:
            logger.error("jobs.background_error", exc_info=True)
        finally:
            self._running = False
            logger.info("jobs.background_stopped")

    def start(self) -> None:
        """Start the background loop as a task on the running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self.start_background_scheduler())

    def is_due(self, job: str, now: datetime) -> bool:
        last = self._last_runs.get(job)
        return last is None or now - last >= _JOB_INTERVALS[job]

    async def run_due(self, now: datetime) -> list[str]:
        """Run every job whose interval has elapsed; return their names."""
        ran = []
        for job in self._jobs:
            if self.is_due(job, now):
                await self._safe_run(job)
                ran.append(job)
        return ran

    async def _safe_run(self, job: str) -> Any | None:
        """Execute one job; log and return ``None`` on failure."""
        try:
            result = await self._jobs[job]()
        except Exception:
            logger.error("jobs.run_failed", job=job, exc_info=True)
            return None
        self._last_runs[job] = datetime.now(UTC)
        logger.info("jobs.run_complete", job=job)
        return result

    # ------------------------------------------------------------------
    # On-demand execution (for the admin API / external schedulers)
    # ------------------------------------------------------------------

    async def run_job(self, job: str) -> Any | None:
        """Entry point for externally triggered runs.

        Raises
        ------
        KeyError
            Unknown job name.
        """
        if job not in self._jobs:
            raise KeyError(job)
        logger.info("jobs.manual_trigger", job=job)
        return await self._safe_run(job)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop the loop and wait (bounded) for the task to finish."""
        logger.info("jobs.stopping")
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=10.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            self._task = None

        logger.info("jobs.stopped")

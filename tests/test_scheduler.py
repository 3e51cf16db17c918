"""
Tests for the scheduled due-sync job.

Guards:
  - A check with nothing due runs no sync and reports why each source was skipped
  - A check with due sources runs an incremental sync of exactly those
  - A failing check is logged, never raised into the scheduler
  - The job is registered with overlap protection
"""
import asyncio
from datetime import datetime

import pytest

from app import scheduler as scheduler_module
from app.scheduler import get_scheduled_jobs, run_scheduled_sync, setup_scheduler
from app.services.sync_orchestrator import SyncOrchestrator

NOW = datetime(2024, 6, 1, 12, 0)


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def orchestrator(session_factory, sync_settings, fakes):
    erp = fakes.ErpApi(sales=[fakes.sale(1)], customers=[fakes.erp_customer("C1", email="buyer@acme.test")])
    storefront = fakes.StorefrontApi(orders=[fakes.order(1)])
    return SyncOrchestrator(
        session_factory=session_factory,
        clients={"erp": erp.client(), "storefront": storefront.client()},
        settings=sync_settings,
        now_fn=lambda: NOW,
    )


def test_due_sources_are_synced(orchestrator):
    outcome = _run(run_scheduled_sync(orchestrator))

    assert sorted(outcome.ran) == ["erp", "storefront"]
    assert outcome.report.succeeded == outcome.report.total == 4
    assert outcome.report.mode == "incremental"


def test_nothing_due_runs_nothing(orchestrator):
    _run(run_scheduled_sync(orchestrator))

    outcome = _run(run_scheduled_sync(orchestrator))

    assert outcome.ran == []
    assert outcome.report is None
    assert set(outcome.skipped) == {"erp", "storefront"}


def test_failing_check_is_swallowed():
    class BrokenOrchestrator:
        async def run_due_syncs(self):
            raise RuntimeError("database is locked")

    assert _run(run_scheduled_sync(BrokenOrchestrator())) is None


def test_job_registered_with_overlap_protection():
    try:
        setup_scheduler()

        jobs = get_scheduled_jobs()
        assert [j["id"] for j in jobs] == ["due_sync_check"]
        assert scheduler_module.scheduler.get_job("due_sync_check").max_instances == 1
    finally:
        scheduler_module.scheduler.remove_all_jobs()

"""Tests for the APScheduler job wrapper."""

from unittest.mock import AsyncMock

import pytest

from mikrops.infra.jobs.scheduler import ORPHAN_RECONCILE_JOB_ID, JobScheduler


@pytest.fixture
async def scheduler(settings):
    jobs = JobScheduler(settings.model_copy(update={"ppp_sync_interval_seconds": 60}))
    yield jobs
    await jobs.shutdown()


async def test_orphan_reconcile_job_registered(scheduler, settings):
    job_id = scheduler.add_orphan_reconcile_job(AsyncMock())
    await scheduler.start()

    status = scheduler.get_job_status(job_id)
    assert job_id == ORPHAN_RECONCILE_JOB_ID
    assert status["next_run_time"] is not None
    assert scheduler.running


async def test_ppp_sync_job_per_tenant(scheduler):
    job_id = scheduler.add_ppp_sync_job("isp-a", AsyncMock())

    assert job_id == "ppp_sync_isp-a"
    assert scheduler.scheduler.get_job(job_id).args == ("isp-a",)
    assert scheduler.get_job_status(job_id)["next_run_time"] is None


async def test_ppp_sync_disabled_by_zero_interval(scheduler):
    assert scheduler.add_ppp_sync_job("isp-a", AsyncMock(), interval_seconds=0) is None
    assert scheduler.scheduler.get_jobs() == []


async def test_double_start_refused(scheduler):
    await scheduler.start()

    with pytest.raises(RuntimeError):
        await scheduler.start()


async def test_remove_job(scheduler):
    job_id = scheduler.add_orphan_reconcile_job(AsyncMock(), interval_seconds=30)
    scheduler.remove_job(job_id)

    assert scheduler.get_job_status(job_id) is None

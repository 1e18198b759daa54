"""
Tests for the analysis worker process entry points
"""

import asyncio

import pytest

from analysis_core.schemas.analysis import JobState
from analysis_core.services.request_coordinator import weekly_key
from analysis_core.worker import parse_args, run_workers


class TestParseArgs:

    def test_defaults_from_settings(self):
        args = parse_args([])

        assert args.concurrency == 4
        assert args.batch_size == 5
        assert args.create_tables is False

    def test_overrides(self):
        args = parse_args(["--concurrency", "8", "--batch-size", "2", "--create-tables", "--log-level", "DEBUG"])

        assert (args.concurrency, args.batch_size, args.create_tables, args.log_level) == (8, 2, True, "DEBUG")


class TestRunWorkers:

    @pytest.mark.asyncio
    async def test_workers_drain_queue_until_stopped(self, services):
        job_ids = [
            (await services.trigger.submit(weekly_key(team, 6), "weekly_analysis"))[0]
            for team in ("42", "7")
        ]
        stop_event = asyncio.Event()
        task = asyncio.create_task(run_workers(services, 2, batch_size=1, stop_event=stop_event, receive_wait=0.05))

        try:
            for _ in range(200):
                states = [(await services.trigger.get_status(job_id)).state for job_id in job_ids]
                if all(state == JobState.SUCCEEDED for state in states):
                    break
                await asyncio.sleep(0.01)
        finally:
            stop_event.set()
            await asyncio.wait_for(task, timeout=5)

        assert states == [JobState.SUCCEEDED, JobState.SUCCEEDED]
        assert await services.store.get(weekly_key("7", 6)) is not None

    @pytest.mark.asyncio
    async def test_stops_promptly_on_empty_queue(self, services):
        stop_event = asyncio.Event()
        stop_event.set()

        await asyncio.wait_for(run_workers(services, 3, stop_event=stop_event), timeout=1)

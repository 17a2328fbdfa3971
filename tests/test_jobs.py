"""Tests for the job store and job manager."""

import asyncio
import re
from datetime import datetime, timedelta

import pytest

from pulse_engine.core.jobs import (
    JobConflict,
    JobKind,
    JobManager,
    JobNotFound,
    generate_job_id,
    is_terminal,
)


def analysis_fields(job_id, **overrides):
    fields = {
        "id": job_id,
        "user_id": "user-1",
        "repo_url": "https://github.com/octo/demo.git",
        "repo_name": "demo",
        "repo_owner": "octo",
        "status": "pending",
    }
    fields.update(overrides)
    return fields


class TestJobIds:
    """Tests for id generation."""

    def test_analysis_id_format(self):
        assert re.fullmatch(r"analysis-\d{13}-[0-9a-z]{9}", generate_job_id(JobKind.ANALYSIS))

    def test_fix_id_prefix(self):
        assert generate_job_id(JobKind.AUTONOMOUS_FIX).startswith("autofix-")

    def test_ids_are_unique(self):
        ids = {generate_job_id(JobKind.ANALYSIS) for _ in range(200)}
        assert len(ids) == 200

    def test_terminal_statuses(self):
        assert is_terminal("completed")
        assert is_terminal("failed")
        assert not is_terminal("ai_analyzing")


class TestJobStore:
    """Tests for JobStore against SQLite."""

    def test_create_and_get(self, run_with_db):
        async def scenario(ctx):
            await ctx.analyses.create(**analysis_fields("a-1"))
            return await ctx.analyses.get("a-1")

        record = run_with_db(scenario)

        assert record.repo_name == "demo"
        assert record.progress == 0
        assert record.created_at is not None

    def test_get_missing_raises(self, run_with_db):
        async def scenario(ctx):
            with pytest.raises(JobNotFound) as exc_info:
                await ctx.analyses.get("nope")
            return exc_info.value

        assert run_with_db(scenario).job_id == "nope"

    def test_update_merges_fields(self, run_with_db):
        async def scenario(ctx):
            await ctx.analyses.create(**analysis_fields("a-1", message="start"))
            await ctx.analyses.update("a-1", status="cloning", progress=15)
            return await ctx.analyses.get("a-1")

        record = run_with_db(scenario)

        assert record.status == "cloning"
        assert record.progress == 15
        assert record.message == "start"
        assert record.repo_owner == "octo"

    def test_update_missing_raises(self, run_with_db):
        async def scenario(ctx):
            with pytest.raises(JobNotFound):
                await ctx.analyses.update("nope", progress=10)

        run_with_db(scenario)

    def test_update_after_sweep_keeps_failed_status(self, run_with_db):
        async def scenario(ctx):
            await ctx.analyses.create(**analysis_fields("a-1", status="ai_analyzing"))
            await ctx.analyses.fail_unfinished("stuck")
            with pytest.raises(JobConflict) as exc_info:
                await ctx.analyses.update("a-1", status="completed", progress=100)
            return exc_info.value, await ctx.analyses.get("a-1")

        error, record = run_with_db(scenario)

        assert "already failed" in str(error)
        assert record.status == "failed"
        assert record.error == "stuck"
        assert record.progress == 0

    def test_allow_terminal_writes_to_finished_record(self, run_with_db):
        async def scenario(ctx):
            await ctx.analyses.create(**analysis_fields("a-1", status="completed"))
            await ctx.analyses.update("a-1", allow_terminal=True, fix_job_id="autofix-1")
            return await ctx.analyses.get("a-1")

        record = run_with_db(scenario)

        assert record.status == "completed"
        assert record.fix_job_id == "autofix-1"

    def test_list_filters_sorts_and_paginates(self, run_with_db):
        async def scenario(ctx):
            base = datetime(2024, 1, 1)
            for i in range(5):
                await ctx.analyses.create(**analysis_fields(
                    f"a-{i}",
                    repo_name=f"repo-{i}",
                    created_at=base + timedelta(minutes=i),
                ))
            await ctx.analyses.create(**analysis_fields("other", user_id="user-2"))

            page, total = await ctx.analyses.list(user_id="user-1", limit=2, offset=1)
            by_name, _ = await ctx.analyses.list(user_id="user-1", sort="name", order="asc", limit=10)
            return page, total, by_name

        page, total, by_name = run_with_db(scenario)

        assert total == 5
        assert [r.id for r in page] == ["a-3", "a-2"]
        assert [r.repo_name for r in by_name] == [f"repo-{i}" for i in range(5)]

    def test_list_filters_by_status(self, run_with_db):
        async def scenario(ctx):
            await ctx.analyses.create(**analysis_fields("a-1", status="completed"))
            await ctx.analyses.create(**analysis_fields("a-2", status="failed"))
            return await ctx.analyses.list(status="completed")

        records, total = run_with_db(scenario)

        assert total == 1
        assert records[0].id == "a-1"

    def test_list_rejects_unknown_sort(self, run_with_db):
        async def scenario(ctx):
            with pytest.raises(ValueError):
                await ctx.analyses.list(sort="repo_url; drop table analyses")
            with pytest.raises(ValueError):
                await ctx.analyses.list(order="sideways")

        run_with_db(scenario)

    def test_fail_unfinished_respects_cutoff(self, run_with_db):
        async def scenario(ctx):
            old = datetime.utcnow() - timedelta(hours=2)
            await ctx.analyses.create(**analysis_fields("stale", status="ai_analyzing", updated_at=old))
            await ctx.analyses.create(**analysis_fields("fresh", status="cloning"))
            await ctx.analyses.create(**analysis_fields("done", status="completed", updated_at=old))

            count = await ctx.analyses.fail_unfinished("stuck", older_than=datetime.utcnow() - timedelta(hours=1))
            return count, [await ctx.analyses.get(i) for i in ("stale", "fresh", "done")]

        count, (stale, fresh, done) = run_with_db(scenario)

        assert count == 1
        assert stale.status == "failed"
        assert stale.error == "stuck"
        assert fresh.status == "cloning"
        assert done.status == "completed"


class TestJobManager:
    """Tests for background execution and reconciliation."""

    def test_start_fails_interrupted_jobs(self, run_with_db):
        async def scenario(ctx):
            await ctx.analyses.create(**analysis_fields("a-1", status="ai_analyzing"))
            await ctx.fix_jobs.create(
                id="f-1",
                analysis_id="a-1",
                repo_url="https://github.com/octo/demo.git",
                repo_name="demo",
                repo_owner="octo",
                status="pushing",
            )
            await ctx.job_manager.start()
            return await ctx.analyses.get("a-1"), await ctx.fix_jobs.get("f-1")

        analysis, fix_job = run_with_db(scenario)

        assert analysis.status == "failed"
        assert "interrupted" in analysis.error
        assert fix_job.status == "failed"

    def test_sweep_fails_stale_jobs(self, run_with_db):
        async def scenario(ctx):
            old = datetime.utcnow() - timedelta(minutes=ctx.job_manager.stale_minutes + 5)
            await ctx.analyses.create(**analysis_fields("a-1", status="cloning", updated_at=old))
            failed = await ctx.job_manager.sweep_stale_jobs()
            return failed, await ctx.analyses.get("a-1")

        failed, record = run_with_db(scenario)

        assert failed == 1
        assert record.status == "failed"
        assert "no progress" in record.error

    def test_spawn_tracks_task_until_done(self):
        async def scenario():
            manager = JobManager([], sweep_interval=0)
            gate = asyncio.Event()

            async def work():
                await gate.wait()
                return "ok"

            task = manager.spawn(work(), name="job-1")
            running = manager.active_count
            gate.set()
            result = await task
            await asyncio.sleep(0)
            return running, result, manager.active_count

        running, result, after = asyncio.run(scenario())

        assert running == 1
        assert result == "ok"
        assert after == 0

    def test_spawned_failure_is_contained(self):
        async def scenario():
            manager = JobManager([], sweep_interval=0)

            async def boom():
                raise RuntimeError("unexpected")

            task = manager.spawn(boom(), name="job-2")
            await asyncio.gather(task, return_exceptions=True)
            await asyncio.sleep(0)
            return manager.active_count

        assert asyncio.run(scenario()) == 0

"""Tests for the analysis workflow."""

import asyncio
import json

from pulse_engine.services.agent import AgentError
from pulse_engine.services.analysis import calculate_score, degraded_analysis, grade_for
from pulse_engine.services.process import ProcessError


async def create_pending(ctx, analysis_id="analysis-1", **overrides):
    fields = {
        "id": analysis_id,
        "user_id": "user-1",
        "repo_url": "https://github.com/octo/demo.git",
        "repo_name": "demo",
        "repo_owner": "octo",
        "status": "pending",
        "total_steps": 6,
    }
    fields.update(overrides)
    await ctx.analyses.create(**fields)
    return analysis_id


class TestScoring:
    """Tests for score and grade calculation."""

    def test_grade_boundaries(self):
        assert grade_for(90) == "A"
        assert grade_for(89) == "B"
        assert grade_for(80) == "B"
        assert grade_for(70) == "C"
        assert grade_for(69) == "D"

    def test_score_from_analysis(self):
        assert calculate_score({"codeQuality": {"score": 82}}) == {"score": 82, "grade": "B"}

    def test_missing_score_uses_default(self):
        assert calculate_score({}, default_score=75) == {"score": 75, "grade": "C"}

    def test_degraded_result_shape(self):
        result = degraded_analysis("No JSON object found", "x" * 5000)

        assert result["success"] is False
        assert len(result["rawOutput"]) == 1000
        assert result["codeQuality"] == {"score": 70, "issues": ["JSON parsing failed"]}
        assert result["recommendations"]


class TestAnalysisWorkflow:
    """Tests for AnalysisService.run_analysis with fake collaborators."""

    def test_successful_analysis(self, run_with_db, fake_agent):
        async def scenario(ctx):
            analysis_id = await create_pending(ctx)
            await ctx.analysis.run_analysis(analysis_id, "https://github.com/octo/demo.git")
            return await ctx.analyses.get(analysis_id), ctx.workspace.path_for(analysis_id)

        record, workspace = run_with_db(scenario)

        assert record.status == "completed"
        assert record.progress == 100
        assert record.current_step == 6
        assert record.completed_at is not None
        assert record.code_quality == {"score": 80, "grade": "B"}
        assert record.structure == {"totalFiles": 3, "fileTypes": {".py": 2, ".md": 1}}
        assert record.ai_analysis["success"] is True
        assert record.ai_analysis["architecture"]["pattern"] == "MVC"
        assert record.error is None
        assert not workspace.exists()
        assert len(fake_agent.prompts) == 1

    def test_progress_checkpoints_are_monotonic(self, run_with_db):
        seen = []

        async def scenario(ctx):
            original_update = ctx.analyses.update

            async def recording_update(job_id, **fields):
                if "progress" in fields:
                    seen.append((fields.get("status"), fields["progress"]))
                await original_update(job_id, **fields)

            ctx.analyses.update = recording_update
            analysis_id = await create_pending(ctx)
            await ctx.analysis.run_analysis(analysis_id, "https://github.com/octo/demo.git")

        run_with_db(scenario)

        assert [p for _, p in seen] == [15, 30, 75, 90, 100]
        assert seen[-1] == ("completed", 100)

    def test_clone_not_found_fails_job(self, run_with_db, fake_runner, fake_agent):
        def missing_repo(args, cwd):
            raise ProcessError(
                "git exited with code 128",
                exit_code=128,
                stderr="remote: Repository not found.\nfatal: repository 'x' not found",
            )

        fake_runner.on("git", "clone", missing_repo)

        async def scenario(ctx):
            analysis_id = await create_pending(ctx)
            await ctx.analysis.run_analysis(analysis_id, "https://github.com/octo/missing.git")
            return await ctx.analyses.get(analysis_id), ctx.workspace.path_for(analysis_id)

        record, workspace = run_with_db(scenario)

        assert record.status == "failed"
        assert "not found" in record.error
        assert record.progress == 15
        assert record.ai_analysis is None
        assert not workspace.exists()
        assert fake_agent.prompts == []

    def test_unparsable_output_degrades(self, run_with_db, fake_agent):
        fake_agent.output = "I looked around and everything seems fine."

        async def scenario(ctx):
            analysis_id = await create_pending(ctx)
            await ctx.analysis.run_analysis(analysis_id, "https://github.com/octo/demo.git")
            return await ctx.analyses.get(analysis_id)

        record = run_with_db(scenario)

        assert record.status == "completed"
        assert record.ai_analysis["success"] is False
        assert record.ai_analysis["rawOutput"].startswith("I looked around")
        assert record.code_quality == {"score": 70, "grade": "C"}

    def test_agent_failure_fails_job(self, run_with_db, fake_agent):
        fake_agent.error = AgentError("Agent timed out after 600s without output")

        async def scenario(ctx):
            analysis_id = await create_pending(ctx)
            await ctx.analysis.run_analysis(analysis_id, "https://github.com/octo/demo.git")
            return await ctx.analyses.get(analysis_id), ctx.workspace.path_for(analysis_id)

        record, workspace = run_with_db(scenario)

        assert record.status == "failed"
        assert record.error.startswith("Analysis failed:")
        assert "timed out" in record.error
        assert not workspace.exists()

    def test_swept_job_is_not_completed_later(self, run_with_db, fake_agent, analysis_json):
        async def scenario(ctx):
            analysis_id = await create_pending(ctx)

            async def slow_agent(prompt, cwd):
                # The stale sweep fires while the agent is still working
                await ctx.analyses.fail_unfinished("stuck")
                return json.dumps(analysis_json)

            fake_agent.run = slow_agent
            await ctx.analysis.run_analysis(analysis_id, "https://github.com/octo/demo.git")
            return await ctx.analyses.get(analysis_id), ctx.workspace.path_for(analysis_id)

        record, workspace = run_with_db(scenario)

        assert record.status == "failed"
        assert record.error == "stuck"
        assert record.code_quality is None
        assert record.completed_at is None
        assert not workspace.exists()

    def test_start_analysis_returns_immediately(self, run_with_db):
        async def scenario(ctx):
            analysis_id = await ctx.analysis.start_analysis(
                repo_url="https://github.com/octo/demo.git",
                repo_name="demo",
                owner="octo",
                user_id="user-1",
            )
            pending = await ctx.analyses.get(analysis_id)
            for _ in range(200):
                if ctx.job_manager.active_count == 0:
                    break
                await asyncio.sleep(0.01)
            return pending.status, await ctx.analyses.get(analysis_id)

        initial_status, record = run_with_db(scenario)

        assert initial_status == "pending"
        assert record.id.startswith("analysis-")
        assert record.status == "completed"

    def test_enable_ai_fix_runs_follow_up(self, run_with_db, fake_runner, fake_agent, fake_github):
        outputs = [fake_agent.output, "Applied fixes.\nModified: src/db.py\n"]

        async def next_output(prompt, cwd):
            fake_agent.prompts.append(prompt)
            return outputs.pop(0)

        fake_agent.run = next_output

        async def scenario(ctx):
            analysis_id = await create_pending(ctx, enable_ai_fix=True)
            await ctx.analysis.run_analysis(
                analysis_id,
                "https://github.com/octo/demo.git",
                enable_ai_fix=True,
                access_token="ghp_token",
            )
            analysis = await ctx.analyses.get(analysis_id)
            fix_job = await ctx.fix_jobs.get(analysis.fix_job_id)
            return analysis, fix_job, ctx.workspace.path_for(analysis_id)

        analysis, fix_job, workspace = run_with_db(scenario)

        assert analysis.status == "completed"
        assert fix_job.status == "completed"
        assert fix_job.pr_number == 42
        assert fix_job.files_modified == ["src/db.py"]
        # The fix reused the analysis checkout
        assert fake_runner.git_subcommands().count("clone") == 1
        assert not workspace.exists()

    def test_enable_ai_fix_without_token_is_skipped(self, run_with_db, fake_github):
        async def scenario(ctx):
            analysis_id = await create_pending(ctx, enable_ai_fix=True)
            await ctx.analysis.run_analysis(analysis_id, "https://github.com/octo/demo.git", enable_ai_fix=True)
            return await ctx.analyses.get(analysis_id)

        record = run_with_db(scenario)

        assert record.status == "completed"
        assert record.fix_job_id is None
        assert fake_github.created == []

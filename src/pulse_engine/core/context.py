"""Application context: every component, wired from one Settings object."""

import logging
from dataclasses import dataclass
from typing import Optional

from pulse_engine.core.config import Settings
from pulse_engine.core.database import Database
from pulse_engine.core.jobs import JobManager, JobStore
from pulse_engine.models import AnalysisRecord, AutonomousFixJobRecord
from pulse_engine.services.agent import AgentRunner
from pulse_engine.services.analysis import AnalysisService
from pulse_engine.services.autofix import AutoFixService
from pulse_engine.services.github import GitHubClient
from pulse_engine.services.process import ProcessRunner
from pulse_engine.services.progress import ProgressNotifier
from pulse_engine.services.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Holds the components one running engine uses.

    Built once at startup and handed to the API layer through
    ``app.state``. Tests build their own with fake collaborators.
    """

    settings: Settings
    database: Database
    analyses: JobStore
    fix_jobs: JobStore
    job_manager: JobManager
    runner: ProcessRunner
    workspace: WorkspaceManager
    agent: AgentRunner
    github: GitHubClient
    autofix: AutoFixService
    analysis: AnalysisService
    progress: ProgressNotifier

    @classmethod
    def create(
        cls,
        settings: Settings,
        runner: Optional[ProcessRunner] = None,
        agent: Optional[AgentRunner] = None,
        github: Optional[GitHubClient] = None,
    ) -> "AppContext":
        database = Database(settings.DATABASE_URL, echo=False)
        analyses = JobStore(database, AnalysisRecord)
        fix_jobs = JobStore(database, AutonomousFixJobRecord)
        job_manager = JobManager(
            [analyses, fix_jobs],
            stale_minutes=settings.STALE_JOB_MINUTES,
            sweep_interval=settings.SWEEP_INTERVAL,
        )

        runner = runner or ProcessRunner()
        workspace = WorkspaceManager(
            settings.WORKSPACE_PATH,
            runner,
            git_path=settings.GIT_PATH,
            clone_timeout=settings.CLONE_TIMEOUT,
        )
        agent = agent or AgentRunner(
            runner,
            command=settings.AGENT_COMMAND,
            args=settings.AGENT_ARGS,
            timeout=settings.AGENT_TIMEOUT,
            min_output_chars=settings.AGENT_MIN_OUTPUT_CHARS,
            api_key=settings.ANTHROPIC_API_KEY,
        )
        github = github or GitHubClient(settings.GITHUB_API_URL)

        autofix = AutoFixService(
            fix_jobs,
            analyses,
            workspace,
            agent,
            github,
            runner,
            job_manager,
            git_path=settings.GIT_PATH,
            bot_name=settings.BOT_NAME,
            bot_email=settings.BOT_EMAIL,
            branch_prefix=settings.FIX_BRANCH_PREFIX,
            default_base_branch=settings.DEFAULT_BASE_BRANCH,
            max_bug_fixes=settings.MAX_BUG_FIXES,
        )
        analysis = AnalysisService(
            analyses,
            workspace,
            agent,
            job_manager,
            autofix=autofix,
            default_score=settings.DEFAULT_QUALITY_SCORE,
        )
        progress = ProgressNotifier(analyses, poll_interval=settings.STREAM_POLL_INTERVAL)

        return cls(
            settings=settings,
            database=database,
            analyses=analyses,
            fix_jobs=fix_jobs,
            job_manager=job_manager,
            runner=runner,
            workspace=workspace,
            agent=agent,
            github=github,
            autofix=autofix,
            analysis=analysis,
            progress=progress,
        )

    async def start(self) -> None:
        await self.database.init()
        await self.workspace.purge_orphans()
        await self.job_manager.start()

    async def stop(self) -> None:
        await self.job_manager.stop()
        await self.database.close()

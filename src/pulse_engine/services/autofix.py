"""Autonomous fix workflow: rank issues, let the agent fix them, open a PR."""

import logging
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pulse_engine.core.jobs import (
    AnalysisStatus,
    FixStatus,
    JobConflict,
    JobKind,
    JobManager,
    JobStore,
    generate_job_id,
)
from pulse_engine.services.agent import AgentRunner
from pulse_engine.services.github import GitHubClient, GitHubError
from pulse_engine.services.process import ProcessError, ProcessRunner, redact
from pulse_engine.services.workspace import CloneError, WorkspaceManager

logger = logging.getLogger(__name__)

HIGH_SEVERITIES = ("critical", "high")

# Lower is more urgent
PRIORITY_CRITICAL = 1
PRIORITY_SECURITY_HIGH = 2
PRIORITY_BUG_HIGH = 3


@dataclass(frozen=True)
class HighImpactIssue:
    """A critical/high finding selected for fixing."""

    id: str
    type: str  # "Security" or "Bug"
    severity: str
    title: str
    description: str
    file: str
    priority: int
    fixable: bool

    def to_dict(self) -> dict:
        return asdict(self)


class NoFilesIdentified(Exception):
    """Neither the agent output nor the issues name a file to commit."""


class PushError(Exception):
    """git push failed."""

    PERMISSION = "permission"
    NOT_FOUND = "not-found"
    FAILED = "failed"

    def __init__(self, message: str, reason: str = FAILED):
        super().__init__(message)
        self.reason = reason


def _severity(item: Any) -> str:
    if not isinstance(item, dict):
        return ""
    return str(item.get("severity") or "").strip().lower()


def _make_issue(item: Dict[str, Any], issue_type: str, index: int, severity: str) -> HighImpactIssue:
    if severity == "critical":
        priority = PRIORITY_CRITICAL
    elif issue_type == "Security":
        priority = PRIORITY_SECURITY_HIGH
    else:
        priority = PRIORITY_BUG_HIGH

    default_title = "Security vulnerability" if issue_type == "Security" else "Bug"
    title = item.get("title") or item.get("type") or item.get("name") or default_title
    description = item.get("description") or item.get("details") or item.get("message") or ""
    file_path = item.get("file") or item.get("location") or item.get("path") or ""

    return HighImpactIssue(
        id=f"{issue_type.lower()}-{index}",
        type=issue_type,
        severity=severity,
        title=str(title),
        description=str(description),
        file=str(file_path),
        priority=priority,
        fixable=bool(file_path),
    )


def identify_high_impact_issues(ai_analysis: Dict[str, Any], max_bugs: int = 5) -> List[HighImpactIssue]:
    """Select critical/high security and bug findings, most urgent first.

    Bugs are capped to the first ``max_bugs`` qualifying entries. The sort is
    stable, so equal priorities keep the order they were found in.
    """
    issues: List[HighImpactIssue] = []

    for index, item in enumerate(ai_analysis.get("security") or []):
        severity = _severity(item)
        if severity in HIGH_SEVERITIES:
            issues.append(_make_issue(item, "Security", index, severity))

    bug_count = 0
    for index, item in enumerate(ai_analysis.get("bugs") or []):
        if bug_count >= max_bugs:
            break
        severity = _severity(item)
        if severity in HIGH_SEVERITIES:
            issues.append(_make_issue(item, "Bug", index, severity))
            bug_count += 1

    return sorted(issues, key=lambda issue: issue.priority)


def build_fix_prompt(issues: Sequence[HighImpactIssue]) -> str:
    """Instruction for the agent listing exactly the issues to fix."""
    lines = [
        "Fix ONLY the following high-impact issues in this repository.",
        "",
    ]
    for number, issue in enumerate(issues, start=1):
        location = f" (file: {issue.file})" if issue.file else ""
        lines.append(f"{number}. [{issue.type} / {issue.severity}] {issue.title}{location}")
        if issue.description:
            lines.append(f"   {issue.description}")

    lines.extend([
        "",
        "Constraints:",
        "- Do not add, remove or upgrade dependencies.",
        "- Do not change code unrelated to the issues listed above.",
        "- Keep public interfaces and behaviour unchanged except where required by a fix.",
        "- Do not run git commands; the changes will be committed for you.",
        "",
        "When finished, list every file you changed, one per line, as:",
        "Modified: <relative/path>",
    ])
    return "\n".join(lines)


FILE_PATTERNS = [
    re.compile(r"^diff --git a/\S+ b/(\S+)", re.MULTILINE),
    re.compile(r"^\+\+\+ b/(\S+)", re.MULTILINE),
    re.compile(
        r"\b(?:modified|edited|updated|changed|created|fixed|wrote(?: to)?)(?: file)?:?\s+"
        r"[`'\"]?([\w./\\-]+\.\w+)[`'\"]?",
        re.IGNORECASE,
    ),
]


def extract_modified_files(output: str, root: Optional[Path] = None) -> List[str]:
    """File paths the agent reports as changed, in first-seen order."""
    found: List[str] = []
    for pattern in FILE_PATTERNS:
        for match in pattern.finditer(output or ""):
            path = match.group(1).strip("`'\"").replace("\\", "/")
            if root is not None and path.startswith(str(root).replace("\\", "/") + "/"):
                path = path[len(str(root)) + 1:]
            if path.startswith("./"):
                path = path[2:]
            if not path or path == "/dev/null" or path.startswith("/"):
                continue
            if path not in found:
                found.append(path)
    return found


def build_commit_message(issues: Sequence[HighImpactIssue], job_id: str) -> str:
    security = sum(1 for i in issues if i.type == "Security")
    bugs = sum(1 for i in issues if i.type == "Bug")
    return (
        f"fix: resolve {len(issues)} high-impact issue(s)\n\n"
        f"- Security fixes: {security}\n"
        f"- Bug fixes: {bugs}\n\n"
        f"Automated fix job {job_id}"
    )


def build_pull_request(
    issues: Sequence[HighImpactIssue],
    files: Sequence[str],
    analysis_id: str,
    job_id: str,
) -> Tuple[str, str]:
    """Title and markdown body for the fix PR."""
    title = f"DevPulse AI: Fix {len(issues)} high-impact issue(s)"

    body = [
        "Automated fixes generated by DevPulse AI.",
        "",
        "## Issues addressed",
        "",
    ]
    for issue in issues:
        location = f" in `{issue.file}`" if issue.file else ""
        body.append(f"- **{issue.severity.upper()}** {issue.type}: {issue.title}{location}")

    body.extend(["", "## Files modified", ""])
    body.extend(f"- `{path}`" for path in files)
    body.extend([
        "",
        f"Analysis ID: `{analysis_id}`",
        f"Fix job ID: `{job_id}`",
        "",
        "Please review these changes carefully before merging.",
    ])
    return title, "\n".join(body)


def authenticated_url(repo_url: str, token: str) -> str:
    """HTTPS remote URL with the access token embedded."""
    if not repo_url.startswith("https://"):
        raise ValueError("Only https:// repository URLs can be pushed with a token")
    return repo_url.replace("https://", f"https://x-access-token:{token}@", 1)


def classify_push_failure(error: ProcessError) -> PushError:
    stderr = error.stderr or ""
    if "403" in stderr:
        return PushError(
            "Push failed: permission denied (the token needs write access and the 'repo' scope)",
            PushError.PERMISSION,
        )
    if "404" in stderr:
        return PushError("Push failed: repository not found", PushError.NOT_FOUND)

    detail = stderr.strip().splitlines()[-1] if stderr.strip() else str(error)
    return PushError(f"Push failed: {detail}", PushError.FAILED)


class AutoFixService:
    """Runs issue ranking -> clone -> agent fix -> commit -> push -> PR."""

    TOTAL_STEPS = 7

    def __init__(
        self,
        store: JobStore,
        analysis_store: JobStore,
        workspace: WorkspaceManager,
        agent: AgentRunner,
        github: GitHubClient,
        runner: ProcessRunner,
        job_manager: JobManager,
        git_path: str = "git",
        bot_name: str = "DevPulse AI",
        bot_email: str = "ai@devpulse.app",
        branch_prefix: str = "devpulse-ai-fix",
        default_base_branch: str = "main",
        max_bug_fixes: int = 5,
    ):
        self.store = store
        self.analysis_store = analysis_store
        self.workspace = workspace
        self.agent = agent
        self.github = github
        self.runner = runner
        self.job_manager = job_manager
        self.git_path = git_path
        self.bot_name = bot_name
        self.bot_email = bot_email
        self.branch_prefix = branch_prefix
        self.default_base_branch = default_base_branch
        self.max_bug_fixes = max_bug_fixes

    async def start_fix(
        self,
        analysis_id: str,
        access_token: str,
        user_id: Optional[str] = None,
        auto_merge: bool = False,
    ) -> str:
        """Validate the analysis, create a fix job and run it in the background.

        Raises JobNotFound or JobConflict before any background work starts.
        """
        analysis = await self.analysis_store.get(analysis_id)
        if analysis.status != AnalysisStatus.COMPLETED.value:
            raise JobConflict("Analysis must be completed before running AI fix")

        job_id = await self.create_fix_job(analysis, user_id=user_id, auto_merge=auto_merge)
        self.job_manager.spawn(self.run_fix(job_id, access_token), name=job_id)
        return job_id

    async def create_fix_job(self, analysis, user_id: Optional[str] = None, auto_merge: bool = False) -> str:
        job_id = generate_job_id(JobKind.AUTONOMOUS_FIX)
        await self.store.create(
            id=job_id,
            analysis_id=analysis.id,
            user_id=user_id or analysis.user_id,
            repo_url=analysis.repo_url,
            repo_name=analysis.repo_name,
            repo_owner=analysis.repo_owner,
            status=FixStatus.INITIALIZING.value,
            progress=0,
            current_step=0,
            total_steps=self.TOTAL_STEPS,
            message="Initializing AI fix...",
            auto_merge=auto_merge,
        )
        logger.info("AI fix job %s created for analysis %s", job_id, analysis.id)
        return job_id

    async def run_fix(self, job_id: str, access_token: str, workspace: Optional[Path] = None) -> None:
        """Run the fix pipeline. Never raises; always releases the workspace.

        A workspace handed over by the analysis workflow is reused instead of
        cloning again.
        """
        try:
            job = await self.store.get(job_id)
            analysis = await self.analysis_store.get(job.analysis_id)

            await self._set_stage(job_id, FixStatus.ANALYZING, 10, 1, "Identifying high-impact issues...")
            issues = identify_high_impact_issues(analysis.ai_analysis or {}, self.max_bug_fixes)

            if not issues:
                logger.info("Fix job %s: no high-impact issues, nothing to do", job_id)
                await self.store.update(
                    job_id,
                    status=FixStatus.COMPLETED.value,
                    progress=100,
                    current_step=self.TOTAL_STEPS,
                    message="No high-impact issues found - nothing to fix",
                    high_impact_issues=[],
                    files_modified=[],
                    completed_at=datetime.utcnow(),
                )
                return

            await self.store.update(job_id, high_impact_issues=[i.to_dict() for i in issues])
            logger.info("Fix job %s: %d high-impact issue(s) selected", job_id, len(issues))

            if workspace is None:
                await self._set_stage(job_id, FixStatus.CLONING, 20, 2, "Cloning repository...")
                workspace = await self.workspace.allocate(job_id)
                await self.workspace.clone_into(workspace, job.repo_url)
            else:
                await self._set_stage(job_id, FixStatus.CLONING, 20, 2, "Reusing analysis checkout...")

            await self._set_stage(
                job_id, FixStatus.FIXING, 40, 3, f"Generating fixes for {len(issues)} issue(s)..."
            )
            base_branch = await self._current_branch(workspace)
            branch_name = f"{self.branch_prefix}-{int(time.time() * 1000)}"
            await self._git(workspace, "config", "user.name", self.bot_name)
            await self._git(workspace, "config", "user.email", self.bot_email)
            await self._git(workspace, "checkout", "-b", branch_name)
            await self.store.update(job_id, branch_name=branch_name, base_branch=base_branch)

            output = await self.agent.run(build_fix_prompt(issues), workspace)
            files = extract_modified_files(output, root=workspace)
            if not files:
                logger.warning("Fix job %s: agent output names no files, using issue locations", job_id)
                files = list(dict.fromkeys(i.file for i in issues if i.file))
            if not files:
                raise NoFilesIdentified("Could not identify any modified files")
            await self.store.update(job_id, files_modified=files)

            await self._set_stage(job_id, FixStatus.COMMITTING, 70, 4, f"Committing changes to {len(files)} file(s)...")
            await self._git(workspace, "add", "-A")
            await self._git(workspace, "commit", "-m", build_commit_message(issues, job_id))

            await self._set_stage(job_id, FixStatus.PUSHING, 80, 5, f"Pushing branch {branch_name}...")
            await self._push(workspace, job.repo_url, branch_name, access_token)

            await self._set_stage(job_id, FixStatus.CREATING_PR, 90, 6, "Creating pull request...")
            title, body = build_pull_request(issues, files, analysis.id, job_id)
            pr = await self.github.create_pull_request(
                job.repo_owner, job.repo_name, branch_name, base_branch, title, body, access_token
            )

            message = f"Pull request #{pr.number} created"
            merged = False
            if job.auto_merge:
                try:
                    merged = await self.github.merge_pull_request(
                        job.repo_owner, job.repo_name, pr.number, access_token
                    )
                    if merged:
                        message = f"Pull request #{pr.number} created and merged"
                except GitHubError as e:
                    logger.warning("Auto-merge of PR #%d failed: %s", pr.number, e)
                    message = f"{message} (auto-merge failed: {e})"

            await self.store.update(
                job_id,
                status=FixStatus.COMPLETED.value,
                progress=100,
                current_step=self.TOTAL_STEPS,
                message=message,
                pr_url=pr.url,
                pr_number=pr.number,
                merged=merged,
                completed_at=datetime.utcnow(),
            )
            logger.info("Fix job %s completed: %s", job_id, pr.url)

        except Exception as e:
            logger.exception("AI fix failed: %s", job_id)
            await self._fail(job_id, e, access_token)

        finally:
            if workspace is not None:
                await self.workspace.release(workspace)

    async def _git(self, cwd: Path, *args: str, secrets: Sequence[str] = ()) -> str:
        return await self.runner.run(self.git_path, list(args), cwd=cwd, secrets=secrets)

    async def _current_branch(self, cwd: Path) -> str:
        try:
            branch = (await self._git(cwd, "rev-parse", "--abbrev-ref", "HEAD")).strip()
        except ProcessError as e:
            logger.warning("Could not read current branch, using %s: %s", self.default_base_branch, e)
            return self.default_base_branch
        if not branch or branch == "HEAD":
            return self.default_base_branch
        return branch

    async def _push(self, cwd: Path, repo_url: str, branch_name: str, access_token: str) -> None:
        remote = authenticated_url(repo_url, access_token)
        try:
            await self._git(cwd, "remote", "set-url", "origin", remote, secrets=[access_token])
            await self._git(cwd, "push", "-u", "origin", branch_name, secrets=[access_token])
        except ProcessError as e:
            raise classify_push_failure(e) from e

    async def _set_stage(self, job_id: str, status: FixStatus, progress: int, step: int, message: str) -> None:
        logger.info("[%s] Step %d/%d: %s", job_id, step, self.TOTAL_STEPS, message)
        await self.store.update(
            job_id,
            status=status.value,
            progress=progress,
            current_step=step,
            message=message,
        )

    async def _fail(self, job_id: str, error: Exception, access_token: str) -> None:
        if isinstance(error, (CloneError, PushError, NoFilesIdentified)):
            message = str(error)
        else:
            message = f"AI fix failed: {error}"
        message = redact(message, [access_token])

        try:
            await self.store.update(
                job_id,
                status=FixStatus.FAILED.value,
                message=message,
                error=message,
            )
        except JobConflict as e:
            logger.info("Fix job %s already finished, keeping its status: %s", job_id, e)
        except Exception as db_error:
            logger.error("Failed to save error status for %s: %s", job_id, db_error)

"""Repository analysis workflow."""

import asyncio
import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, TYPE_CHECKING

from pulse_engine.core.jobs import AnalysisStatus, JobConflict, JobKind, JobManager, JobStore, generate_job_id
from pulse_engine.services.agent import AgentRunner
from pulse_engine.services.extraction import ExtractionError, parse_analysis_output
from pulse_engine.services.workspace import CloneError, WorkspaceManager

if TYPE_CHECKING:
    from pulse_engine.services.autofix import AutoFixService

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """Analyze this codebase comprehensively and return a JSON object with:
- architecture: {pattern, strengths[], weaknesses[]}
- codeQuality: {score (0-100), issues[]}
- bugs: [{severity, description, file}]
- security: [{type, severity, description, file}]
- recommendations: [{priority, title, description}]

Severity must be one of: critical, high, medium, low.
Return ONLY valid JSON, no markdown, no code blocks, no explanations."""

RAW_OUTPUT_EXCERPT = 1000
DEGRADED_SCORE = 70


def grade_for(score: int) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    return "D"


def calculate_score(ai_analysis: Dict[str, Any], default_score: int = 75) -> Dict[str, Any]:
    """Score and letter grade from a normalized analysis."""
    score = (ai_analysis.get("codeQuality") or {}).get("score")
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        score = default_score
    score = int(score)
    return {"score": score, "grade": grade_for(score)}


def degraded_analysis(error: str, raw_output: str) -> Dict[str, Any]:
    """Neutral result used when the agent output cannot be parsed."""
    return {
        "success": False,
        "error": error,
        "rawOutput": raw_output[:RAW_OUTPUT_EXCERPT],
        "architecture": {"pattern": "Analysis incomplete", "strengths": [], "weaknesses": []},
        "codeQuality": {"score": DEGRADED_SCORE, "issues": ["JSON parsing failed"]},
        "bugs": [],
        "security": [],
        "recommendations": [
            {
                "priority": 1,
                "title": "Review agent output format",
                "description": "The agent returned a response without a parsable JSON analysis. "
                               "See rawOutput for the beginning of its response.",
            }
        ],
    }


class AnalysisService:
    """Runs clone -> structure scan -> agent review -> scoring for one repository."""

    TOTAL_STEPS = 6

    def __init__(
        self,
        store: JobStore,
        workspace: WorkspaceManager,
        agent: AgentRunner,
        job_manager: JobManager,
        autofix: Optional["AutoFixService"] = None,
        default_score: int = 75,
    ):
        self.store = store
        self.workspace = workspace
        self.agent = agent
        self.job_manager = job_manager
        self.autofix = autofix
        self.default_score = default_score

    async def start_analysis(
        self,
        repo_url: str,
        repo_name: str,
        owner: str,
        user_id: Optional[str] = None,
        enable_ai_fix: bool = False,
        access_token: Optional[str] = None,
    ) -> str:
        """Insert a pending analysis and run it in the background."""
        analysis_id = generate_job_id(JobKind.ANALYSIS)
        await self.store.create(
            id=analysis_id,
            user_id=user_id,
            repo_url=repo_url,
            repo_name=repo_name,
            repo_owner=owner,
            status=AnalysisStatus.PENDING.value,
            progress=0,
            current_step=0,
            total_steps=self.TOTAL_STEPS,
            message="Starting analysis...",
            enable_ai_fix=enable_ai_fix,
        )

        logger.info("Analysis started: %s (%s/%s)", analysis_id, owner, repo_name)
        self.job_manager.spawn(
            self.run_analysis(analysis_id, repo_url, enable_ai_fix, access_token),
            name=analysis_id,
        )
        return analysis_id

    async def run_analysis(
        self,
        analysis_id: str,
        repo_url: str,
        enable_ai_fix: bool = False,
        access_token: Optional[str] = None,
    ) -> None:
        """Run the full analysis pipeline. Never raises."""
        workspace: Optional[Path] = None
        handed_off = False

        try:
            workspace = await self.workspace.allocate(analysis_id)

            await self._set_stage(analysis_id, AnalysisStatus.CLONING, 15, 1, "Cloning repository...")
            await self.workspace.clone_into(workspace, repo_url)

            await self._set_stage(analysis_id, AnalysisStatus.ANALYZING, 30, 2, "Analyzing structure...")
            structure = await self.analyze_structure(workspace)

            await self._set_stage(analysis_id, AnalysisStatus.AI_ANALYZING, 75, 5, "Running AI analysis...")
            ai_analysis = await self.run_ai_analysis(workspace)

            await self._set_stage(analysis_id, AnalysisStatus.ANALYZING, 90, 6, "Calculating score...")
            code_quality = calculate_score(ai_analysis, self.default_score)
            logger.info(
                "Analysis %s scored %d/100 (grade %s)",
                analysis_id, code_quality["score"], code_quality["grade"],
            )

            await self.store.update(
                analysis_id,
                status=AnalysisStatus.COMPLETED.value,
                progress=100,
                current_step=self.TOTAL_STEPS,
                message="Analysis complete",
                structure=structure,
                code_quality=code_quality,
                ai_analysis=ai_analysis,
                completed_at=datetime.utcnow(),
            )
            logger.info("Analysis completed successfully: %s", analysis_id)

            if enable_ai_fix:
                if access_token and self.autofix is not None:
                    handed_off = True
                    await self._run_follow_up_fix(analysis_id, access_token, workspace)
                else:
                    logger.warning("Analysis %s requested an AI fix without credentials, skipping", analysis_id)

        except Exception as e:
            logger.exception("Analysis failed: %s", analysis_id)
            await self._fail(analysis_id, e)

        finally:
            if workspace is not None and not handed_off:
                await self.workspace.release(workspace)

    async def analyze_structure(self, path: Path) -> Dict[str, Any]:
        """File count and extension breakdown of a checkout."""
        files = await self.workspace.list_files(path)
        extensions = Counter(f.suffix.lower() or f.name for f in files)
        logger.info("Structure analyzed: %d files found", len(files))
        return {
            "totalFiles": len(files),
            "fileTypes": dict(extensions.most_common(20)),
        }

    async def run_ai_analysis(self, path: Path) -> Dict[str, Any]:
        """Ask the agent for a review and parse its answer.

        Agent failures propagate; unparsable output degrades to a neutral result.
        """
        output = await self.agent.run(ANALYSIS_PROMPT, path)

        try:
            # Output can run to hundreds of KB; parse off the event loop
            result = await asyncio.to_thread(parse_analysis_output, output, self.default_score)
        except ExtractionError as e:
            logger.warning("Could not extract analysis JSON: %s", e)
            return degraded_analysis(str(e), output)

        result["success"] = True
        return result

    async def _run_follow_up_fix(self, analysis_id: str, access_token: str, workspace: Path) -> None:
        """Start a fix job on the analysis checkout; the fix job owns the workspace."""
        try:
            record = await self.store.get(analysis_id)
            fix_job_id = await self.autofix.create_fix_job(record)
            await self.store.update(analysis_id, allow_terminal=True, fix_job_id=fix_job_id)
        except Exception:
            logger.exception("Could not start follow-up fix for %s", analysis_id)
            await self.workspace.release(workspace)
            return

        logger.info("Starting AI fix workflow %s for %s", fix_job_id, analysis_id)
        await self.autofix.run_fix(fix_job_id, access_token, workspace=workspace)

    async def _set_stage(
        self,
        analysis_id: str,
        status: AnalysisStatus,
        progress: int,
        step: int,
        message: str,
    ) -> None:
        logger.info("[%s] Step %d/%d: %s", analysis_id, step, self.TOTAL_STEPS, message)
        await self.store.update(
            analysis_id,
            status=status.value,
            progress=progress,
            current_step=step,
            message=message,
        )

    async def _fail(self, analysis_id: str, error: Exception) -> None:
        message = str(error) if isinstance(error, CloneError) else f"Analysis failed: {error}"
        try:
            await self.store.update(
                analysis_id,
                status=AnalysisStatus.FAILED.value,
                message=message,
                error=message,
            )
        except JobConflict as e:
            logger.info("Analysis %s already finished, keeping its status: %s", analysis_id, e)
        except Exception as db_error:
            logger.error("Failed to save error status for %s: %s", analysis_id, db_error)

"""Autonomous fix endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from pulse_engine.api.deps import CurrentUser, get_context, get_current_user
from pulse_engine.core.context import AppContext
from pulse_engine.core.jobs import JobConflict, JobNotFound

router = APIRouter()


class FixCreate(BaseModel):
    """Fix request body."""
    model_config = ConfigDict(populate_by_name=True)

    analysis_id: str = Field(alias="analysisId", min_length=1)
    access_token: Optional[str] = Field(default=None, alias="accessToken")
    auto_merge: bool = Field(default=False, alias="autoMerge")


@router.post("")
async def create_fix(
    request: FixCreate,
    context: AppContext = Depends(get_context),
    user: Optional[CurrentUser] = Depends(get_current_user),
) -> dict:
    """Start an autonomous fix for a completed analysis."""
    access_token = request.access_token or (user.github_token if user else None)
    if not access_token:
        raise HTTPException(status_code=400, detail="accessToken is required")

    try:
        job_id = await context.autofix.start_fix(
            request.analysis_id,
            access_token,
            user_id=user.user_id if user else None,
            auto_merge=request.auto_merge,
        )
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Analysis not found")
    except JobConflict as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "success": True,
        "data": {"jobId": job_id, "message": "AI fix started"},
    }


@router.get("/{job_id}")
async def get_fix(job_id: str, context: AppContext = Depends(get_context)) -> dict:
    """Fix job status and result."""
    try:
        record = await context.fix_jobs.get(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Fix job not found")

    return {"success": True, "data": record.to_dict()}

"""Analysis endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from pulse_engine.api.deps import CurrentUser, get_context, get_current_user
from pulse_engine.core.context import AppContext
from pulse_engine.core.jobs import JobNotFound
from pulse_engine.services.progress import format_sse

logger = logging.getLogger(__name__)
router = APIRouter()


class AnalysisCreate(BaseModel):
    """Analysis request body."""
    model_config = ConfigDict(populate_by_name=True)

    repo_url: str = Field(alias="repoUrl", min_length=1)
    repo_name: str = Field(alias="repoName", min_length=1)
    owner: str = Field(min_length=1)
    enable_ai_fix: bool = Field(default=False, alias="enableAIFix")
    access_token: Optional[str] = Field(default=None, alias="accessToken")


@router.post("")
async def create_analysis(
    request: AnalysisCreate,
    context: AppContext = Depends(get_context),
    user: Optional[CurrentUser] = Depends(get_current_user),
) -> dict:
    """Start an analysis in the background and return its id."""
    access_token = request.access_token or (user.github_token if user else None)

    analysis_id = await context.analysis.start_analysis(
        repo_url=request.repo_url,
        repo_name=request.repo_name,
        owner=request.owner,
        user_id=user.user_id if user else None,
        enable_ai_fix=request.enable_ai_fix,
        access_token=access_token,
    )

    return {
        "success": True,
        "data": {
            "analysisId": analysis_id,
            "message": "Analysis started",
            "aiFixEnabled": request.enable_ai_fix,
        },
    }


@router.get("")
async def list_analyses(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    owner: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    sort: str = Query("created_at"),
    order: str = Query("desc"),
    context: AppContext = Depends(get_context),
    user: Optional[CurrentUser] = Depends(get_current_user),
) -> dict:
    """Analysis history, newest first by default."""
    user_id = owner or (user.user_id if user else None)

    try:
        records, total = await context.analyses.list(
            user_id=user_id,
            status=status,
            sort=sort,
            order=order,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": True,
        "data": {
            "analyses": [r.to_summary() for r in records],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    }


@router.get("/{analysis_id}")
async def get_analysis(analysis_id: str, context: AppContext = Depends(get_context)) -> dict:
    """Full analysis record."""
    try:
        record = await context.analyses.get(analysis_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Analysis not found")

    return {"success": True, "data": record.to_dict()}


@router.get("/{analysis_id}/progress")
async def get_progress(analysis_id: str, context: AppContext = Depends(get_context)) -> dict:
    """Current progress snapshot."""
    try:
        snapshot = await context.progress.snapshot(analysis_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Analysis not found")

    return {"success": True, "data": snapshot}


@router.get("/{analysis_id}/stream")
async def stream_progress(
    analysis_id: str,
    request: Request,
    context: AppContext = Depends(get_context),
) -> StreamingResponse:
    """Server-Sent Events feed of progress until the analysis ends."""

    async def events():
        async for event, data in context.progress.stream(analysis_id, request.is_disconnected):
            yield format_sse(event, data)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

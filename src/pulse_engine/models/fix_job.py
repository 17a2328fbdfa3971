"""Autonomous fix job record model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Text, DateTime, JSON, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from pulse_engine.core.database import Base


class AutonomousFixJobRecord(Base):
    """Fix job - agent-generated fixes for a completed analysis, delivered as a PR."""

    __tablename__ = "autonomous_fix_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    analysis_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    repo_url: Mapped[str] = mapped_column(Text, nullable=False)
    repo_name: Mapped[str] = mapped_column(String(255), nullable=False)
    repo_owner: Mapped[str] = mapped_column(String(255), nullable=False)

    # Progress
    status: Mapped[str] = mapped_column(String(20), default="initializing", index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, default=7)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Fix result
    high_impact_issues: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    files_modified: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    branch_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    base_branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pr_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pr_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    auto_merge: Mapped[bool] = mapped_column(Boolean, default=False)
    merged: Mapped[bool] = mapped_column(Boolean, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "analysisId": self.analysis_id,
            "userId": self.user_id,
            "repoUrl": self.repo_url,
            "repoName": self.repo_name,
            "repoOwner": self.repo_owner,
            "status": self.status,
            "progress": self.progress,
            "currentStep": self.current_step,
            "totalSteps": self.total_steps,
            "message": self.message,
            "error": self.error,
            "fixResult": {
                "highImpactIssues": self.high_impact_issues or [],
                "filesModified": self.files_modified or [],
                "branchName": self.branch_name,
                "baseBranch": self.base_branch,
                "prUrl": self.pr_url,
                "prNumber": self.pr_number,
                "autoMerge": self.auto_merge,
                "merged": self.merged,
            },
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }

"""Analysis job record model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Text, DateTime, JSON, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from pulse_engine.core.database import Base


class AnalysisRecord(Base):
    """Analysis job - one code-quality review of a repository."""

    __tablename__ = "analyses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Subject repository
    repo_url: Mapped[str] = mapped_column(Text, nullable=False)
    repo_name: Mapped[str] = mapped_column(String(255), nullable=False)
    repo_owner: Mapped[str] = mapped_column(String(255), nullable=False)

    # Progress
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_step: Mapped[int] = mapped_column(Integer, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, default=6)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Results, populated together on completion
    structure: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    code_quality: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ai_analysis: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Follow-up fix
    enable_ai_fix: Mapped[bool] = mapped_column(Boolean, default=False)
    fix_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
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
            "structure": self.structure,
            "codeQuality": self.code_quality,
            "aiAnalysis": self.ai_analysis,
            "enableAiFix": self.enable_ai_fix,
            "fixJobId": self.fix_job_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }

    def to_summary(self) -> dict:
        """Compact form used by history listings."""
        return {
            "id": self.id,
            "repoName": self.repo_name,
            "repoOwner": self.repo_owner,
            "status": self.status,
            "progress": self.progress,
            "codeQuality": self.code_quality,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }

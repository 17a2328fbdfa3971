"""SQLAlchemy models for DevPulse Engine."""

from pulse_engine.models.analysis import AnalysisRecord
from pulse_engine.models.fix_job import AutonomousFixJobRecord

__all__ = [
    "AnalysisRecord",
    "AutonomousFixJobRecord",
]

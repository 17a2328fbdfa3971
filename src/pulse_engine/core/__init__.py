"""Core components for DevPulse Engine."""

from pulse_engine.core.config import Settings, get_settings
from pulse_engine.core.database import Database
from pulse_engine.core.jobs import JobManager, JobStore

__all__ = ["Settings", "get_settings", "Database", "JobManager", "JobStore"]

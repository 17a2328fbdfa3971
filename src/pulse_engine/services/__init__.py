"""DevPulse Engine services."""

from pulse_engine.services.process import ProcessRunner, ProcessError, ProcessTimeout
from pulse_engine.services.workspace import WorkspaceManager, CloneError
from pulse_engine.services.agent import AgentRunner, AgentError
from pulse_engine.services.github import GitHubClient, GitHubError

__all__ = [
    "ProcessRunner",
    "ProcessError",
    "ProcessTimeout",
    "WorkspaceManager",
    "CloneError",
    "AgentRunner",
    "AgentError",
    "GitHubClient",
    "GitHubError",
]

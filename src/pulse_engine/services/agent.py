"""Autonomous coding agent invocation."""

import logging
from pathlib import Path
from typing import List, Optional

from pulse_engine.services.process import ProcessError, ProcessRunner, ProcessTimeout

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Agent run produced nothing usable."""


class AgentRunner:
    """Runs the external coding agent in a working directory.

    The instruction goes over stdin, never through a shell. The agent's exit
    status is unreliable, so a run that timed out or exited non-zero still
    counts as a success when it already printed enough output.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        command: str = "cline",
        args: Optional[List[str]] = None,
        timeout: int = 600,
        min_output_chars: int = 100,
        api_key: Optional[str] = None,
    ):
        self.runner = runner
        self.command = command
        self.args = list(args) if args is not None else ["--oneshot"]
        self.timeout = timeout
        self.min_output_chars = min_output_chars
        self.api_key = api_key

    async def run(self, prompt: str, cwd: Path) -> str:
        """Send prompt to the agent and return its stdout."""
        env = {"ANTHROPIC_API_KEY": self.api_key} if self.api_key else None

        try:
            output = await self.runner.run(
                self.command,
                self.args,
                cwd=cwd,
                timeout=self.timeout,
                input_text=prompt,
                env=env,
                secrets=[self.api_key] if self.api_key else (),
            )
        except ProcessTimeout as e:
            if e.stdout.strip():
                logger.warning(
                    "Agent timed out after %ss, keeping %d chars of output", self.timeout, len(e.stdout)
                )
                return e.stdout
            raise AgentError(f"Agent timed out after {self.timeout}s without output") from e
        except ProcessError as e:
            if e.reason == ProcessError.EXIT and len(e.stdout.strip()) > self.min_output_chars:
                logger.warning(
                    "Agent exited with code %s but produced %d chars, treating as success",
                    e.exit_code, len(e.stdout),
                )
                return e.stdout
            raise AgentError(f"Agent failed: {(e.stderr or str(e)).strip()[-500:]}") from e

        logger.info("Agent output received (%d chars)", len(output))
        return output

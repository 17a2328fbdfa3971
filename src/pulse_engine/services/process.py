"""External process execution with streaming capture and timeouts."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import psutil

logger = logging.getLogger(__name__)

REDACTED = "***"


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every secret occurrence in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


class ProcessError(Exception):
    """External process failed to spawn, exited non-zero, or timed out."""

    EXIT = "exit"
    TIMEOUT = "timeout"
    SPAWN_FAILURE = "spawn-failure"

    def __init__(
        self,
        message: str,
        reason: str = EXIT,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.reason = reason
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ProcessTimeout(ProcessError):
    """Process exceeded its time budget and was killed."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message, reason=ProcessError.TIMEOUT, stdout=stdout, stderr=stderr)


class ProcessRunner:
    """Spawns executables and collects their output.

    stdout and stderr are drained incrementally while the process runs so
    chatty tools never block on a full pipe. On timeout the whole process
    tree is killed.
    """

    CHUNK_SIZE = 4096
    DRAIN_GRACE_SECONDS = 5

    async def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        secrets: Sequence[str] = (),
    ) -> str:
        """Run a command and return its stdout; raises ProcessError."""
        display = redact(" ".join([command, *args]), secrets)
        logger.info("Running: %s", display)

        process_env = None
        if env:
            process_env = {**os.environ, **env}

        try:
            proc = await asyncio.create_subprocess_exec(
                command, *args,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=process_env,
            )
        except OSError as e:
            logger.error("Failed to start %s: %s", command, e)
            raise ProcessError(
                f"Failed to start {command}: {e}",
                reason=ProcessError.SPAWN_FAILURE,
                stderr=str(e),
            ) from e

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            asyncio.create_task(self._pump(proc.stdout, stdout_chunks, command, "stdout")),
            asyncio.create_task(self._pump(proc.stderr, stderr_chunks, command, "stderr")),
        ]

        timed_out = False
        try:
            if input_text is not None:
                await self._feed(proc, input_text)
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error("%s timed out after %ss, killing process", command, timeout)
            await self._kill_tree(proc)
        except asyncio.CancelledError:
            await self._kill_tree(proc)
            raise
        finally:
            await self._drain(readers)

        stdout = redact(b"".join(stdout_chunks).decode("utf-8", errors="replace"), secrets)
        stderr = redact(b"".join(stderr_chunks).decode("utf-8", errors="replace"), secrets)

        if timed_out:
            raise ProcessTimeout(
                f"{command} timed out after {timeout}s",
                stdout=stdout,
                stderr=stderr,
            )

        if proc.returncode != 0:
            logger.error("%s exited with code %s: %s", command, proc.returncode, stderr[-500:])
            raise ProcessError(
                f"{command} exited with code {proc.returncode}: {stderr.strip()[-500:]}",
                reason=ProcessError.EXIT,
                exit_code=proc.returncode,
                stdout=stdout,
                stderr=stderr,
            )

        return stdout

    async def _pump(self, stream, chunks: List[bytes], command: str, label: str) -> None:
        while True:
            data = await stream.read(self.CHUNK_SIZE)
            if not data:
                break
            chunks.append(data)
            logger.debug("[%s %s] %s", command, label, data.decode("utf-8", errors="replace").rstrip())

    async def _feed(self, proc, input_text: str) -> None:
        try:
            proc.stdin.write(input_text.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Process closed stdin before the input was written")
        finally:
            proc.stdin.close()

    async def _drain(self, readers: List[asyncio.Task]) -> None:
        # Grandchildren may keep the pipes open after the parent is gone
        done, pending = await asyncio.wait(readers, timeout=self.DRAIN_GRACE_SECONDS)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _kill_tree(self, proc) -> None:
        """Kill a process and all of its descendants."""
        try:
            parent = psutil.Process(proc.pid)
            for child in parent.children(recursive=True):
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    pass
        except psutil.NoSuchProcess:
            pass

        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

"""Analysis progress: point reads and de-duplicated event streams."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from pulse_engine.core.jobs import JobNotFound, JobStore, is_terminal

logger = logging.getLogger(__name__)

Event = Tuple[str, Dict[str, Any]]


def snapshot_of(record) -> Dict[str, Any]:
    return {
        "analysisId": record.id,
        "status": record.status,
        "progress": {
            "percentage": record.progress,
            "currentStep": record.current_step,
            "totalSteps": record.total_steps,
            "message": record.message,
        },
        "codeQuality": record.code_quality,
        "error": record.error,
    }


def format_sse(event: str, data: Dict[str, Any]) -> str:
    """Encode one Server-Sent Event frame."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class ProgressNotifier:
    """Reads analysis progress from the job store.

    Streams re-read the record every ``poll_interval`` seconds. The first
    event is ``connected`` with the current snapshot; after that a
    ``progress`` event is emitted only when the percentage changed, and a
    ``completed`` or ``failed`` event ends the stream.
    """

    def __init__(self, store: JobStore, poll_interval: float = 1.0):
        self.store = store
        self.poll_interval = poll_interval

    async def snapshot(self, analysis_id: str) -> Dict[str, Any]:
        """Current progress; raises JobNotFound."""
        record = await self.store.get(analysis_id)
        return snapshot_of(record)

    async def stream(
        self,
        analysis_id: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[Event]:
        """Yield (event, data) pairs until the job ends or the peer leaves."""
        try:
            current = await self.snapshot(analysis_id)
        except JobNotFound:
            yield "error", {"analysisId": analysis_id, "error": "Analysis not found"}
            return

        yield "connected", current
        if is_terminal(current["status"]):
            yield current["status"], current
            return

        last_progress = current["progress"]["percentage"]

        while True:
            await asyncio.sleep(self.poll_interval)
            if is_disconnected is not None and await is_disconnected():
                logger.info("Stream client for %s disconnected", analysis_id)
                return

            try:
                current = await self.snapshot(analysis_id)
            except JobNotFound:
                yield "error", {"analysisId": analysis_id, "error": "Analysis not found"}
                return

            percentage = current["progress"]["percentage"]
            if percentage != last_progress:
                last_progress = percentage
                yield "progress", current

            if is_terminal(current["status"]):
                yield current["status"], current
                return

"""Concurrent fan-out of one webhook delivery's events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from .pipeline import ConversationPipeline, PipelineOutcome

logger = logging.getLogger(__name__)


def _user_id_of(event: Any) -> str:
    source = event.get("source") if isinstance(event, dict) else None
    if isinstance(source, dict):
        return str(source.get("userId") or "")
    return ""


def summarize_outcomes(outcomes: Sequence[PipelineOutcome | None]) -> dict[str, int]:
    summary = {"events": len(outcomes), "completed": 0, "failed": 0, "skipped": 0}
    for outcome in outcomes:
        if outcome is None:
            summary["skipped"] += 1
        elif outcome.ok:
            summary["completed"] += 1
        else:
            summary["failed"] += 1
    return summary


class EventFanout:
    def __init__(self, pipeline: ConversationPipeline) -> None:
        self.pipeline = pipeline

    async def process(self, events: Sequence[Any]) -> list[PipelineOutcome | None]:
        """Run the pipeline for every event concurrently; one outcome per event, in order.

        A run that raises is recorded as ``failed("unhandled")`` and does not
        cancel its siblings.
        """
        results = await asyncio.gather(
            *(self.pipeline.run(event) for event in events),
            return_exceptions=True,
        )

        outcomes: list[PipelineOutcome | None] = []
        for event, result in zip(events, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Unhandled error in conversation pipeline: %s", result, exc_info=result)
                outcomes.append(
                    PipelineOutcome.failed(
                        user_id=_user_id_of(event), stage="unhandled", error=str(result)
                    )
                )
            else:
                outcomes.append(result)
        return outcomes

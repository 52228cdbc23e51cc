"""Per-message conversation pipeline.

One inbound text message runs these steps strictly in order:

1. validate        - non-text / unresolvable events return ``None`` (no writes)
2. persist inbound - the user turn is stored before anything else can fail
3. fetch history   - every stored message for the user
4. window          - drop the just-stored turn, keep the newest N as context
5. prune           - delete stale messages; failures are logged, not fatal
6. complete        - one provider call with window + new turn
7. reply           - send the text back with the event's reply token
8. persist reply   - store the assistant turn (also attempted when 7 failed)

A failed run is not retried or resumed here; the outcome says which stage
failed and the fan-out reports it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Literal

from ...config import settings
from ...error_logging import error_logger
from ..line import LineError
from .completion import CompletionError, CompletionInvoker
from .events import TextMessageEvent, parse_text_event
from .message_store import PersistError, get_message_store
from .messages import Message, MonotonicClock, default_clock
from .runtime_deps import CompletionInvokerProtocol, MessageStoreProtocol, ReplyClientProtocol
from .turn_gate import UserTurnGate, get_turn_gate
from .window import WindowSelection, exclude_message, select_window

_logger = logging.getLogger(__name__)

Stage = Literal[
    "persist_inbound",
    "fetch_history",
    "complete",
    "reply",
    "persist_outbound",
    "unhandled",
]


@dataclass(frozen=True)
class PipelineOutcome:
    status: Literal["completed", "failed"]
    user_id: str
    stage: Stage | None = None
    error: str | None = None
    reply: str | None = None
    window_size: int = 0
    pruned: int = 0
    prune_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    @classmethod
    def failed(cls, *, user_id: str, stage: Stage, error: str, **kwargs: Any) -> "PipelineOutcome":
        return cls(status="failed", user_id=user_id, stage=stage, error=error, **kwargs)

    def to_log_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # Reply text can be long and personal; log its size only.
        reply = data.pop("reply")
        data["reply_chars"] = len(reply) if reply else 0
        return data


async def report_to_error_log(payload: dict[str, Any]) -> None:
    await asyncio.to_thread(error_logger.log, payload)


class ConversationPipeline:
    def __init__(
        self,
        *,
        store: MessageStoreProtocol,
        invoker: CompletionInvokerProtocol,
        reply_client: ReplyClientProtocol,
        window_size: int = 3,
        clock: MonotonicClock | None = None,
        turn_gate: UserTurnGate | None = None,
        report_error_fn: Callable[[dict[str, Any]], Awaitable[None]] = report_to_error_log,
        logger: logging.Logger | None = None,
    ) -> None:
        if window_size < 0:
            raise ValueError("window_size must be >= 0")
        self.store = store
        self.invoker = invoker
        self.reply_client = reply_client
        self.window_size = window_size
        self.clock = clock or default_clock
        self.turn_gate = turn_gate
        self._report_error = report_error_fn
        self.logger = logger or _logger

    async def run(self, event: Any) -> PipelineOutcome | None:
        parsed = parse_text_event(event)
        if parsed is None:
            return None

        if self.turn_gate is None:
            return await self._run_turn(parsed)
        async with self.turn_gate.hold(parsed.user_id):
            return await self._run_turn(parsed)

    async def _run_turn(self, event: TextMessageEvent) -> PipelineOutcome:
        user_id = event.user_id

        inbound = Message.create(user_id=user_id, role="user", content=event.text, clock=self.clock)
        try:
            await self.store.append(inbound)
        except PersistError as exc:
            return await self._fail(user_id, "persist_inbound", exc)

        try:
            history = await self.store.query_by_user(user_id)
        except PersistError as exc:
            return await self._fail(user_id, "fetch_history", exc)

        selection = select_window(exclude_message(history, inbound.id), self.window_size)
        pruned, prune_error = await self._prune(user_id, selection)
        progress: dict[str, Any] = {
            "window_size": len(selection.window),
            "pruned": pruned,
            "prune_error": prune_error,
        }

        try:
            content = await self.invoker.complete(selection.window, event.text, user_id=user_id)
        except CompletionError as exc:
            return await self._fail(user_id, "complete", exc, **progress)

        reply_error: LineError | None = None
        try:
            await self.reply_client.reply_text(reply_token=event.reply_token, text=content)
        except LineError as exc:
            reply_error = exc

        outbound = Message.create(user_id=user_id, role="assistant", content=content, clock=self.clock)
        try:
            await self.store.append(outbound)
        except PersistError as exc:
            if reply_error is None:
                return await self._fail(user_id, "persist_outbound", exc, reply=content, **progress)
            self.logger.warning("Assistant reply for %s lost after failed send: %s", user_id, exc)

        if reply_error is not None:
            return await self._fail(user_id, "reply", reply_error, reply=content, **progress)

        return PipelineOutcome(status="completed", user_id=user_id, reply=content, **progress)

    async def _prune(self, user_id: str, selection: WindowSelection) -> tuple[int, str | None]:
        if not selection.stale:
            return 0, None
        try:
            deleted = await self.store.batch_delete(selection.stale_ids)
        except PersistError as exc:
            self.logger.warning(
                "Pruning %d stale messages for %s failed: %s", len(selection.stale), user_id, exc
            )
            await self._safe_report(
                {"severity": "warning", "stage": "prune", "user_id": user_id, "message": str(exc)}
            )
            return 0, str(exc)
        return deleted, None

    async def _fail(self, user_id: str, stage: Stage, exc: Exception, **kwargs: Any) -> PipelineOutcome:
        self.logger.warning("Conversation pipeline failed at %s for %s: %s", stage, user_id, exc)
        await self._safe_report(
            {"severity": "error", "stage": stage, "user_id": user_id, "message": str(exc)}
        )
        return PipelineOutcome.failed(user_id=user_id, stage=stage, error=str(exc), **kwargs)

    async def _safe_report(self, payload: dict[str, Any]) -> None:
        try:
            await self._report_error(payload)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("Failed to report pipeline error: %s", exc)


def build_conversation_pipeline(reply_client: ReplyClientProtocol) -> ConversationPipeline:
    """Wire the pipeline from process settings and shared adapters."""
    invoker = CompletionInvoker(
        system_instructions=settings.system_instructions,
        temperature=settings.openai_temperature,
    )
    return ConversationPipeline(
        store=get_message_store(),
        invoker=invoker,
        reply_client=reply_client,
        window_size=settings.conversation_window_size,
        turn_gate=get_turn_gate() if settings.serialize_per_user else None,
    )

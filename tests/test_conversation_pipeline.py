"""Tests for the per-message conversation pipeline."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from chat_relay.services.conversation.completion import CompletionInvoker
from chat_relay.services.conversation.openai_client import CompletionResult, OpenAIChatClient, OpenAIError
from chat_relay.services.conversation.pipeline import ConversationPipeline, PipelineOutcome
from chat_relay.services.line import LineAPIError, LineService


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _completion(content: str = "all good") -> CompletionResult:
    return CompletionResult(
        content=content,
        model="gpt-4o-mini",
        prompt_tokens=10,
        completion_tokens=3,
        total_tokens=13,
        duration_ms=50,
    )


def _pipeline(store, reply_client, *, window_size=3, call_fn=None, report_fn=None, client=None):
    call_fn = call_fn or AsyncMock(return_value=_completion())
    if client is None:
        client = MagicMock()
        client.complete = call_fn
    invoker = CompletionInvoker(client=client, log_ai_token_usage_fn=AsyncMock())
    pipeline = ConversationPipeline(
        store=store,
        invoker=invoker,
        reply_client=reply_client,
        window_size=window_size,
        report_error_fn=report_fn or AsyncMock(),
    )
    return pipeline, call_fn


def _disconnect(request: httpx.Request) -> httpx.Response:
    raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)


def _line_service(handler) -> LineService:
    service = LineService(channel_access_token="token")
    service._client = httpx.AsyncClient(
        base_url="https://api.line.me",
        transport=httpx.MockTransport(handler),
    )
    return service


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidationSkip:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event",
        [
            {"type": "follow", "replyToken": "rt", "source": {"userId": "U1"}},
            {"type": "message", "replyToken": "rt", "source": {"userId": "U1"}, "message": {"type": "sticker"}},
            {"type": "message", "replyToken": "rt", "source": {}, "message": {"type": "text", "text": "hi"}},
            {"type": "message", "source": {"userId": "U1"}, "message": {"type": "text", "text": "hi"}},
            {"type": "message", "replyToken": "rt", "source": {"userId": "U1"}, "message": {"type": "text", "text": ""}},
            "not-an-event",
        ],
    )
    async def test_non_actionable_events_are_noops(self, store, reply_client, event):
        pipeline, call_fn = _pipeline(store, reply_client)

        for _ in range(3):
            assert await pipeline.run(event) is None

        assert store.appended == []
        call_fn.assert_not_awaited()
        reply_client.reply_text.assert_not_awaited()


# ---------------------------------------------------------------------------
# Happy path / windowing
# ---------------------------------------------------------------------------


class TestWindowedConversation:
    @pytest.mark.asyncio
    async def test_end_to_end_window_of_three(self, store, reply_client, make_history, text_event):
        store.messages = [
            make_history(1, "user", "hi"),
            make_history(2, "assistant", "hello"),
            make_history(3, "user", "how are you"),
        ]
        pipeline, call_fn = _pipeline(store, reply_client, window_size=3)

        outcome = await pipeline.run(text_event("what's up"))

        assert outcome == PipelineOutcome(
            status="completed", user_id="U1", reply="all good", window_size=3, pruned=0
        )
        assert call_fn.call_args.args[0] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "how are you"},
            {"role": "user", "content": "what's up"},
        ]
        assert store.deleted == []
        reply_client.reply_text.assert_awaited_once_with(reply_token="rt-1", text="all good")

    @pytest.mark.asyncio
    async def test_window_of_two_prunes_two_oldest(self, store, reply_client, make_history, text_event):
        store.messages = [
            make_history(1, "user", "hi"),
            make_history(2, "assistant", "hello"),
            make_history(3, "user", "how are you"),
            make_history(4, "assistant", "fine"),
        ]
        pipeline, call_fn = _pipeline(store, reply_client, window_size=2)

        outcome = await pipeline.run(text_event("what's up"))

        assert outcome.ok
        assert outcome.pruned == 2
        assert sorted(store.deleted) == ["h1", "h2"]
        assert call_fn.call_args.args[0] == [
            {"role": "user", "content": "how are you"},
            {"role": "assistant", "content": "fine"},
            {"role": "user", "content": "what's up"},
        ]

    @pytest.mark.asyncio
    async def test_new_turn_not_double_counted(self, store, reply_client, make_history, text_event):
        store.messages = [make_history(1, "user", "earlier")]
        pipeline, call_fn = _pipeline(store, reply_client, window_size=3)

        await pipeline.run(text_event("now"))

        sent = call_fn.call_args.args[0]
        assert [m["content"] for m in sent] == ["earlier", "now"]

    @pytest.mark.asyncio
    async def test_persists_user_and_assistant_turns_in_order(self, store, reply_client, text_event):
        pipeline, _ = _pipeline(store, reply_client)

        await pipeline.run(text_event("ping"))

        assert [(m.role, m.content) for m in store.appended] == [("user", "ping"), ("assistant", "all good")]
        user_turn, assistant_turn = store.appended
        assert user_turn.typed_at < assistant_turn.typed_at
        assert user_turn.id != assistant_turn.id

    @pytest.mark.asyncio
    async def test_other_users_history_is_ignored(self, store, reply_client, make_history, text_event):
        store.messages = [make_history(1, "user", "not yours", user_id="U2")]
        pipeline, call_fn = _pipeline(store, reply_client, window_size=0)

        await pipeline.run(text_event("mine", user_id="U1"))

        assert store.deleted == []
        assert len(store.for_user("U2")) == 1
        assert call_fn.call_args.args[0] == [{"role": "user", "content": "mine"}]


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestFailureStages:
    @pytest.mark.asyncio
    async def test_user_turn_persisted_when_completion_fails(self, store, reply_client, text_event):
        call_fn = AsyncMock(side_effect=OpenAIError("provider down"))
        report_fn = AsyncMock()
        pipeline, _ = _pipeline(store, reply_client, call_fn=call_fn, report_fn=report_fn)

        outcome = await pipeline.run(text_event("are you there"))

        assert outcome.status == "failed"
        assert outcome.stage == "complete"
        assert [(m.role, m.content) for m in store.for_user("U1")] == [("user", "are you there")]
        reply_client.reply_text.assert_not_awaited()
        assert report_fn.call_args.args[0]["stage"] == "complete"

    @pytest.mark.asyncio
    async def test_inbound_persist_failure_stops_pipeline(self, store, reply_client, text_event):
        store.fail_append_roles = {"user"}
        pipeline, call_fn = _pipeline(store, reply_client)

        outcome = await pipeline.run(text_event())

        assert outcome.stage == "persist_inbound"
        call_fn.assert_not_awaited()
        reply_client.reply_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_history_fetch_failure_is_fatal(self, store, reply_client, text_event):
        store.fail_query = True
        pipeline, call_fn = _pipeline(store, reply_client)

        outcome = await pipeline.run(text_event())

        assert outcome.stage == "fetch_history"
        assert len(store.appended) == 1
        call_fn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prune_failure_is_reported_but_not_fatal(self, store, reply_client, make_history, text_event):
        store.messages = [make_history(i, "user", f"m{i}") for i in range(1, 6)]
        store.fail_delete = True
        report_fn = AsyncMock()
        pipeline, _ = _pipeline(store, reply_client, window_size=2, report_fn=report_fn)

        outcome = await pipeline.run(text_event())

        assert outcome.ok
        assert outcome.pruned == 0
        assert outcome.prune_error == "delete failed"
        reply_client.reply_text.assert_awaited_once()
        report_fn.assert_awaited_once()
        assert report_fn.call_args.args[0]["stage"] == "prune"

    @pytest.mark.asyncio
    async def test_reply_failure_still_persists_assistant_turn(self, store, reply_client, text_event):
        reply_client.reply_text.side_effect = LineAPIError("LINE API error (400): Invalid reply token")
        pipeline, _ = _pipeline(store, reply_client)

        outcome = await pipeline.run(text_event())

        assert outcome.stage == "reply"
        assert outcome.reply == "all good"
        assert [m.content for m in store.for_user("U1", role="assistant")] == ["all good"]

    @pytest.mark.asyncio
    async def test_line_disconnect_is_a_reply_failure(self, store, text_event):
        line = _line_service(_disconnect)
        pipeline, _ = _pipeline(store, line)

        outcome = await pipeline.run(text_event())
        await line.aclose()

        assert outcome.status == "failed"
        assert outcome.stage == "reply"
        assert "Server disconnected" in outcome.error
        assert [m.content for m in store.for_user("U1", role="assistant")] == ["all good"]

    @pytest.mark.asyncio
    async def test_openai_disconnect_is_a_completion_failure(self, store, reply_client, text_event):
        client = OpenAIChatClient(api_key="sk-test", transport=httpx.MockTransport(_disconnect))
        pipeline, _ = _pipeline(store, reply_client, client=client)

        outcome = await pipeline.run(text_event())

        assert outcome.status == "failed"
        assert outcome.stage == "complete"
        reply_client.reply_text.assert_not_awaited()
        assert [(m.role, m.content) for m in store.for_user("U1")] == [("user", "hello")]

    @pytest.mark.asyncio
    async def test_reply_failure_with_outbound_persist_failure(self, store, reply_client, text_event):
        reply_client.reply_text.side_effect = LineAPIError("expired token")
        store.fail_append_roles = {"assistant"}
        pipeline, _ = _pipeline(store, reply_client)

        outcome = await pipeline.run(text_event())

        assert outcome.stage == "reply"
        assert store.for_user("U1", role="assistant") == []

    @pytest.mark.asyncio
    async def test_outbound_persist_failure_after_reply(self, store, reply_client, text_event):
        store.fail_append_roles = {"assistant"}
        pipeline, _ = _pipeline(store, reply_client)

        outcome = await pipeline.run(text_event())

        assert outcome.stage == "persist_outbound"
        reply_client.reply_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_error_reporter_failure_is_swallowed(self, store, reply_client, text_event):
        call_fn = AsyncMock(side_effect=OpenAIError("down"))
        report_fn = AsyncMock(side_effect=RuntimeError("supabase offline"))
        pipeline, _ = _pipeline(store, reply_client, call_fn=call_fn, report_fn=report_fn)

        outcome = await pipeline.run(text_event())

        assert outcome.stage == "complete"


class TestPipelineOutcome:
    def test_log_dict_hides_reply_text(self):
        outcome = PipelineOutcome(status="completed", user_id="U1", reply="secret stuff")
        data = outcome.to_log_dict()
        assert "reply" not in data
        assert data["reply_chars"] == len("secret stuff")

    def test_negative_window_rejected(self, store, reply_client):
        with pytest.raises(ValueError):
            ConversationPipeline(
                store=store, invoker=AsyncMock(), reply_client=reply_client, window_size=-1
            )

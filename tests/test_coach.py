"""
Unit tests for the coaching chat service.

Tests:
- Stage boundaries
- Retry/backoff policy (rate limits, other failures, final attempt)
- Missing credentials short-circuit
- Transcript mapping for the Messages API
- CoachingChat busy flag, autosave hooks and staging
"""

import asyncio
import random
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from app.services.coach import (
    AI_SAVE_DELAY,
    FALLBACK_MISSING_CREDENTIALS,
    FALLBACK_UPSTREAM_ERROR,
    USER_SAVE_DELAY,
    CoachClient,
    CoachingChat,
    CoachRateLimited,
    EmptyReplyError,
    ask_coach,
    build_messages,
    build_system_prompt,
    get_stage,
    opening_question,
)
from app.services.coach_prompts import FALLBACK_QUESTIONS


class FakeClient:
    """Plays back a list of replies / exceptions, one per call."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def complete(self, system, messages):
        self.calls.append((system, messages))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


def ask(client, message_count=0, **kwargs):
    sleep = RecordingSleep()
    reply = asyncio.run(ask_coach(
        "Shipped the feature on time",
        [{"sender": "user", "text": "It felt great"}],
        message_count,
        client,
        sleep=sleep,
        **kwargs,
    ))
    return reply, sleep.waits


class TestGetStage:
    """Stage boundaries, asserted on both sides."""

    @pytest.mark.parametrize("count", [0, 1])
    def test_initial(self, count):
        assert get_stage(count) == "initial"

    @pytest.mark.parametrize("count", [2, 3])
    def test_middle(self, count):
        assert get_stage(count) == "middle"

    @pytest.mark.parametrize("count", [4, 5, 40])
    def test_late(self, count):
        assert get_stage(count) == "late"


class TestAskCoach:
    """Retry and fallback behaviour of a single coaching request."""

    def test_success_first_try(self):
        client = FakeClient(["What made it feel great?"])
        reply, waits = ask(client)
        assert reply.text == "What made it feel great?"
        assert reply.fallback is False
        assert reply.attempts == 1
        assert waits == []

    def test_three_rate_limits_back_off_exponentially(self):
        client = FakeClient([CoachRateLimited(), CoachRateLimited(), CoachRateLimited()])
        reply, waits = ask(client)

        assert len(client.calls) == 3
        assert waits == [1, 2, 4]
        assert reply.fallback is True
        assert reply.reason == FALLBACK_UPSTREAM_ERROR
        assert reply.attempts == 3
        assert reply.text in FALLBACK_QUESTIONS["initial"]

    def test_rate_limit_then_success(self):
        client = FakeClient([CoachRateLimited(), "Tell me more?"])
        reply, waits = ask(client)
        assert reply.text == "Tell me more?"
        assert waits == [1]

    def test_other_failures_wait_flat_second_except_last(self):
        client = FakeClient([RuntimeError("boom"), ConnectionError("down"), ValueError("bad")])
        reply, waits = ask(client, message_count=2)
        assert len(client.calls) == 3
        assert waits == [1.0, 1.0]
        assert reply.fallback is True
        assert reply.text in FALLBACK_QUESTIONS["middle"]

    def test_empty_reply_counts_as_failure(self):
        client = FakeClient([EmptyReplyError(), "Second try?"])
        reply, waits = ask(client)
        assert reply.text == "Second try?"
        assert waits == [1.0]

    def test_missing_credentials_skips_network(self):
        reply, waits = ask(None, message_count=4)
        assert reply.fallback is True
        assert reply.reason == FALLBACK_MISSING_CREDENTIALS
        assert reply.attempts == 0
        assert waits == []
        assert reply.text in FALLBACK_QUESTIONS["late"]

    def test_status_reported_then_cleared(self):
        statuses = []
        client = FakeClient([CoachRateLimited(), "Ok?"])
        ask(client, on_status=statuses.append)
        assert statuses[0] is not None
        assert "1s" in statuses[0]
        assert statuses[-1] is None

    def test_fallback_choice_uses_rng(self):
        client = FakeClient([RuntimeError()] * 3)
        reply_a, _ = ask(client, rng=random.Random(7))
        client = FakeClient([RuntimeError()] * 3)
        reply_b, _ = ask(client, rng=random.Random(7))
        assert reply_a.text == reply_b.text

    def test_system_prompt_carries_topic_and_stage(self):
        client = FakeClient(["Q?"])
        ask(client, message_count=3)
        system, messages = client.calls[0]
        assert "Shipped the feature on time" in system
        assert "middle stage" in system
        assert messages == [{"role": "user", "content": "It felt great"}]


class TestBuildMessages:
    """Transcript to Messages API turns."""

    transcript = [
        {"sender": "ai", "text": "Why this topic?"},
        {"sender": "user", "text": "Because"},
        {"sender": "ai", "text": "Tell me more"},
        {"sender": "user", "text": "More"},
        {"sender": "user", "text": "And more"},
    ]

    def test_drops_leading_ai_and_merges_runs(self):
        assert build_messages(self.transcript) == [
            {"role": "user", "content": "Because"},
            {"role": "assistant", "content": "Tell me more"},
            {"role": "user", "content": "More\n\nAnd more"},
        ]

    def test_latest_only(self):
        assert build_messages(self.transcript, send_transcript=False) == [
            {"role": "user", "content": "And more"},
        ]

    def test_does_not_mutate_transcript(self):
        transcript = [dict(m) for m in self.transcript]
        build_messages(transcript)
        assert transcript == self.transcript

    def test_prompt_interpolates_topic(self):
        assert '"Ran 5k"' in build_system_prompt("Ran 5k", "late")


class TestCoachClient:
    """Anthropic SDK wrapper."""

    def _client(self, create):
        inner = SimpleNamespace(messages=SimpleNamespace(create=create))
        return CoachClient(api_key="test", model="test-model", max_tokens=50, client=inner)

    def test_joins_text_blocks(self):
        async def create(**kwargs):
            assert kwargs["model"] == "test-model"
            assert kwargs["system"] == "sys"
            return SimpleNamespace(content=[
                SimpleNamespace(type="text", text="What "),
                SimpleNamespace(type="tool_use"),
                SimpleNamespace(type="text", text="happened?"),
            ])

        client = self._client(create)
        text = asyncio.run(client.complete("sys", [{"role": "user", "content": "hi"}]))
        assert text == "What happened?"

    def test_empty_reply(self):
        async def create(**kwargs):
            return SimpleNamespace(content=[SimpleNamespace(type="text", text="  ")])

        with pytest.raises(EmptyReplyError):
            asyncio.run(self._client(create).complete("sys", []))

    def test_rate_limit_translated(self):
        async def create(**kwargs):
            request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
            response = httpx.Response(429, request=request)
            raise anthropic.RateLimitError("slow down", response=response, body=None)

        with pytest.raises(CoachRateLimited):
            asyncio.run(self._client(create).complete("sys", []))


class TestCoachingChat:
    """Transcript state around ask_coach()."""

    def test_opening_quotes_topic(self):
        chat = CoachingChat("Shipped the feature on time")
        message = chat.initialize()
        assert message["sender"] == "ai"
        assert message["text"] == opening_question("Shipped the feature on time")
        assert '"Shipped the feature on time"' in message["text"]
        assert chat.messages == [message]

    def test_blank_message_dropped(self):
        chat = CoachingChat("topic")
        chat.initialize()
        assert asyncio.run(chat.send_message("   ")) is None
        assert len(chat.messages) == 1

    def test_busy_send_dropped(self):
        chat = CoachingChat("topic")
        chat.initialize()
        chat.is_responding = True
        assert asyncio.run(chat.send_message("hello")) is None
        assert len(chat.messages) == 1

    def test_concurrent_send_is_dropped_not_queued(self):
        async def scenario():
            gate = asyncio.Event()

            class SlowClient:
                calls = 0

                async def complete(self, system, messages):
                    SlowClient.calls += 1
                    await gate.wait()
                    return "Why?"

            chat = CoachingChat("topic", client=SlowClient())
            chat.initialize()
            first = asyncio.create_task(chat.send_message("one"))
            await asyncio.sleep(0)
            busy = chat.is_responding
            second = await chat.send_message("two")
            gate.set()
            reply = await first
            return busy, second, reply, chat, SlowClient.calls

        busy, second, reply, chat, calls = asyncio.run(scenario())
        assert busy is True
        assert second is None
        assert reply["text"] == "Why?"
        assert calls == 1
        assert [m["sender"] for m in chat.messages] == ["ai", "user", "ai"]
        assert chat.is_responding is False

    def test_save_hook_after_each_append(self):
        delays = []
        chat = CoachingChat("topic", on_change=delays.append)
        chat.initialize()
        asyncio.run(chat.send_message("hello"))
        assert delays == [AI_SAVE_DELAY, USER_SAVE_DELAY, AI_SAVE_DELAY]

    def test_busy_and_status_cleared_after_fallback(self):
        sleep = RecordingSleep()
        chat = CoachingChat("topic", client=FakeClient([CoachRateLimited()] * 3), sleep=sleep)
        chat.initialize()
        reply = asyncio.run(chat.send_message("hello"))
        assert reply["sender"] == "ai"
        assert chat.is_responding is False
        assert chat.status is None
        assert chat.last_reply.reason == FALLBACK_UPSTREAM_ERROR
        assert sleep.waits == [1, 2, 4]

    def test_stages_follow_user_turns(self):
        chat = CoachingChat("topic", client=None)
        chat.initialize()
        replies = [asyncio.run(chat.send_message(f"turn {i}"))["text"] for i in range(6)]

        assert replies[0] in FALLBACK_QUESTIONS["initial"]
        assert replies[1] in FALLBACK_QUESTIONS["initial"]
        assert replies[2] in FALLBACK_QUESTIONS["middle"]
        assert replies[3] in FALLBACK_QUESTIONS["middle"]
        assert replies[4] in FALLBACK_QUESTIONS["late"]
        assert replies[5] in FALLBACK_QUESTIONS["late"]

    def test_transcript_sent_upstream(self):
        client = FakeClient(["First?", "Second?"])
        chat = CoachingChat("topic", client=client)
        chat.initialize()
        asyncio.run(chat.send_message("one"))
        asyncio.run(chat.send_message("two"))
        _, messages = client.calls[1]
        assert messages == [
            {"role": "user", "content": "one"},
            {"role": "assistant", "content": "First?"},
            {"role": "user", "content": "two"},
        ]

    def test_topic_is_read_only(self):
        chat = CoachingChat("topic")
        with pytest.raises(AttributeError):
            chat.topic = "other"

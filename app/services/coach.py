"""
Coaching Chat Service

Asks the user follow-up questions about the note they picked as today's
topic. Questions come from Claude when an API key is configured, with a
short retry loop:
- Rate limited => wait 2**attempt seconds (1, 2, 4) and retry
- Any other failure => wait 1 second and retry, except after the last attempt
- First non-empty reply wins

When every attempt fails, or no API key is configured at all, a canned
question for the current conversation stage is used instead. Nothing here
raises to the caller; the worst case is a generic question plus a status hint.
"""

import asyncio
import logging
import os
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import anthropic

from app.services.board import new_id
from app.services.coach_prompts import (
    FALLBACK_QUESTIONS,
    OPENING_TEMPLATE,
    STAGE_GUIDANCE,
    SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
ERROR_RETRY_DELAY = 1.0

# Autosave delays after transcript changes (seconds)
USER_SAVE_DELAY = 0.05
AI_SAVE_DELAY = 0.1

FALLBACK_UPSTREAM_ERROR = "upstream_error"
FALLBACK_MISSING_CREDENTIALS = "missing_credentials"

DEFAULT_MODEL = "claude-3-5-haiku-20241022"


class CoachRateLimited(Exception):
    """Upstream asked us to slow down."""


class EmptyReplyError(Exception):
    """Upstream answered but there was no usable text in it."""


@dataclass
class CoachReply:
    text: str
    fallback: bool = False
    reason: Optional[str] = None
    attempts: int = 0


def get_stage(message_count: int) -> str:
    """
    Conversation stage from the number of exchanges so far.

    0-1 => initial, 2-3 => middle, 4+ => late
    """
    if message_count <= 1:
        return "initial"
    if message_count <= 3:
        return "middle"
    return "late"


def fallback_question(stage: str, rng: Optional[random.Random] = None) -> str:
    questions = FALLBACK_QUESTIONS[stage]
    return (rng or random).choice(questions)


def opening_question(topic: str) -> str:
    return OPENING_TEMPLATE.format(topic=topic)


def build_system_prompt(topic: str, stage: str) -> str:
    return SYSTEM_PROMPT.format(topic=topic, stage=stage, guidance=STAGE_GUIDANCE[stage])


def build_messages(transcript: List[dict], send_transcript: bool = True) -> List[dict]:
    """
    Map a chat transcript to Messages API turns.

    The API wants a user turn first and alternating roles, so leading AI
    messages are dropped and runs from the same sender are merged.
    """
    if not send_transcript:
        for message in reversed(transcript):
            if message["sender"] == "user":
                return [{"role": "user", "content": message["text"]}]
        return []

    turns: List[dict] = []
    for message in transcript:
        role = "user" if message["sender"] == "user" else "assistant"
        if not turns and role == "assistant":
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += "\n\n" + message["text"]
        else:
            turns.append({"role": role, "content": message["text"]})
    return turns


class CoachClient:
    """Anthropic Messages API wrapper. Retries are left to ask_coach()."""

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        client=None,
    ):
        self.model = model or os.getenv("COACH_MODEL", DEFAULT_MODEL)
        self.max_tokens = max_tokens or int(os.getenv("COACH_MAX_TOKENS", "300"))
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def complete(self, system: str, messages: List[dict]) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.7,
                system=system,
                messages=messages,
            )
        except anthropic.RateLimitError as e:
            raise CoachRateLimited(str(e)) from e

        text = ""
        for block in response.content:
            if block.type == "text":
                text += block.text

        text = text.strip()
        if not text:
            raise EmptyReplyError("Reply contained no text")
        return text


def get_coach_client() -> Optional[CoachClient]:
    """Client built from the environment, or None when no API key is set."""
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        return None
    return CoachClient(api_key=api_key)


def send_transcript_enabled() -> bool:
    return os.getenv("COACH_SEND_TRANSCRIPT", "true").lower() == "true"


async def ask_coach(
    topic: str,
    transcript: List[dict],
    message_count: int,
    client: Optional[CoachClient],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
    on_status: Optional[Callable[[Optional[str]], None]] = None,
    send_transcript: bool = True,
) -> CoachReply:
    """
    Next coaching question for the conversation.

    Args:
        topic: Text of the note being discussed
        transcript: Chat so far, ending with the user's latest message
        message_count: Exchanges before the latest message (selects the stage)
        client: CoachClient, or None when credentials are missing
        sleep: Awaitable delay, injectable for tests
        on_status: Receives retry hints while waiting, None when done

    Returns:
        CoachReply; fallback replies carry the reason in `reason`
    """
    stage = get_stage(message_count)
    status = on_status or (lambda _: None)

    if client is None:
        logger.warning("ANTHROPIC_API_KEY is not set, using fallback question")
        return CoachReply(
            text=fallback_question(stage, rng),
            fallback=True,
            reason=FALLBACK_MISSING_CREDENTIALS,
        )

    system = build_system_prompt(topic, stage)
    messages = build_messages(transcript, send_transcript)

    attempts = 0
    try:
        for attempt in range(MAX_ATTEMPTS):
            attempts += 1
            logger.info("Attempt %d: calling coach model", attempt + 1)
            try:
                text = await client.complete(system, messages)
                logger.info("Got coach reply on attempt %d", attempt + 1)
                return CoachReply(text=text, attempts=attempts)
            except CoachRateLimited:
                wait = 2 ** attempt
                logger.info("Rate limit hit, waiting %ss", wait)
                status(f"Busy right now, retrying in {wait}s...")
                await sleep(wait)
            except Exception as e:
                logger.error("Attempt %d failed: %s", attempt + 1, e)
                if attempt == MAX_ATTEMPTS - 1:
                    break
                status("Connection problem, retrying...")
                await sleep(ERROR_RETRY_DELAY)
    finally:
        status(None)

    logger.info("Using fallback question after %d attempts", attempts)
    return CoachReply(
        text=fallback_question(stage, rng),
        fallback=True,
        reason=FALLBACK_UPSTREAM_ERROR,
        attempts=attempts,
    )


class CoachingChat:
    """
    One topic's chat transcript plus the busy flag guarding sends.

    on_change(delay) is called after each transcript append so the owner
    can schedule a save; it is never awaited.
    """

    def __init__(
        self,
        topic: str,
        client: Optional[CoachClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        on_change: Optional[Callable[[float], None]] = None,
        messages: Optional[List[dict]] = None,
        send_transcript: bool = True,
    ):
        self._topic = topic
        self.client = client
        self.messages: List[dict] = list(messages or [])
        self.is_responding = False
        self.status: Optional[str] = None
        self.last_reply: Optional[CoachReply] = None
        self._sleep = sleep
        self._rng = rng
        self._on_change = on_change
        self._send_transcript = send_transcript

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def exchange_count(self) -> int:
        return sum(1 for m in self.messages if m["sender"] == "user")

    def _append(self, text: str, sender: str, save_delay: float) -> dict:
        message = {"id": new_id(), "text": text, "sender": sender}
        self.messages.append(message)
        if self._on_change:
            self._on_change(save_delay)
        return message

    def initialize(self) -> dict:
        """Seed the transcript with the opening question. No upstream call."""
        self.messages = []
        return self._append(opening_question(self._topic), "ai", AI_SAVE_DELAY)

    def _set_status(self, status: Optional[str]):
        self.status = status

    async def send_message(self, text: str) -> Optional[dict]:
        """
        Send the user's message and append the coach's answer.

        Returns the AI message, or None when the send was dropped (blank
        text or a reply still outstanding).
        """
        if not text or not text.strip() or self.is_responding:
            return None

        message_count = self.exchange_count
        self._append(text, "user", USER_SAVE_DELAY)
        self.is_responding = True

        try:
            reply = await ask_coach(
                self._topic,
                self.messages,
                message_count,
                self.client,
                sleep=self._sleep,
                rng=self._rng,
                on_status=self._set_status,
                send_transcript=self._send_transcript,
            )
        finally:
            self.is_responding = False
            self.status = None

        self.last_reply = reply
        return self._append(reply.text, "ai", AI_SAVE_DELAY)

"""
Reply generator interface for AI review-reply drafts.

``AnthropicReplyGenerator`` talks to the Anthropic Messages API over httpx;
``StubReplyGenerator`` gives canned replies for local runs (AI_STUB_REPLIES).
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TONE = "professional and friendly"


@dataclass
class ReplyContext:
    business_name: str
    reviewer_name: str | None
    rating: int | None
    body: str | None
    tone: str = DEFAULT_TONE
    business_context: str | None = None


def build_reply_prompt(ctx: ReplyContext) -> str:
    rating = f"{ctx.rating}/5 stars" if ctx.rating is not None else "no star rating"
    lines = [
        f"You are writing a reply on behalf of {ctx.business_name} to a customer review.",
        f"Tone: {ctx.tone}.",
    ]
    if ctx.business_context:
        lines.append(f"About the business: {ctx.business_context}")
    lines += [
        "",
        f"Reviewer: {ctx.reviewer_name or 'Anonymous'}",
        f"Rating: {rating}",
        f"Review: {ctx.body or '(no text, rating only)'}",
        "",
        "Rules:",
        "- Write 2-4 sentences. No emojis, no hashtags.",
        "- Positive review: thank them and mention something specific they said.",
        "- Negative review: acknowledge the experience, apologize without admitting fault, invite them to get in touch directly.",
        "- Neutral review: thank them and note you are always working to improve.",
        "- Never offer discounts, refunds or compensation.",
        "- Address the reviewer by first name if one is available. Do not start with 'Dear'.",
        "- Reply with the response text only.",
    ]
    return "\n".join(lines)


class ReplyGenerator(ABC):
    @abstractmethod
    async def generate(self, ctx: ReplyContext) -> str:
        """Return the reply text; raise on failure."""


class AnthropicReplyGenerator(ReplyGenerator):
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        max_tokens: int = 256,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._transport = transport

    async def generate(self, ctx: ReplyContext) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(
                ANTHROPIC_MESSAGES_URL,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                },
                json={
                    "model": self.model,
                    "max_tokens": self.max_tokens,
                    "messages": [{"role": "user", "content": build_reply_prompt(ctx)}],
                },
            )
        if r.status_code >= 400:
            raise RuntimeError(f"Anthropic API {r.status_code}: {r.text[:200]}")

        data = r.json()
        text = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text"
        ).strip()
        if not text:
            raise RuntimeError("Anthropic API returned an empty reply")
        return text


class StubReplyGenerator(ReplyGenerator):
    """Deterministic placeholder replies."""

    async def generate(self, ctx: ReplyContext) -> str:
        first_name = (ctx.reviewer_name or "").split(" ")[0] or "there"
        if ctx.rating is not None and ctx.rating <= 2:
            return (
                f"Hi {first_name}, we're sorry your visit to {ctx.business_name} fell short. "
                "Please reach out to us directly so we can make it right."
            )
        return f"Thank you, {first_name}! We appreciate you taking the time to review {ctx.business_name}."

"""
Review platform client contract.

A platform client pulls review pages for one external resource and posts
replies back to it. Clients are constructed once per process and injected
into the sync coordinator, the reply dispatcher and the retry queue.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class PlatformAuthError(RuntimeError):
    """The integration cannot authenticate and has to be reconnected."""


class PlatformRequestError(RuntimeError):
    """Non-2xx response from a review platform."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class ReviewPage:
    reviews: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None
    total_review_count: int | None = None
    average_rating: float | None = None


class ReviewPlatformClient(ABC):
    platform: str

    @abstractmethod
    async def verify_credentials(self) -> None:
        """Raise if the integration cannot authenticate."""

    @abstractmethod
    async def fetch_reviews(
        self,
        resource: str,
        *,
        page_size: int = 50,
        page_token: str | None = None,
        order_by: str | None = None,
    ) -> ReviewPage:
        ...

    @abstractmethod
    async def post_reply(self, reply_target: str, text: str) -> None:
        ...

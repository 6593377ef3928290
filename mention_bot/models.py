"""
Data types shared across the mention pipeline.

Mention ids are opaque strings: they are passed back to the API as
`since_id` and never converted to integers.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

HASHTAG_PATTERN = re.compile(r"#(\w+)")


def extract_hashtags(text: str) -> list[str]:
    """Return the lower-cased hashtags found in text, in order of appearance."""
    return [tag.lower() for tag in HASHTAG_PATTERN.findall(text or "")]


@dataclass(frozen=True)
class Mention:
    """An inbound post addressed to the bot's account."""

    id: str
    text: str
    author_handle: str
    author_id: str = ""
    created_at: Optional[datetime] = None

    @property
    def hashtags(self) -> list[str]:
        return extract_hashtags(self.text)

    def has_tag(self, tag: str) -> bool:
        """Case-insensitive check for `#tag` (the leading # is optional in tag)."""
        return tag.lstrip("#").lower() in self.hashtags


@dataclass
class ProcessingOutcome:
    """Result of driving one mention through generate + post."""

    mention_id: str
    success: bool
    response_text: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class RetryRecord:
    """Bookkeeping for one in-flight retried operation."""

    item_id: str
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None


@dataclass
class FailureRecord:
    """A mention that failed permanently, kept with its payload for operators."""

    mention: Mention
    error: str
    attempts: int = 1
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class GenerationResult:
    success: bool
    text: Optional[str] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class PostedReply:
    id: str
    text: str = ""

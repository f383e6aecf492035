from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

SCHEMA_VERSION = 2
BACKUP_FORMAT_VERSION = "1.0"
DEFAULT_LANGUAGE = "ja"

RecordType = Literal["twitter", "bluesky", "mastodon"]
RECORD_TYPES: tuple[str, ...] = ("twitter", "bluesky", "mastodon")


class SourceType(str, Enum):
    """Archive formats the importer understands."""

    TWITTER = "twitter"
    TWILOG = "twilog"
    BLUESKY = "bluesky"
    MASTODON = "mastodon"
    BACKUP = "backup"

    @property
    def record_type(self) -> str | None:
        """Platform the records belong to; None for backups, which mix platforms."""
        # Twilog is a mirror of a Twitter account.
        if self is SourceType.TWILOG:
            return "twitter"
        if self is SourceType.BACKUP:
            return None
        return self.value

    @classmethod
    def parse(cls, value: "SourceType | str") -> "SourceType":
        if isinstance(value, SourceType):
            return value
        return cls(str(value or "").strip().lower())


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def record_id(source_type: str, source_id: str) -> str:
    return f"{source_type}_{source_id}"


def period_key_for(created_at: datetime) -> str:
    return _as_utc(created_at).astimezone(timezone.utc).strftime("%Y-%m")


class Author(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    username: str
    avatar_url: str | None = None


class Metrics(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    likes: int = 0
    shares: int = 0
    replies: int = 0
    views: int | None = None


class MediaEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str
    url: str
    alt: str | None = None
    preview_url: str | None = None


class UrlEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    expanded_url: str | None = None
    display_url: str | None = None
    title: str | None = None


class Mention(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    username: str
    name: str | None = None
    url: str | None = None


class Post(BaseModel):
    """
    The unified record every source archive is normalized into.

    `id` and `period_key` are derived from other fields and are never taken
    from input.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    source_id: str = Field(min_length=1)
    source_type: RecordType
    created_at: datetime
    content: str = ""
    author: Author
    metrics: Metrics = Field(default_factory=Metrics)
    language: str = DEFAULT_LANGUAGE
    media: tuple[MediaEntry, ...] = ()
    urls: tuple[UrlEntry, ...] = ()
    hashtags: tuple[str, ...] = ()
    mentions: tuple[Mention, ...] = ()
    is_repost: bool = False
    source_specific: dict[str, Any] = Field(default_factory=dict)
    canonical_url: str | None = None
    imported_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    schema_version: int = SCHEMA_VERSION

    @field_validator("created_at", "imported_at")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def id(self) -> str:
        return record_id(self.source_type, self.source_id)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def period_key(self) -> str:
        return period_key_for(self.created_at)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json_dict(cls, data: Mapping[str, Any]) -> "Post":
        payload = {k: v for k, v in data.items() if k not in {"id", "period_key"}}
        return cls.model_validate(payload)


@dataclass(frozen=True)
class PostCheck:
    passed: bool
    reasons: Sequence[str]


def validate_post(post: Post) -> PostCheck:
    """Re-check record invariants right before a post is accepted."""
    reasons: list[str] = []

    if post.source_type not in RECORD_TYPES:
        reasons.append("invalid_source_type")
    if not post.source_id.strip():
        reasons.append("missing_source_id")
    if post.created_at.tzinfo is None:
        reasons.append("naive_created_at")

    m = post.metrics
    if min(m.likes, m.shares, m.replies) < 0 or (m.views is not None and m.views < 0):
        reasons.append("negative_metrics")

    if not post.author.username.strip():
        reasons.append("missing_author")

    return PostCheck(passed=not reasons, reasons=reasons)

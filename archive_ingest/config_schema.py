from __future__ import annotations

import re
import unicodedata
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_TWITTER_NAME_RE = re.compile(r"[^A-Za-z0-9_]")
_BLUESKY_HANDLE_RE = re.compile(r"[^a-z0-9.\-]")
_MASTODON_ACCOUNT_RE = re.compile(r"[^A-Za-z0-9_.@\-]")
_DOMAIN_RE = re.compile(r"^[a-z0-9\-]+(\.[a-z0-9\-]+)+$")


def _fold(value: str | None) -> str:
    return unicodedata.normalize("NFKC", value or "").strip()


def normalize_twitter_username(value: str | None) -> str | None:
    """Fold full-width input, drop a leading '@', keep [A-Za-z0-9_] (max 15)."""
    name = _fold(value).lstrip("@")
    name = _TWITTER_NAME_RE.sub("", name)[:15]
    return name or None


def normalize_bluesky_handle(value: str | None) -> str | None:
    handle = _fold(value).lstrip("@").lower()
    handle = _BLUESKY_HANDLE_RE.sub("", handle)
    if not handle:
        return None
    if not _DOMAIN_RE.fullmatch(handle):
        raise ValueError("bluesky handle must look like a domain (e.g. alice.bsky.social)")
    return handle


def normalize_mastodon_account(value: str | None) -> str | None:
    account = _fold(value).lstrip("@")
    account = _MASTODON_ACCOUNT_RE.sub("", account)
    if not account:
        return None
    user, sep, domain = account.partition("@")
    if not sep or not user or not _DOMAIN_RE.fullmatch(domain.lower()):
        raise ValueError("mastodon account must be user@instance")
    return f"{user}@{domain.lower()}"


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
Ratio = Annotated[float, Field(gt=0.0, le=1.0)]


class BatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    batch_size: PositiveInt = 500
    pause_seconds: float = Field(0.05, ge=0.0)
    memory_check_interval: PositiveInt = 5000


class AccountsConfig(BaseModel):
    """Owning account per source; used for author resolution and repost detection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    twitter: str | None = None
    bluesky: str | None = None
    mastodon: str | None = None

    @field_validator("twitter")
    @classmethod
    def _normalize_twitter(cls, v: str | None) -> str | None:
        return normalize_twitter_username(v)

    @field_validator("bluesky")
    @classmethod
    def _normalize_bluesky(cls, v: str | None) -> str | None:
        return normalize_bluesky_handle(v)

    @field_validator("mastodon")
    @classmethod
    def _normalize_mastodon(cls, v: str | None) -> str | None:
        return normalize_mastodon_account(v)


class DefaultsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    language: str = "ja"
    twilog_utc_offset_hours: float = Field(9.0, ge=-12.0, le=14.0)

    @field_validator("language")
    @classmethod
    def _language_must_be_set(cls, v: str) -> str:
        lang = (v or "").strip().lower()
        if not lang:
            raise ValueError("must be a non-empty language code")
        return lang


class LimitsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_file_mb: PositiveInt = 500
    max_car_file_mb: PositiveInt = 1024
    max_records: PositiveInt = 200000


class MemoryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    limit_mb: PositiveInt | None = None  # None disables pressure checks
    warning_ratio: Ratio = 0.8
    critical_ratio: Ratio = 0.9

    @model_validator(mode="after")
    def _critical_above_warning(self) -> "MemoryConfig":
        if self.critical_ratio <= self.warning_ratio:
            raise ValueError("critical_ratio must be > warning_ratio")
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    batch: BatchConfig = Field(default_factory=BatchConfig)
    accounts: AccountsConfig = Field(default_factory=AccountsConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)

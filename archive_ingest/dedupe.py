from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from . import bluesky_car, mastodon_outbox, twilog_csv, twitter_archive
from .post import Post, SourceType

_NATIVE_IDS: Mapping[SourceType, Callable[[Any], str]] = {
    SourceType.TWITTER: twitter_archive.native_id,
    SourceType.TWILOG: twilog_csv.native_id,
    SourceType.BLUESKY: bluesky_car.native_id,
    SourceType.MASTODON: mastodon_outbox.native_id,
}


def dedupe_key(record_type: str, identifier: str) -> str:
    return f"{record_type}:{identifier}"


def key_for(record: Any, source_type: SourceType | str) -> str:
    """
    Duplicate-detection key for a normalized Post or a source-native record.

    Both forms of the same item produce the same key: the platform id (or a
    content hash for Bluesky), falling back to a content fingerprint only when
    the source has no identifier.
    """
    st = SourceType.parse(source_type)
    if isinstance(record, Post):
        return dedupe_key(record.source_type, record.source_id)
    return dedupe_key(st.record_type, _NATIVE_IDS[st](record))


@dataclass
class SeenKeys:
    keys: set[str] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.keys)

    def __contains__(self, key: object) -> bool:
        return key in self.keys

    def has(self, key: str) -> bool:
        return key in self.keys

    def add(self, key: str) -> None:
        self.keys.add(key)

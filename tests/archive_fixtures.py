from __future__ import annotations

import base64
import hashlib
import json
from datetime import datetime, timezone
from typing import Any

import libipld

from archive_ingest.post import Author, Post

OWNER_DID = "did:plc:owner123"


def make_post(
    source_id: str,
    *,
    source_type: str = "twitter",
    content: str = "hello",
    created_at: datetime | None = None,
    **extra: Any,
) -> Post:
    return Post(
        source_id=source_id,
        source_type=source_type,
        created_at=created_at or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        content=content,
        author=Author(name="alice", username="alice"),
        **extra,
    )


def tweet(status_id: str, text: str, **extra: Any) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id_str": status_id,
        "id": status_id,
        "full_text": text,
        "created_at": "Wed Oct 10 20:19:24 +0000 2018",
        "favorite_count": "3",
        "retweet_count": "1",
        "lang": "en",
    }
    item.update(extra)
    return item


def tweets_js(tweets: list[dict[str, Any]], *, semicolon: bool = False, part: int = 0) -> bytes:
    body = json.dumps([{"tweet": t} for t in tweets], ensure_ascii=False, indent=2)
    text = f"window.YTD.tweets.part{part} = {body}" + (";" if semicolon else "")
    return text.encode("utf-8")


def outbox(items: list[dict[str, Any]]) -> bytes:
    doc = {
        "@context": "https://www.w3.org/ns/activitystreams",
        "id": "outbox.json",
        "type": "OrderedCollection",
        "totalItems": len(items),
        "orderedItems": items,
    }
    return json.dumps(doc, ensure_ascii=False).encode("utf-8")


def create_note(
    status_id: str,
    content: str,
    *,
    host: str = "mastodon.social",
    user: str = "alice",
    published: str = "2024-03-01T10:00:00Z",
    **note_extra: Any,
) -> dict[str, Any]:
    actor = f"https://{host}/users/{user}"
    note = {
        "id": f"{actor}/statuses/{status_id}",
        "type": "Note",
        "published": published,
        "url": f"https://{host}/@{user}/{status_id}",
        "attributedTo": actor,
        "to": ["https://www.w3.org/ns/activitystreams#Public"],
        "cc": [f"{actor}/followers"],
        "content": content,
    }
    note.update(note_extra)
    return {
        "id": f"{actor}/statuses/{status_id}/activity",
        "type": "Create",
        "actor": actor,
        "published": published,
        "to": note["to"],
        "cc": note["cc"],
        "object": note,
    }


def announce(
    status_id: str,
    target: str,
    original_author: str,
    *,
    host: str = "mastodon.social",
    user: str = "alice",
    published: str = "2024-03-02T10:00:00Z",
) -> dict[str, Any]:
    actor = f"https://{host}/users/{user}"
    return {
        "id": f"{actor}/statuses/{status_id}/activity",
        "type": "Announce",
        "actor": actor,
        "published": published,
        "to": ["https://www.w3.org/ns/activitystreams#Public"],
        "cc": [original_author, f"{actor}/followers"],
        "object": target,
    }


def _varint(n: int) -> bytes:
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def _cid_bytes(block: bytes) -> bytes:
    # CIDv1, dag-cbor codec, sha2-256 multihash.
    return b"\x01\x71\x12\x20" + hashlib.sha256(block).digest()


def _cid_str(cid: bytes) -> str:
    return "b" + base64.b32encode(cid).decode("ascii").lower().rstrip("=")


def block_cid(record: dict[str, Any]) -> str:
    return _cid_str(_cid_bytes(libipld.encode_dag_cbor(record)))


def _car_header(root: bytes) -> bytes:
    # {"roots": [CID(root)], "version": 1} in canonical DAG-CBOR.
    return (
        b"\xa2"
        + b"\x65roots"
        + b"\x81\xd8\x2a\x58\x25\x00"
        + root
        + b"\x67version"
        + b"\x01"
    )


class Link(bytes):
    """Raw CID bytes written as a DAG-CBOR link (tag 42)."""


def _cbor_head(major: int, n: int) -> bytes:
    if n < 24:
        return bytes([major << 5 | n])
    if n < 256:
        return bytes([major << 5 | 24, n])
    return bytes([major << 5 | 25]) + n.to_bytes(2, "big")


def _dag_cbor(value: Any) -> bytes:
    # Enough of canonical DAG-CBOR for tree nodes, which libipld cannot build
    # because it has no way to express a CID link.
    if value is None:
        return b"\xf6"
    if isinstance(value, Link):
        data = b"\x00" + bytes(value)
        return b"\xd8\x2a" + _cbor_head(2, len(data)) + data
    if isinstance(value, bytes):
        return _cbor_head(2, len(value)) + value
    if isinstance(value, str):
        data = value.encode("utf-8")
        return _cbor_head(3, len(data)) + data
    if isinstance(value, int):
        return _cbor_head(0, value)
    if isinstance(value, list):
        return _cbor_head(4, len(value)) + b"".join(_dag_cbor(v) for v in value)
    if isinstance(value, dict):
        keys = sorted(value, key=lambda k: (len(k.encode("utf-8")), k.encode("utf-8")))
        return _cbor_head(5, len(keys)) + b"".join(_dag_cbor(k) + _dag_cbor(value[k]) for k in keys)
    raise TypeError(f"cannot encode {type(value).__name__}")


def tree_entries(paths: list[tuple[str, dict[str, Any]]]) -> list[dict[str, Any]]:
    """Prefix-compressed tree entries mapping `collection/rkey` paths to records."""
    entries: list[dict[str, Any]] = []
    previous = b""
    for path, record in sorted(paths, key=lambda item: item[0]):
        key = path.encode("utf-8")
        shared = 0
        while shared < min(len(key), len(previous)) and key[shared] == previous[shared]:
            shared += 1
        entries.append(
            {
                "k": key[shared:],
                "p": shared,
                "t": None,
                "v": Link(_cid_bytes(libipld.encode_dag_cbor(record))),
            }
        )
        previous = key
    return entries


def build_car(
    records: list[dict[str, Any]],
    *,
    did: str = OWNER_DID,
    tree: list[dict[str, Any]] | None = None,
) -> bytes:
    """
    Write a CAR v1 file whose root is a commit block followed by `records`.

    `tree` adds one search tree node holding those entries after the records.
    """
    commit = libipld.encode_dag_cbor({"did": did, "rev": "3kaaaaaaaaa22", "version": 3})
    blocks = [commit] + [libipld.encode_dag_cbor(r) for r in records]
    if tree is not None:
        blocks.append(_dag_cbor({"e": tree, "l": None}))
    cids = [_cid_bytes(b) for b in blocks]

    header = _car_header(cids[0])
    out = bytearray(_varint(len(header)) + header)
    for cid, data in zip(cids, blocks):
        out += _varint(len(cid) + len(data)) + cid + data
    return bytes(out)


def bsky_post(text: str, created_at: str = "2024-05-01T09:00:00.000Z", **extra: Any) -> dict[str, Any]:
    record: dict[str, Any] = {"$type": "app.bsky.feed.post", "text": text, "createdAt": created_at}
    record.update(extra)
    return record


def bsky_repost(uri: str, cid: str, created_at: str = "2024-05-02T09:00:00.000Z") -> dict[str, Any]:
    return {
        "$type": "app.bsky.feed.repost",
        "subject": {"uri": uri, "cid": cid},
        "createdAt": created_at,
    }

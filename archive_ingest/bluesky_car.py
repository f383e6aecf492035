from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from atproto import CAR, CID

from .context import ImportContext
from .errors import FormatError
from .normalize import coerce_str, normalize_language, sanitize_content
from .post import Author, MediaEntry, Mention, Post, UrlEntry

POST_TYPE = "app.bsky.feed.post"
REPOST_TYPE = "app.bsky.feed.repost"
PROFILE_TYPE = "app.bsky.actor.profile"
REASON_REPOST = "app.bsky.feed.defs#reasonRepost"

_TID_ALPHABET = "234567abcdefghijklmnopqrstuvwxyz"
_CDN = "https://cdn.bsky.app/img"


@dataclass(frozen=True)
class BlockRecord:
    """A post or repost record found in a repository CAR export."""

    cid: str
    kind: str
    value: Mapping[str, Any]
    rkey: str
    rkey_derived: bool
    did: str | None = None
    handle: str | None = None
    display_name: str | None = None
    avatar_ref: str | None = None
    target: Mapping[str, Any] | None = None
    reason: Mapping[str, Any] | None = None

    @property
    def collection(self) -> str:
        return REPOST_TYPE if self.kind == "repost" else POST_TYPE

    @property
    def uri(self) -> str | None:
        if not self.did:
            return None
        return f"at://{self.did}/{self.collection}/{self.rkey}"


def cid_text(value: Any) -> str | None:
    """Render a CID link (CID object, string or raw bytes) in its base32 string form."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return coerce_str(value.get("$link"))
    if isinstance(value, (bytes, bytearray)):
        data = bytes(value)
        if data[:1] == b"\x00":
            data = data[1:]
        try:
            return str(CID.decode(data))
        except Exception:
            return None
    return str(value)


def derive_rkey(cid: str) -> str:
    """
    Derive a stable record key from a content hash.

    Used only when the repository tree does not map a record to its real
    key. The result has the shape of a TID (13 sortable base32 characters)
    but is not the key the record was published under.
    """
    n = int.from_bytes(hashlib.sha256(cid.encode("utf-8")).digest()[:8], "big") >> 4
    chars = []
    for _ in range(12):
        chars.append(_TID_ALPHABET[n & 31])
        n >>= 5
    return "3" + "".join(reversed(chars))


def _tree_paths(blocks: Mapping[str, Any]) -> dict[str, tuple[str, str]]:
    """
    Map record CIDs to (collection, rkey) using merkle search tree nodes.

    Keys are prefix-compressed against the previous entry of the same node, so
    a malformed entry ends the walk of its node; the records it would have
    named fall back to derived keys.
    """
    paths: dict[str, tuple[str, str]] = {}
    for node in blocks.values():
        if not isinstance(node, dict) or "e" not in node or "l" not in node:
            continue
        entries = node.get("e")
        if not isinstance(entries, list):
            continue
        previous = b""
        for entry in entries:
            key = _entry_key(entry, previous)
            if key is None:
                break
            previous = key
            try:
                text = key.decode("utf-8")
            except UnicodeDecodeError:
                continue
            target = cid_text(entry.get("v"))
            collection, sep, rkey = text.partition("/")
            if target and sep and rkey:
                paths[target] = (collection, rkey)
    return paths


def _entry_key(entry: Any, previous: bytes) -> bytes | None:
    if not isinstance(entry, dict):
        return None
    suffix = entry.get("k")
    if isinstance(suffix, str):
        suffix = suffix.encode("utf-8")
    if not isinstance(suffix, (bytes, bytearray)):
        return None
    prefix = entry.get("p", 0)
    if prefix is None:
        prefix = 0
    if isinstance(prefix, bool) or not isinstance(prefix, int) or not 0 <= prefix <= len(previous):
        return None
    return previous[:prefix] + bytes(suffix)


def _uri_authority(uri: Any) -> str | None:
    s = coerce_str(uri)
    if not s or not s.startswith("at://"):
        return None
    return s[len("at://") :].split("/", 1)[0] or None


def _is_own_subject(uri: Any, did: str | None, account: str | None) -> bool:
    authority = _uri_authority(uri)
    if authority is None:
        return False
    return authority in {v for v in (did, account) if v}


def _load(raw: bytes | str) -> CAR:
    if isinstance(raw, str):
        raise FormatError("CAR archives must be read as bytes")
    try:
        return CAR.from_bytes(bytes(raw))
    except Exception as e:
        raise FormatError(f"Not a readable CAR archive: {e}") from e


def decode_car(raw: bytes | str, context: ImportContext) -> list[BlockRecord]:
    """
    Decode a Bluesky repository CAR export into post and repost records.

    Blocks are visited in container order. A repost whose subject is not in
    the archive is kept only when it points at the owning account's content.
    """
    car = _load(raw)
    root = cid_text(car.root)
    if not root:
        raise FormatError("CAR archive has no root block")

    blocks: dict[str, Any] = {}
    for key, value in car.blocks.items():
        text = cid_text(key)
        if text:
            blocks[text] = value

    commit = blocks.get(root)
    did = coerce_str(commit.get("did")) if isinstance(commit, dict) else None

    profile: Mapping[str, Any] = {}
    posts: dict[str, Mapping[str, Any]] = {}
    found_records = False
    for cid, value in blocks.items():
        if not isinstance(value, dict):
            continue
        kind = value.get("$type")
        if kind == PROFILE_TYPE and not profile:
            profile = value
        elif kind == POST_TYPE:
            posts[cid] = value
            found_records = True
        elif kind == REPOST_TYPE:
            found_records = True

    if not found_records:
        raise FormatError("CAR archive contains no post or repost records")

    handle = context.account or coerce_str(profile.get("handle"))
    display_name = coerce_str(profile.get("displayName"))
    avatar = profile.get("avatar")
    avatar_ref = _blob_ref(avatar) if isinstance(avatar, dict) else None
    paths = _tree_paths(blocks)

    out: list[BlockRecord] = []
    for cid, value in blocks.items():
        if not isinstance(value, dict) or value.get("$type") not in {POST_TYPE, REPOST_TYPE}:
            continue

        real = paths.get(cid)
        rkey = real[1] if real else derive_rkey(cid)
        common: dict[str, Any] = {
            "cid": cid,
            "value": value,
            "rkey": rkey,
            "rkey_derived": real is None,
            "did": did,
            "handle": handle,
            "display_name": display_name,
            "avatar_ref": avatar_ref,
        }

        if value["$type"] == POST_TYPE:
            out.append(BlockRecord(kind="post", **common))
            continue

        subject = value.get("subject")
        subject = subject if isinstance(subject, dict) else {}
        target = posts.get(cid_text(subject.get("cid")) or "")
        if target is None and not _is_own_subject(subject.get("uri"), did, handle):
            context.reject(
                "repost_target_unresolved", cid=cid, subject=coerce_str(subject.get("uri"))
            )
            continue

        out.append(
            BlockRecord(
                kind="repost",
                target=target,
                reason={"$type": REASON_REPOST, "by": did or handle},
                **common,
            )
        )

    return out


def native_id(record: BlockRecord) -> str:
    return record.cid


def _blob_ref(blob: Mapping[str, Any]) -> str | None:
    return cid_text(blob.get("ref")) or coerce_str(blob.get("cid"))


def _image_url(did: str | None, ref: str, variant: str) -> str:
    if did:
        return f"{_CDN}/{variant}/plain/{did}/{ref}@jpeg"
    return ref


def _images(embed: Mapping[str, Any], did: str | None) -> list[MediaEntry]:
    out: list[MediaEntry] = []
    for item in embed.get("images") or []:
        if not isinstance(item, dict) or not isinstance(item.get("image"), dict):
            continue
        ref = _blob_ref(item["image"])
        if not ref:
            continue
        out.append(
            MediaEntry(
                type="image",
                url=_image_url(did, ref, "feed_fullsize"),
                alt=coerce_str(item.get("alt")),
                preview_url=_image_url(did, ref, "feed_thumbnail"),
            )
        )
    return out


def _embed_parts(
    embed: Any, did: str | None
) -> tuple[list[MediaEntry], list[UrlEntry], dict[str, Any] | None]:
    media: list[MediaEntry] = []
    urls: list[UrlEntry] = []
    quoted: dict[str, Any] | None = None
    if not isinstance(embed, dict):
        return media, urls, quoted

    kind = embed.get("$type")
    if kind == "app.bsky.embed.images":
        media.extend(_images(embed, did))
    elif kind == "app.bsky.embed.video":
        video = embed.get("video")
        ref = _blob_ref(video) if isinstance(video, dict) else None
        if ref:
            media.append(MediaEntry(type="video", url=ref, alt=coerce_str(embed.get("alt"))))
    elif kind == "app.bsky.embed.external":
        external = embed.get("external")
        if isinstance(external, dict) and coerce_str(external.get("uri")):
            urls.append(
                UrlEntry(
                    url=external["uri"],
                    expanded_url=external["uri"],
                    title=coerce_str(external.get("title")),
                )
            )
    elif kind == "app.bsky.embed.record":
        record = embed.get("record")
        if isinstance(record, dict):
            quoted = {"uri": coerce_str(record.get("uri")), "cid": cid_text(record.get("cid"))}
    elif kind == "app.bsky.embed.recordWithMedia":
        inner = embed.get("record")
        record = inner.get("record") if isinstance(inner, dict) else None
        if isinstance(record, dict):
            quoted = {"uri": coerce_str(record.get("uri")), "cid": cid_text(record.get("cid"))}
        sub_media, sub_urls, _ = _embed_parts(embed.get("media"), did)
        media.extend(sub_media)
        urls.extend(sub_urls)
    return media, urls, quoted


def _facets(body: Mapping[str, Any]) -> tuple[list[Mention], list[UrlEntry], list[str]]:
    mentions: list[Mention] = []
    links: list[UrlEntry] = []
    tags: list[str] = []
    for facet in body.get("facets") or []:
        if not isinstance(facet, dict):
            continue
        for feature in facet.get("features") or []:
            if not isinstance(feature, dict):
                continue
            kind = feature.get("$type")
            if kind == "app.bsky.richtext.facet#mention" and coerce_str(feature.get("did")):
                did = feature["did"]
                mentions.append(Mention(username=did, url=f"https://bsky.app/profile/{did}"))
            elif kind == "app.bsky.richtext.facet#link" and coerce_str(feature.get("uri")):
                links.append(UrlEntry(url=feature["uri"], expanded_url=feature["uri"]))
            elif kind == "app.bsky.richtext.facet#tag" and coerce_str(feature.get("tag")):
                if feature["tag"] not in tags:
                    tags.append(feature["tag"])
    return mentions, links, tags


def post_url(authority: str, rkey: str) -> str:
    return f"https://bsky.app/profile/{authority}/post/{rkey}"


def _subject_url(uri: Any) -> str | None:
    s = coerce_str(uri)
    if not s or not s.startswith("at://"):
        return None
    parts = s[len("at://") :].split("/")
    if len(parts) != 3 or parts[1] != POST_TYPE:
        return None
    return post_url(parts[0], parts[2])


def parse_created_at(value: Any) -> datetime:
    s = coerce_str(value)
    if not s:
        raise ValueError("record has no createdAt")
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def normalize_block(record: BlockRecord, context: ImportContext) -> Post:
    value = record.value
    is_repost = (record.reason or {}).get("$type") == REASON_REPOST
    body: Mapping[str, Any] = (record.target or {}) if is_repost else value

    mentions, links, tags = _facets(body)
    media, embed_urls, quoted = _embed_parts(body.get("embed"), record.did)

    langs = body.get("langs")
    lang = langs[0] if isinstance(langs, list) and langs else None

    source_specific: dict[str, Any] = {
        "import_source": "bluesky",
        "cid": record.cid,
        "rkey": record.rkey,
        "rkey_derived": record.rkey_derived,
    }
    if record.uri:
        source_specific["uri"] = record.uri
    if quoted:
        source_specific["quoted_post"] = quoted

    reply = body.get("reply")
    if isinstance(reply, dict):
        parent, root = reply.get("parent"), reply.get("root")
        source_specific["reply"] = {
            "parent": coerce_str(parent.get("uri")) if isinstance(parent, dict) else None,
            "root": coerce_str(root.get("uri")) if isinstance(root, dict) else None,
        }

    canonical: str | None = None
    if is_repost:
        subject = value.get("subject") if isinstance(value.get("subject"), dict) else {}
        source_specific["reposted_uri"] = coerce_str(subject.get("uri"))
        source_specific["reposted_cid"] = cid_text(subject.get("cid"))
        canonical = _subject_url(subject.get("uri"))
    elif not record.rkey_derived and (record.handle or record.did):
        canonical = post_url(record.handle or record.did or "", record.rkey)

    handle = record.handle or "unknown"
    avatar = _image_url(record.did, record.avatar_ref, "avatar") if record.avatar_ref else None

    return Post(
        source_id=native_id(record),
        source_type="bluesky",
        created_at=parse_created_at(value.get("createdAt")),
        content=sanitize_content(coerce_str(body.get("text")) or ""),
        author=Author(name=record.display_name or handle, username=handle, avatar_url=avatar),
        language=normalize_language(lang, context.default_language),
        media=tuple(media),
        urls=tuple(links + embed_urls),
        hashtags=tuple(tags),
        mentions=tuple(mentions),
        is_repost=is_repost,
        source_specific=source_specific,
        canonical_url=canonical,
        imported_at=context.imported_at,
    )

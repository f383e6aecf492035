from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Mapping

from .context import ImportContext
from .errors import FormatError
from .normalize import (
    coerce_count,
    coerce_id,
    coerce_str,
    decode_text,
    extract_hashtags,
    extract_mentions,
    extract_urls,
    fingerprint,
    normalize_language,
    sanitize_content,
)
from .post import Author, MediaEntry, Mention, Metrics, Post, UrlEntry

_ASSIGNMENT_RE = re.compile(r"window\.YTD\.tweets?\.part\d+\s*=\s*")
_MANUAL_RT_RE = re.compile(r"^RT @([A-Za-z0-9_]+):")
_ARCHIVE_DATE_FMT = "%a %b %d %H:%M:%S %z %Y"

# Language codes Twitter uses for "no linguistic content".
_UNDETERMINED_LANGS = frozenset({"und", "qme", "qht", "qam", "zxx"})

_MEDIA_TYPES = {"photo": "image", "video": "video", "animated_gif": "gif"}


def decode_tweets_js(raw: bytes | str, context: ImportContext) -> list[dict[str, Any]]:
    """
    Decode a Twitter archive `tweets.js` file.

    The file is a script assigning a JSON array to `window.YTD.tweets.partN`;
    a bare JSON array is accepted too. Entries may wrap the tweet under a
    `tweet` key.
    """
    text = decode_text(raw, label="tweets.js").strip()

    match = _ASSIGNMENT_RE.search(text)
    body = text[match.end() :].strip() if match else text
    body = body.rstrip()
    if body.endswith(";"):
        body = body[:-1].rstrip()

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        if match:
            raise FormatError(f"tweets.js assignment is not a JSON array: {e}") from e
        raise FormatError("No window.YTD.tweets assignment or JSON array found") from e

    if not isinstance(data, list):
        raise FormatError("tweets.js must contain a JSON array of tweets")

    tweets: list[dict[str, Any]] = []
    for index, item in enumerate(data):
        tweet = item.get("tweet", item) if isinstance(item, dict) else item
        if not isinstance(tweet, dict):
            context.reject("not_an_object", index=index)
            continue
        tweets.append(tweet)
    return tweets


def _text_of(tweet: Mapping[str, Any]) -> str:
    return coerce_str(tweet.get("full_text")) or coerce_str(tweet.get("text")) or ""


def native_id(tweet: Mapping[str, Any]) -> str:
    return (
        coerce_id(tweet.get("id_str"))
        or coerce_id(tweet.get("id"))
        or fingerprint(_text_of(tweet), str(tweet.get("created_at") or ""))
    )


def parse_tweet_date(value: Any) -> datetime:
    s = coerce_str(value)
    if not s:
        raise ValueError("tweet has no created_at")
    try:
        return datetime.strptime(s, _ARCHIVE_DATE_FMT)
    except ValueError:
        pass
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def _user(tweet: Mapping[str, Any]) -> Mapping[str, Any]:
    user = tweet.get("user")
    return user if isinstance(user, dict) else {}


def _resolve_author(
    tweet: Mapping[str, Any],
    retweeted: Mapping[str, Any] | None,
    manual_rt: re.Match[str] | None,
    context: ImportContext,
) -> Author:
    if manual_rt is not None:
        handle = manual_rt.group(1)
        return Author(name=handle, username=handle)

    if retweeted is not None:
        user = _user(retweeted)
        handle = coerce_str(user.get("screen_name")) or "twitter_user"
        return Author(
            name=coerce_str(user.get("name")) or handle,
            username=handle,
            avatar_url=coerce_str(user.get("profile_image_url_https")),
        )

    user = _user(tweet)
    handle = context.account or coerce_str(user.get("screen_name")) or "twitter_user"
    return Author(
        name=coerce_str(user.get("name")) or handle,
        username=handle,
        avatar_url=coerce_str(user.get("profile_image_url_https")),
    )


def _video_url(item: Mapping[str, Any]) -> str | None:
    info = item.get("video_info")
    variants = info.get("variants") if isinstance(info, dict) else None
    if not isinstance(variants, list):
        return None
    mp4 = [
        v for v in variants
        if isinstance(v, dict) and v.get("content_type") == "video/mp4" and coerce_str(v.get("url"))
    ]
    if not mp4:
        return None
    best = max(mp4, key=lambda v: coerce_count(v.get("bitrate")))
    return coerce_str(best.get("url"))


def _media(subject: Mapping[str, Any]) -> tuple[MediaEntry, ...]:
    out: list[MediaEntry] = []
    for key in ("extended_entities", "entities"):
        block = subject.get(key)
        items = block.get("media") if isinstance(block, dict) else None
        if not isinstance(items, list) or not items:
            continue
        for item in items:
            if not isinstance(item, dict):
                continue
            # For videos and GIFs media_url_https is the poster frame.
            image = coerce_str(item.get("media_url_https")) or coerce_str(item.get("media_url"))
            kind = _MEDIA_TYPES.get(str(item.get("type") or "photo"), "image")
            if kind == "image":
                url, preview = image, f"{image}?name=thumb" if image else None
            else:
                url, preview = _video_url(item) or image, image
            if not url:
                continue
            out.append(
                MediaEntry(
                    type=kind,
                    url=url,
                    alt=coerce_str(item.get("ext_alt_text")),
                    preview_url=preview,
                )
            )
        break
    return tuple(out)


def _entities(
    entities: Mapping[str, Any], content: str
) -> tuple[tuple[UrlEntry, ...], tuple[str, ...], tuple[Mention, ...]]:
    urls = tuple(
        UrlEntry(
            url=coerce_str(u.get("url")) or coerce_str(u.get("expanded_url")) or "",
            expanded_url=coerce_str(u.get("expanded_url")),
            display_url=coerce_str(u.get("display_url")),
        )
        for u in entities.get("urls") or []
        if isinstance(u, dict) and (u.get("url") or u.get("expanded_url"))
    )
    hashtags = tuple(
        str(h.get("text"))
        for h in entities.get("hashtags") or []
        if isinstance(h, dict) and coerce_str(h.get("text"))
    )
    mentions = tuple(
        Mention(
            username=str(m["screen_name"]),
            name=coerce_str(m.get("name")),
            url=f"https://twitter.com/{m['screen_name']}",
        )
        for m in entities.get("user_mentions") or []
        if isinstance(m, dict) and coerce_str(m.get("screen_name"))
    )
    if not hashtags:
        hashtags = extract_hashtags(content)
    return urls, hashtags, mentions


def tweet_url(username: str | None, status_id: str) -> str:
    if username:
        return f"https://twitter.com/{username}/status/{status_id}"
    return f"https://twitter.com/i/status/{status_id}"


def normalize_tweet(tweet: Mapping[str, Any], context: ImportContext) -> Post:
    source_id = native_id(tweet)
    retweeted = tweet.get("retweeted_status")
    if not isinstance(retweeted, dict):
        retweeted = None

    own_text = _text_of(tweet)
    manual_rt = _MANUAL_RT_RE.match(own_text)
    subject: Mapping[str, Any] = retweeted or tweet
    content = sanitize_content(_text_of(subject))

    entities = subject.get("entities")
    if isinstance(entities, dict):
        urls, hashtags, mentions = _entities(entities, content)
    else:
        urls = tuple(UrlEntry(url=u) for u in extract_urls(content))
        hashtags = extract_hashtags(content)
        mentions = tuple(Mention(username=m) for m in extract_mentions(content))

    lang = coerce_str(subject.get("lang"))
    if lang and lang.lower() in _UNDETERMINED_LANGS:
        lang = None

    owner = context.account or coerce_str(_user(tweet).get("screen_name"))
    author = _resolve_author(tweet, retweeted, manual_rt, context)

    source_specific: dict[str, Any] = {"import_source": "twitter"}
    for key in (
        "in_reply_to_status_id_str",
        "in_reply_to_screen_name",
        "quoted_status_id_str",
    ):
        value = coerce_id(tweet.get(key))
        if value:
            source_specific[key] = value
    if tweet.get("is_quote_status") is True:
        source_specific["is_quote_status"] = True
    if retweeted is not None:
        source_specific["retweeted_status_id"] = native_id(retweeted)
    if retweeted is not None or manual_rt is not None:
        source_specific["original_author"] = author.username

    return Post(
        source_id=source_id,
        source_type="twitter",
        created_at=parse_tweet_date(tweet.get("created_at")),
        content=content,
        author=author,
        metrics=Metrics(
            likes=coerce_count(subject.get("favorite_count")),
            shares=coerce_count(subject.get("retweet_count")),
            replies=coerce_count(subject.get("reply_count")),
        ),
        language=normalize_language(lang, context.default_language),
        media=_media(subject),
        urls=urls,
        hashtags=hashtags,
        mentions=mentions,
        is_repost=retweeted is not None or manual_rt is not None,
        source_specific=source_specific,
        canonical_url=tweet_url(owner, source_id),
        imported_at=context.imported_at,
    )

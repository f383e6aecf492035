from __future__ import annotations

import dataclasses
import tempfile
import unittest
from pathlib import Path

from archive_fixtures import (
    OWNER_DID,
    announce,
    block_cid,
    bsky_post,
    bsky_repost,
    build_car,
    create_note,
    outbox,
    tree_entries,
    tweet,
    tweets_js,
)

from archive_ingest.batch import ProgressEvent
from archive_ingest.config_schema import AppConfig, BatchConfig, LimitsConfig
from archive_ingest.errors import FormatError, ResourceExhausted, UnsupportedSource
from archive_ingest.importer import Importer, SourceRegistry, default_registry, detect_source
from archive_ingest.post import SourceType
from archive_ingest.storage import SQLiteStateStore


def _no_pause(_: float) -> None:
    return None


def _tweets(n: int) -> bytes:
    return tweets_js([tweet(str(1000 + i), f"tweet number {i}") for i in range(n)])


class TestImporter(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SQLiteStateStore.open(":memory:")
        self.events: list[ProgressEvent] = []
        self.importer = Importer(
            registry=default_registry(),
            store=self.store,
            on_progress=self.events.append,
            pause_fn=_no_pause,
        )

    def tearDown(self) -> None:
        self.store.close()

    def test_second_import_skips_everything(self) -> None:
        raw = _tweets(5)

        first = self.importer.import_with_diff("twitter", raw)
        self.assertTrue(first.success)
        self.assertEqual(first.accepted, 5)
        self.assertEqual(first.message, "Imported 5 records")

        second = self.importer.import_with_diff("twitter", raw)
        self.assertTrue(second.success)
        self.assertEqual(second.accepted, 0)
        self.assertEqual(second.skipped, second.total)
        self.assertEqual(second.message, "All 5 records were already imported; nothing new to add")
        self.assertEqual(self.store.post_count(), 5)

    def test_import_archive_ignores_stored_keys(self) -> None:
        raw = _tweets(2)
        self.importer.import_with_diff("twitter", raw)
        again = self.importer.import_archive("twitter", raw)

        self.assertEqual(again.accepted, 2)
        self.assertEqual(self.store.post_count(), 2)

    def test_twilog_rows_skip_tweets_from_the_archive(self) -> None:
        self.importer.import_with_diff("twitter", tweets_js([tweet("1001", "hi")]))
        csv_text = (
            '"1001","https://twitter.com/alice/status/1001","2018/10/11 05:19:24","hi"\r\n'
            '"1002","https://twitter.com/alice/status/1002","2018/10/12 05:19:24","new"\r\n'
        )

        result = self.importer.import_with_diff("twilog", csv_text.encode("utf-8"))

        self.assertEqual((result.accepted, result.skipped), (1, 1))
        self.assertEqual(result.source_type, SourceType.TWILOG)
        self.assertEqual(self.store.counts_by_source(), {"twitter": 2})

    def test_progress_events(self) -> None:
        self.importer.import_with_diff("twitter", _tweets(3))
        steps = [e.step for e in self.events]
        self.assertEqual(steps[:2], ["init", "parsed"])
        self.assertEqual(steps[-1], "processing")
        self.assertEqual(self.events[-1].progress, 100)

    def test_unsupported_source(self) -> None:
        with self.assertRaises(UnsupportedSource):
            self.importer.import_archive("myspace", b"")
        with self.assertRaises(UnsupportedSource):
            Importer(registry=SourceRegistry()).import_archive("twitter", _tweets(1))

    def test_malformed_container_is_a_failed_result(self) -> None:
        result = self.importer.import_with_diff("twitter", b"this is not javascript")

        self.assertFalse(result.success)
        self.assertEqual(result.status, "failed")
        self.assertIsInstance(result.error, FormatError)
        self.assertEqual(self.store.post_count(), 0)

    def test_corrupt_tree_node_still_imports(self) -> None:
        post = bsky_post("survives a damaged tree")
        tree = tree_entries([("app.bsky.feed.post/3kabcdefghij2", post)])
        tree[0]["p"] = "x"

        result = self.importer.import_archive("bluesky", build_car([post], tree=tree))

        self.assertTrue(result.success, result.message)
        self.assertEqual(result.accepted, 1)
        self.assertTrue(result.records[0].source_specific["rkey_derived"])

    def test_unexpected_decoder_error_is_a_failed_result(self) -> None:
        def _broken(raw: bytes | str, ctx: object) -> list[object]:
            raise ValueError("invalid literal for int() with base 10: 'x'")

        base = default_registry().get("bluesky")
        registry = SourceRegistry([dataclasses.replace(base, decode=_broken)])
        result = Importer(registry=registry, store=self.store).import_archive("bluesky", b"raw")

        self.assertFalse(result.success)
        self.assertEqual(result.status, "failed")
        self.assertIsInstance(result.error, FormatError)
        self.assertIn("Bluesky repository", str(result.error))

    def test_all_rows_rejected(self) -> None:
        result = self.importer.import_archive("twilog", b"only,two\nshort,row\n")
        self.assertIsInstance(result.error, FormatError)
        self.assertIn("No importable records", str(result.error))
        self.assertEqual(result.failed, 2)

    def test_record_limit(self) -> None:
        importer = Importer(
            registry=default_registry(),
            config=AppConfig(limits=LimitsConfig(max_records=2)),
            pause_fn=_no_pause,
        )
        result = importer.import_archive("twitter", _tweets(3))

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, ResourceExhausted)
        self.assertEqual(result.total, 3)

    def test_rejected_rows_count_as_failed(self) -> None:
        csv_text = (
            "ID,URL,Date,Text\n"
            '1,https://twitter.com/alice/status/1,2020/01/02 09:00:00,"line one\nline two"\n'
            "not-an-id,https://twitter.com/alice/status/2,2020/01/02 09:00:00,x\n"
        )
        result = self.importer.import_archive("twilog", csv_text)

        self.assertTrue(result.success)
        self.assertEqual(result.accepted, 1)
        self.assertEqual(result.failed, 1)
        self.assertEqual(result.reject_reasons, {"invalid_id": 1})
        self.assertEqual(result.records[0].content, "line one\nline two")
        self.assertEqual(result.message, "Imported 1 records, 1 could not be read")

    def test_cancel_returns_partial_result(self) -> None:
        importer = Importer(
            registry=default_registry(),
            store=self.store,
            config=AppConfig(batch=BatchConfig(batch_size=2)),
            pause_fn=_no_pause,
        )
        result = importer.import_with_diff("twitter", _tweets(6), should_cancel=lambda: True)

        self.assertFalse(result.success)
        self.assertEqual(result.status, "cancelled")
        self.assertEqual(result.accepted, 2)
        self.assertEqual(self.store.post_count(), 2)
        self.assertTrue(result.message.startswith("Import cancelled after 2/6"))

    def test_configured_account_is_used(self) -> None:
        importer = Importer(
            registry=default_registry(),
            config=AppConfig.model_validate({"accounts": {"twitter": "@Alice"}}),
            pause_fn=_no_pause,
        )
        result = importer.import_archive("twitter", _tweets(1))
        self.assertEqual(result.records[0].author.username, "Alice")

    def test_mastodon_create_and_announce(self) -> None:
        raw = outbox(
            [
                create_note("111", "<p>Hello</p>"),
                announce("222", "https://other.example/users/zed/statuses/9", "https://other.example/users/zed"),
            ]
        )
        result = self.importer.import_with_diff("mastodon", raw)

        self.assertEqual(result.accepted, 2)
        boosts = [p for p in result.records if p.is_repost]
        self.assertEqual(len(boosts), 1)
        self.assertEqual(boosts[0].author.username, "zed@other.example")
        self.assertEqual(self.store.counts_by_source(), {"mastodon": 2})

    def test_bluesky_reimport_is_idempotent(self) -> None:
        target = bsky_post("original")
        raw = build_car(
            [
                target,
                bsky_post("another"),
                bsky_repost(f"at://{OWNER_DID}/app.bsky.feed.post/3k", block_cid(target)),
            ]
        )

        first = self.importer.import_with_diff("bluesky", raw)
        second = self.importer.import_with_diff("bluesky", raw)

        self.assertEqual(first.accepted, 3)
        self.assertEqual((second.accepted, second.skipped), (0, 3))


class TestImportFile(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.dir = Path(self._td.name)
        self.importer = Importer(registry=default_registry(), pause_fn=_no_pause)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_detects_source_from_name(self) -> None:
        path = self.dir / "tweets.js"
        path.write_bytes(_tweets(2))

        result = self.importer.import_file(path)

        self.assertTrue(result.success)
        self.assertEqual(result.source_type, SourceType.TWITTER)
        self.assertEqual(result.accepted, 2)

    def test_undetectable_name(self) -> None:
        path = self.dir / "notes.txt"
        path.write_text("x", encoding="utf-8")
        with self.assertRaises(UnsupportedSource):
            self.importer.import_file(path)

    def test_wrong_extension_for_source(self) -> None:
        path = self.dir / "archive.csv"
        path.write_text("x", encoding="utf-8")

        result = self.importer.import_file(path, source_type="bluesky")

        self.assertIsInstance(result.error, FormatError)
        self.assertIn(".car", str(result.error))

    def test_empty_and_missing_files(self) -> None:
        empty = self.dir / "outbox.json"
        empty.write_bytes(b"")
        self.assertIn("empty", str(self.importer.import_file(empty).error))

        missing = self.importer.import_file(self.dir / "twilog.csv")
        self.assertIsInstance(missing.error, FormatError)

    def test_size_limit(self) -> None:
        path = self.dir / "tweets.js"
        path.write_bytes(b"x" * (1024 * 1024 + 1))
        importer = Importer(
            registry=default_registry(),
            config=AppConfig(limits=LimitsConfig(max_file_mb=1)),
            pause_fn=_no_pause,
        )

        result = importer.import_file(path)
        self.assertIsInstance(result.error, ResourceExhausted)


class TestDetectSource(unittest.TestCase):
    def test_names(self) -> None:
        self.assertEqual(detect_source("repo.car"), SourceType.BLUESKY)
        self.assertEqual(detect_source("twilog-alice.CSV"), SourceType.TWILOG)
        self.assertEqual(detect_source("data/tweets.js"), SourceType.TWITTER)
        self.assertEqual(detect_source("tweet.json"), SourceType.TWITTER)
        self.assertEqual(detect_source("outbox.json"), SourceType.MASTODON)
        self.assertEqual(detect_source("archive_backup_20240601_000000.ndjson.gz"), SourceType.BACKUP)
        self.assertEqual(detect_source("backup.NDJSON"), SourceType.BACKUP)
        self.assertIsNone(detect_source("notes.gz"))
        self.assertIsNone(detect_source("data.json"))
        self.assertIsNone(detect_source(""))


if __name__ == "__main__":
    unittest.main()

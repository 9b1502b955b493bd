import importlib
import os
import sqlite3
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

PACKAGE_MODULES = [
    "lanshare.app",
    "lanshare.network",
    "lanshare.lifecycle",
    "lanshare.ratelimit",
    "lanshare.blobs",
    "lanshare.storage",
    "lanshare",
]

NETWORK_ID = "a" * 64
OTHER_NETWORK_ID = "b" * 64
T0 = 1_700_000_000.0


class LifecycleTestCase(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["LANSHARE_STORAGE_ROOT"] = str(root)
        os.environ["LANSHARE_DATA_DIR"] = str(root / "data")
        os.environ["LANSHARE_UPLOADS_DIR"] = str(root / "uploads")
        os.environ["LANSHARE_LOGS_DIR"] = str(root / "logs")
        for module in PACKAGE_MODULES:
            sys.modules.pop(module, None)
        self.storage = importlib.import_module("lanshare.storage")
        self.lifecycle = importlib.import_module("lanshare.lifecycle")

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in [
            "LANSHARE_STORAGE_ROOT",
            "LANSHARE_DATA_DIR",
            "LANSHARE_UPLOADS_DIR",
            "LANSHARE_LOGS_DIR",
        ]:
            os.environ.pop(key, None)
        for module in PACKAGE_MODULES:
            sys.modules.pop(module, None)

    def _add_text(self, network_id=NETWORK_ID, now=T0, content="hello"):
        record = self.lifecycle.build_text_item(network_id, content, now=now)
        self.storage.insert_item(record)
        return record

    def _add_file(self, byte_size, network_id=NETWORK_ID, now=T0):
        record = self.lifecycle.build_file_item(
            network_id,
            file_name="photo.png",
            byte_size=byte_size,
            mime_type="image/png",
            content_url="/blobs/key",
            blob_key=f"{network_id[:8]}/{now}_photo.png",
            now=now,
        )
        self.storage.insert_item(record)
        return record


class ExpiryPolicyTests(LifecycleTestCase):
    def test_expiry_is_fixed_ttl_after_creation(self):
        record = self._add_text()
        self.assertEqual(record["expires_at"], T0 + 24 * 60 * 60)
        self.assertGreater(record["expires_at"], record["created_at"])

    def test_item_live_until_ttl_elapses_without_any_sweep(self):
        record = self._add_text()
        ttl = self.lifecycle.ITEM_TTL_SECONDS

        self.assertIsNotNone(self.storage.get_live_item(record["id"], T0))
        self.assertIsNotNone(self.storage.get_live_item(record["id"], T0 + ttl - 1))
        self.assertEqual(len(self.storage.list_live_items(NETWORK_ID, T0 + ttl - 1)), 1)

        self.assertIsNone(self.storage.get_live_item(record["id"], T0 + ttl))
        self.assertEqual(self.storage.list_live_items(NETWORK_ID, T0 + ttl), [])
        self.assertEqual(self.storage.network_usage(NETWORK_ID, T0 + ttl), (0, 0))
        self.assertEqual(
            self.storage.network_statistics(NETWORK_ID, T0 + ttl)["total_shares"], 0
        )
        self.assertFalse(self.storage.increment_download_count(record["id"], T0 + ttl))

        # The row still exists physically; only the read filter hides it.
        with self.storage.get_db() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM shared_items WHERE id = ?", (record["id"],)
            ).fetchone()
        self.assertEqual(row["count"], 1)

    def test_require_live_item_reports_expired_as_not_found(self):
        record = self._add_text(now=T0 - self.lifecycle.ITEM_TTL_SECONDS - 1)
        with self.assertRaises(self.lifecycle.NotFoundOrExpired):
            self.lifecycle.require_live_item(record["id"], now=T0)

    def test_require_live_item_rejects_malformed_id(self):
        with self.assertRaises(self.lifecycle.ValidationError):
            self.lifecycle.require_live_item("not-an-id", now=T0)

    def test_is_live_and_session_activity_predicates(self):
        self.assertTrue(self.lifecycle.is_live(T0 + 1, now=T0))
        self.assertFalse(self.lifecycle.is_live(T0, now=T0))
        self.assertTrue(self.lifecycle.session_is_active(T0, now=T0))
        self.assertFalse(self.lifecycle.session_is_active(T0 - 6 * 60, now=T0))

    def test_schema_rejects_expiry_not_after_creation(self):
        record = self.lifecycle.build_text_item(NETWORK_ID, "x", now=T0)
        record["expires_at"] = record["created_at"]
        with self.assertRaises(sqlite3.IntegrityError):
            self.storage.insert_item(record)

    def test_schema_requires_byte_size_exactly_for_files(self):
        record = self.lifecycle.build_text_item(NETWORK_ID, "x", now=T0)
        record["byte_size"] = 10
        with self.assertRaises(sqlite3.IntegrityError):
            self.storage.insert_item(record)

        file_record = self.lifecycle.build_file_item(
            NETWORK_ID,
            file_name="a.png",
            byte_size=1,
            mime_type="image/png",
            content_url="/blobs/a",
            blob_key="aaaaaaaa/a.png",
            now=T0,
        )
        file_record["byte_size"] = None
        with self.assertRaises(sqlite3.IntegrityError):
            self.storage.insert_item(file_record)


class QuotaLedgerTests(LifecycleTestCase):
    def test_item_ceiling_admits_last_slot_then_rejects(self):
        limit = self.lifecycle.MAX_ITEMS_PER_NETWORK
        for index in range(limit - 1):
            self._add_text(now=T0 + index)

        now = T0 + limit
        admitted = self.lifecycle.check_quota(NETWORK_ID, now=now)
        self.assertEqual(admitted.current_count, limit - 1)
        self.lifecycle.share_text(NETWORK_ID, "last one", now=now)

        with self.assertRaises(self.lifecycle.QuotaExceededError) as ctx:
            self.lifecycle.share_text(NETWORK_ID, "one too many", now=now + 1)
        self.assertEqual(ctx.exception.current_count, limit)
        self.assertEqual(ctx.exception.to_payload()["data"]["currentCount"], limit)

    def test_byte_ceiling_rejects_two_byte_file(self):
        max_bytes = self.lifecycle.MAX_NETWORK_STORAGE
        self._add_file(max_bytes - 1)

        with self.assertRaises(self.lifecycle.QuotaExceededError) as ctx:
            self.lifecycle.check_quota(NETWORK_ID, 2, now=T0 + 1)
        self.assertEqual(ctx.exception.current_bytes, max_bytes - 1)
        self.assertEqual(ctx.exception.current_count, 1)

    def test_byte_ceiling_reached_exactly_is_rejected(self):
        self._add_file(1024)
        remaining = self.lifecycle.MAX_NETWORK_STORAGE - 1024
        with self.assertRaises(self.lifecycle.QuotaExceededError):
            self.lifecycle.check_quota(NETWORK_ID, remaining, now=T0 + 1)
        admitted = self.lifecycle.check_quota(NETWORK_ID, remaining - 1, now=T0 + 1)
        self.assertEqual(admitted.current_bytes, 1024)

    def test_quota_is_per_network(self):
        for index in range(self.lifecycle.MAX_ITEMS_PER_NETWORK):
            self._add_text(now=T0 + index)
        admitted = self.lifecycle.check_quota(OTHER_NETWORK_ID, now=T0 + 100)
        self.assertEqual(admitted.current_count, 0)

    def test_expired_items_do_not_count_toward_quota(self):
        created = T0 - self.lifecycle.ITEM_TTL_SECONDS - 60
        for index in range(self.lifecycle.MAX_ITEMS_PER_NETWORK):
            self._add_text(now=created + index)
        self._add_file(self.lifecycle.MAX_NETWORK_STORAGE - 1, now=created)

        admitted = self.lifecycle.check_quota(NETWORK_ID, 1024, now=T0)
        self.assertEqual(admitted.current_count, 0)
        self.assertEqual(admitted.current_bytes, 0)

    def test_text_length_limit_applies_after_sanitizing(self):
        limit = self.lifecycle.MAX_TEXT_LENGTH
        self.assertEqual(len(self.lifecycle.validate_text("x" * limit)), limit)
        with self.assertRaises(self.lifecycle.ValidationError):
            self.lifecycle.validate_text("x" * (limit + 1))
        # Brackets are stripped before measuring.
        self.assertEqual(
            len(self.lifecycle.validate_text("<" * 10 + "x" * limit)), limit
        )

    def test_sanitize_text_strips_brackets_and_collapses_whitespace(self):
        self.assertEqual(
            self.lifecycle.sanitize_text("  <b>hello</b>\n\n  world\t"),
            "bhello/b world",
        )

    def test_share_text_rejects_invalid_network_and_empty_content(self):
        with self.assertRaises(self.lifecycle.ValidationError):
            self.lifecycle.share_text("not-hex", "hello", now=T0)
        with self.assertRaises(self.lifecycle.ValidationError):
            self.lifecycle.share_text(NETWORK_ID, "   ", now=T0)
        with self.assertRaises(self.lifecycle.ValidationError):
            self.lifecycle.share_text(NETWORK_ID, 42, now=T0)
        self.assertEqual(self.storage.network_usage(NETWORK_ID, T0), (0, 0))

    def test_validate_file_rules(self):
        validate = self.lifecycle.validate_file
        validate("photo.png", 10, "image/png")
        with self.assertRaises(self.lifecycle.ValidationError):
            validate("photo.png", self.lifecycle.MAX_FILE_SIZE + 1, "image/png")
        with self.assertRaises(self.lifecycle.ValidationError):
            validate("tool.exe", 10, "application/x-msdownload")
        with self.assertRaises(self.lifecycle.ValidationError):
            validate('bad"name.png', 10, "image/png")
        with self.assertRaises(self.lifecycle.ValidationError):
            validate("empty.txt", 0, "text/plain")
        validate("notes.txt", 10, "text/plain; charset=utf-8")


class CleanupSweeperTests(LifecycleTestCase):
    def _seed(self, now):
        ttl = self.lifecycle.ITEM_TTL_SECONDS
        expired = self._add_text(now=now - ttl - 60)
        live = self._add_text(now=now - 60)

        # A row whose expiry was set far too late must still go after 48 hours.
        very_old = self.lifecycle.build_text_item(NETWORK_ID, "old", now=now - 49 * 3600)
        very_old["expires_at"] = now + 3600
        self.storage.insert_item(very_old)

        self.storage.upsert_session(NETWORK_ID, "10.0.0.5", now)
        self.storage.upsert_session(NETWORK_ID, "10.0.0.6", now - 6 * 60)
        return expired, live, very_old

    def test_forced_sweep_deletes_each_category_and_is_idempotent(self):
        expired, live, very_old = self._seed(T0)
        sweeper = self.lifecycle.CleanupSweeper(self.lifecycle.SweepState(), clock=lambda: T0)

        first = sweeper.force()
        self.assertEqual(first, self.lifecycle.CleanupResult(1, 1, 1))
        self.assertEqual(
            first.to_payload(), {"expiredItems": 1, "oldSessions": 1, "veryOldItems": 1}
        )

        second = sweeper.force()
        self.assertEqual(second, self.lifecycle.CleanupResult(0, 0, 0))

        self.assertIsNotNone(self.storage.get_live_item(live["id"], T0))
        self.assertIsNone(self.storage.get_live_item(very_old["id"], T0))
        self.assertEqual(self.storage.count_sessions_seen_after(NETWORK_ID, T0 - 300), 1)

    def test_sweep_leaves_download_counters_untouched(self):
        live = self._add_text(now=T0 - 60)
        self.assertTrue(self.storage.increment_download_count(live["id"], T0))
        self._add_text(now=T0 - self.lifecycle.ITEM_TTL_SECONDS - 1)

        sweeper = self.lifecycle.CleanupSweeper(self.lifecycle.SweepState(), clock=lambda: T0)
        sweeper.force()

        record = self.storage.get_live_item(live["id"], T0)
        self.assertEqual(record["download_count"], 1)

    def test_throttled_sweep_runs_once_per_interval(self):
        clock = [T0]
        state = self.lifecycle.SweepState()
        sweeper = self.lifecycle.CleanupSweeper(
            state, throttle_seconds=300, clock=lambda: clock[0]
        )

        with mock.patch.object(
            self.lifecycle.storage,
            "delete_items_expired_before",
            wraps=self.storage.delete_items_expired_before,
        ) as sweep_spy:
            first = sweeper.maybe_sweep()
            clock[0] = T0 + 100
            second = sweeper.maybe_sweep()
            clock[0] = T0 + 301
            third = sweeper.maybe_sweep()

        self.assertIsInstance(first, self.lifecycle.CleanupResult)
        self.assertIsInstance(second, self.lifecycle.CleanupSkipped)
        self.assertEqual(second.next_run_at, T0 + 300)
        self.assertIsInstance(third, self.lifecycle.CleanupResult)
        self.assertEqual(sweep_spy.call_count, 2)
        self.assertEqual(state.last_run, T0 + 301)

    def test_failed_sweep_does_not_consume_throttle_window(self):
        state = self.lifecycle.SweepState()
        sweeper = self.lifecycle.CleanupSweeper(state, clock=lambda: T0)

        with mock.patch.object(
            self.lifecycle.storage,
            "delete_items_expired_before",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            outcome = sweeper.maybe_sweep()

        self.assertIsInstance(outcome, self.lifecycle.CleanupFailed)
        self.assertIn("locked", outcome.error)
        self.assertEqual(state.last_run, 0.0)

        retry = sweeper.maybe_sweep()
        self.assertIsInstance(retry, self.lifecycle.CleanupResult)
        self.assertEqual(state.last_run, T0)

    def test_unwritable_data_dir_fails_sweep_without_consuming_window(self):
        state = self.lifecycle.SweepState()
        sweeper = self.lifecycle.CleanupSweeper(state, clock=lambda: T0)

        with mock.patch.object(
            self.lifecycle.storage,
            "delete_items_expired_before",
            side_effect=PermissionError("data dir not writable"),
        ):
            outcome = sweeper.maybe_sweep()

        self.assertIsInstance(outcome, self.lifecycle.CleanupFailed)
        self.assertIn("not writable", outcome.error)
        self.assertEqual(state.last_run, 0.0)

    def test_unexpected_error_releases_claimed_window(self):
        state = self.lifecycle.SweepState()
        sweeper = self.lifecycle.CleanupSweeper(state, clock=lambda: T0)

        with mock.patch.object(
            self.lifecycle.storage,
            "delete_items_expired_before",
            side_effect=RuntimeError("boom"),
        ):
            with self.assertRaises(RuntimeError):
                sweeper.maybe_sweep()

        self.assertEqual(state.last_run, 0.0)

    def test_forced_sweep_failure_is_reported_not_raised(self):
        record = self._add_text(now=T0 - self.lifecycle.ITEM_TTL_SECONDS - 1)
        sweeper = self.lifecycle.CleanupSweeper(self.lifecycle.SweepState(), clock=lambda: T0)

        with mock.patch.object(
            self.lifecycle.storage,
            "delete_sessions_seen_before",
            side_effect=sqlite3.OperationalError("disk I/O error"),
        ):
            outcome = sweeper.force()

        self.assertIsInstance(outcome, self.lifecycle.CleanupFailed)
        # The expired row was already removed by its own independent statement.
        with self.storage.get_db() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM shared_items WHERE id = ?", (record["id"],)
            ).fetchone()
        self.assertEqual(row["count"], 0)


if __name__ == "__main__":
    unittest.main()

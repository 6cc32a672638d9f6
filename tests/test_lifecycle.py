import hashlib
import io
import tempfile
import threading
import unittest
import zipfile
from datetime import timedelta
from pathlib import Path
from unittest import mock

from fileservice.errors import (
    ConflictError,
    FileTooLargeError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    StorageIOError,
    UnsafeFileTypeError,
    ValidationError,
)
from fileservice.lifecycle import (
    ExpiryOption,
    FileLifecycle,
    Identity,
    UploadCandidate,
    parse_expiry_option,
    validate_file_type,
    validate_filename,
)
from fileservice.storage import (
    ROLE_ADMIN,
    ROLE_CONTRIBUTOR,
    ROLE_VIEWER,
    FileRecord,
    MetadataStore,
    MetricsCounter,
    OwnershipStore,
    QuotaConfig,
    utcnow,
)

MB = 1024 * 1024


def candidate(name, payload=b"hello", content_type="text/plain", size=None):
    return UploadCandidate(
        name=name,
        size=len(payload) if size is None else size,
        content_type=content_type,
        stream=io.BytesIO(payload),
    )


class MimeValidationTests(unittest.TestCase):
    def test_denied_extension_wins_over_allowed_type(self):
        allowed, message = validate_file_type("setup.exe", "application/pdf")
        self.assertFalse(allowed)
        self.assertIn(".exe", message)

    def test_extension_check_is_case_insensitive(self):
        allowed, _ = validate_file_type("RUN.PS1", "text/plain")
        self.assertFalse(allowed)

    def test_risky_content_type_is_rejected(self):
        allowed, message = validate_file_type("notes.txt", "application/x-msdownload")
        self.assertFalse(allowed)
        self.assertIn("application/x-msdownload", message)

    def test_unknown_content_type_is_rejected_by_default(self):
        allowed, _ = validate_file_type("blob.bin", "application/octet-stream")
        self.assertFalse(allowed)
        allowed, _ = validate_file_type("blob.bin", None)
        self.assertFalse(allowed)

    def test_allowed_types(self):
        for name, content_type in [
            ("report.pdf", "application/pdf"),
            ("photo.jpg", "image/jpeg"),
            ("notes.txt", "text/plain; charset=utf-8"),
            ("clip.mp4", "video/mp4"),
            ("data.json", "application/json"),
        ]:
            with self.subTest(name=name):
                allowed, _ = validate_file_type(name, content_type)
                self.assertTrue(allowed)

    def test_validate_filename(self):
        self.assertFalse(validate_filename("")[0])
        self.assertFalse(validate_filename("..")[0])
        self.assertFalse(validate_filename("a/b.txt")[0])
        self.assertFalse(validate_filename("nul\x00.txt")[0])
        self.assertFalse(validate_filename("x" * 256)[0])
        self.assertTrue(validate_filename("report 2024.pdf")[0])


class ExpiryOptionTests(unittest.TestCase):
    def test_parse_names_labels_and_ordinals(self):
        self.assertEqual(parse_expiry_option("OneHour"), ExpiryOption.ONE_HOUR)
        self.assertEqual(parse_expiry_option("1 Day"), ExpiryOption.ONE_DAY)
        self.assertEqual(parse_expiry_option("one_week"), ExpiryOption.ONE_WEEK)
        self.assertEqual(parse_expiry_option("1"), ExpiryOption.ONE_MINUTE)
        self.assertEqual(parse_expiry_option(0), ExpiryOption.NEVER)
        self.assertEqual(parse_expiry_option(None), ExpiryOption.NEVER)

    def test_unknown_option_is_rejected(self):
        with self.assertRaises(ValidationError):
            parse_expiry_option("Fortnight")
        with self.assertRaises(ValidationError):
            parse_expiry_option("7")


class LifecycleTestCase(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        root = Path(self.tempdir.name)
        self.uploads = root / "uploads"
        self.uploads.mkdir()
        self.data = root / "app-data"
        self.metadata = MetadataStore(self.data / "fileInfo.json")
        self.ownership = OwnershipStore(self.data / "userInfo.json")
        self.metrics = MetricsCounter(self.data / "metrics.json")
        self.scheduler = mock.Mock()
        self.quota = QuotaConfig(max_disk_space_gb=1, max_file_size_mb=1)
        self.lifecycle = self.make_lifecycle()

        for username, role in [
            ("admin", ROLE_ADMIN),
            ("alice", ROLE_CONTRIBUTOR),
            ("bob", ROLE_CONTRIBUTOR),
            ("victor", ROLE_VIEWER),
        ]:
            self.ownership.add_user(username, f"{username}-password", role)
        self.admin = Identity("admin", ROLE_ADMIN)
        self.alice = Identity("alice", ROLE_CONTRIBUTOR)
        self.bob = Identity("bob", ROLE_CONTRIBUTOR)
        self.viewer = Identity("victor", ROLE_VIEWER)

    def tearDown(self):
        self.tempdir.cleanup()

    def make_lifecycle(self):
        return FileLifecycle(
            self.uploads,
            self.quota,
            self.metadata,
            self.ownership,
            self.metrics,
            self.scheduler,
        )

    def upload_one(self, name, payload=b"hello", identity=None, expiry="Never", **kwargs):
        result = self.lifecycle.upload(
            [candidate(name, payload, **kwargs)], expiry, identity or self.alice
        )
        self.assertTrue(result.ok, result.error)
        return result.stored[0]

    def add_expiring_record(self, name, expiry_time, owner="alice", write=True):
        path = self.uploads / name
        if write:
            path.write_bytes(b"data")
        record = FileRecord(
            file_name=name,
            file_path=str(path),
            upload_time=utcnow() - timedelta(hours=2),
            expiry_time=expiry_time,
            file_size=4,
            owner=owner,
        )
        self.metadata.upsert(record)
        self.ownership.add_file_to_user(owner, str(path))
        return record


class UploadTests(LifecycleTestCase):
    def test_upload_stores_bytes_record_owner_and_metrics(self):
        record = self.upload_one("notes.txt", b"hello world")

        self.assertEqual((self.uploads / "notes.txt").read_bytes(), b"hello world")
        self.assertEqual(record.file_size, 11)
        self.assertEqual(record.owner, "alice")
        self.assertIsNone(record.expiry_time)
        self.assertEqual(self.metadata.get("notes.txt").file_size, 11)
        self.assertTrue(self.ownership.is_file_owner("alice", str(self.uploads / "notes.txt")))
        self.assertEqual(self.metrics.upload_count, 1)
        self.scheduler.schedule_expiry.assert_not_called()

    def test_upload_strips_client_directories(self):
        record = self.upload_one("C:\\Users\\alice\\notes.txt")
        self.assertEqual(record.file_name, "notes.txt")
        self.assertTrue((self.uploads / "notes.txt").exists())

    def test_expiry_is_computed_and_scheduled(self):
        record = self.upload_one("notes.txt", expiry="OneHour")

        self.assertEqual(record.expiry_time - record.upload_time, timedelta(hours=1))
        self.scheduler.schedule_expiry.assert_called_once_with("notes.txt", record.expiry_time)

    def test_oversized_file_is_rejected_before_writing(self):
        result = self.lifecycle.upload(
            [candidate("big.txt", b"x", size=MB + 1)], "Never", self.alice
        )

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, FileTooLargeError)
        self.assertIn("1 MB", str(result.error))
        self.assertFalse((self.uploads / "big.txt").exists())
        self.assertEqual(self.metadata.load(), [])
        self.assertEqual(self.metrics.upload_count, 0)

    def test_stream_longer_than_declared_size_is_rejected(self):
        result = self.lifecycle.upload(
            [candidate("liar.txt", b"x" * (MB + 10), size=10)], "Never", self.alice
        )
        self.assertIsInstance(result.error, FileTooLargeError)
        self.assertEqual(list(self.uploads.iterdir()), [])

    def test_quota_counts_bytes_written_not_declared_size(self):
        with mock.patch.object(
            QuotaConfig, "max_disk_space_bytes", new_callable=mock.PropertyMock, return_value=100
        ):
            result = self.lifecycle.upload(
                [candidate("small.txt", b"x" * 500, size=1)], "Never", self.alice
            )
            usage = self.lifecycle.get_available_space()

        self.assertIsInstance(result.error, QuotaExceededError)
        self.assertEqual(result.error.quota_limit, 100)
        self.assertEqual(usage["used"], 0)
        self.assertEqual(list(self.uploads.iterdir()), [])
        self.assertEqual(self.metadata.load(), [])

    def test_failed_record_write_removes_stored_bytes(self):
        with mock.patch.object(
            MetadataStore, "save", side_effect=StorageIOError("disk full")
        ):
            result = self.lifecycle.upload([candidate("orphan.txt")], "Never", self.alice)

        self.assertIsInstance(result.error, StorageIOError)
        self.assertEqual(list(self.uploads.iterdir()), [])
        self.assertFalse(self.ownership.is_file_owner("alice", str(self.uploads / "orphan.txt")))
        self.assertEqual(self.metrics.upload_count, 0)

    def test_denied_extension_is_rejected(self):
        result = self.lifecycle.upload(
            [candidate("tool.exe", content_type="application/pdf")], "Never", self.alice
        )
        self.assertIsInstance(result.error, UnsafeFileTypeError)
        self.assertIn(".exe", str(result.error))
        self.assertFalse((self.uploads / "tool.exe").exists())

    def test_invalid_expiry_option_is_rejected(self):
        result = self.lifecycle.upload([candidate("a.txt")], "Fortnight", self.alice)
        self.assertIsInstance(result.error, ValidationError)
        self.assertFalse((self.uploads / "a.txt").exists())

    def test_empty_batch_is_rejected(self):
        result = self.lifecycle.upload([], "Never", self.alice)
        self.assertIsInstance(result.error, ValidationError)

    def test_batch_stops_at_first_rejection(self):
        result = self.lifecycle.upload(
            [
                candidate("first.txt"),
                candidate("second.sh", content_type="text/plain"),
                candidate("third.txt"),
            ],
            "Never",
            self.alice,
        )

        self.assertIsInstance(result.error, UnsafeFileTypeError)
        self.assertEqual(result.stored_count, 1)
        self.assertTrue((self.uploads / "first.txt").exists())
        self.assertFalse((self.uploads / "third.txt").exists())
        self.assertEqual([record.file_name for record in self.metadata.load()], ["first.txt"])

    def test_quota_admits_exactly_up_to_the_ceiling(self):
        with mock.patch.object(
            QuotaConfig, "max_disk_space_bytes", new_callable=mock.PropertyMock, return_value=100
        ):
            self.upload_one("a.txt", b"x" * 60)
            self.upload_one("b.txt", b"x" * 40)
            result = self.lifecycle.upload([candidate("c.txt", b"x")], "Never", self.alice)

        self.assertIsInstance(result.error, QuotaExceededError)
        self.assertEqual(result.error.current_usage, 100)
        self.assertEqual(result.error.quota_limit, 100)
        self.assertFalse((self.uploads / "c.txt").exists())

    def test_quota_is_recomputed_for_each_file_in_a_batch(self):
        with mock.patch.object(
            QuotaConfig, "max_disk_space_bytes", new_callable=mock.PropertyMock, return_value=100
        ):
            result = self.lifecycle.upload(
                [candidate("a.txt", b"x" * 70), candidate("b.txt", b"x" * 70)],
                "Never",
                self.alice,
            )
        self.assertIsInstance(result.error, QuotaExceededError)
        self.assertEqual(result.stored_count, 1)

    def test_same_name_overwrites(self):
        self.upload_one("notes.txt", b"first")
        self.upload_one("notes.txt", b"second version", identity=self.bob)

        records = self.metadata.load()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].owner, "bob")
        self.assertEqual((self.uploads / "notes.txt").read_bytes(), b"second version")

    def test_concurrent_uploads_do_not_lose_records(self):
        other = FileLifecycle(
            self.uploads,
            self.quota,
            MetadataStore(self.metadata.path),
            OwnershipStore(self.ownership.path),
            MetricsCounter(self.data / "metrics-other.json"),
        )
        barrier = threading.Barrier(2)
        results = {}

        def run(engine, name):
            barrier.wait()
            results[name] = engine.upload(
                [candidate(name, b"x" * MB, content_type="application/pdf")],
                "Never",
                self.alice,
            )

        threads = [
            threading.Thread(target=run, args=(self.lifecycle, "one.pdf")),
            threading.Thread(target=run, args=(other, "two.pdf")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertTrue(all(result.ok for result in results.values()))
        self.assertEqual(
            sorted(record.file_name for record in self.metadata.load()),
            ["one.pdf", "two.pdf"],
        )
        owned = self.ownership.get_user("alice").owned_files
        self.assertEqual(len(owned), 2)


class QueryTests(LifecycleTestCase):
    def test_list_files_sorts_and_paginates(self):
        self.upload_one("b.txt", b"xx")
        self.upload_one("a.txt", b"xxxx")
        self.upload_one("c.txt", b"x")

        page = self.lifecycle.list_files(sort_by="name", sort_order="asc", page=1, page_size=2)
        self.assertEqual([item["fileName"] for item in page.items], ["a.txt", "b.txt"])
        self.assertEqual(page.total_items, 3)
        self.assertEqual(page.total_pages, 2)
        self.assertTrue(page.has_next_page)
        self.assertEqual(page.items[0]["downloadUri"], "/File/DownloadFile?filename=a.txt")

        page = self.lifecycle.list_files(sort_by="size", sort_order="desc", page=9, page_size=2)
        self.assertEqual(page.page, 2)
        self.assertEqual([item["fileName"] for item in page.items], ["c.txt"])

    def test_list_files_hides_expired_records(self):
        self.upload_one("live.txt")
        self.add_expiring_record("stale.txt", utcnow() - timedelta(seconds=1))

        names = [item["fileName"] for item in self.lifecycle.list_files().items]
        self.assertEqual(names, ["live.txt"])
        names = [
            item["fileName"] for item in self.lifecycle.list_files(include_expired=True).items
        ]
        self.assertEqual(sorted(names), ["live.txt", "stale.txt"])

    def test_page_size_is_clamped(self):
        self.upload_one("a.txt")
        page = self.lifecycle.list_files(page_size=10000)
        self.assertEqual(page.page_size, 200)
        page = self.lifecycle.list_files(page_size=0, page="bogus")
        self.assertEqual((page.page_size, page.page), (1, 1))

    def test_download_streams_bytes_and_counts(self):
        self.upload_one("notes.txt", b"payload")
        with self.lifecycle.download_file("notes.txt") as stream:
            self.assertEqual(stream.read(), b"payload")
        self.assertEqual(self.metrics.download_count, 1)

    def test_download_missing_or_expired_file(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.download_file("missing.txt")
        self.add_expiring_record("stale.txt", utcnow() - timedelta(seconds=1))
        with self.assertRaises(NotFoundError):
            self.lifecycle.download_file("stale.txt")
        with self.assertRaises(ValidationError):
            self.lifecycle.download_file("../etc/passwd")
        self.assertEqual(self.metrics.download_count, 0)

    def test_view_file_guesses_content_type(self):
        self.upload_one("photo.png", b"\x89PNG", content_type="image/png")
        stream, mime_type = self.lifecycle.view_file("photo.png")
        stream.close()
        self.assertEqual(mime_type, "image/png")

    def test_checksum_matches_sha256(self):
        payload = b"checksum me" * 1000
        self.upload_one("data.txt", payload)
        self.assertEqual(
            self.lifecycle.get_checksum("data.txt"), hashlib.sha256(payload).hexdigest()
        )

    def test_zip_contains_existing_files_only(self):
        self.upload_one("a.txt", b"aaa")
        self.upload_one("b.txt", b"bbb")
        archive = self.lifecycle.build_zip(["a.txt", "missing.txt", "b.txt"])
        with zipfile.ZipFile(archive) as bundle:
            self.assertEqual(sorted(bundle.namelist()), ["a.txt", "b.txt"])
            self.assertEqual(bundle.read("a.txt"), b"aaa")
        with self.assertRaises(ValidationError):
            self.lifecycle.build_zip([])

    def test_available_space_reports_status(self):
        with mock.patch.object(
            QuotaConfig, "max_disk_space_bytes", new_callable=mock.PropertyMock, return_value=1000
        ):
            self.upload_one("a.txt", b"x" * 950)
            space = self.lifecycle.get_available_space()

        self.assertEqual(space["total"], 1000)
        self.assertEqual(space["used"], 950)
        self.assertEqual(space["free"], 50)
        self.assertEqual(space["status"], "warning")
        self.assertEqual(space["used_formatted"], "0.9 KB")


class MutationTests(LifecycleTestCase):
    def test_owner_can_delete(self):
        self.upload_one("notes.txt", expiry="OneDay")
        path = str(self.uploads / "notes.txt")

        self.lifecycle.delete_file("notes.txt", self.alice)

        self.assertFalse((self.uploads / "notes.txt").exists())
        self.assertIsNone(self.metadata.get("notes.txt"))
        self.assertFalse(self.ownership.is_file_owner("alice", path))
        self.scheduler.cancel_expiry.assert_called_with("notes.txt")
        self.assertEqual(self.metrics.delete_count, 1)

    def test_non_owner_cannot_delete_but_admin_can(self):
        self.upload_one("notes.txt")
        with self.assertRaises(ForbiddenError):
            self.lifecycle.delete_file("notes.txt", self.bob)
        self.assertTrue((self.uploads / "notes.txt").exists())

        self.lifecycle.delete_file("notes.txt", self.admin)
        self.assertFalse((self.uploads / "notes.txt").exists())

    def test_delete_missing_file(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.delete_file("missing.txt", self.admin)

    def test_rename_moves_bytes_record_and_ownership(self):
        record = self.upload_one("draft.txt", b"text", expiry="OneHour")
        self.scheduler.reset_mock()

        renamed = self.lifecycle.rename_file("draft.txt", "final.txt", self.alice)

        self.assertEqual(renamed.file_name, "final.txt")
        self.assertEqual(renamed.expiry_time, record.expiry_time)
        self.assertFalse((self.uploads / "draft.txt").exists())
        self.assertEqual((self.uploads / "final.txt").read_bytes(), b"text")
        self.assertIsNone(self.metadata.get("draft.txt"))
        self.assertTrue(self.ownership.is_file_owner("alice", str(self.uploads / "final.txt")))
        self.assertFalse(self.ownership.is_file_owner("alice", str(self.uploads / "draft.txt")))
        self.scheduler.cancel_expiry.assert_called_once_with("draft.txt")
        self.scheduler.schedule_expiry.assert_called_once_with("final.txt", record.expiry_time)

    def test_rename_rejects_extension_change(self):
        self.upload_one("draft.txt")
        with self.assertRaises(ValidationError):
            self.lifecycle.rename_file("draft.txt", "draft.pdf", self.alice)
        self.assertTrue((self.uploads / "draft.txt").exists())

    def test_rename_rejects_existing_target(self):
        self.upload_one("a.txt", b"a")
        self.upload_one("b.txt", b"b")
        with self.assertRaises(ConflictError):
            self.lifecycle.rename_file("a.txt", "b.txt", self.alice)
        self.assertEqual((self.uploads / "b.txt").read_bytes(), b"b")

    def test_concurrent_renames_to_one_target_keep_names_unique(self):
        self.upload_one("a.txt", b"a")
        self.upload_one("b.txt", b"b")
        barrier = threading.Barrier(2)
        outcomes = {}

        def run(source):
            barrier.wait()
            try:
                self.lifecycle.rename_file(source, "c.txt", self.alice)
            except ConflictError:
                outcomes[source] = "conflict"
            else:
                outcomes[source] = "renamed"

        threads = [threading.Thread(target=run, args=(name,)) for name in ("a.txt", "b.txt")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes.values()), ["conflict", "renamed"])
        winner = next(name for name, outcome in outcomes.items() if outcome == "renamed")
        loser = next(name for name, outcome in outcomes.items() if outcome == "conflict")
        names = sorted(record.file_name for record in self.metadata.load())
        self.assertEqual(names, sorted(["c.txt", loser]))
        self.assertEqual((self.uploads / "c.txt").read_bytes(), winner[:1].encode())
        self.assertTrue((self.uploads / loser).exists())

    def test_metadata_rename_refuses_taken_name(self):
        self.upload_one("a.txt", b"a")
        self.upload_one("b.txt", b"b")
        with self.assertRaises(ConflictError):
            self.metadata.rename("a.txt", "b.txt", str(self.uploads / "b.txt"))
        self.assertEqual(
            sorted(record.file_name for record in self.metadata.load()), ["a.txt", "b.txt"]
        )

    def test_rename_restores_bytes_when_record_update_fails(self):
        self.upload_one("a.txt", b"a")
        with mock.patch.object(
            MetadataStore, "save", side_effect=StorageIOError("disk full")
        ):
            with self.assertRaises(StorageIOError):
                self.lifecycle.rename_file("a.txt", "moved.txt", self.alice)

        self.assertEqual((self.uploads / "a.txt").read_bytes(), b"a")
        self.assertFalse((self.uploads / "moved.txt").exists())

    def test_rename_checks_input_then_existence_then_ownership(self):
        self.upload_one("a.txt")
        with self.assertRaises(ValidationError):
            self.lifecycle.rename_file("a.txt", "   ", self.alice)
        with self.assertRaises(NotFoundError):
            self.lifecycle.rename_file("missing.txt", "b.txt", self.alice)
        with self.assertRaises(ForbiddenError):
            self.lifecycle.rename_file("a.txt", "b.txt", self.bob)

    def test_copy_creates_numbered_copies_owned_by_caller(self):
        original = self.upload_one("report.txt", b"body", expiry="OneDay")

        first = self.lifecycle.copy_file("report.txt", self.bob)
        second = self.lifecycle.copy_file("report.txt", self.bob)

        self.assertEqual(first.file_name, "report - Copy.txt")
        self.assertEqual(second.file_name, "report - Copy (2).txt")
        self.assertEqual(first.expiry_time, original.expiry_time)
        self.assertEqual(first.owner, "bob")
        self.assertEqual((self.uploads / "report - Copy.txt").read_bytes(), b"body")
        self.assertTrue(self.ownership.is_file_owner("bob", first.file_path))

    def test_viewer_cannot_copy(self):
        self.upload_one("report.txt")
        with self.assertRaises(ForbiddenError):
            self.lifecycle.copy_file("report.txt", self.viewer)

    def test_copy_respects_quota(self):
        with mock.patch.object(
            QuotaConfig, "max_disk_space_bytes", new_callable=mock.PropertyMock, return_value=100
        ):
            self.upload_one("report.txt", b"x" * 60)
            with self.assertRaises(QuotaExceededError):
                self.lifecycle.copy_file("report.txt", self.alice)

    def test_failed_copy_record_write_removes_copy(self):
        self.upload_one("report.txt", b"body")
        with mock.patch.object(
            MetadataStore, "save", side_effect=StorageIOError("disk full")
        ):
            with self.assertRaises(StorageIOError):
                self.lifecycle.copy_file("report.txt", self.bob)

        self.assertEqual(sorted(path.name for path in self.uploads.iterdir()), ["report.txt"])


class CleanupTests(LifecycleTestCase):
    def test_expiry_pass_removes_only_expired_records(self):
        stale = self.add_expiring_record("stale.txt", utcnow() - timedelta(seconds=1))
        self.add_expiring_record("fresh.txt", utcnow() + timedelta(hours=1))

        report = self.lifecycle.delete_expired_files()

        self.assertEqual(report.deleted, ["stale.txt"])
        self.assertEqual(report.failure_count, 0)
        self.assertFalse((self.uploads / "stale.txt").exists())
        self.assertTrue((self.uploads / "fresh.txt").exists())
        self.assertEqual([record.file_name for record in self.metadata.load()], ["fresh.txt"])
        self.assertFalse(self.ownership.is_file_owner("alice", stale.file_path))
        self.scheduler.cancel_expiry.assert_called_once_with("stale.txt")

    def test_expired_record_without_bytes_is_dropped_and_counted(self):
        self.add_expiring_record("ghost.txt", utcnow() - timedelta(minutes=5), write=False)

        report = self.lifecycle.delete_expired_files()

        self.assertEqual(report.failure_count, 1)
        self.assertEqual(report.failures[0].file_name, "ghost.txt")
        self.assertEqual(self.metadata.load(), [])

    def test_locked_expired_file_is_kept_for_retry(self):
        self.add_expiring_record("locked.txt", utcnow() - timedelta(seconds=1))
        self.add_expiring_record("other.txt", utcnow() - timedelta(seconds=1))
        original_unlink = Path.unlink

        def fake_unlink(path, *args, **kwargs):
            if path.name == "locked.txt":
                raise PermissionError("file is locked")
            return original_unlink(path, *args, **kwargs)

        with mock.patch.object(Path, "unlink", autospec=True, side_effect=fake_unlink):
            report = self.lifecycle.delete_expired_files()

        self.assertEqual(report.deleted, ["other.txt"])
        self.assertEqual(report.failure_count, 1)
        self.assertIn("locked", report.failures[0].detail)
        self.assertEqual([record.file_name for record in self.metadata.load()], ["locked.txt"])

    def test_expiry_pass_reports_failed_metadata_write(self):
        self.add_expiring_record("old.txt", utcnow() - timedelta(seconds=1))

        with mock.patch.object(
            MetadataStore, "save", side_effect=StorageIOError("disk full")
        ), self.assertLogs("fileservice.lifecycle", level="ERROR"):
            report = self.lifecycle.delete_expired_files()

        self.assertIn("disk full", report.aborted)
        self.assertEqual(report.to_dict()["aborted"], report.aborted)

        # The next pass drops the record whose bytes are already gone.
        report = self.lifecycle.delete_expired_files()
        self.assertIsNone(report.aborted)
        self.assertEqual(self.metadata.load(), [])

    def test_full_cleanup_resets_everything(self):
        self.upload_one("a.txt", expiry="OneHour")
        self.upload_one("b.txt", identity=self.bob)
        (self.uploads / "untracked.txt").write_bytes(b"stray")

        report = self.lifecycle.delete_all_files()

        self.assertEqual(report.failure_count, 0)
        self.assertEqual(sorted(report.deleted), ["a.txt", "b.txt", "untracked.txt"])
        self.assertEqual(list(self.uploads.iterdir()), [])
        self.assertEqual(self.metadata.load(), [])
        for user in self.ownership.get_all_users():
            self.assertEqual(user.owned_files, [])
        self.assertGreaterEqual(report.elapsed_seconds, 0)
        self.scheduler.cancel_all.assert_called_once_with()

    def test_full_cleanup_continues_past_locked_files(self):
        self.upload_one("locked.txt")
        self.upload_one("free.txt")
        original_unlink = Path.unlink

        def fake_unlink(path, *args, **kwargs):
            if path.name == "locked.txt":
                raise PermissionError("file is locked")
            return original_unlink(path, *args, **kwargs)

        with mock.patch.object(Path, "unlink", autospec=True, side_effect=fake_unlink):
            report = self.lifecycle.delete_all_files()

        self.assertEqual(report.deleted, ["free.txt"])
        self.assertEqual(report.failure_count, 1)
        self.assertEqual(report.to_dict()["failures"][0]["file_name"], "locked.txt")
        self.assertEqual(self.metadata.load(), [])

    def test_full_cleanup_aborts_without_uploads_dir(self):
        self.upload_one("a.txt")
        (self.uploads / "a.txt").unlink()
        self.uploads.rmdir()

        report = self.lifecycle.delete_all_files()

        self.assertIsNotNone(report.aborted)
        self.assertEqual(len(self.metadata.load()), 1)


if __name__ == "__main__":
    unittest.main()

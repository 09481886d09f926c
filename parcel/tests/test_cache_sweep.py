from __future__ import annotations

import tempfile
import unittest
from io import BytesIO
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from parcel.models import Base, UploadOwner
from parcel.services import CacheService, UploadLifecycle, UserService
from parcel.services.cache import base_slug


class CacheSweepTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.cache_dir = Path(self.tmp.name)
        (self.cache_dir / "temp").mkdir()
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        alice = UserService(self.session).create("alice", "Alice", "pw")
        lifecycle = UploadLifecycle(self.session, self.cache_dir)
        self.upload = lifecycle.create(alice, UploadOwner.user(alice.id), "a.bin", BytesIO(b"12345"))
        (self.cache_dir / f"{self.upload.slug}.preview").write_bytes(b"pr")
        (self.cache_dir / "orphan").write_bytes(b"1234567")
        (self.cache_dir / "orphan.preview").write_bytes(b"123")
        (self.cache_dir / "temp" / "scratch").write_bytes(b"ignored")
        self.service = CacheService(self.session, self.cache_dir)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()
        self.tmp.cleanup()

    def test_base_slug_strips_preview_suffix(self) -> None:
        self.assertEqual(base_slug("abc.preview"), "abc")
        self.assertEqual(base_slug("abc"), "abc")

    def test_summary_classifies_files(self) -> None:
        summary = self.service.summary()
        self.assertEqual(summary.valid_count, 2)
        self.assertEqual(summary.valid_total, 7)
        self.assertEqual(summary.invalid_count, 2)
        self.assertEqual(summary.invalid_total, 10)

    def test_cleanup_removes_orphans_and_is_idempotent(self) -> None:
        first = self.service.cleanup()
        self.assertEqual((first.removed_count, first.removed_total), (2, 10))
        self.assertTrue((self.cache_dir / self.upload.slug).exists())
        self.assertTrue((self.cache_dir / "temp" / "scratch").exists())
        second = self.service.cleanup()
        self.assertEqual((second.removed_count, second.removed_total), (0, 0))

    def test_cleanup_issues_one_lookup(self) -> None:
        calls = []
        original = self.service.uploads.get_existing_slugs

        def tracking(slugs):
            calls.append(set(slugs))
            return original(calls[-1])

        self.service.uploads.get_existing_slugs = tracking
        self.service.cleanup()
        self.assertEqual(calls, [{self.upload.slug, "orphan"}])


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import asyncio
import os
import stat
import tempfile
import unittest
from io import BytesIO
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from parcel.models import Base, UploadOwner
from parcel.services import UploadLifecycle, UploadService, UserService
from parcel.workers import PreviewCommand, PreviewConfig, PreviewWorker, Previewer
from parcel.workers.config import MimeMatcher

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def run(coro):
    return asyncio.run(coro)


def write_script(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@unittest.skipIf(os.name != "posix", "requires a POSIX shell")
class PreviewWorkerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.cache_dir = root / "cache"
        self.cache_dir.mkdir()
        (self.cache_dir / "temp").mkdir()
        self.bin_dir = root / "bin"
        self.bin_dir.mkdir()
        self.engine = create_engine(f"sqlite+pysqlite:///{root / 'parcel.db'}", future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        with self.SessionLocal() as session:
            self.alice = UserService(session).create("alice", "Alice", "pw")
        self.convert = write_script(self.bin_dir, "convert", 'cp "$1" "$2"')
        self.failing = write_script(self.bin_dir, "broken", 'echo "bad image" >&2\nexit 1')

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmp.cleanup()

    def make_upload(self, data: bytes = PNG_BYTES, mime_type: str | None = "image/jpeg"):
        with self.SessionLocal() as session:
            lifecycle = UploadLifecycle(session, self.cache_dir)
            upload = lifecycle.create(self.alice, UploadOwner.user(self.alice.id), "photo.jpg", BytesIO(data))
            if mime_type:
                UploadService(session).set_mime_type(upload.id, mime_type)
            return upload

    def load(self, upload_id):
        with self.SessionLocal() as session:
            return UploadService(session).get(upload_id)

    def worker_for(self, program: Path | str, args=("${input}", "${output}"), **kwargs) -> PreviewWorker:
        config = PreviewConfig(
            previewers=(
                Previewer(MimeMatcher("prefix", "image/"), (PreviewCommand(str(program), {}, tuple(args)),)),
            )
        )
        return PreviewWorker(config, self.SessionLocal, self.cache_dir, interval_seconds=3600, **kwargs)

    def test_successful_preview_marks_upload(self) -> None:
        upload = self.make_upload()
        worker = self.worker_for(self.convert)
        self.assertTrue(run(worker.process_upload(upload.id)))
        stored = self.load(upload.id)
        self.assertTrue(stored.has_preview)
        self.assertIsNone(stored.preview_error)
        self.assertEqual((self.cache_dir / f"{upload.slug}.preview").read_bytes(), PNG_BYTES)

    def test_failed_command_records_stderr(self) -> None:
        upload = self.make_upload()
        worker = self.worker_for(self.failing)
        run(worker.process_upload(upload.id))
        stored = self.load(upload.id)
        self.assertFalse(stored.has_preview)
        self.assertEqual(stored.preview_error, "bad image")

    def test_spawn_failure_is_recorded(self) -> None:
        upload = self.make_upload()
        worker = self.worker_for(self.bin_dir / "missing-tool")
        run(worker.process_upload(upload.id))
        self.assertTrue(self.load(upload.id).preview_error.startswith("Failed to execute preview command:"))

    def test_unknown_variable_is_recorded(self) -> None:
        upload = self.make_upload()
        worker = self.worker_for(self.convert, args=("${input}", "${bogus}"))
        run(worker.process_upload(upload.id))
        self.assertIn("bogus", self.load(upload.id).preview_error)

    def test_errored_uploads_are_not_rescanned(self) -> None:
        upload = self.make_upload()
        run(self.worker_for(self.failing).scan())
        self.assertEqual(self.load(upload.id).preview_error, "bad image")

        run(self.worker_for(self.convert).scan())
        stored = self.load(upload.id)
        self.assertFalse(stored.has_preview)
        self.assertFalse((self.cache_dir / f"{upload.slug}.preview").exists())

        with self.SessionLocal() as session:
            UploadService(session).clear_preview_error(upload.id)
        run(self.worker_for(self.convert).scan())
        self.assertTrue(self.load(upload.id).has_preview)

    def test_scan_pages_through_every_upload(self) -> None:
        uploads = [self.make_upload() for _ in range(23)]
        run(self.worker_for(self.convert).scan())
        self.assertTrue(all(self.load(upload.id).has_preview for upload in uploads))

    def test_scan_skips_unmatched_without_looping(self) -> None:
        skipped = [self.make_upload(mime_type="text/plain") for _ in range(12)]
        target = self.make_upload()
        run(self.worker_for(self.convert).scan())
        self.assertTrue(self.load(target.id).has_preview)
        self.assertTrue(all(self.load(upload.id).preview_error is None for upload in skipped))

    def racing_worker(self, deleted):
        """A worker whose store writes find `deleted` removed while its previewer ran."""
        worker = self.worker_for(self.convert)
        store_call = worker._call

        def call(method, *args):
            if args and args[0] == deleted.id:
                with self.SessionLocal() as session:
                    UploadService(session).delete(deleted.id)
            store_call(method, *args)

        worker._call = call
        return worker

    def test_batch_continues_after_upload_vanishes(self) -> None:
        first = self.make_upload()
        second = self.make_upload()
        worker = self.racing_worker(first)
        run(worker.process_ids([first.id, second.id]))
        self.assertIsNone(self.load(first.id))
        self.assertTrue(self.load(second.id).has_preview)

    def test_scan_continues_after_upload_vanishes(self) -> None:
        first = self.make_upload()
        second = self.make_upload()
        run(self.racing_worker(first).scan())
        self.assertIsNone(self.load(first.id))
        self.assertTrue(self.load(second.id).has_preview)

    def test_oversized_uploads_are_skipped(self) -> None:
        upload = self.make_upload(data=b"x" * 64)
        worker = self.worker_for(self.convert, max_preview_size=10)
        self.assertFalse(run(worker.process_upload(upload.id)))
        stored = self.load(upload.id)
        self.assertFalse(stored.has_preview)
        self.assertIsNone(stored.preview_error)

    def test_mime_detection_runs_external_command(self) -> None:
        detector = write_script(self.bin_dir, "file", 'echo "image/png"')
        upload = self.make_upload(mime_type=None)
        with patch("parcel.workers.previews.MIME_COMMAND", (str(detector),)):
            run(self.worker_for(self.convert).process_upload(upload.id))
        stored = self.load(upload.id)
        self.assertEqual(stored.mime_type, "image/png")
        self.assertTrue(stored.has_preview)

    def test_empty_mime_output_skips_quietly(self) -> None:
        detector = write_script(self.bin_dir, "file", "true")
        upload = self.make_upload(mime_type=None)
        with patch("parcel.workers.previews.MIME_COMMAND", (str(detector),)):
            self.assertFalse(run(self.worker_for(self.convert).process_upload(upload.id)))
        stored = self.load(upload.id)
        self.assertIsNone(stored.mime_type)
        self.assertIsNone(stored.preview_error)

    def test_dispatcher_handles_requests_and_stop(self) -> None:
        upload = self.make_upload()

        async def scenario():
            worker = self.worker_for(self.convert)
            task = asyncio.create_task(worker.run())
            await worker.wait_ready()
            self.assertTrue(worker.generate_previews([upload.id]))
            self.assertTrue(worker.stop())
            await asyncio.wait_for(task, timeout=10)
            await worker.wait_idle()

        run(scenario())
        self.assertTrue(self.load(upload.id).has_preview)

    def test_requests_from_other_threads(self) -> None:
        upload = self.make_upload()

        async def scenario():
            worker = self.worker_for(self.convert)
            task = asyncio.create_task(worker.run())
            await worker.wait_ready()
            await asyncio.to_thread(worker.generate_previews, [upload.id])
            await asyncio.to_thread(worker.stop)
            await asyncio.wait_for(task, timeout=10)
            await worker.wait_idle()

        run(scenario())
        self.assertTrue(self.load(upload.id).has_preview)

    def test_send_before_start_is_dropped(self) -> None:
        worker = self.worker_for(self.convert)
        self.assertFalse(worker.generate_previews([self.make_upload().id]))


if __name__ == "__main__":
    unittest.main()

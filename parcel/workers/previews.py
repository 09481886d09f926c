"""Background preview generation.

A single dispatcher task merges explicit requests arriving on a bounded queue
with a periodic scan for uploads that still lack a preview. Each batch of work
runs as its own task so a slow external command never delays the dispatcher;
uploads inside one batch are handled one after another.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Sequence

from sqlalchemy.orm import Session

from parcel.config import Settings
from parcel.errors import ParcelError
from parcel.logging import log_event
from parcel.models import Upload
from parcel.services.cache import TEMP_DIR_NAME, cache_path, preview_path
from parcel.services.uploads import UploadService

from .config import PreviewBuildError, PreviewConfig, current_platform

logger = logging.getLogger("parcel.previews")

QUEUE_CAPACITY = 10
SCAN_MAX_SIZE = 10
MIME_COMMAND = ("file", "--mime-type", "-b")

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class GeneratePreview:
    ids: tuple[uuid.UUID, ...]


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class UploadSnapshot:
    id: uuid.UUID
    slug: str
    size: int
    mime_type: str | None
    has_preview: bool
    preview_error: str | None

    @classmethod
    def of(cls, upload: Upload) -> "UploadSnapshot":
        return cls(
            id=upload.id,
            slug=upload.slug,
            size=upload.size,
            mime_type=upload.mime_type,
            has_preview=upload.has_preview,
            preview_error=upload.preview_error,
        )


class PreviewWorker:
    def __init__(
        self,
        config: PreviewConfig,
        session_factory: SessionFactory,
        cache_dir: Path,
        interval_seconds: float = 600.0,
        max_preview_size: int | None = None,
        features: frozenset[str] = frozenset(),
        platform: str | None = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.cache_dir = cache_dir
        self.interval_seconds = interval_seconds
        self.max_preview_size = max_preview_size
        self.features = features
        self.platform = platform or current_platform()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._tasks: set[asyncio.Task] = set()
        self._ready = asyncio.Event()

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=QUEUE_CAPACITY)
        self._ready.set()
        logger.info("Preview worker started (interval=%ss)", self.interval_seconds)
        next_scan = self._loop.time()
        while True:
            timeout = max(0.0, next_scan - self._loop.time())
            try:
                command = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                next_scan = self._loop.time() + self.interval_seconds
                self._spawn(self.scan())
                continue
            if isinstance(command, Stop):
                break
            self._spawn(self.process_ids(command.ids))
        logger.info("Preview worker stopped")

    async def wait_ready(self) -> None:
        await self._ready.wait()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def generate_previews(self, ids: Iterable[uuid.UUID]) -> bool:
        """Queue ids for preview generation without blocking; safe from any thread."""
        command = GeneratePreview(tuple(ids))
        if not command.ids:
            return False
        return self._send(command)

    def stop(self) -> bool:
        return self._send(Stop(), required=True)

    def _send(self, command, required: bool = False) -> bool:
        loop = self._loop
        if loop is None or self._queue is None or loop.is_closed():
            logger.warning("Preview worker is not running; dropping %s", type(command).__name__)
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._offer(command, required)
        else:
            loop.call_soon_threadsafe(self._offer, command, required)
        return True

    def _offer(self, command, required: bool) -> None:
        try:
            self._queue.put_nowait(command)
        except asyncio.QueueFull:
            if required:
                self._spawn(self._queue.put(command))
                return
            logger.warning("Preview queue full; dropping request for %d upload(s)", len(command.ids))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Preview task failed", exc_info=task.exception())

    async def process_ids(self, ids: Sequence[uuid.UUID]) -> None:
        for upload_id in ids:
            try:
                await self.process_upload(upload_id)
            except ParcelError as exc:
                self._abandon(upload_id, exc)

    async def scan(self) -> None:
        """Walk every upload still lacking a preview, a page at a time."""
        offset = 0
        while True:
            batch = await asyncio.to_thread(self._load_without_preview, offset)
            if not batch:
                break
            for snapshot in batch:
                try:
                    finished = await self._process(snapshot)
                except ParcelError as exc:
                    self._abandon(snapshot.id, exc)
                    finished = False
                if not finished:
                    offset += 1

    async def process_upload(self, upload_id: uuid.UUID) -> bool:
        snapshot = await asyncio.to_thread(self._load, upload_id)
        if snapshot is None:
            logger.warning("Upload %s vanished before preview generation", upload_id)
            return False
        return await self._process(snapshot)

    async def _process(self, upload: UploadSnapshot) -> bool:
        """Returns True when a terminal outcome was recorded for the upload."""
        if upload.has_preview or upload.preview_error is not None:
            return False
        if self.max_preview_size is not None and upload.size > self.max_preview_size:
            return False

        source = cache_path(self.cache_dir, upload.slug)
        mime_type = upload.mime_type
        if not mime_type:
            mime_type = await self.detect_mime_type(source)
            if not mime_type:
                return False
            await asyncio.to_thread(self._call, "set_mime_type", upload.id, mime_type)

        previewer = self.config.find_previewer(mime_type, self.features)
        if previewer is None or not previewer.commands:
            return False

        variables = {
            "input": str(source),
            "input_base": upload.slug,
            "output": str(preview_path(self.cache_dir, upload.slug)),
            "temp_dir": str(self.cache_dir / TEMP_DIR_NAME),
        }
        for command in previewer.commands:
            try:
                argv = command.build(variables, self.platform)
            except PreviewBuildError as exc:
                return await self._fail(upload, str(exc))
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                return await self._fail(upload, f"Failed to execute preview command: {exc}")
            _, stderr = await process.communicate()
            if process.returncode != 0:
                message = stderr.decode("utf-8", errors="replace").strip()
                return await self._fail(upload, message or f"Preview command exited with status {process.returncode}")

        await asyncio.to_thread(self._call, "set_has_preview", upload.id, True)
        log_event("previews", "generate", "success", metadata={"upload_id": upload.id, "mime_type": mime_type})
        return True

    async def detect_mime_type(self, path: Path) -> str | None:
        try:
            process = await asyncio.create_subprocess_exec(
                *MIME_COMMAND,
                str(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to run MIME detection for %s: %s", path, exc)
            return None
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            logger.warning("MIME detection failed for %s: %s", path, stderr.decode("utf-8", errors="replace").strip())
            return None
        return stdout.decode("utf-8", errors="replace").strip() or None

    async def _fail(self, upload: UploadSnapshot, message: str) -> bool:
        await asyncio.to_thread(self._call, "set_preview_error", upload.id, message)
        log_event(
            "previews",
            "generate",
            "failed",
            message,
            metadata={"upload_id": upload.id},
            level=logging.WARNING,
        )
        return True

    def _abandon(self, upload_id: uuid.UUID, exc: ParcelError) -> None:
        log_event(
            "previews",
            "generate",
            "aborted",
            exc.code,
            metadata={"upload_id": upload_id, "error": exc.message},
            level=logging.WARNING,
        )

    def _load(self, upload_id: uuid.UUID) -> UploadSnapshot | None:
        with self.session_factory() as session:
            upload = UploadService(session).get(upload_id)
            return UploadSnapshot.of(upload) if upload is not None else None

    def _load_without_preview(self, offset: int) -> list[UploadSnapshot]:
        with self.session_factory() as session:
            return [UploadSnapshot.of(upload) for upload in UploadService(session).get_all_without_preview(offset, SCAN_MAX_SIZE)]

    def _call(self, method: str, *args) -> None:
        with self.session_factory() as session:
            getattr(UploadService(session), method)(*args)


def start_worker(settings: Settings, session_factory: SessionFactory) -> tuple[PreviewWorker, asyncio.Task]:
    """Load the previewer configuration and start the worker on the running loop."""
    config = PreviewConfig.load(settings.previewers_path)
    worker = PreviewWorker(
        config,
        session_factory,
        settings.cache_dir,
        interval_seconds=settings.preview_generation_interval,
        max_preview_size=settings.max_preview_size,
        features=settings.preview_features,
    )
    task = asyncio.get_running_loop().create_task(worker.run())
    return worker, task

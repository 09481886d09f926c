from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy.orm import Session

from parcel.logging import log_event

from .uploads import UploadService

logger = logging.getLogger("parcel.cache")

PREVIEW_SUFFIX = ".preview"
TEMP_DIR_NAME = "temp"


@dataclass(frozen=True)
class CacheSummary:
    valid_total: int
    valid_count: int
    invalid_total: int
    invalid_count: int


@dataclass(frozen=True)
class CacheCleanup:
    removed_total: int
    removed_count: int


def cache_path(cache_dir: Path, slug: str) -> Path:
    return cache_dir / slug


def preview_path(cache_dir: Path, slug: str) -> Path:
    return cache_dir / f"{slug}{PREVIEW_SUFFIX}"


def base_slug(filename: str) -> str:
    if filename.endswith(PREVIEW_SUFFIX):
        return filename[: -len(PREVIEW_SUFFIX)]
    return filename


def remove_upload_files(cache_dir: Path, slugs: Iterable[str]) -> int:
    """Best-effort removal of the stored file and preview for each slug."""
    removed = 0
    for slug in slugs:
        for path in (cache_path(cache_dir, slug), preview_path(cache_dir, slug)):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Failed to remove cache file %s", path, exc_info=True)
    return removed


class CacheService:
    def __init__(self, session: Session, cache_dir: Path) -> None:
        self.session = session
        self.cache_dir = cache_dir
        self.uploads = UploadService(session)

    def _classify(self) -> tuple[list[tuple[Path, int]], list[tuple[Path, int]]]:
        files: list[tuple[Path, str, int]] = []
        if self.cache_dir.exists():
            for path in self.cache_dir.iterdir():
                if path.name == TEMP_DIR_NAME or not path.is_file():
                    continue
                files.append((path, base_slug(path.name), path.stat().st_size))
        existing = self.uploads.get_existing_slugs(slug for _, slug, _ in files)
        valid = [(path, size) for path, slug, size in files if slug in existing]
        invalid = [(path, size) for path, slug, size in files if slug not in existing]
        return valid, invalid

    def summary(self) -> CacheSummary:
        valid, invalid = self._classify()
        return CacheSummary(
            valid_total=sum(size for _, size in valid),
            valid_count=len(valid),
            invalid_total=sum(size for _, size in invalid),
            invalid_count=len(invalid),
        )

    def cleanup(self) -> CacheCleanup:
        _, invalid = self._classify()
        removed_total = 0
        removed_count = 0
        for path, size in invalid:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Failed to remove orphaned cache file %s", path, exc_info=True)
                continue
            removed_total += size
            removed_count += 1
        log_event(
            "cache",
            "cleanup",
            "completed",
            metadata={"removed_count": removed_count, "removed_total": removed_total},
        )
        return CacheCleanup(removed_total=removed_total, removed_count=removed_count)

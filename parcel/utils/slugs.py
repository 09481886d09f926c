from __future__ import annotations

import secrets
from typing import Callable, Iterable

from parcel.errors import StorageFailure

SLUG_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-"
SLUG_LENGTH = 21
MAX_SLUG_ATTEMPTS = 8


def generate_slug(length: int = SLUG_LENGTH) -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def generate_unique_slug(
    existing: Callable[[Iterable[str]], set[str]],
    length: int = SLUG_LENGTH,
    attempts: int = MAX_SLUG_ATTEMPTS,
) -> str:
    """Draw slugs until one is absent from the store.

    `existing` receives a batch of candidates and returns the subset already
    taken, so each attempt costs a single lookup.
    """
    for _ in range(attempts):
        candidates = {generate_slug(length) for _ in range(4)}
        free = candidates - existing(candidates)
        if free:
            return sorted(free)[0]
    raise StorageFailure("slug_allocation_failed")

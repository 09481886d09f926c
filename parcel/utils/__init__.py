from .http import client_ip, content_disposition
from .slugs import SLUG_ALPHABET, SLUG_LENGTH, generate_slug, generate_unique_slug
from .validation import ValidationResult, ValidationService

__all__ = [
    "SLUG_ALPHABET",
    "SLUG_LENGTH",
    "ValidationResult",
    "ValidationService",
    "client_ip",
    "content_disposition",
    "generate_slug",
    "generate_unique_slug",
]

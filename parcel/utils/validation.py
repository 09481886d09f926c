from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Sequence

from parcel.errors import ValidationError

SLUG_MIN_LENGTH = 3
SLUG_MAX_LENGTH = 100
FILENAME_MAX_LENGTH = 255
NAME_MAX_LENGTH = 255
TAG_MAX_LENGTH = 100

_SLUG_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class ValidationResult:
    passed: bool
    violations: Sequence[str]

    def raise_for_violations(self) -> None:
        if not self.passed:
            raise ValidationError(violations=self.violations)


class ValidationService:
    """Checks user supplied fields against their declared constraints."""

    def validate_slug(self, value: str, field: str = "slug") -> ValidationResult:
        violations = []
        if self._check_length(value, SLUG_MIN_LENGTH, SLUG_MAX_LENGTH):
            violations.append(f"{field}_length")
        if self._check_charset(value):
            violations.append(f"{field}_charset")
        return self._result(violations)

    def validate_account(self, username: str, name: str, password: str | None = None) -> ValidationResult:
        violations = list(self.validate_slug(username, "username").violations)
        if self._check_length(name, 1, NAME_MAX_LENGTH):
            violations.append("name_length")
        if password is not None and not password:
            violations.append("password_required")
        return self._result(violations)

    def validate_team(self, name: str, slug: str) -> ValidationResult:
        violations = list(self.validate_slug(slug).violations)
        if self._check_length(name, 1, NAME_MAX_LENGTH):
            violations.append("name_length")
        return self._result(violations)

    def validate_upload(
        self,
        filename: str,
        limit: int | None = None,
        expiry_date: date | None = None,
        custom_slug: str | None = None,
        today: date | None = None,
    ) -> ValidationResult:
        violations = []
        if self._check_length(filename, 1, FILENAME_MAX_LENGTH):
            violations.append("filename_length")
        if limit is not None and limit < 1:
            violations.append("limit_range")
        if expiry_date is not None and expiry_date < (today or date.today()):
            violations.append("expiry_in_past")
        if custom_slug is not None:
            violations.extend(self.validate_slug(custom_slug, "custom_slug").violations)
        return self._result(violations)

    def validate_tags(self, names: Sequence[str]) -> ValidationResult:
        violations = []
        for name in names:
            if self._check_length(name.strip(), 1, TAG_MAX_LENGTH):
                violations.append("tag_length")
                break
        return self._result(violations)

    def _check_length(self, value: str | None, minimum: int, maximum: int) -> bool:
        if value is None:
            return True
        return not (minimum <= len(value) <= maximum)

    def _check_charset(self, value: str | None) -> bool:
        return not value or _SLUG_RE.match(value) is None

    @staticmethod
    def _result(violations: list[str]) -> ValidationResult:
        return ValidationResult(passed=len(violations) == 0, violations=tuple(violations))

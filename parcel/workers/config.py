from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any, Mapping

from parcel.errors import Malformed

logger = logging.getLogger("parcel.previews")

PLATFORMS = ("linux", "macos", "windows")


class PreviewBuildError(Exception):
    pass


def current_platform() -> str:
    if sys.platform.startswith("darwin"):
        return "macos"
    if sys.platform.startswith(("win32", "cygwin")):
        return "windows"
    return "linux"


@dataclass(frozen=True)
class MimeMatcher:
    kind: str
    value: str

    def matches(self, mime_type: str) -> bool:
        if self.kind == "exact":
            return mime_type == self.value
        return mime_type.startswith(self.value)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MimeMatcher":
        if not isinstance(data, Mapping) or len(data) != 1:
            raise Malformed("previewer match must have exactly one of 'exact' or 'prefix'")
        kind, value = next(iter(data.items()))
        if kind not in ("exact", "prefix") or not isinstance(value, str):
            raise Malformed(f"invalid previewer match: {dict(data)!r}")
        return cls(kind, value)


@dataclass(frozen=True)
class PreviewCommand:
    command: str | None
    platform_commands: Mapping[str, str]
    args: tuple[str, ...]

    def program_for(self, platform: str) -> str | None:
        if self.command is not None:
            return self.command
        return self.platform_commands.get(platform)

    def build(self, variables: Mapping[str, str], platform: str | None = None) -> list[str]:
        platform = platform or current_platform()
        program = self.program_for(platform)
        if not program:
            raise PreviewBuildError(f"No preview command configured for platform '{platform}'")
        argv = [program]
        for arg in self.args:
            try:
                argv.append(Template(arg).substitute(variables))
            except KeyError as exc:
                raise PreviewBuildError(f"Unknown variable {exc.args[0]!r} in preview argument {arg!r}") from exc
            except ValueError as exc:
                raise PreviewBuildError(f"Invalid preview argument {arg!r}: {exc}") from exc
        return argv

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PreviewCommand":
        if not isinstance(data, Mapping):
            raise Malformed("preview command must be an object")
        command = data.get("command")
        args = data.get("args", [])
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise Malformed("preview command args must be a list of strings")
        if isinstance(command, str):
            return cls(command, {}, tuple(args))
        if isinstance(command, Mapping):
            unknown = [key for key in command if key not in PLATFORMS]
            if unknown or not all(isinstance(value, str) for value in command.values()):
                raise Malformed(f"invalid per-platform preview command: {dict(command)!r}")
            return cls(None, dict(command), tuple(args))
        raise Malformed("preview command must be a string or a per-platform object")


@dataclass(frozen=True)
class Previewer:
    matcher: MimeMatcher
    commands: tuple[PreviewCommand, ...]
    feature: str | None = None

    def enabled(self, features: frozenset[str]) -> bool:
        return self.feature is None or self.feature in features

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Previewer":
        if not isinstance(data, Mapping):
            raise Malformed("previewer must be an object")
        feature = data.get("feature")
        if feature is not None and not isinstance(feature, str):
            raise Malformed("previewer feature must be a string")
        commands = data.get("commands", [])
        if not isinstance(commands, list):
            raise Malformed("previewer commands must be a list")
        return cls(
            matcher=MimeMatcher.from_dict(data.get("match")),
            commands=tuple(PreviewCommand.from_dict(item) for item in commands),
            feature=feature,
        )


@dataclass(frozen=True)
class PreviewConfig:
    previewers: tuple[Previewer, ...] = ()

    def find_previewer(self, mime_type: str, features: frozenset[str] = frozenset()) -> Previewer | None:
        for previewer in self.previewers:
            if previewer.enabled(features) and previewer.matcher.matches(mime_type):
                return previewer
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PreviewConfig":
        if not isinstance(data, Mapping):
            raise Malformed("previewer configuration must be an object")
        items = data.get("previewers", [])
        if not isinstance(items, list):
            raise Malformed("'previewers' must be a list")
        return cls(previewers=tuple(Previewer.from_dict(item) for item in items))

    @classmethod
    def load(cls, path: Path) -> "PreviewConfig":
        if not path.exists():
            logger.warning("Previewer configuration %s not found; preview generation disabled", path)
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise Malformed(f"unable to read previewer configuration {path}: {exc}") from exc
        config = cls.from_dict(data)
        logger.info("Loaded %d previewer(s) from %s", len(config.previewers), path)
        return config

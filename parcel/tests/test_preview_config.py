from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from parcel.errors import Malformed
from parcel.workers import PreviewBuildError, PreviewCommand, PreviewConfig

SAMPLE = {
    "previewers": [
        {
            "feature": "libreoffice",
            "match": {"exact": "application/pdf"},
            "commands": [{"command": "soffice", "args": ["${input}"]}],
        },
        {
            "match": {"prefix": "image/"},
            "commands": [
                {
                    "command": {"linux": "convert", "macos": "gm"},
                    "args": ["${input}", "-thumbnail", "512x512", "${output}"],
                }
            ],
        },
        {"match": {"exact": "application/pdf"}, "commands": []},
    ]
}

VARIABLES = {"input": "/c/abc", "input_base": "abc", "output": "/c/abc.preview", "temp_dir": "/c/temp"}


class PreviewConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = PreviewConfig.from_dict(SAMPLE)

    def test_prefix_and_exact_matching(self) -> None:
        image = self.config.find_previewer("image/jpeg")
        self.assertIsNotNone(image)
        self.assertEqual(image.matcher.kind, "prefix")
        self.assertIsNone(self.config.find_previewer("video/mp4"))

    def test_feature_gate_selects_first_enabled(self) -> None:
        without = self.config.find_previewer("application/pdf")
        self.assertEqual(without.commands, ())
        gated = self.config.find_previewer("application/pdf", frozenset({"libreoffice"}))
        self.assertEqual(gated.feature, "libreoffice")

    def test_per_platform_commands(self) -> None:
        command = self.config.find_previewer("image/png").commands[0]
        self.assertEqual(
            command.build(VARIABLES, "linux"),
            ["convert", "/c/abc", "-thumbnail", "512x512", "/c/abc.preview"],
        )
        self.assertEqual(command.build(VARIABLES, "macos")[0], "gm")
        with self.assertRaises(PreviewBuildError):
            command.build(VARIABLES, "windows")

    def test_unknown_variable_fails_build(self) -> None:
        command = PreviewCommand("convert", {}, ("${input}", "${nope}"))
        with self.assertRaises(PreviewBuildError):
            command.build(VARIABLES, "linux")

    def test_all_variables_expand(self) -> None:
        command = PreviewCommand("tool", {}, ("${input_base}", "--tmp=${temp_dir}"))
        self.assertEqual(command.build(VARIABLES, "linux"), ["tool", "abc", "--tmp=/c/temp"])

    def test_rejects_bad_shapes(self) -> None:
        with self.assertRaises(Malformed):
            PreviewConfig.from_dict({"previewers": [{"match": {"glob": "*"}, "commands": []}]})
        with self.assertRaises(Malformed):
            PreviewConfig.from_dict({"previewers": [{"match": {"exact": "a"}, "commands": [{"command": 3}]}]})
        with self.assertRaises(Malformed):
            PreviewConfig.from_dict({"previewers": {}})

    def test_load_missing_file_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs("parcel.previews", level="WARNING"):
                config = PreviewConfig.load(Path(tmp) / "previewers.json")
        self.assertEqual(config.previewers, ())

    def test_load_reads_json(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "previewers.json"
            path.write_text(json.dumps(SAMPLE), encoding="utf-8")
            config = PreviewConfig.load(path)
            self.assertEqual(len(config.previewers), 3)
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(Malformed):
                PreviewConfig.load(path)


if __name__ == "__main__":
    unittest.main()

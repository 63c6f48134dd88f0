import contextlib
import io
import json
import os
import tempfile
import textwrap
import unittest

import mapguard

MODELS = """\
from dataclasses import dataclass


@dataclass
class Person:
    first_name: str = ""
    last_name: str = ""
"""

MAPPERS = """\
from mapguard import UnmappedProperties, mapping_method
from models import Person


@mapping_method
def to_person(source) -> Person:
    return Person(first_name=source.first_name)
"""

COMPLETE_MAPPERS = """\
from mapguard import mapping_method
from models import Person


@mapping_method
def to_person(source) -> Person:
    return Person(first_name=source.first_name, last_name=source.last_name)
"""

UNEVALUABLE_MAPPERS = """\
from mapguard import UnmappedProperties, mapping_method
from models import Person


@mapping_method
@UnmappedProperties(load_names())
def to_person(source) -> Person:
    return Person(first_name=source.first_name)
"""


class CommandLineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.project = os.path.join(self.tmp.name, "project")
        os.makedirs(self.project)
        self.write("models.py", MODELS)
        self.config_path = os.path.join(self.tmp.name, "mapguard.yaml")
        with open(self.config_path, "w", encoding="utf-8") as handle:
            handle.write("")

    def write(self, name, text):
        path = os.path.join(self.project, name)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(textwrap.dedent(text))
        return path

    def run_cli(self, *args):
        stdout, stderr = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            code = mapguard.main(["analyze", "--config", self.config_path, *args])
        return code, stdout.getvalue(), stderr.getvalue()

    def test_text_output_and_exit_code(self) -> None:
        mappers = self.write("mappers.py", MAPPERS)
        code, stdout, _stderr = self.run_cli(self.project)
        self.assertEqual(code, 1)
        self.assertEqual(
            stdout.strip().splitlines(),
            [f"{mappers}:5:2: Error MMG1001: Property last_name is not mapped."],
        )

    def test_clean_project_exits_zero(self) -> None:
        self.write("mappers.py", COMPLETE_MAPPERS)
        code, stdout, _stderr = self.run_cli(self.project)
        self.assertEqual(code, 0)
        self.assertEqual(stdout, "")

    def test_json_output_to_file(self) -> None:
        self.write("mappers.py", MAPPERS)
        out = os.path.join(self.tmp.name, "report.json")
        code, _stdout, _stderr = self.run_cli("--format", "json", "--out", out, "--jobs", "2", self.project)
        self.assertEqual(code, 1)
        with open(out, "r", encoding="utf-8") as handle:
            report = json.load(handle)
        self.assertEqual(len(report), 1)
        self.assertEqual(report[0]["rule_id"], "MMG1001")
        self.assertEqual(report[0]["property"], "last_name")
        self.assertEqual(report[0]["location"]["line"], 5)
        self.assertEqual(report[0]["location"]["column"], 2)
        self.assertEqual(report[0]["function"], "to_person")

    def test_exclude_glob(self) -> None:
        self.write("mappers.py", MAPPERS)
        code, stdout, _stderr = self.run_cli("--exclude", "*/mappers.py", self.project)
        self.assertEqual(code, 0)
        self.assertEqual(stdout, "")

    def test_syntax_errors_are_reported_and_skipped(self) -> None:
        self.write("mappers.py", MAPPERS)
        self.write("broken.py", "def broken(:\n")
        code, stdout, stderr = self.run_cli(self.project)
        self.assertEqual(code, 1)
        self.assertIn("Property last_name is not mapped.", stdout)
        self.assertIn("[mapguard] Could not parse", stderr)

    def test_quiet_flag(self) -> None:
        self.write("mappers.py", UNEVALUABLE_MAPPERS)
        _code, _stdout, stderr = self.run_cli(self.project)
        self.assertIn("[mapguard] Could not evaluate exclusion", stderr)

        code, stdout, stderr = self.run_cli("--quiet", self.project)
        self.assertEqual(code, 1)
        self.assertIn("Property last_name is not mapped.", stdout)
        self.assertEqual(stderr, "")

    def test_invalid_config_exits_two(self) -> None:
        with open(self.config_path, "w", encoding="utf-8") as handle:
            handle.write("mapping_markers: [unclosed\n")
        code, _stdout, stderr = self.run_cli(self.project)
        self.assertEqual(code, 2)
        self.assertIn("invalid YAML", stderr)

    def test_missing_input_path(self) -> None:
        code, _stdout, stderr = self.run_cli(os.path.join(self.tmp.name, "nowhere"))
        self.assertEqual(code, 0)
        self.assertIn("Input path not found", stderr)


if __name__ == "__main__":
    unittest.main()

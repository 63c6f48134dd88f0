import contextlib
import io
import sys
import textwrap
import threading
import unittest

import mapguard

MODELS = """\
from dataclasses import dataclass


@dataclass
class PersonDto:
    first_name: str
    last_name: str


@dataclass
class Person:
    first_name: str = ""
    last_name: str = ""


@dataclass
class PersonBase:
    first_name: str = ""
    last_name: str = ""


@dataclass
class Employee(PersonBase):
    last_name: str = "unknown"


@dataclass
class Manager(PersonBase):
    reports: int = 0


@dataclass
class Record:
    zeta: int = 0
    alpha: int = 0
    mid: int = 0
"""

HEADER = """\
from typing import Annotated, cast

from mapguard import MappingTarget, UnmappedProperty, mapping_method
from models import Employee, Manager, Person, PersonBase, PersonDto, Record
"""


def build_index(body):
    sources = {
        "models.py": MODELS,
        "mappers.py": HEADER + "\n\n" + textwrap.dedent(body),
    }
    return mapguard.build_project_index([], sources=sources)


def analyze(body, jobs=1):
    return mapguard.MappingAnalyzer(build_index(body)).analyze(jobs=jobs)


class MappingAnalyzerTests(unittest.TestCase):
    def test_missing_target_type(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            def map_person(source: PersonDto) -> None:
                pass
            """
        )
        self.assertEqual(len(diagnostics), 1)
        diagnostic = diagnostics[0]
        self.assertEqual(diagnostic.rule_id, "MMG0001")
        self.assertEqual(diagnostic.severity, "Error")
        self.assertEqual(
            diagnostic.message,
            "Unable to determine target type of mapping. Ensure that this method either returns "
            "a value or has a single parameter decorated with MappingTargetAttribute.",
        )
        self.assertEqual(diagnostic.location, mapguard.SourceLocation("mappers.py", 7, 1))
        self.assertEqual(diagnostic.function, "map_person")

    def test_property_assignment(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            def map_person(source: PersonDto) -> Person:
                person = Person()
                person.first_name = source.first_name
                return person
            """
        )
        self.assertEqual([d.message for d in diagnostics], ["Property last_name is not mapped."])
        self.assertEqual(diagnostics[0].rule_id, "MMG1001")
        self.assertEqual(diagnostics[0].property_name, "last_name")
        self.assertEqual(mapguard.format_diagnostic(diagnostics[0]),
                         "mappers.py:7:2: Error MMG1001: Property last_name is not mapped.")

    def test_object_initializer(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            def map_person(source: PersonDto) -> Person:
                return Person(first_name=source.first_name)
            """
        )
        self.assertEqual([d.message for d in diagnostics], ["Property last_name is not mapped."])

    def test_complete_initializer(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            def map_person(source: PersonDto) -> Person:
                return Person(first_name=source.first_name, last_name=source.last_name)
            """
        )
        self.assertEqual(diagnostics, [])

    def test_base_class_property(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            def map_manager(source: PersonDto, manager: Annotated[Manager, MappingTarget]) -> None:
                manager.first_name = source.first_name
                manager.reports = 0
            """
        )
        self.assertEqual([d.message for d in diagnostics], ["Property last_name is not mapped."])

    def test_overridden_property_set_through_base_cast(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            def map_employee(source: PersonDto, employee: Annotated[Employee, MappingTarget]) -> None:
                employee.first_name = source.first_name
                cast(PersonBase, employee).last_name = source.last_name
            """
        )
        self.assertEqual(diagnostics, [])

    def test_reported_set_is_sorted_difference(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            @UnmappedProperty("mid")
            def map_record(source) -> Record:
                return Record()
            """
        )
        self.assertEqual([d.property_name for d in diagnostics], ["alpha", "zeta"])

    def test_methods_and_inherited_marking(self) -> None:
        diagnostics = analyze(
            """\
            class BaseMapper:
                @mapping_method
                def build(self, source: PersonDto) -> Person:
                    return Person(first_name=source.first_name, last_name=source.last_name)


            class PartialMapper(BaseMapper):
                def build(self, source: PersonDto) -> Person:
                    return Person(first_name=source.first_name)
            """
        )
        self.assertEqual(len(diagnostics), 1)
        self.assertEqual(diagnostics[0].function, "PartialMapper.build")
        self.assertEqual(diagnostics[0].location, mapguard.SourceLocation("mappers.py", 14, 8))

    def test_unknown_target_class_is_skipped_with_warning(self) -> None:
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            diagnostics = analyze(
                """\
                @mapping_method
                def map_customer(source: PersonDto) -> Customer:
                    return Customer()
                """
            )
        self.assertEqual(diagnostics, [])
        self.assertIn("target type 'Customer'", stderr.getvalue())

    def test_diagnostics_are_ordered_by_location(self) -> None:
        diagnostics = analyze(
            """\
            @mapping_method
            def second(source) -> Record:
                return Record(zeta=1)


            @mapping_method
            def first(source) -> Person:
                return Person()
            """
        )
        self.assertEqual(
            [(d.function, d.property_name) for d in diagnostics],
            [("second", "alpha"), ("second", "mid"), ("first", "first_name"), ("first", "last_name")],
        )

    def test_analysis_is_idempotent_and_thread_count_independent(self) -> None:
        body = """\
            @mapping_method
            def one(source) -> Record:
                return Record(alpha=1)


            @mapping_method
            def two(source: PersonDto) -> Person:
                return Person(first_name=source.first_name)


            @mapping_method
            def three(source) -> None:
                pass
            """
        analyzer = mapguard.MappingAnalyzer(build_index(body))
        first_run = analyzer.analyze()
        self.assertEqual(first_run, analyzer.analyze())
        self.assertEqual(first_run, analyzer.analyze(jobs=4))
        self.assertEqual(len(first_run), 4)

    @unittest.skipIf(sys.version_info < (3, 10), "match statements need Python 3.10")
    def test_functions_under_match_cases(self) -> None:
        diagnostics = analyze(
            """\
            MODE = "strict"

            match MODE:
                case "strict":
                    @mapping_method
                    def map_person(source: PersonDto) -> Person:
                        return Person(first_name=source.first_name)
                case _:
                    pass
            """
        )
        self.assertEqual([d.message for d in diagnostics], ["Property last_name is not mapped."])
        self.assertEqual(diagnostics[0].function, "map_person")

    def test_cancellation(self) -> None:
        cancel = threading.Event()
        cancel.set()
        index = build_index(
            """\
            @mapping_method
            def map_person(source: PersonDto) -> Person:
                return Person()
            """
        )
        analyzer = mapguard.MappingAnalyzer(index, cancel_event=cancel)
        self.assertEqual(analyzer.analyze(), [])


class ReporterTests(unittest.TestCase):
    def test_unmapped_property_names(self) -> None:
        props = {
            mapguard.PropertyKey(name, "m.T"): mapguard.Property(name, "m.T", "m.T")
            for name in ("b", "a", "c")
        }
        mapped = {mapguard.PropertyKey("c", "m.T"), mapguard.PropertyKey("a", "m.Other")}
        self.assertEqual(mapguard.unmapped_property_names(props, mapped, ["b", "zz"]), ["a"])

    def test_json_object(self) -> None:
        diagnostic = mapguard.Diagnostic.create(
            mapguard.UNMAPPED_PROPERTY,
            mapguard.SourceLocation("m.py", 3, 0),
            "convert",
            "name",
            property_name="name",
        )
        obj = mapguard.diagnostic_to_json_obj(diagnostic)
        self.assertEqual(obj["rule_id"], "MMG1001")
        self.assertEqual(obj["message"], "Property name is not mapped.")
        self.assertEqual(obj["location"], {"file": "m.py", "line": 3, "column": 1})
        self.assertEqual(obj["tool"], "MapGuard")
        self.assertEqual(obj["version"], mapguard.__version__)

    def test_supported_diagnostics(self) -> None:
        ids = {d.rule_id for d in mapguard.SUPPORTED_DIAGNOSTICS}
        self.assertEqual(ids, {"MMG0001", "MMG1001"})
        self.assertTrue(all(d.severity == "Error" for d in mapguard.SUPPORTED_DIAGNOSTICS))


if __name__ == "__main__":
    unittest.main()

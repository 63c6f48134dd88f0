import ast
import textwrap
import unittest

import mapguard

MODELS = """\
from typing import Annotated, List, Optional, Union

from mapguard import MappingTarget, mapping_method


class Person:
    name: str


@mapping_method
def by_return(source) -> Person:
    return Person()


@mapping_method
def by_optional_string(source) -> Optional["Person"]:
    return None


@mapping_method
def by_union_operator(source) -> Person | None:
    return None


@mapping_method
def by_union(source) -> Union[None, Person]:
    return None


@mapping_method
def by_parameter(source, target: Annotated[Person, MappingTarget]) -> None:
    target.name = source


@mapping_method
def by_keyword_parameter(source, *, target: "Annotated[Person, MappingTarget()]"):
    target.name = source


@mapping_method
def without_target(source, target: Person) -> None:
    target.name = source


@mapping_method
def with_two_targets(
    first: Annotated[Person, MappingTarget],
    second: Annotated[Person, MappingTarget],
) -> None:
    pass


@mapping_method
def returns_list(source) -> List[Person]:
    return []


@mapping_method
def returns_unknown(source) -> Customer:
    return source
"""


class TargetTypeResolutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.module = mapguard.parse_module("models.py", textwrap.dedent(MODELS))
        self.index = mapguard.ProjectIndex([self.module])
        self.config = mapguard.MapGuardConfig()

    def resolve(self, name):
        node = self.module.functions[name]
        mapping = mapguard.detect_mapping_function(node, self.module, self.index, self.config)
        self.assertTrue(mapping.is_mapping)
        return mapguard.resolve_target_type(mapping, self.index, self.config)

    def test_return_annotation_forms(self) -> None:
        person = self.module.classes["Person"]
        for name in ("by_return", "by_optional_string", "by_union_operator", "by_union"):
            with self.subTest(name=name):
                target = self.resolve(name)
                self.assertEqual(target.name, "Person")
                self.assertIs(target.cls, person)

    def test_marked_parameter_for_void_functions(self) -> None:
        person = self.module.classes["Person"]
        for name in ("by_parameter", "by_keyword_parameter"):
            with self.subTest(name=name):
                self.assertIs(self.resolve(name).cls, person)

    def test_no_determinable_target(self) -> None:
        for name in ("without_target", "with_two_targets", "returns_list"):
            with self.subTest(name=name):
                self.assertIsNone(self.resolve(name))

    def test_unknown_class_keeps_the_name(self) -> None:
        target = self.resolve("returns_unknown")
        self.assertEqual(target.name, "Customer")
        self.assertIsNone(target.cls)


class VoidAnnotationTests(unittest.TestCase):
    def test_void_forms(self) -> None:
        for text in ("None", "NoReturn", "typing.NoReturn", "'None'"):
            with self.subTest(text=text):
                annotation = ast.parse(text, mode="eval").body
                self.assertTrue(mapguard._is_void_annotation(annotation))
        self.assertTrue(mapguard._is_void_annotation(None))
        self.assertFalse(mapguard._is_void_annotation(ast.parse("Person", mode="eval").body))


if __name__ == "__main__":
    unittest.main()

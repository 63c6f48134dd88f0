import ast
import textwrap
import unittest

import mapguard

MODELS = """\
from dataclasses import dataclass, field
from typing import ClassVar


@dataclass
class PersonBase:
    first_name: str = ""
    last_name: str = ""
    registry: ClassVar[dict] = {}
    _secret: str = ""


@dataclass
class Employee(PersonBase):
    last_name: str = "unknown"
    badge: int = field(default=0, init=False)


class Account:
    def __init__(self, owner):
        self.owner = owner
        self._balance = 0
        self.number, self.branch = "", ""

    @property
    def balance(self):
        return self._balance

    @property
    def nickname(self):
        return self._nickname

    @nickname.setter
    def nickname(self, value):
        self._nickname = value


class FrozenName(PersonBase):
    @property
    def first_name(self):
        return "fixed"
"""


def build_index():
    module = mapguard.parse_module("models.py", textwrap.dedent(MODELS))
    return module, mapguard.ProjectIndex([module])


def target_for(module, name):
    return mapguard.TargetType(name, module.classes[name])


class TargetPropertyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.module, self.index = build_index()

    def properties(self, name):
        return mapguard.build_target_properties(target_for(self.module, name), self.index)

    def test_dataclass_fields_skip_classvars_and_private_names(self) -> None:
        names = sorted(p.name for p in self.properties("PersonBase").values())
        self.assertEqual(names, ["first_name", "last_name"])

    def test_init_attributes_and_setter_properties(self) -> None:
        names = sorted(p.name for p in self.properties("Account").values())
        self.assertEqual(names, ["branch", "nickname", "number", "owner"])

    def test_override_shares_the_root_of_its_base(self) -> None:
        properties = self.properties("Employee")
        by_name = {p.name: p for p in properties.values()}
        self.assertEqual(sorted(by_name), ["badge", "first_name", "last_name"])
        self.assertEqual(by_name["last_name"].declaring, "models.Employee")
        self.assertEqual(by_name["last_name"].root, "models.PersonBase")
        self.assertEqual(by_name["first_name"].declaring, "models.PersonBase")
        self.assertEqual(
            by_name["last_name"].key,
            mapguard.property_key_for(self.module.classes["PersonBase"], "last_name", self.index),
        )

    def test_read_only_override_hides_writable_base(self) -> None:
        names = sorted(p.name for p in self.properties("FrozenName").values())
        self.assertEqual(names, ["last_name"])

    def test_unresolved_target_has_no_properties(self) -> None:
        self.assertEqual(mapguard.build_target_properties(mapguard.TargetType("Missing"), self.index), {})


class ProjectIndexTests(unittest.TestCase):
    def test_mro_is_class_first_then_bases(self) -> None:
        module, index = build_index()
        mro = index.mro(module.classes["Employee"])
        self.assertEqual([c.name for c in mro], ["Employee", "PersonBase"])

    def test_classes_resolve_across_modules(self) -> None:
        models = mapguard.parse_module("app/models.py", "class Person:\n    name: str\n")
        mappers = mapguard.parse_module("app/mappers.py", "from .models import Person as P\nimport app.models\n")
        index = mapguard.ProjectIndex([models, mappers])
        person = models.classes["Person"]
        self.assertEqual(mappers.imports["P"], ("app.models", "Person"))
        self.assertIs(index.resolve_class("P", mappers), person)
        expr = ast.parse("app.models.Person", mode="eval").body
        self.assertIs(index.resolve_class_expr(expr, mappers), person)


if __name__ == "__main__":
    unittest.main()

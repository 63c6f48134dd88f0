#!/usr/bin/env python3
"""
MapGuard - Completeness checks for hand-written mapping functions

High-level goals:
- Parse Python sources (via the ast module) into a small project index
- Find functions decorated as mapping functions
- Work out the class each one maps into and which of its properties get assigned
- Emit a diagnostic for every writable property that is neither assigned nor excluded

The runtime markers (``mapping_method``, ``MappingTarget``, ``UnmappedProperties``,
``UnmappedProperty``) live in this module as well, so mapped code only needs a
single import.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple, Union, Any, Set, Iterable, Iterator, Callable
import argparse
import ast
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
import fnmatch
import functools
import json
import operator
import os
import re
import string
import sys
import threading
import uuid

import yaml

__version__ = "0.1.0"

FunctionNode = Union[ast.FunctionDef, ast.AsyncFunctionDef]
FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef)

# Set by `--quiet`; diagnostics are never affected.
_QUIET_WARNINGS = False


def set_quiet(quiet: bool) -> None:
    global _QUIET_WARNINGS
    _QUIET_WARNINGS = quiet


def _warn(message: str) -> None:
    if not _QUIET_WARNINGS:
        sys.stderr.write(f"[mapguard] {message}\n")


# ============================================================
# ===================== RUNTIME MARKERS ======================
# ============================================================

class MappingMethod:
    """
    Marks a function as a hand-written mapping.

    Works bare (``@MappingMethod``) or called (``@MappingMethod()``). Subclass it
    to create a project specific marker; the analyzer follows the inheritance.
    """

    def __new__(cls, func: Optional[Callable[..., Any]] = None) -> Any:
        instance = super().__new__(cls)
        if func is not None:
            return instance(func)
        return instance

    def __call__(self, func: Callable[..., Any]) -> Callable[..., Any]:
        setattr(func, "__mapguard_mapping__", True)
        return func


mapping_method = MappingMethod()


class MappingTarget:
    """
    ``Annotated`` metadata marking the parameter a mapping function writes into:

        @mapping_method
        def fill(source: Order, target: Annotated[OrderDto, MappingTarget]) -> None: ...
    """


class UnmappedProperties:
    """
    Declares target properties that a mapping function leaves unassigned on purpose.

    Every positional argument is either a property name or an iterable of names.
    The decorator is repeatable; names accumulate on ``__mapguard_unmapped__``.
    """

    def __init__(self, *property_names: Any, names: Iterable[str] = ()) -> None:
        collected: List[str] = []
        for value in list(property_names) + [names if isinstance(names, str) else list(names)]:
            if isinstance(value, str):
                collected.append(value)
                continue
            for item in value:
                if not isinstance(item, str):
                    raise TypeError(f"property names must be strings, got {item!r}")
                collected.append(item)
        self._property_names = tuple(collected)

    @property
    def property_names(self) -> Tuple[str, ...]:
        return self._property_names

    def __call__(self, func: Callable[..., Any]) -> Callable[..., Any]:
        existing = list(getattr(func, "__mapguard_unmapped__", ()))
        setattr(func, "__mapguard_unmapped__", existing + list(self._property_names))
        return func


class UnmappedProperty(UnmappedProperties):
    """Single-name form of UnmappedProperties."""

    def __init__(self, property_name: str) -> None:
        if property_name is None:
            raise ValueError("property_name must not be None")
        if not isinstance(property_name, str):
            raise TypeError(f"property_name must be a string, got {property_name!r}")
        super().__init__(property_name)


unmapped_properties = UnmappedProperties
unmapped_property = UnmappedProperty


# ============================================================
# ====================== CONFIGURATION =======================
# ============================================================

DEFAULT_CONFIG_FILE = ".mapguard.yaml"
CONFIG_ENV_VAR = "MAPGUARD_CONFIG"


class ConfigError(Exception):
    """Raised when a configuration document cannot be turned into a MapGuardConfig."""


@dataclass
class MapGuardConfig:
    """
    Names the analyzer recognizes plus evaluation budgets.

    Marker names are matched against the last segment of a decorator or
    annotation expression, and against base class names when a project defines
    its own marker subclasses.
    """
    mapping_markers: Set[str] = field(default_factory=lambda: {"MappingMethod", "mapping_method"})
    target_markers: Set[str] = field(default_factory=lambda: {"MappingTarget"})
    exclusion_markers: Set[str] = field(
        default_factory=lambda: {"UnmappedProperties", "unmapped_properties"}
    )
    single_exclusion_markers: Set[str] = field(
        default_factory=lambda: {"UnmappedProperty", "unmapped_property"}
    )
    max_eval_steps: int = 10000
    max_call_depth: int = 16
    exclude: List[str] = field(default_factory=list)

    @property
    def all_exclusion_markers(self) -> Set[str]:
        return self.exclusion_markers | self.single_exclusion_markers


_NAME_SET_KEYS = ("mapping_markers", "target_markers", "exclusion_markers", "single_exclusion_markers")
_POSITIVE_INT_KEYS = ("max_eval_steps", "max_call_depth")


def _to_str_list(value: Any) -> Optional[List[str]]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    return None


def config_from_mapping(document: Any, origin: str = "<config>") -> MapGuardConfig:
    """
    Build a MapGuardConfig from an already-parsed YAML document.
    Bad values for known keys and unknown keys are reported and skipped.
    """
    config = MapGuardConfig()
    if document is None:
        return config
    if not isinstance(document, dict):
        raise ConfigError(f"{origin}: expected a mapping at the top level")

    for key, value in document.items():
        if key in _NAME_SET_KEYS:
            names = _to_str_list(value)
            if names is None:
                _warn(f"{origin}: '{key}' must be a list of names; ignoring.")
                continue
            setattr(config, key, set(names))
        elif key in _POSITIVE_INT_KEYS:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                _warn(f"{origin}: '{key}' must be a positive integer; ignoring.")
                continue
            setattr(config, key, value)
        elif key == "exclude":
            patterns = _to_str_list(value)
            if patterns is None:
                _warn(f"{origin}: 'exclude' must be a list of globs; ignoring.")
                continue
            config.exclude = patterns
        else:
            _warn(f"{origin}: unknown setting '{key}'; ignoring.")
    return config


def load_config(path: Optional[str] = None) -> MapGuardConfig:
    """
    Load settings from YAML.

    Lookup order: explicit ``path``, the MAPGUARD_CONFIG environment variable,
    then ``.mapguard.yaml`` in the working directory. Without any of them the
    defaults are returned.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None
    if path is None:
        if not os.path.exists(DEFAULT_CONFIG_FILE):
            return MapGuardConfig()
        path = DEFAULT_CONFIG_FILE

    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except FileNotFoundError:
        _warn(f"Config file not found: {path}; using defaults.")
        return MapGuardConfig()
    except OSError as exc:
        _warn(f"Could not read config file {path}: {exc}; using defaults.")
        return MapGuardConfig()
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML ({exc})") from exc

    return config_from_mapping(document, origin=path)


# ============================================================
# ====================== SOURCE MODEL ========================
# ============================================================

@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int  # 0-based, as reported by ast

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column + 1}"


@dataclass(eq=False)
class ClassInfo:
    """
    A class definition found in the analyzed sources.

    ``members`` maps public member names declared directly in this class to
    whether they can be assigned from outside.
    """
    name: str
    qualname: str
    module: "SourceModule" = field(repr=False)
    node: ast.ClassDef = field(repr=False)
    constants: Dict[str, ast.expr] = field(default_factory=dict, repr=False)
    methods: Dict[str, FunctionNode] = field(default_factory=dict, repr=False)
    members: Dict[str, bool] = field(default_factory=dict)
    init_fields: List[str] = field(default_factory=list)
    is_dataclass: bool = False

    @property
    def key(self) -> str:
        return f"{self.module.name}.{self.qualname}"


@dataclass(eq=False)
class SourceModule:
    path: str
    name: str
    source: str = field(repr=False)
    tree: ast.Module = field(repr=False)
    is_package: bool = False

    constants: Dict[str, ast.expr] = field(default_factory=dict, repr=False)
    functions: Dict[str, FunctionNode] = field(default_factory=dict, repr=False)
    classes: Dict[str, ClassInfo] = field(default_factory=dict, repr=False)
    classes_by_qualname: Dict[str, ClassInfo] = field(default_factory=dict, repr=False)

    # local name -> (source module, imported name); imported name is None for `import x`
    imports: Dict[str, Tuple[str, Optional[str]]] = field(default_factory=dict)


def _terminal_name(node: Optional[ast.AST]) -> Optional[str]:
    """Last identifier of a name-like expression: `a.b.C[T]()` -> `C`."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Subscript):
        return _terminal_name(node.value)
    if isinstance(node, ast.Call):
        return _terminal_name(node.func)
    return None


def _dotted_name(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        prefix = _dotted_name(node.value)
        return f"{prefix}.{node.attr}" if prefix else None
    return None


def _parse_string_annotation(node: Optional[ast.AST]) -> Optional[ast.AST]:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        try:
            return ast.parse(node.value, mode="eval").body
        except SyntaxError:
            return None
    return node


def _strip_docstring(body: List[ast.stmt]) -> List[ast.stmt]:
    if (
        body
        and isinstance(body[0], ast.Expr)
        and isinstance(body[0].value, ast.Constant)
        and isinstance(body[0].value.value, str)
    ):
        return body[1:]
    return body


def _nested_bodies(stmt: ast.stmt) -> Iterator[List[ast.stmt]]:
    for name in ("body", "orelse", "finalbody"):
        value = getattr(stmt, name, None)
        if isinstance(value, list):
            yield value
    for handler in getattr(stmt, "handlers", None) or []:
        yield handler.body
    for case in getattr(stmt, "cases", None) or []:
        yield case.body


def _iter_definitions(
    body: List[ast.stmt],
    prefix: str = "",
    owner: Optional[str] = None,
) -> Iterator[Tuple[Union[ast.ClassDef, FunctionNode], str, Optional[str]]]:
    """Yield (node, qualname, owning class qualname) for every def and class in source order."""
    for stmt in body:
        if isinstance(stmt, ast.ClassDef):
            qualname = prefix + stmt.name
            yield stmt, qualname, owner
            yield from _iter_definitions(stmt.body, qualname + ".", qualname)
        elif isinstance(stmt, FUNCTION_NODES):
            qualname = prefix + stmt.name
            yield stmt, qualname, owner
            yield from _iter_definitions(stmt.body, qualname + ".<locals>.", None)
        else:
            for nested in _nested_bodies(stmt):
                yield from _iter_definitions(nested, prefix, owner)


def _module_name_for(path: str) -> str:
    if path.startswith("<") and path.endswith(">"):
        return path.strip("<>") or "__main__"
    rel = os.path.relpath(path)
    if rel.startswith(".."):
        rel = os.path.basename(path)
    stem = rel[:-3] if rel.endswith(".py") else rel
    parts = [p for p in stem.replace("\\", "/").split("/") if p not in ("", ".")]
    if parts and parts[-1] == "__init__":
        parts.pop()
    return ".".join(parts) or "__main__"


def _collect_imports(module: SourceModule) -> Dict[str, Tuple[str, Optional[str]]]:
    imports: Dict[str, Tuple[str, Optional[str]]] = {}
    for node in ast.walk(module.tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.asname:
                    imports[alias.asname] = (alias.name, None)
                else:
                    head = alias.name.split(".")[0]
                    imports[head] = (head, None)
        elif isinstance(node, ast.ImportFrom):
            source = node.module or ""
            if node.level:
                package = module.name.split(".")
                if not module.is_package:
                    package = package[:-1]
                package = package[: len(package) - (node.level - 1)] if node.level > 1 else package
                source = ".".join(part for part in package + ([source] if source else []) if part)
            for alias in node.names:
                if alias.name == "*":
                    continue
                imports[alias.asname or alias.name] = (source, alias.name)
    return imports


def _annotation_is_classvar(annotation: ast.AST) -> bool:
    annotation = _parse_string_annotation(annotation)
    return _terminal_name(annotation) in ("ClassVar", "Final", "KW_ONLY")


def _is_property_getter(node: FunctionNode) -> bool:
    return any(_terminal_name(d) == "property" for d in node.decorator_list)


def _setter_target(node: FunctionNode) -> Optional[str]:
    for decorator in node.decorator_list:
        if (
            isinstance(decorator, ast.Attribute)
            and decorator.attr == "setter"
            and isinstance(decorator.value, ast.Name)
        ):
            return decorator.value.id
    return None


def _self_assigned_names(init: FunctionNode) -> List[str]:
    positional = init.args.posonlyargs + init.args.args
    if not positional:
        return []
    self_name = positional[0].arg
    names: List[str] = []

    def visit_target(target: ast.AST) -> None:
        if isinstance(target, (ast.Tuple, ast.List)):
            for elt in target.elts:
                visit_target(elt)
        elif isinstance(target, ast.Starred):
            visit_target(target.value)
        elif (
            isinstance(target, ast.Attribute)
            and isinstance(target.value, ast.Name)
            and target.value.id == self_name
        ):
            names.append(target.attr)

    for node in ast.walk(init):
        if isinstance(node, ast.Assign):
            for target in node.targets:
                visit_target(target)
        elif isinstance(node, (ast.AnnAssign, ast.AugAssign)):
            visit_target(node.target)
    return names


def _declared_members(node: ast.ClassDef, methods: Dict[str, FunctionNode]) -> Dict[str, bool]:
    members: Dict[str, bool] = {}
    setters: Set[str] = set()
    for stmt in node.body:
        if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            if not _annotation_is_classvar(stmt.annotation):
                members.setdefault(stmt.target.id, True)
        elif isinstance(stmt, FUNCTION_NODES):
            if _is_property_getter(stmt):
                members[stmt.name] = False
            setter = _setter_target(stmt)
            if setter:
                setters.add(setter)
    for name in setters:
        members[name] = True
    init = methods.get("__init__")
    if init is not None:
        for name in _self_assigned_names(init):
            members.setdefault(name, True)
    return {name: writable for name, writable in members.items() if not name.startswith("_")}


def _is_field_without_init(value: Optional[ast.expr]) -> bool:
    if not isinstance(value, ast.Call) or _terminal_name(value.func) != "field":
        return False
    return any(
        kw.arg == "init" and isinstance(kw.value, ast.Constant) and kw.value.value is False
        for kw in value.keywords
    )


def _build_class_info(node: ast.ClassDef, qualname: str, module: SourceModule) -> ClassInfo:
    info = ClassInfo(name=node.name, qualname=qualname, module=module, node=node)
    for stmt in node.body:
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    info.constants[target.id] = stmt.value
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
            if stmt.value is not None:
                info.constants[stmt.target.id] = stmt.value
            if not _annotation_is_classvar(stmt.annotation) and not _is_field_without_init(stmt.value):
                info.init_fields.append(stmt.target.id)
        elif isinstance(stmt, FUNCTION_NODES):
            info.methods[stmt.name] = stmt
    info.is_dataclass = any(_terminal_name(d) == "dataclass" for d in node.decorator_list) or any(
        _terminal_name(b) == "NamedTuple" for b in node.bases
    )
    info.members = _declared_members(node, info.methods)
    return info


def parse_module(path: str, source: Optional[str] = None) -> SourceModule:
    """
    Parse one Python file into a SourceModule.
    Raises SyntaxError / OSError; callers decide how to report them.
    """
    if source is None:
        with open(path, "r", encoding="utf-8") as handle:
            source = handle.read()
    tree = ast.parse(source, filename=path)
    module = SourceModule(
        path=path,
        name=_module_name_for(path),
        source=source,
        tree=tree,
        is_package=os.path.basename(path) == "__init__.py",
    )

    for stmt in tree.body:
        if isinstance(stmt, ast.Assign):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    module.constants[target.id] = stmt.value
        elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name) and stmt.value is not None:
            module.constants[stmt.target.id] = stmt.value
        elif isinstance(stmt, FUNCTION_NODES):
            module.functions[stmt.name] = stmt

    module.imports = _collect_imports(module)

    infos: List[ClassInfo] = []
    for node, qualname, _owner in _iter_definitions(tree.body):
        if isinstance(node, ast.ClassDef):
            info = _build_class_info(node, qualname, module)
            module.classes_by_qualname[qualname] = info
            infos.append(info)
    for info in sorted(infos, key=lambda i: i.qualname.count(".")):
        module.classes.setdefault(info.name, info)
    return module


# ============================================================
# ===================== PROJECT INDEX ========================
# ============================================================

class ProjectIndex:
    """
    Read-only lookup over every analyzed module: classes by name, modules by
    dotted name and a precomputed MRO approximation per class. Built once
    before analysis starts; analysis threads only read from it.
    """

    def __init__(self, modules: List[SourceModule]) -> None:
        self.modules = sorted(modules, key=lambda m: m.path)
        self.modules_by_name: Dict[str, SourceModule] = {}
        self.classes_by_name: Dict[str, List[ClassInfo]] = {}
        for module in self.modules:
            self.modules_by_name.setdefault(module.name, module)
            for info in module.classes_by_qualname.values():
                self.classes_by_name.setdefault(info.name, []).append(info)

        self._mro: Dict[str, List[ClassInfo]] = {}
        for module in self.modules:
            for info in module.classes_by_qualname.values():
                self._mro[info.key] = self._linearize(info)

    def find_module(self, dotted: str) -> Optional[SourceModule]:
        if not dotted:
            return None
        module = self.modules_by_name.get(dotted)
        if module is not None:
            return module
        for name, candidate in self.modules_by_name.items():
            if name.endswith("." + dotted) or dotted.endswith("." + name):
                return candidate
        return None

    def resolve_class(self, name: str, module: SourceModule) -> Optional[ClassInfo]:
        if name in module.classes:
            return module.classes[name]
        if name in module.imports:
            source, original = module.imports[name]
            if original is None:
                return None
            target = self.find_module(source)
            if target is not None and original in target.classes:
                return target.classes[original]
            name = original
        candidates = self.classes_by_name.get(name)
        return candidates[0] if candidates else None

    def resolve_class_expr(self, node: Optional[ast.AST], module: SourceModule) -> Optional[ClassInfo]:
        node = _parse_string_annotation(node)
        if isinstance(node, ast.Name):
            return self.resolve_class(node.id, module)
        if isinstance(node, ast.Attribute):
            if isinstance(node.value, ast.Name) and node.value.id in module.imports:
                source, original = module.imports[node.value.id]
                target = self.find_module(source if original is None else f"{source}.{original}")
                if target is not None and node.attr in target.classes:
                    return target.classes[node.attr]
            candidates = self.classes_by_name.get(node.attr)
            return candidates[0] if candidates else None
        if isinstance(node, ast.Subscript):
            return self.resolve_class_expr(node.value, module)
        return None

    def _linearize(self, info: ClassInfo) -> List[ClassInfo]:
        result: List[ClassInfo] = []
        seen: Set[str] = set()

        def visit(current: ClassInfo) -> None:
            if current.key in seen:
                return
            seen.add(current.key)
            result.append(current)
            for base in current.node.bases:
                resolved = self.resolve_class_expr(base, current.module)
                if resolved is not None:
                    visit(resolved)

        visit(info)
        return result

    def mro(self, info: ClassInfo) -> List[ClassInfo]:
        """The class itself first, then its bases depth-first, left to right."""
        return self._mro.get(info.key) or [info]

    def marker_ancestor(self, info: ClassInfo, names: Set[str]) -> Optional[str]:
        """Name of the nearest base class (breadth-first) that is one of `names`."""
        seen: Set[str] = set()
        queue = [info]
        while queue:
            current = queue.pop(0)
            if current.key in seen:
                continue
            seen.add(current.key)
            for base in current.node.bases:
                base_name = _terminal_name(base)
                if base_name is None:
                    continue
                if base_name in names:
                    return base_name
                if isinstance(base, ast.Name) and base_name in current.module.imports:
                    original = current.module.imports[base_name][1]
                    if original in names:
                        return original
                resolved = self.resolve_class_expr(base, current.module)
                if resolved is not None:
                    queue.append(resolved)
        return None


def _marker_name(
    expr: ast.AST,
    module: SourceModule,
    index: ProjectIndex,
    names: Set[str],
) -> Optional[str]:
    """
    Return the marker a decorator / annotation metadata expression stands for,
    either directly (by name or import alias) or through class inheritance.
    """
    target = expr.func if isinstance(expr, ast.Call) else expr
    local = _terminal_name(target)
    if local is None:
        return None
    if local in names:
        return local
    if isinstance(target, ast.Name) and local in module.imports:
        original = module.imports[local][1]
        if original in names:
            return original
    info = index.resolve_class_expr(target, module)
    if info is None:
        return None
    if info.name in names:
        return info.name
    return index.marker_ancestor(info, names)


def _node_location(module: SourceModule, node: ast.AST) -> SourceLocation:
    return SourceLocation(module.path, getattr(node, "lineno", 0), getattr(node, "col_offset", 0))


def _name_location(module: SourceModule, node: FunctionNode) -> SourceLocation:
    lines = module.source.splitlines()
    column = node.col_offset
    if 0 < node.lineno <= len(lines):
        found = lines[node.lineno - 1].find(node.name, node.col_offset)
        if found >= 0:
            column = found
    return SourceLocation(module.path, node.lineno, column)


def _source_segment(module: SourceModule, node: ast.AST) -> str:
    return ast.get_source_segment(module.source, node) or ast.unparse(node)


# ============================================================
# ================= MAPPING METHOD DETECTION =================
# ============================================================

@dataclass(frozen=True)
class MappingFunction:
    """
    A function declaration together with the verdict of the detector.
    ``location`` anchors every diagnostic reported for this function.
    """
    node: FunctionNode = field(repr=False)
    module: SourceModule = field(repr=False)
    owner: Optional[ClassInfo]
    is_mapping: bool
    location: Optional[SourceLocation] = None
    marker: Optional[ast.expr] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        if self.owner is not None:
            return f"{self.owner.qualname}.{self.node.name}"
        return self.node.name


def _is_marked(node: FunctionNode, module: SourceModule, index: ProjectIndex, config: MapGuardConfig) -> bool:
    return any(_marker_name(d, module, index, config.mapping_markers) for d in node.decorator_list)


def detect_mapping_function(
    node: FunctionNode,
    module: SourceModule,
    index: ProjectIndex,
    config: MapGuardConfig,
    owner: Optional[ClassInfo] = None,
) -> MappingFunction:
    for decorator in node.decorator_list:
        if _marker_name(decorator, module, index, config.mapping_markers):
            return MappingFunction(node, module, owner, True, _node_location(module, decorator), decorator)

    # Overriding a marked method inherits the marking; there is no decorator to point at.
    if owner is not None:
        for base in index.mro(owner)[1:]:
            overridden = base.methods.get(node.name)
            if overridden is not None and _is_marked(overridden, base.module, index, config):
                return MappingFunction(node, module, owner, True, _name_location(module, node))

    return MappingFunction(node, module, owner, False)


# ============================================================
# ================= TARGET TYPE RESOLUTION ===================
# ============================================================

@dataclass(frozen=True)
class TargetType:
    name: str
    cls: Optional[ClassInfo] = field(default=None, compare=False)


def _is_void_annotation(annotation: Optional[ast.AST]) -> bool:
    if annotation is None:
        return True
    annotation = _parse_string_annotation(annotation)
    if isinstance(annotation, ast.Constant) and annotation.value is None:
        return True
    return _terminal_name(annotation) in ("None", "NoReturn", "Never")


def _unwrap_annotation(node: Optional[ast.AST]) -> Optional[ast.expr]:
    """Reduce an annotation to the expression naming a single class, if there is one."""
    node = _parse_string_annotation(node)
    if isinstance(node, (ast.Name, ast.Attribute)):
        return node
    if isinstance(node, ast.Subscript):
        wrapper = _terminal_name(node.value)
        arguments = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
        if wrapper in ("Optional", "Annotated", "Final") and arguments:
            return _unwrap_annotation(arguments[0])
        if wrapper == "Union":
            return _single_non_none(arguments)
        return None
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        operands: List[ast.AST] = []

        def flatten(part: ast.AST) -> None:
            if isinstance(part, ast.BinOp) and isinstance(part.op, ast.BitOr):
                flatten(part.left)
                flatten(part.right)
            else:
                operands.append(part)

        flatten(node)
        return _single_non_none(operands)
    return None


def _single_non_none(options: List[ast.AST]) -> Optional[ast.expr]:
    remaining = [
        option for option in options
        if not (isinstance(option, ast.Constant) and option.value is None)
        and _terminal_name(option) != "None"
    ]
    if len(remaining) != 1:
        return None
    return _unwrap_annotation(remaining[0])


def _mapping_target_annotation(
    annotation: Optional[ast.AST],
    module: SourceModule,
    index: ProjectIndex,
    config: MapGuardConfig,
) -> Tuple[bool, Optional[ast.expr]]:
    """(is marked, unwrapped type expression) for one parameter annotation."""
    annotation = _parse_string_annotation(annotation)
    if not isinstance(annotation, ast.Subscript) or _terminal_name(annotation.value) != "Annotated":
        return False, None
    if not isinstance(annotation.slice, ast.Tuple) or len(annotation.slice.elts) < 2:
        return False, None
    metadata = annotation.slice.elts[1:]
    if not any(_marker_name(m, module, index, config.target_markers) for m in metadata):
        return False, None
    return True, _unwrap_annotation(annotation.slice.elts[0])


def resolve_target_type(
    mapping: MappingFunction,
    index: ProjectIndex,
    config: MapGuardConfig,
) -> Optional[TargetType]:
    """
    The class a mapping function maps into:
    1. its return annotation, unless the function returns nothing;
    2. otherwise the type of its single parameter annotated with MappingTarget.
    Returns None when neither applies.
    """
    node = mapping.node
    if not _is_void_annotation(node.returns):
        expr = _unwrap_annotation(node.returns)
        if expr is None:
            return None
        return TargetType(_terminal_name(expr) or "", index.resolve_class_expr(expr, mapping.module))

    arguments = node.args.posonlyargs + node.args.args + node.args.kwonlyargs
    marked: List[Optional[ast.expr]] = []
    for argument in arguments:
        is_target, expr = _mapping_target_annotation(argument.annotation, mapping.module, index, config)
        if is_target:
            marked.append(expr)
    if len(marked) != 1 or marked[0] is None:
        return None
    expr = marked[0]
    return TargetType(_terminal_name(expr) or "", index.resolve_class_expr(expr, mapping.module))


# ============================================================
# =================== TARGET PROPERTIES ======================
# ============================================================

@dataclass(frozen=True)
class PropertyKey:
    """Identity of a logical property slot: an override and its base share one key."""
    name: str
    root: str


@dataclass(frozen=True)
class Property:
    name: str
    declaring: str
    root: str

    @property
    def key(self) -> PropertyKey:
        return PropertyKey(self.name, self.root)


def _root_declaration(declaring: ClassInfo, name: str, index: ProjectIndex) -> ClassInfo:
    root = declaring
    for ancestor in index.mro(declaring):
        if name in ancestor.members:
            root = ancestor
    return root


def property_key_for(info: ClassInfo, name: str, index: ProjectIndex) -> Optional[PropertyKey]:
    for cls in index.mro(info):
        if name in cls.members:
            return PropertyKey(name, _root_declaration(cls, name, index).key)
    return None


def build_target_properties(target: TargetType, index: ProjectIndex) -> Dict[PropertyKey, Property]:
    """
    Every publicly writable property reachable from the target class. The most
    derived declaration of a name decides whether it is writable.
    """
    if target.cls is None:
        return {}
    properties: Dict[PropertyKey, Property] = {}
    decided: Set[str] = set()
    for cls in index.mro(target.cls):
        for name, writable in cls.members.items():
            if name in decided:
                continue
            decided.add(name)
            if not writable:
                continue
            prop = Property(name, cls.key, _root_declaration(cls, name, index).key)
            properties[prop.key] = prop
    return properties


# ============================================================
# ================== ASSIGNMENT COLLECTION ===================
# ============================================================

class _TypeInference:
    """
    Flow-insensitive guesses about which index classes a local expression may
    hold. Only what can be read off annotations, constructor calls and casts.
    """

    def __init__(self, mapping: MappingFunction, index: ProjectIndex) -> None:
        self.mapping = mapping
        self.module = mapping.module
        self.index = index
        self.env: Dict[str, List[ClassInfo]] = {}

    def bind(self, name: str, classes: Iterable[ClassInfo]) -> None:
        bound = self.env.setdefault(name, [])
        for info in classes:
            if all(info is not existing for existing in bound):
                bound.append(info)

    def _annotation_classes(self, annotation: Optional[ast.AST], module: SourceModule) -> List[ClassInfo]:
        info = self.index.resolve_class_expr(_unwrap_annotation(annotation), module)
        return [info] if info is not None else []

    def seed(self) -> None:
        node = self.mapping.node
        arguments = node.args.posonlyargs + node.args.args
        is_static = any(_terminal_name(d) in ("staticmethod", "classmethod") for d in node.decorator_list)
        if self.mapping.owner is not None and arguments and not is_static and arguments[0].annotation is None:
            self.bind(arguments[0].arg, [self.mapping.owner])
        for inner in ast.walk(node):
            if isinstance(inner, FUNCTION_NODES):
                args = inner.args
                for argument in args.posonlyargs + args.args + args.kwonlyargs:
                    self.bind(argument.arg, self._annotation_classes(argument.annotation, self.module))

    def build(self) -> Dict[str, List[ClassInfo]]:
        self.seed()
        # Two sweeps so that `b = a` picks up `a = Person()` regardless of walk order.
        for _ in range(2):
            for stmt in self.mapping.node.body:
                for node in ast.walk(stmt):
                    if isinstance(node, ast.Assign):
                        classes = self.infer(node.value)
                        for target in node.targets:
                            if isinstance(target, ast.Name):
                                self.bind(target.id, classes)
                    elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
                        self.bind(node.target.id, self._annotation_classes(node.annotation, self.module))
                        if node.value is not None:
                            self.bind(node.target.id, self.infer(node.value))
                    elif isinstance(node, ast.NamedExpr):
                        self.bind(node.target.id, self.infer(node.value))
        return self.env

    def _returned_classes(self, func: FunctionNode, module: SourceModule, owner: Optional[ClassInfo]) -> List[ClassInfo]:
        returns = _parse_string_annotation(func.returns)
        if owner is not None and _terminal_name(returns) == "Self":
            return [owner]
        return self._annotation_classes(returns, module)

    def _member_classes(self, info: ClassInfo, name: str) -> List[ClassInfo]:
        for cls in self.index.mro(info):
            for stmt in cls.node.body:
                if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name) and stmt.target.id == name:
                    return self._annotation_classes(stmt.annotation, cls.module)
                if isinstance(stmt, FUNCTION_NODES) and stmt.name == name and _is_property_getter(stmt):
                    return self._returned_classes(stmt, cls.module, cls)
        return []

    def infer(self, expr: Optional[ast.AST]) -> List[ClassInfo]:
        if isinstance(expr, ast.Name):
            return list(self.env.get(expr.id, []))
        if isinstance(expr, ast.NamedExpr):
            return self.infer(expr.value)
        if isinstance(expr, ast.IfExp):
            return self.infer(expr.body) + self.infer(expr.orelse)
        if isinstance(expr, ast.BoolOp):
            return [info for value in expr.values for info in self.infer(value)]
        if isinstance(expr, ast.Attribute):
            return [found for info in self.infer(expr.value) for found in self._member_classes(info, expr.attr)]
        if isinstance(expr, ast.Call):
            return self._infer_call(expr)
        return []

    def _infer_call(self, call: ast.Call) -> List[ClassInfo]:
        callee = _terminal_name(call.func)
        if callee == "cast" and call.args:
            return self._annotation_classes(call.args[0], self.module)
        if _is_replace_call(call, self.module):
            return self.infer(call.args[0])
        constructed = self.index.resolve_class_expr(call.func, self.module)
        if constructed is not None and not isinstance(call.func, ast.Subscript):
            return [constructed]
        if isinstance(call.func, ast.Name) and call.func.id in self.module.functions:
            return self._returned_classes(self.module.functions[call.func.id], self.module, None)
        if isinstance(call.func, ast.Attribute):
            found: List[ClassInfo] = []
            for info in self.infer(call.func.value):
                for cls in self.index.mro(info):
                    method = cls.methods.get(call.func.attr)
                    if method is not None:
                        found.extend(self._returned_classes(method, cls.module, info))
                        break
            return found
        return []


def _is_replace_call(call: ast.Call, module: SourceModule) -> bool:
    if not call.args:
        return False
    func = call.func
    if isinstance(func, ast.Name) and func.id == "replace":
        return module.imports.get("replace", ("", None))[0] in ("dataclasses", "copy")
    if isinstance(func, ast.Attribute) and func.attr == "replace" and isinstance(func.value, ast.Name):
        source = module.imports.get(func.value.id, (func.value.id, None))[0]
        return source in ("dataclasses", "copy")
    return False


def _initializer_parameters(info: ClassInfo, index: ProjectIndex) -> List[str]:
    """Names positional constructor arguments bind to, in order."""
    lineage = index.mro(info)
    for cls in lineage:
        init = cls.methods.get("__init__")
        if init is not None:
            return [a.arg for a in (init.args.posonlyargs + init.args.args)[1:]]
    names: List[str] = []
    for cls in reversed(lineage):
        if cls.is_dataclass:
            for name in cls.init_fields:
                if name not in names:
                    names.append(name)
    return names


def collect_mapped_properties(mapping: MappingFunction, index: ProjectIndex) -> Set[PropertyKey]:
    """
    Property slots assigned anywhere in the function body, either through an
    assignment statement or through constructor / ``replace`` keywords.
    """
    inference = _TypeInference(mapping, index)
    inference.build()
    mapped: Set[PropertyKey] = set()

    def add(classes: Iterable[ClassInfo], name: str) -> None:
        for info in classes:
            key = property_key_for(info, name, index)
            if key is not None:
                mapped.add(key)

    def visit_target(target: ast.AST) -> None:
        if isinstance(target, (ast.Tuple, ast.List)):
            for elt in target.elts:
                visit_target(elt)
        elif isinstance(target, ast.Starred):
            visit_target(target.value)
        elif isinstance(target, ast.Attribute):
            add(inference.infer(target.value), target.attr)

    body_nodes = [node for stmt in mapping.node.body for node in ast.walk(stmt)]

    for node in body_nodes:
        if isinstance(node, ast.Assign):
            for target in node.targets:
                visit_target(target)
        elif isinstance(node, ast.AugAssign):
            visit_target(node.target)
        elif isinstance(node, ast.AnnAssign) and node.value is not None:
            visit_target(node.target)

    for node in body_nodes:
        if not isinstance(node, ast.Call):
            continue
        if _is_replace_call(node, mapping.module):
            receivers = inference.infer(node.args[0])
            for keyword in node.keywords:
                if keyword.arg:
                    add(receivers, keyword.arg)
            continue
        if isinstance(node.func, ast.Subscript):
            continue
        constructed = index.resolve_class_expr(node.func, mapping.module)
        if constructed is None:
            continue
        parameters = _initializer_parameters(constructed, index)
        for position, argument in enumerate(node.args):
            if isinstance(argument, ast.Starred):
                break
            if position < len(parameters):
                add([constructed], parameters[position])
        for keyword in node.keywords:
            if keyword.arg:
                add([constructed], keyword.arg)

    return mapped


# ============================================================
# ================= EXCLUSION EVALUATION =====================
# ============================================================

def _mark_safe_callable(func: Any) -> Any:
    setattr(func, "_mapguard_safe_callable", True)
    return func


def _wrap_safe_callable(func: Any) -> Any:
    @functools.wraps(func)
    def _safe_wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return _mark_safe_callable(_safe_wrapper)


_MAX_SEQUENCE_LENGTH = 100000


class ExpressionEvalError(Exception):
    """Raised when an exclusion argument falls outside the constant-expression grammar."""


def _bounded_range(*args: int) -> range:
    result = range(*args)
    if len(result) > _MAX_SEQUENCE_LENGTH:
        raise ExpressionEvalError("range is too large")
    return result


def _check_size(value: Any) -> Any:
    if isinstance(value, (str, bytes, list, tuple, set, frozenset, dict)) and len(value) > _MAX_SEQUENCE_LENGTH:
        raise ExpressionEvalError(f"{type(value).__name__} of {len(value)} items is too large")
    return value


def _rendered_size(value: Any, limit: int) -> int:
    """Lower bound on len(str(value)); stops counting once ``limit`` is passed."""
    if isinstance(value, (str, bytes)):
        return len(value)
    if isinstance(value, dict):
        items: Iterable[Any] = (item for pair in value.items() for item in pair)
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = value
    else:
        return 1
    total = 2
    for item in items:
        total += _rendered_size(item, limit) + 2
        if total > limit:
            break
    return total


def _check_rendered(value: Any) -> None:
    if _rendered_size(value, _MAX_SEQUENCE_LENGTH) > _MAX_SEQUENCE_LENGTH:
        raise ExpressionEvalError("value is too large to render as text")


_SPEC_NUMBER = re.compile(r"\d+")
_PERCENT_FIELD = re.compile(r"%(?:\([^)]*\))?([^a-zA-Z%]*)[a-zA-Z%]")


def _check_format_spec(spec: str) -> None:
    # Width and precision are the only numbers a format spec can carry.
    for digits in _SPEC_NUMBER.findall(spec):
        if len(digits) > 6 or int(digits) > _MAX_SEQUENCE_LENGTH:
            raise ExpressionEvalError(f"format width {digits} is too large")


def _check_percent_format(template: str, values: Any) -> None:
    for flags in _PERCENT_FIELD.findall(template):
        if "*" in flags:
            raise ExpressionEvalError("'*' widths are not supported in % formatting")
        _check_format_spec(flags)
    _check_rendered(values)


def _checked_format(template: str, *args: Any, **kwargs: Any) -> str:
    """str.format restricted to plain fields: no attribute or index lookups, no nested specs."""
    for _literal, field_name, spec, _conversion in string.Formatter().parse(template):
        if field_name is None:
            continue
        if "." in field_name or "[" in field_name:
            raise ExpressionEvalError(f"format field '{field_name}' is not allowed")
        if spec:
            if "{" in spec:
                raise ExpressionEvalError("nested format specs are not supported")
            _check_format_spec(spec)
    for value in list(args) + list(kwargs.values()):
        _check_rendered(value)
    return template.format(*args, **kwargs)


def _checked_replace(text: str, old: str, new: str, count: int = -1) -> str:
    occurrences = text.count(old) if old else len(text) + 1
    if count >= 0:
        occurrences = min(occurrences, count)
    if len(text) + occurrences * (len(new) - len(old)) > _MAX_SEQUENCE_LENGTH:
        raise ExpressionEvalError("str.replace result is too large")
    return text.replace(old, new, count)


def _checked_join(separator: str, iterable: Iterable[Any]) -> str:
    items = list(iterable)
    total = len(separator) * max(len(items) - 1, 0)
    total += sum(len(item) for item in items if isinstance(item, str))
    if total > _MAX_SEQUENCE_LENGTH:
        raise ExpressionEvalError("str.join result is too large")
    return separator.join(items)


def _bounded_str(*args: Any) -> str:
    if args:
        _check_rendered(args[0])
    return str(*args)


def _bounded_sum(iterable: Iterable[Any], start: Any = 0) -> Any:
    items = list(iterable)
    if not all(isinstance(item, (int, float)) for item in [start] + items):
        raise ExpressionEvalError("sum() only accepts numbers")
    return sum(items, start)


_SAFE_BUILTINS: Dict[str, Any] = {
    name: _wrap_safe_callable(func)
    for name, func in {
        "list": list,
        "tuple": tuple,
        "set": set,
        "frozenset": frozenset,
        "dict": dict,
        "sorted": sorted,
        "reversed": reversed,
        "len": len,
        "str": _bounded_str,
        "min": min,
        "max": max,
        "sum": _bounded_sum,
        "any": any,
        "all": all,
        "enumerate": enumerate,
        "zip": zip,
        "range": _bounded_range,
    }.items()
}

_SAFE_STR_METHODS = frozenset({
    "capitalize", "casefold", "endswith", "format", "join", "lower", "lstrip",
    "partition", "removeprefix", "removesuffix", "replace", "rsplit", "rstrip",
    "split", "splitlines", "startswith", "strip", "title", "upper",
})
_CHECKED_STR_METHODS: Dict[str, Callable[..., str]] = {
    "format": _checked_format,
    "join": _checked_join,
    "replace": _checked_replace,
}
_SAFE_DICT_METHODS = frozenset({"get", "items", "keys", "values"})


@dataclass(frozen=True, eq=False)
class _HelperFunction:
    node: FunctionNode
    module: SourceModule
    owner: Optional[ClassInfo] = None


@dataclass(frozen=True, eq=False)
class _ClassRef:
    info: ClassInfo


@dataclass(frozen=True, eq=False)
class _ModuleRef:
    module: SourceModule


@dataclass
class _Scope:
    module: SourceModule
    locals: Dict[str, Any] = field(default_factory=dict)
    class_info: Optional[ClassInfo] = None

    def child(self, bindings: Dict[str, Any]) -> "_Scope":
        merged = dict(self.locals)
        merged.update(bindings)
        return _Scope(self.module, merged, self.class_info)


_MISSING = object()


class EvaluationSession:
    """
    Identity and budget of one exclusion evaluation. A new session is opened for
    every decorator occurrence and closed as soon as its names are read back.
    """

    def __init__(self, label: str, max_steps: int, max_depth: int) -> None:
        self.session_id = uuid.uuid4().hex
        self.label = label
        self.max_steps = max_steps
        self.max_depth = max_depth
        self.steps = 0
        self.depth = 0
        self.closed = False
        self.resolving: Set[Tuple[str, str]] = set()

    def tick(self) -> None:
        if self.closed:
            raise ExpressionEvalError("evaluation session is closed")
        self.steps += 1
        if self.steps > self.max_steps:
            raise ExpressionEvalError(f"evaluation budget of {self.max_steps} steps exhausted")

    @contextmanager
    def frame(self) -> Iterator[None]:
        self.depth += 1
        try:
            if self.depth > self.max_depth:
                raise ExpressionEvalError(f"call depth limit of {self.max_depth} exceeded")
            yield
        finally:
            self.depth -= 1

    def close(self) -> None:
        self.closed = True
        self.resolving.clear()


@contextmanager
def evaluation_session(label: str, config: MapGuardConfig) -> Iterator[EvaluationSession]:
    session = EvaluationSession(label, config.max_eval_steps, config.max_call_depth)
    try:
        yield session
    finally:
        session.close()


class _ConstantExpressionInterpreter:
    """
    Evaluates a restricted subset of Python expressions by walking the AST.
    Names resolve to constants and single-expression helper functions defined in
    the analyzed sources; only allow-listed builtins and str/dict methods can be
    called. Nothing from the analyzed code is ever imported or executed.
    """

    _BIN_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Mod: operator.mod,
        ast.FloorDiv: operator.floordiv,
        ast.BitOr: operator.or_,
        ast.BitAnd: operator.and_,
    }
    _UNARY_OPS = {
        ast.Not: operator.not_,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
    }
    _COMPARISONS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.In: lambda left, right: left in right,
        ast.NotIn: lambda left, right: left not in right,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }

    def __init__(self, index: ProjectIndex, session: EvaluationSession) -> None:
        self.index = index
        self.session = session

    # ---------------------------------------------------------------- nodes

    def _eval_node(self, node: ast.AST, scope: _Scope) -> Any:
        self.session.tick()

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.JoinedStr):
            return _check_size("".join(self._format_part(part, scope) for part in node.values))

        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            items: List[Any] = []
            for elt in node.elts:
                if isinstance(elt, ast.Starred):
                    items.extend(self._eval_node(elt.value, scope))
                else:
                    items.append(self._eval_node(elt, scope))
            if isinstance(node, ast.Tuple):
                return tuple(items)
            if isinstance(node, ast.Set):
                return set(items)
            return items

        if isinstance(node, ast.Dict):
            result: Dict[Any, Any] = {}
            for key, value in zip(node.keys, node.values):
                if key is None:
                    result.update(self._eval_node(value, scope))
                else:
                    result[self._eval_node(key, scope)] = self._eval_node(value, scope)
            return result

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value: Any = True
                for operand in node.values:
                    value = self._eval_node(operand, scope)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self._eval_node(operand, scope)
                if value:
                    return value
            return value

        if isinstance(node, ast.UnaryOp):
            unary = self._UNARY_OPS.get(type(node.op))
            if not unary:
                raise ExpressionEvalError("unsupported unary operator")
            return unary(self._eval_node(node.operand, scope))

        if isinstance(node, ast.BinOp):
            binary = self._BIN_OPS.get(type(node.op))
            if not binary:
                raise ExpressionEvalError(f"unsupported binary operator {type(node.op).__name__}")
            left = self._eval_node(node.left, scope)
            right = self._eval_node(node.right, scope)
            if isinstance(node.op, ast.Mult):
                self._check_repetition(left, right)
            elif isinstance(node.op, ast.Mod) and isinstance(left, str):
                _check_percent_format(left, right)
            return _check_size(binary(left, right))

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, scope)
            for operator_node, comparator in zip(node.ops, node.comparators):
                right = self._eval_node(comparator, scope)
                if not self._COMPARISONS[type(operator_node)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval_node(node.test, scope) else node.orelse
            return self._eval_node(branch, scope)

        if isinstance(node, ast.Subscript):
            value = self._eval_node(node.value, scope)
            return value[self._eval_slice(node.slice, scope)]

        if isinstance(node, ast.Name):
            return self._resolve_name(node.id, scope)

        if isinstance(node, ast.Attribute):
            return self._eval_attribute(node, scope)

        if isinstance(node, ast.Call):
            return self._eval_call(node, scope)

        if isinstance(node, (ast.ListComp, ast.GeneratorExp)):
            return _check_size(list(self._iterate_comprehension(node.generators, scope, node.elt, None)))

        if isinstance(node, ast.SetComp):
            return set(self._iterate_comprehension(node.generators, scope, node.elt, None))

        if isinstance(node, ast.DictComp):
            return dict(self._iterate_comprehension(node.generators, scope, node.value, node.key))

        raise ExpressionEvalError(f"unsupported expression node: {type(node).__name__}")

    def _format_part(self, part: ast.AST, scope: _Scope) -> str:
        if isinstance(part, ast.Constant):
            return str(part.value)
        if not isinstance(part, ast.FormattedValue):
            raise ExpressionEvalError("unsupported f-string part")
        value = self._eval_node(part.value, scope)
        _check_rendered(value)
        if part.conversion == ord("r"):
            value = repr(value)
        elif part.conversion == ord("a"):
            value = ascii(value)
        elif part.conversion == ord("s"):
            value = str(value)
        spec = self._eval_node(part.format_spec, scope) if part.format_spec is not None else ""
        _check_format_spec(spec)
        return _check_size(format(value, spec))

    def _eval_slice(self, slice_node: ast.AST, scope: _Scope) -> Any:
        if isinstance(slice_node, ast.Slice):
            lower = self._eval_node(slice_node.lower, scope) if slice_node.lower else None
            upper = self._eval_node(slice_node.upper, scope) if slice_node.upper else None
            step = self._eval_node(slice_node.step, scope) if slice_node.step else None
            return slice(lower, upper, step)
        return self._eval_node(slice_node, scope)

    @staticmethod
    def _check_repetition(left: Any, right: Any) -> None:
        for sequence, count in ((left, right), (right, left)):
            if isinstance(sequence, (str, bytes, list, tuple)) and isinstance(count, int):
                if len(sequence) * count > _MAX_SEQUENCE_LENGTH:
                    raise ExpressionEvalError("sequence repetition is too large")

    def _iterate_comprehension(
        self,
        generators: List[ast.comprehension],
        scope: _Scope,
        value_node: ast.AST,
        key_node: Optional[ast.AST],
    ) -> Iterator[Any]:
        def recurse(position: int, current: _Scope) -> Iterator[Any]:
            if position == len(generators):
                if key_node is None:
                    yield self._eval_node(value_node, current)
                else:
                    yield self._eval_node(key_node, current), self._eval_node(value_node, current)
                return

            comp = generators[position]
            if comp.is_async:
                raise ExpressionEvalError("async comprehensions are not supported")
            for item in self._eval_node(comp.iter, current):
                self.session.tick()
                bindings: Dict[str, Any] = {}
                self._assign_comprehension_target(bindings, comp.target, item)
                inner = current.child(bindings)
                if all(self._eval_node(condition, inner) for condition in comp.ifs):
                    yield from recurse(position + 1, inner)

        yield from recurse(0, scope)

    def _assign_comprehension_target(self, bindings: Dict[str, Any], target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            bindings[target.id] = value
            return
        if isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(target.elts) != len(values):
                raise ExpressionEvalError("comprehension target length mismatch")
            for subtarget, subvalue in zip(target.elts, values):
                self._assign_comprehension_target(bindings, subtarget, subvalue)
            return
        raise ExpressionEvalError("unsupported comprehension target")

    # ---------------------------------------------------------------- names

    def _resolve_name(self, name: str, scope: _Scope) -> Any:
        if name in scope.locals:
            return scope.locals[name]
        if scope.class_info is not None:
            # A class body sees its own names only; inherited ones need Class.NAME.
            member = self._class_member(scope.class_info, name, inherited=False)
            if member is not _MISSING:
                return member
        return self._module_member(scope.module, name)

    def _constant(self, module: SourceModule, owner: Optional[ClassInfo], name: str, expr: ast.expr) -> Any:
        key = (owner.key if owner is not None else module.name, name)
        if key in self.session.resolving:
            raise ExpressionEvalError(f"circular definition of '{name}'")
        self.session.resolving.add(key)
        try:
            with self.session.frame():
                return self._eval_node(expr, _Scope(module, {}, owner))
        finally:
            self.session.resolving.discard(key)

    def _class_member(self, info: ClassInfo, name: str, inherited: bool = True) -> Any:
        for cls in self.index.mro(info) if inherited else [info]:
            if name in cls.constants:
                return self._constant(cls.module, cls, name, cls.constants[name])
            method = cls.methods.get(name)
            if method is not None:
                if any(_terminal_name(d) == "staticmethod" for d in method.decorator_list):
                    return _HelperFunction(method, cls.module, cls)
                raise ExpressionEvalError(f"'{info.name}.{name}' is not a static helper")
        return _MISSING

    def _module_member(self, module: SourceModule, name: str) -> Any:
        if name in module.constants:
            return self._constant(module, None, name, module.constants[name])
        if name in module.functions:
            return _HelperFunction(module.functions[name], module)
        if name in module.classes:
            return _ClassRef(module.classes[name])
        if name in module.imports:
            source, original = module.imports[name]
            with self.session.frame():
                if original is None:
                    target = self.index.find_module(source)
                    if target is None:
                        raise ExpressionEvalError(f"module '{source}' is not part of the analyzed sources")
                    return _ModuleRef(target)
                target = self.index.find_module(source)
                if target is not None:
                    return self._module_member(target, original)
                submodule = self.index.find_module(f"{source}.{original}")
                if submodule is not None:
                    return _ModuleRef(submodule)
                raise ExpressionEvalError(f"'{original}' from '{source}' is not part of the analyzed sources")
        if name in _SAFE_BUILTINS:
            return _SAFE_BUILTINS[name]
        raise ExpressionEvalError(f"unknown identifier '{name}'")

    def _eval_attribute(self, node: ast.Attribute, scope: _Scope) -> Any:
        if node.attr.startswith("_"):
            raise ExpressionEvalError("access to private attributes is not allowed")
        value = self._eval_node(node.value, scope)
        if isinstance(value, _ClassRef):
            member = self._class_member(value.info, node.attr)
            if member is _MISSING:
                raise ExpressionEvalError(f"'{value.info.name}' has no constant '{node.attr}'")
            return member
        if isinstance(value, _ModuleRef):
            return self._module_member(value.module, node.attr)
        if isinstance(value, str) and node.attr in _SAFE_STR_METHODS:
            checked = _CHECKED_STR_METHODS.get(node.attr)
            if checked is not None:
                return _wrap_safe_callable(functools.partial(checked, value))
            return _wrap_safe_callable(getattr(value, node.attr))
        if isinstance(value, dict) and node.attr in _SAFE_DICT_METHODS:
            return _wrap_safe_callable(getattr(value, node.attr))
        raise ExpressionEvalError(f"attribute '{node.attr}' is not available during constant evaluation")

    # ---------------------------------------------------------------- calls

    def call_arguments(self, call: ast.Call, scope: _Scope) -> Tuple[List[Any], Dict[str, Any]]:
        args: List[Any] = []
        for argument in call.args:
            if isinstance(argument, ast.Starred):
                args.extend(self._eval_node(argument.value, scope))
            else:
                args.append(self._eval_node(argument, scope))
        kwargs: Dict[str, Any] = {}
        for keyword in call.keywords:
            if keyword.arg is None:
                unpacked = self._eval_node(keyword.value, scope)
                if not isinstance(unpacked, dict) or not all(isinstance(k, str) for k in unpacked):
                    raise ExpressionEvalError("** argument must be a mapping with string keys")
                kwargs.update(unpacked)
            else:
                kwargs[keyword.arg] = self._eval_node(keyword.value, scope)
        return args, kwargs

    def _eval_call(self, node: ast.Call, scope: _Scope) -> Any:
        func = self._eval_node(node.func, scope)
        args, kwargs = self.call_arguments(node, scope)
        if isinstance(func, _HelperFunction):
            return self._call_helper(func, args, kwargs)
        if isinstance(func, _ClassRef):
            raise ExpressionEvalError(f"cannot instantiate '{func.info.name}' during constant evaluation")
        if getattr(func, "_mapguard_safe_callable", False):
            return _check_size(func(*args, **kwargs))
        raise ExpressionEvalError("call to unsafe function is not allowed")

    def _call_helper(self, helper: _HelperFunction, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        node = helper.node
        if isinstance(node, ast.AsyncFunctionDef):
            raise ExpressionEvalError(f"helper '{node.name}' is async")
        if any(_terminal_name(d) != "staticmethod" for d in node.decorator_list):
            raise ExpressionEvalError(f"helper '{node.name}' is decorated")
        body = _strip_docstring(node.body)
        if len(body) != 1 or not isinstance(body[0], ast.Return) or body[0].value is None:
            raise ExpressionEvalError(f"helper '{node.name}' is not a single-expression function")
        with self.session.frame():
            definition_scope = _Scope(helper.module, {}, helper.owner)
            bindings = self.bind_arguments(node, args, kwargs, definition_scope)
            return self._eval_node(body[0].value, _Scope(helper.module, bindings, None))

    def bind_arguments(
        self,
        node: FunctionNode,
        args: List[Any],
        kwargs: Dict[str, Any],
        definition_scope: _Scope,
    ) -> Dict[str, Any]:
        signature = node.args
        remaining = dict(kwargs)
        bound: Dict[str, Any] = {}
        positional = signature.posonlyargs + signature.args
        first_default = len(positional) - len(signature.defaults)
        for position, parameter in enumerate(positional):
            if position < len(args):
                bound[parameter.arg] = args[position]
            elif parameter.arg in remaining and position >= len(signature.posonlyargs):
                bound[parameter.arg] = remaining.pop(parameter.arg)
            elif position >= first_default:
                default = signature.defaults[position - first_default]
                bound[parameter.arg] = self._eval_node(default, definition_scope)
            else:
                raise ExpressionEvalError(f"missing argument '{parameter.arg}' for '{node.name}'")
        extra = args[len(positional):]
        if signature.vararg is not None:
            bound[signature.vararg.arg] = tuple(extra)
        elif extra:
            raise ExpressionEvalError(f"too many positional arguments for '{node.name}'")
        for parameter, default in zip(signature.kwonlyargs, signature.kw_defaults):
            if parameter.arg in remaining:
                bound[parameter.arg] = remaining.pop(parameter.arg)
            elif default is not None:
                bound[parameter.arg] = self._eval_node(default, definition_scope)
            else:
                raise ExpressionEvalError(f"missing keyword argument '{parameter.arg}' for '{node.name}'")
        if signature.kwarg is not None:
            bound[signature.kwarg.arg] = remaining
        elif remaining:
            raise ExpressionEvalError(f"unexpected keyword argument(s) {sorted(remaining)} for '{node.name}'")
        return bound


def _forwarded_super_arguments(init: FunctionNode) -> Optional[ast.Call]:
    """The ``super().__init__(...)`` call when it is the whole constructor body."""
    body = _strip_docstring(init.body)
    if len(body) != 1 or not isinstance(body[0], ast.Expr) or not isinstance(body[0].value, ast.Call):
        return None
    call = body[0].value
    func = call.func
    if not isinstance(func, ast.Attribute) or func.attr != "__init__":
        return None
    if isinstance(func.value, ast.Call) and _terminal_name(func.value.func) == "super":
        return call
    if isinstance(func.value, (ast.Name, ast.Attribute)) and call.args:
        # Base.__init__(self, ...): drop the explicit self.
        return ast.Call(func=func, args=call.args[1:], keywords=call.keywords)
    return None


def _exclusion_names(single: bool, args: List[Any], kwargs: Dict[str, Any]) -> List[str]:
    if single:
        values = list(args)
        if "property_name" in kwargs:
            values.append(kwargs.pop("property_name"))
        if kwargs:
            raise ExpressionEvalError(f"unexpected keyword argument(s) {sorted(kwargs)}")
        if len(values) != 1:
            raise ExpressionEvalError("expected exactly one property name")
        if not isinstance(values[0], str):
            raise ExpressionEvalError(f"property name must be a string, got {values[0]!r}")
        return [values[0]]

    values = list(args)
    if "names" in kwargs:
        values.append(kwargs.pop("names"))
    if kwargs:
        raise ExpressionEvalError(f"unexpected keyword argument(s) {sorted(kwargs)}")
    names: List[str] = []
    for value in values:
        if isinstance(value, str):
            names.append(value)
            continue
        try:
            items = list(value)
        except TypeError as exc:
            raise ExpressionEvalError(f"expected a name or an iterable of names, got {value!r}") from exc
        for item in items:
            if not isinstance(item, str):
                raise ExpressionEvalError(f"property name must be a string, got {item!r}")
            names.append(item)
    return names


def _qualified_decorator_name(decorator: ast.expr, module: SourceModule, index: ProjectIndex) -> str:
    target = decorator.func if isinstance(decorator, ast.Call) else decorator
    info = index.resolve_class_expr(target, module)
    if info is not None:
        return info.key
    dotted = _dotted_name(target) or ast.unparse(target)
    head, _, rest = dotted.partition(".")
    if head in module.imports:
        source, original = module.imports[head]
        prefix = source if original is None else f"{source}.{original}"
        return f"{prefix}.{rest}" if rest else prefix
    return f"{module.name}.{dotted}"


def exclusion_marker(
    decorator: ast.expr,
    module: SourceModule,
    index: ProjectIndex,
    config: MapGuardConfig,
) -> Optional[str]:
    return _marker_name(decorator, module, index, config.all_exclusion_markers)


def _evaluate_exclusion_in_session(
    decorator: ast.expr,
    mapping: MappingFunction,
    index: ProjectIndex,
    config: MapGuardConfig,
    marker: str,
    session: EvaluationSession,
) -> List[str]:
    interpreter = _ConstantExpressionInterpreter(index, session)
    if not isinstance(decorator, ast.Call):
        return []
    # Decorators on methods are evaluated in the class body, so class constants are visible.
    scope = _Scope(mapping.module, {}, mapping.owner)
    args, kwargs = interpreter.call_arguments(decorator, scope)

    # Walk project subclasses of the marker, replaying their forwarding constructors.
    info = index.resolve_class_expr(decorator.func, mapping.module)
    seen: Set[str] = set()
    while info is not None and info.name not in config.all_exclusion_markers and info.key not in seen:
        seen.add(info.key)
        init = info.methods.get("__init__")
        if init is not None:
            forwarded = _forwarded_super_arguments(init)
            if forwarded is None:
                raise ExpressionEvalError(f"constructor of '{info.name}' does more than forward its arguments")
            with session.frame():
                bindings = interpreter.bind_arguments(init, [None] + args, kwargs, _Scope(info.module, {}, info))
                positional = [p.arg for p in init.args.posonlyargs + init.args.args]
                bindings.pop(positional[0], None)
                args, kwargs = interpreter.call_arguments(forwarded, _Scope(info.module, bindings, None))
        info = next(
            (
                base for base in (index.resolve_class_expr(b, info.module) for b in info.node.bases)
                if base is not None and (
                    base.name in config.all_exclusion_markers
                    or index.marker_ancestor(base, config.all_exclusion_markers)
                )
            ),
            None,
        )

    return _exclusion_names(marker in config.single_exclusion_markers, args, kwargs)


def evaluate_exclusion(
    decorator: ast.expr,
    mapping: MappingFunction,
    index: ProjectIndex,
    config: MapGuardConfig,
) -> List[str]:
    """
    Property names one exclusion decorator declares as intentionally unmapped.

    The arguments are folded by the constant-expression interpreter inside a
    fresh EvaluationSession. Anything the interpreter cannot fold degrades to an
    empty list and a note on stderr.
    """
    marker = exclusion_marker(decorator, mapping.module, index, config)
    if marker is None:
        return []
    qualified = _qualified_decorator_name(decorator, mapping.module, index)
    with evaluation_session(qualified, config) as session:
        try:
            return _evaluate_exclusion_in_session(decorator, mapping, index, config, marker, session)
        except ExpressionEvalError as exc:
            reason = str(exc)
        except (ArithmeticError, LookupError, TypeError, ValueError, RecursionError, MemoryError) as exc:
            reason = f"{type(exc).__name__}: {exc}"
        location = _node_location(mapping.module, decorator)
        _warn(
            f"Could not evaluate exclusion {_source_segment(mapping.module, decorator)!r} "
            f"({qualified}) at {location} [session {session.session_id}]: {reason}"
        )
        return []


# ============================================================
# ======================= DIAGNOSTICS ========================
# ============================================================

@dataclass(frozen=True)
class DiagnosticDescriptor:
    rule_id: str
    title: str
    severity: str
    message_format: str

    def format(self, *args: Any) -> str:
        return self.message_format.format(*args)


MISSING_MAPPING_TARGET_TYPE = DiagnosticDescriptor(
    rule_id="MMG0001",
    title="MissingMappingTargetType",
    severity="Error",
    message_format=(
        "Unable to determine target type of mapping. Ensure that this method either returns "
        "a value or has a single parameter decorated with MappingTargetAttribute."
    ),
)

UNMAPPED_PROPERTY = DiagnosticDescriptor(
    rule_id="MMG1001",
    title="UnmappedProperty",
    severity="Error",
    message_format="Property {0} is not mapped.",
)

SUPPORTED_DIAGNOSTICS = (UNMAPPED_PROPERTY, MISSING_MAPPING_TARGET_TYPE)


@dataclass(frozen=True)
class Diagnostic:
    rule_id: str
    severity: str
    message: str
    location: SourceLocation
    function: str
    property_name: Optional[str] = None

    @classmethod
    def create(
        cls,
        descriptor: DiagnosticDescriptor,
        location: SourceLocation,
        function: str,
        *args: Any,
        property_name: Optional[str] = None,
    ) -> "Diagnostic":
        return cls(
            rule_id=descriptor.rule_id,
            severity=descriptor.severity,
            message=descriptor.format(*args),
            location=location,
            function=function,
            property_name=property_name,
        )


def unmapped_property_names(
    target_properties: Dict[PropertyKey, Property],
    mapped: Set[PropertyKey],
    excluded: Iterable[str],
) -> List[str]:
    """target - mapped - excluded, ordinal-sorted by name."""
    excluded_names = set(excluded)
    return sorted({
        prop.name
        for key, prop in target_properties.items()
        if key not in mapped and prop.name not in excluded_names
    })


def report_unmapped(mapping: MappingFunction, names: List[str]) -> List[Diagnostic]:
    return [
        Diagnostic.create(UNMAPPED_PROPERTY, mapping.location, mapping.name, name, property_name=name)
        for name in names
    ]


# ============================================================
# ======================== ANALYZER ==========================
# ============================================================

class MappingAnalyzer:
    """
    Runs the mapping-completeness rule over every function in a ProjectIndex.

    Each function is analyzed independently; with ``jobs > 1`` functions are
    spread over a thread pool. Setting ``cancel_event`` stops the pass early.
    """

    def __init__(
        self,
        index: ProjectIndex,
        config: Optional[MapGuardConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.index = index
        self.config = config or MapGuardConfig()
        self.cancel_event = cancel_event

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def iter_functions(self) -> Iterator[Tuple[FunctionNode, SourceModule, Optional[ClassInfo]]]:
        for module in self.index.modules:
            for node, _qualname, owner in _iter_definitions(module.tree.body):
                if isinstance(node, FUNCTION_NODES):
                    yield node, module, module.classes_by_qualname.get(owner) if owner else None

    def analyze(self, jobs: int = 1) -> List[Diagnostic]:
        work = list(self.iter_functions())
        if jobs > 1 and len(work) > 1:
            with ThreadPoolExecutor(max_workers=jobs) as pool:
                results = list(pool.map(lambda item: self.analyze_function(*item), work))
        else:
            results = [self.analyze_function(*item) for item in work]
        diagnostics = [diagnostic for result in results for diagnostic in result]
        # Stable: diagnostics of one function keep their name order.
        diagnostics.sort(key=lambda d: (d.location.file, d.location.line, d.location.column))
        return diagnostics

    def analyze_function(
        self,
        node: FunctionNode,
        module: SourceModule,
        owner: Optional[ClassInfo] = None,
    ) -> List[Diagnostic]:
        if self._cancelled():
            return []
        mapping = detect_mapping_function(node, module, self.index, self.config, owner)
        if not mapping.is_mapping:
            return []

        target = resolve_target_type(mapping, self.index, self.config)
        if target is None:
            return [Diagnostic.create(MISSING_MAPPING_TARGET_TYPE, mapping.location, mapping.name)]
        if target.cls is None:
            _warn(
                f"{mapping.location}: target type '{target.name}' of '{mapping.name}' "
                f"is not defined in the analyzed sources; skipping."
            )
            return []

        target_properties = build_target_properties(target, self.index)
        mapped = collect_mapped_properties(mapping, self.index)

        excluded: List[str] = []
        for decorator in node.decorator_list:
            if exclusion_marker(decorator, module, self.index, self.config):
                excluded.extend(evaluate_exclusion(decorator, mapping, self.index, self.config))

        if self._cancelled():
            return []
        return report_unmapped(mapping, unmapped_property_names(target_properties, mapped, excluded))


# ============================================================
# ==================== PROJECT PIPELINE ======================
# ============================================================

def _is_excluded(path: str, patterns: List[str]) -> bool:
    normalized = path.replace("\\", "/")
    return any(fnmatch.fnmatch(normalized, pattern) for pattern in patterns)


def collect_python_files(paths: Iterable[str], exclude: Optional[List[str]] = None) -> List[str]:
    """Expand directories into their *.py files (sorted); report missing paths."""
    patterns = exclude or []
    files: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            for root, dirs, names in os.walk(path):
                dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d != "__pycache__")
                for name in sorted(names):
                    candidate = os.path.join(root, name)
                    if name.endswith(".py") and not _is_excluded(candidate, patterns):
                        files.append(candidate)
        elif os.path.isfile(path):
            if not _is_excluded(path, patterns):
                files.append(path)
        else:
            _warn(f"Input path not found: {path}")
    return files


def build_project_index(
    paths: Iterable[str],
    config: Optional[MapGuardConfig] = None,
    sources: Optional[Dict[str, str]] = None,
) -> ProjectIndex:
    """
    Parse every file (plus any in-memory ``sources``, path -> text) into a
    ProjectIndex. Files that cannot be read or parsed are reported and skipped.
    """
    config = config or MapGuardConfig()
    modules: List[SourceModule] = []
    for path in collect_python_files(paths, config.exclude):
        try:
            modules.append(parse_module(path))
        except SyntaxError as exc:
            _warn(f"Could not parse '{path}': {exc}")
        except (OSError, UnicodeDecodeError) as exc:
            _warn(f"Could not read '{path}': {exc}")
    for path, text in (sources or {}).items():
        try:
            modules.append(parse_module(path, text))
        except SyntaxError as exc:
            _warn(f"Could not parse '{path}': {exc}")
    return ProjectIndex(modules)


def analyze_paths(
    paths: Iterable[str],
    config: Optional[MapGuardConfig] = None,
    jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
) -> List[Diagnostic]:
    config = config or MapGuardConfig()
    index = build_project_index(paths, config)
    return MappingAnalyzer(index, config, cancel_event).analyze(jobs=jobs)


def analyze_source(
    source: str,
    path: str = "<string>",
    config: Optional[MapGuardConfig] = None,
    extra_sources: Optional[Dict[str, str]] = None,
) -> List[Diagnostic]:
    """Analyze in-memory code; ``extra_sources`` adds further modules (path -> text)."""
    config = config or MapGuardConfig()
    sources = dict(extra_sources or {})
    sources[path] = source
    index = build_project_index([], config, sources=sources)
    return MappingAnalyzer(index, config).analyze()


# ============================================================
# =================== DIAGNOSTIC OUTPUT ======================
# ============================================================

def format_diagnostic(diagnostic: Diagnostic) -> str:
    return f"{diagnostic.location}: {diagnostic.severity} {diagnostic.rule_id}: {diagnostic.message}"


def diagnostic_to_json_obj(diagnostic: Diagnostic) -> Dict[str, Any]:
    """
    Convert a Diagnostic into a JSON-friendly dict.
    Kept explicit so the field order stays stable across releases.
    """
    return {
        "rule_id": diagnostic.rule_id,
        "severity": diagnostic.severity,
        "message": diagnostic.message,
        "location": {
            "file": diagnostic.location.file,
            "line": diagnostic.location.line,
            "column": diagnostic.location.column + 1,
        },
        "function": diagnostic.function,
        "property": diagnostic.property_name,
        "tool": "MapGuard",
        "version": __version__,
    }


def emit_diagnostics(diagnostics: List[Diagnostic], fmt: str = "text", out: Optional[str] = None) -> None:
    if fmt == "json":
        text = json.dumps([diagnostic_to_json_obj(d) for d in diagnostics], indent=2, sort_keys=False)
    else:
        text = "\n".join(format_diagnostic(d) for d in diagnostics)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n" if text else "")
    elif text:
        print(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for MapGuard.
    Intended usage:
      mapguard analyze [--config mapguard.yaml] src/
    """
    parser = argparse.ArgumentParser(
        prog="mapguard",
        description="MapGuard: find target properties that hand-written mapping functions never assign"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Analyze Python files or directories and report unmapped properties."
    )
    analyze_p.add_argument(
        "--config",
        metavar="CONFIG_YAML",
        help=f"YAML settings file (default: ${CONFIG_ENV_VAR} or ./{DEFAULT_CONFIG_FILE}).",
        required=False,
    )
    analyze_p.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format.",
    )
    analyze_p.add_argument(
        "--out",
        metavar="OUT_FILE",
        help="Write diagnostics to this file instead of stdout.",
        required=False,
    )
    analyze_p.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="Number of worker threads used to analyze functions.",
    )
    analyze_p.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="GLOB",
        help="Skip files matching this glob (repeatable).",
    )
    analyze_p.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress warnings on stderr (diagnostics are still reported).",
    )
    analyze_p.add_argument(
        "paths",
        nargs="+",
        help="Python files or directories to analyze."
    )

    args = parser.parse_args(argv)

    if args.command == "analyze":
        previous_quiet = _QUIET_WARNINGS
        set_quiet(args.quiet)
        try:
            return _run_analyze(args)
        finally:
            set_quiet(previous_quiet)

    # unreachable if parser is correct
    return 1


def _run_analyze(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        sys.stderr.write(f"[mapguard] {exc}\n")
        return 2
    config.exclude = list(config.exclude) + list(args.exclude)

    diagnostics = analyze_paths(args.paths, config, jobs=max(1, args.jobs))
    emit_diagnostics(diagnostics, fmt=args.format, out=args.out)
    return 1 if any(d.severity == "Error" for d in diagnostics) else 0


if __name__ == "__main__":
    sys.exit(main())

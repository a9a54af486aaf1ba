"""
Static view-model checks for Jinja templates.

Two field trees are built and compared. The first comes from the template AST
and holds every variable path the template reads, e.g. ``user.email``. The
second comes from a sample view model and holds every attribute or key it
exposes. Any difference between them is reported before a single request is
served.
"""

from __future__ import annotations

import dataclasses
import typing
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from jinja2 import nodes

ROOT = "Root"

# Names every Jinja template can use without them coming from the view model.
_TEMPLATE_BUILTINS = frozenset({"self", "super"})


@dataclass
class FieldTree:
    name: str
    children: dict[str, FieldTree] = field(default_factory=dict)

    def add_child(self, name: str) -> FieldTree:
        child = self.children.get(name)
        if child is None:
            child = FieldTree(name)
            self.children[name] = child
        return child

    def add_path(self, parts: Iterable[str]) -> FieldTree:
        current = self
        for part in parts:
            current = current.add_child(part)
        return current

    def paths(self) -> list[str]:
        """Dotted paths of every node below this one, depth-first."""
        out: list[str] = []
        for name in sorted(self.children):
            child = self.children[name]
            out.append(name)
            out.extend(f"{name}.{p}" for p in child.paths())
        return out


class ViewModelError(ValueError):
    def __init__(self, template_name: str, missing: list[str], extra: list[str]):
        self.template_name = template_name
        self.missing = missing
        self.extra = extra
        super().__init__(f"couldn't validate view model for [{template_name}]: {describe_mismatch(missing, extra)}")


def describe_mismatch(missing: list[str], extra: list[str]) -> str:
    parts = []
    if extra:
        parts.append(f"extra fields [{', '.join(extra)}]")
    if missing:
        parts.append(f"missing fields [{', '.join(missing)}]")
    return " ".join(parts)


# --- template side -----------------------------------------------------------------


def _const_str(node: nodes.Node | None) -> str | None:
    if isinstance(node, nodes.Const) and isinstance(node.value, str):
        return node.value
    return None


def _target_names(target: nodes.Node) -> set[str]:
    return {n.name for n in target.find_all(nodes.Name)} | (
        {target.name} if isinstance(target, nodes.Name) else set()
    )


class TemplateFieldExtractor:
    """
    Walks a parsed Jinja template and records the view-model paths it reads.

    ``resolve`` maps a template name to its parsed AST and is used to follow
    ``{% include %}``. Names in ``ignore`` (template globals, context processors)
    never count as view-model fields.
    """

    def __init__(self, resolve: Callable[[str], nodes.Template | None], ignore: Iterable[str] = ()):
        self._resolve = resolve
        self._ignore = frozenset(ignore) | _TEMPLATE_BUILTINS
        self._including: list[str] = []

    def extract(self, node: nodes.Node, parent: FieldTree) -> FieldTree:
        self._visit(node, parent, set())
        return parent

    def _is_field(self, name: str, bound: set[str]) -> bool:
        return name not in bound and name not in self._ignore

    def _visit_all(self, items: Iterable[nodes.Node | None], parent: FieldTree, bound: set[str]) -> None:
        for item in items:
            if item is not None:
                self._visit(item, parent, bound)

    def _visit(self, node: nodes.Node, parent: FieldTree, bound: set[str]) -> None:
        if isinstance(node, nodes.Name):
            if node.ctx == "load" and self._is_field(node.name, bound):
                parent.add_child(node.name)
        elif isinstance(node, (nodes.Getattr, nodes.Getitem)):
            self._visit_chain(node, parent, bound)
        elif isinstance(node, nodes.Call):
            self._visit_call(node, parent, bound)
        elif isinstance(node, nodes.For):
            self._visit(node.iter, parent, bound)
            inner = bound | _target_names(node.target) | {"loop"}
            self._visit_all([node.test], parent, inner)
            self._visit_all(node.body, parent, inner)
            self._visit_all(node.else_, parent, bound)
        elif isinstance(node, nodes.Assign):
            self._visit(node.node, parent, bound)
            if not isinstance(node.target, nodes.NSRef):
                bound |= _target_names(node.target)
        elif isinstance(node, nodes.AssignBlock):
            self._visit_all(node.body, parent, bound)
            self._visit_all([node.filter], parent, bound)
            if not isinstance(node.target, nodes.NSRef):
                bound |= _target_names(node.target)
        elif isinstance(node, nodes.With):
            self._visit_all(node.values, parent, bound)
            inner = set(bound)
            for target in node.targets:
                inner |= _target_names(target)
            self._visit_all(node.body, parent, inner)
        elif isinstance(node, nodes.Macro):
            bound.add(node.name)
            self._visit_all(node.defaults, parent, bound)
            inner = bound | {a.name for a in node.args} | {"varargs", "kwargs", "caller"}
            self._visit_all(node.body, parent, inner)
        elif isinstance(node, nodes.CallBlock):
            self._visit(node.call, parent, bound)
            self._visit_all(node.defaults, parent, bound)
            inner = bound | {a.name for a in node.args}
            self._visit_all(node.body, parent, inner)
        elif isinstance(node, nodes.Import):
            bound.add(node.target)
        elif isinstance(node, nodes.FromImport):
            for item in node.names:
                bound.add(item[1] if isinstance(item, tuple) else item)
        elif isinstance(node, nodes.Block):
            # assignments inside a block stay in the block
            self._visit_all(node.body, parent, set(bound))
        elif isinstance(node, nodes.Include):
            self._visit_include(node, parent, bound)
        elif isinstance(node, nodes.NSRef):
            return
        else:
            self._visit_all(node.iter_child_nodes(), parent, bound)

    def _visit_chain(self, node: nodes.Expr, parent: FieldTree, bound: set[str]) -> None:
        parts: list[str] = []
        current: nodes.Node = node
        while isinstance(current, (nodes.Getattr, nodes.Getitem)):
            if isinstance(current, nodes.Getattr):
                parts.append(current.attr)
            else:
                key = _const_str(current.arg)
                if key is not None:
                    parts.append(key)
                else:
                    # a[i].b: only the container itself is a known path
                    parts.clear()
                    self._visit(current.arg, parent, bound)
            current = current.node

        if isinstance(current, nodes.Name) and current.ctx == "load":
            if self._is_field(current.name, bound):
                parent.add_path([current.name, *reversed(parts)])
        else:
            self._visit(current, parent, bound)

    def _visit_call(self, node: nodes.Call, parent: FieldTree, bound: set[str]) -> None:
        callee = node.node
        if isinstance(callee, nodes.Getattr):
            # obj.method(...): the method name is not a field
            self._visit(callee.node, parent, bound)
        else:
            self._visit(callee, parent, bound)
        self._visit_all(node.args, parent, bound)
        self._visit_all((kw.value for kw in node.kwargs), parent, bound)
        self._visit_all([node.dyn_args, node.dyn_kwargs], parent, bound)

    def _visit_include(self, node: nodes.Include, parent: FieldTree, bound: set[str]) -> None:
        name = _const_str(node.template)
        if name is None:
            self._visit(node.template, parent, bound)
            return
        if not node.with_context or name in self._including:
            return
        included = self._resolve(name)
        if included is None:
            return
        self._including.append(name)
        try:
            self._visit(included, parent, set(bound))
        finally:
            self._including.pop()


# --- data side ----------------------------------------------------------------------


def _dataclass_type(hint: Any) -> type | None:
    if isinstance(hint, type) and dataclasses.is_dataclass(hint):
        return hint
    args = [a for a in typing.get_args(hint) if a is not type(None)]
    if len(args) == 1:
        return _dataclass_type(args[0])
    return None


def _type_hints(cls: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(cls)
    except (NameError, TypeError):
        return {}


def _public_fields(obj_or_cls: Any) -> list[dataclasses.Field]:
    return [f for f in dataclasses.fields(obj_or_cls) if not f.name.startswith("_")]


def _collect(value: Any, parent: FieldTree, seen: set[int]) -> None:
    if id(value) in seen:
        return
    if isinstance(value, type):
        if not dataclasses.is_dataclass(value):
            return
        seen = seen | {id(value)}
        hints = _type_hints(value)
        for f in _public_fields(value):
            child = parent.add_child(f.name)
            nested = _dataclass_type(hints.get(f.name, f.type))
            if nested is not None:
                _collect(nested, child, seen)
    elif dataclasses.is_dataclass(value):
        seen = seen | {id(value)}
        hints = _type_hints(type(value))
        for f in _public_fields(value):
            child = parent.add_child(f.name)
            attr = getattr(value, f.name, None)
            if attr is None:
                # fall back to the annotation, e.g. ``user: Profile | None = None``
                nested = _dataclass_type(hints.get(f.name, f.type))
                if nested is not None:
                    _collect(nested, child, seen)
            else:
                _collect(attr, child, seen)
    elif isinstance(value, Mapping):
        seen = seen | {id(value)}
        for key, item in value.items():
            _collect(item, parent.add_child(str(key)), seen)


def fields_from_data(data: Any) -> FieldTree:
    """
    Field tree exposed by a view model. Dataclass instances or classes contribute
    their public fields, mappings their keys; anything else is a leaf. ``None``
    exposes nothing, so any field the template reads is reported missing.
    """
    root = FieldTree(ROOT)
    if data is not None:
        _collect(data, root, set())
    return root


# --- comparison ---------------------------------------------------------------------


def compare_fields(template: FieldTree, data: FieldTree) -> tuple[list[str], list[str]]:
    """Returns ``(missing, extra)`` as sorted dotted paths."""
    missing: list[str] = []
    extra: list[str] = []
    _compare(template, data, (), missing, extra)
    return sorted(missing), sorted(extra)


def _compare(
    template: FieldTree,
    data: FieldTree,
    prefix: tuple[str, ...],
    missing: list[str],
    extra: list[str],
) -> None:
    for name, child in template.children.items():
        path = prefix + (name,)
        if name not in data.children:
            missing.append(".".join(path))
        else:
            _compare(child, data.children[name], path, missing, extra)

    # A value the template uses whole (printed, filtered, iterated) consumes its subtree.
    if prefix and not template.children:
        return

    for name in data.children:
        if name not in template.children:
            extra.append(".".join(prefix + (name,)))


def view_model_context(data: Any) -> dict[str, Any]:
    """Top-level template variables for a view model."""
    if data is None:
        return {}
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        return {f.name: getattr(data, f.name) for f in _public_fields(data)}
    if isinstance(data, Mapping):
        return {str(k): v for k, v in data.items()}
    raise TypeError(f"view model must be a dataclass instance or a mapping, got {type(data).__name__}")

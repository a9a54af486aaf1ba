from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from importlib.resources.abc import Traversable
from typing import Any, TextIO

from jinja2 import DictLoader, Environment, StrictUndefined, Template, TemplateSyntaxError, nodes

from app.portal.web.fields import (
    ROOT,
    FieldTree,
    TemplateFieldExtractor,
    ViewModelError,
    compare_fields,
    fields_from_data,
    view_model_context,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_TEMPLATE = "base.html"

# Blocks a layout may define that pages commonly fill in.
KNOWN_BLOCKS = ("content", "nav", "head", "title")


class TemplateStoreError(RuntimeError):
    pass


class TemplateNotFound(TemplateStoreError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"couldn't find template: {name}")


@dataclass
class TemplateRegistryOptions:
    fs: Traversable | None  # directory to load from: a pathlib.Path or importlib.resources.files(...)
    root_dir: str  # page templates, relative to fs
    include_dir: str = ""  # shared includes (layouts, partials), relative to fs
    func_map: dict[str, Callable[..., Any]] = field(default_factory=dict)
    base_template: str = DEFAULT_BASE_TEMPLATE
    reload: bool = False  # rebuild the whole store before every execution
    # Names supplied by ``ambient`` at render time (request-scoped values); never view-model fields.
    ambient_names: frozenset[str] = frozenset()
    ambient: Callable[[], Mapping[str, Any]] | None = None


@dataclass(frozen=True)
class _Page:
    name: str
    blocks: frozenset[str]
    parent: str | None  # template this page renders through, explicit or implicit
    layout: str | None  # implicit base layout, None when rendered standalone


@dataclass(frozen=True)
class _Store:
    env: Environment
    asts: dict[str, nodes.Template]  # raw parsed sources, includes and pages
    pages: dict[str, _Page]
    base_exists: bool


def _resolve_dir(fs: Traversable, rel: str) -> Traversable:
    current = fs
    for part in rel.strip("/").split("/"):
        if part and part != ".":
            current = current.joinpath(part)
    return current


def _walk(directory: Traversable, prefix: str = "") -> Iterator[tuple[str, Traversable]]:
    for entry in sorted(directory.iterdir(), key=lambda e: e.name):
        rel = f"{prefix}{entry.name}"
        if entry.is_dir():
            yield from _walk(entry, rel + "/")
        else:
            yield rel, entry


def uses_base_layout(ast: nodes.Template) -> bool:
    """A page that defines a ``content`` block is meant to be wrapped by the base layout."""
    return any(block.name == "content" for block in ast.find_all(nodes.Block))


def _extends_target(ast: nodes.Template) -> str | None:
    """Name the page extends; ``""`` for a dynamic ``{% extends %}``, None when it extends nothing."""
    node = ast.find(nodes.Extends)
    if node is None:
        return None
    if isinstance(node.template, nodes.Const) and isinstance(node.template.value, str):
        return node.template.value
    return ""


class TemplateRegistry:
    """
    Named registry of page templates plus shared includes.

    Pages are keyed by their path relative to ``root_dir`` (``"users/list.html"``),
    includes by their file name (``"base.html"``). A page that defines a
    ``content`` block and does not ``{% extends %}`` anything is rendered through
    the base layout when one exists.
    """

    def __init__(self, options: TemplateRegistryOptions):
        if options.fs is None:
            raise TemplateStoreError("fs is required")
        if not options.base_template:
            options.base_template = DEFAULT_BASE_TEMPLATE
        if '"' in options.base_template:
            raise TemplateStoreError(f"invalid base template name {options.base_template!r}")
        if options.ambient_names and options.ambient is None:
            raise TemplateStoreError("ambient_names needs an ambient provider")
        self.options = options
        self._lock = threading.Lock()
        self._store = self._load()

    # --- loading -----------------------------------------------------------------

    def _new_environment(self, mapping: dict[str, str]) -> Environment:
        env = Environment(
            loader=DictLoader(mapping),
            autoescape=True,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.globals.update(self.options.func_map)
        return env

    def _parse(self, env: Environment, name: str, source: str, origin: str) -> nodes.Template:
        try:
            return env.parse(source, name=name, filename=origin)
        except TemplateSyntaxError as e:
            raise TemplateStoreError(f"parsing template {origin}: {e}") from e

    def _load(self) -> _Store:
        opts = self.options
        assert opts.fs is not None
        mapping: dict[str, str] = {}
        env = self._new_environment(mapping)
        asts: dict[str, nodes.Template] = {}

        if opts.include_dir:
            include_root = _resolve_dir(opts.fs, opts.include_dir)
            if not include_root.is_dir():
                raise TemplateStoreError(f"reading include dir: {opts.include_dir} is not a directory")
            for entry in sorted(include_root.iterdir(), key=lambda e: e.name):
                if entry.is_dir():
                    continue
                origin = f"{opts.include_dir.rstrip('/')}/{entry.name}"
                source = entry.read_text(encoding="utf-8")
                asts[entry.name] = self._parse(env, entry.name, source, origin)
                mapping[entry.name] = source

        base_exists = opts.base_template in asts

        page_root = _resolve_dir(opts.fs, opts.root_dir)
        if not page_root.is_dir():
            raise TemplateStoreError(f"reading root dir: {opts.root_dir} is not a directory")

        pages: dict[str, _Page] = {}
        for rel, entry in _walk(page_root):
            origin = f"{opts.root_dir.rstrip('/')}/{rel}"
            if rel in asts:
                raise TemplateStoreError(f"template {origin} collides with include {rel}")
            source = entry.read_text(encoding="utf-8")
            ast = self._parse(env, rel, source, origin)
            asts[rel] = ast

            explicit = _extends_target(ast)
            layout = None
            if explicit is None and base_exists and uses_base_layout(ast):
                layout = opts.base_template
                # Same line, so error line numbers still match the file.
                source = f'{{% extends "{layout}" %}}' + source
            mapping[rel] = source
            pages[rel] = _Page(
                name=rel,
                blocks=frozenset(b.name for b in ast.find_all(nodes.Block)),
                parent=explicit or layout,
                layout=layout,
            )

        for name in pages:
            try:
                env.get_template(name)
            except TemplateSyntaxError as e:
                raise TemplateStoreError(f"compiling template {name}: {e}") from e

        logger.debug("Loaded %d page templates (%d includes, base=%s)", len(pages), len(asts) - len(pages), base_exists)
        return _Store(env=env, asts=asts, pages=pages, base_exists=base_exists)

    def reload(self) -> None:
        store = self._load()
        with self._lock:
            self._store = store

    def _current(self) -> _Store:
        with self._lock:
            return self._store

    def _store_for_execution(self) -> _Store:
        if self.options.reload:
            try:
                self.reload()
            except TemplateStoreError as e:
                raise TemplateStoreError(f"reloading templates: {e}") from e
        return self._current()

    def _page(self, store: _Store, name: str) -> _Page:
        page = store.pages.get(name)
        if page is None:
            raise TemplateNotFound(name)
        return page

    # --- introspection -----------------------------------------------------------

    @property
    def base_exists(self) -> bool:
        return self._current().base_exists

    def template_names(self) -> list[str]:
        return sorted(self._current().pages)

    def layout_for(self, name: str) -> str | None:
        return self._page(self._current(), name).layout

    def template_fields(self, name: str) -> FieldTree:
        """Fields read by the page, its includes, and the layout blocks it does not override."""
        store = self._current()
        page = self._page(store, name)
        ignore = set(store.env.globals) | set(self.options.ambient_names)
        extractor = TemplateFieldExtractor(store.asts.get, ignore=ignore)

        root = FieldTree(ROOT)
        extractor.extract(store.asts[name], root)
        parent_ast = store.asts.get(page.parent) if page.parent else None
        if parent_ast is not None:
            for block in parent_ast.find_all(nodes.Block):
                if block.name in KNOWN_BLOCKS and block.name not in page.blocks:
                    extractor.extract(block, root)
        return root

    # --- validation --------------------------------------------------------------

    def compare_view_model(self, name: str, example: Any) -> tuple[list[str], list[str]]:
        """Returns ``(missing, extra)`` for ``example`` against the page's field usage."""
        return compare_fields(self.template_fields(name), fields_from_data(example))

    def validate_view_model(self, name: str, example: Any) -> None:
        missing, extra = self.compare_view_model(name, example)
        if missing or extra:
            raise ViewModelError(name, missing, extra)

    # --- execution ---------------------------------------------------------------

    def get_template(self, name: str, example: Any) -> Template:
        """Validates ``example`` and returns the compiled template as currently loaded."""
        store = self._store_for_execution()
        self._page(store, name)
        self.validate_view_model(name, example)
        return store.env.get_template(name)

    def renderer(self, name: str, example: Any) -> TemplateRenderer:
        self._page(self._current(), name)
        self.validate_view_model(name, example)
        return TemplateRenderer(self, name)

    def build_handler(self, name: str, example: Any, fn: Callable[..., Any]) -> Callable[..., Any]:
        """
        Flask view for ``fn(renderer, **view_args)``. The view model is validated
        here, so a mismatch fails at route registration instead of at request time.
        """
        renderer = self.renderer(name, example)

        @functools.wraps(fn)
        def view(**view_args: Any) -> Any:
            return fn(renderer, **view_args)

        return view

    def _template_for_execution(self, name: str) -> Template:
        store = self._store_for_execution()
        self._page(store, name)
        return store.env.get_template(name)


class TemplateRenderer:
    """Executes one page; re-resolves the template each time so reloads are picked up."""

    def __init__(self, registry: TemplateRegistry, name: str):
        self.registry = registry
        self.name = name

    def __repr__(self) -> str:
        return f"<TemplateRenderer {self.name!r}>"

    @property
    def layout(self) -> str | None:
        return self.registry.layout_for(self.name)

    def _context(self, data: Any) -> dict[str, Any]:
        opts = self.registry.options
        context: dict[str, Any] = {}
        if opts.ambient is not None:
            context.update((k, v) for k, v in opts.ambient().items() if k in opts.ambient_names)
        context.update(view_model_context(data))
        return context

    def stream(self, data: Any) -> Iterator[str]:
        tmpl = self.registry._template_for_execution(self.name)
        context = self._context(data)
        try:
            yield from tmpl.generate(context)
        except Exception as e:
            raise TemplateStoreError(f"error executing template [{self.name}]: {e}") from e

    def render(self, data: Any) -> str:
        return "".join(self.stream(data))

    def write_to(self, writer: TextIO, data: Any) -> None:
        # Render fully first so a failing template writes nothing.
        writer.write(self.render(data))

import io
from dataclasses import dataclass

import pytest

from app.portal.web.fields import ViewModelError
from app.portal.web.templates import (
    TemplateNotFound,
    TemplateRegistry,
    TemplateRegistryOptions,
    TemplateStoreError,
)

BASE = """<html><title>{% block title %}Site{% endblock %}</title>
<nav>{% block nav %}{{ site_name }}{% endblock %}</nav>
<main>{% block content %}{% endblock %}</main></html>
"""


@dataclass
class PageVM:
    site_name: str = ""
    name: str = ""


@dataclass
class StandaloneVM:
    name: str = ""


def _write(root, rel, text):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture()
def fs(tmp_path):
    _write(tmp_path, "include/base.html", BASE)
    _write(tmp_path, "include/greeting.html", "Hello {{ name }}")
    _write(tmp_path, "www/index.html", "{% block content %}{% include 'greeting.html' %}{% endblock %}")
    _write(tmp_path, "www/plain.html", "plain {{ name }}")
    _write(tmp_path, "www/users/list.html", "{% block content %}users{% endblock %}{% block nav %}{% endblock %}")
    return tmp_path


def _registry(fs, **kwargs):
    return TemplateRegistry(TemplateRegistryOptions(fs=fs, root_dir="www", include_dir="include", **kwargs))


def test_pages_are_keyed_by_relative_path(fs):
    reg = _registry(fs)
    assert reg.template_names() == ["index.html", "plain.html", "users/list.html"]
    assert reg.base_exists is True


def test_content_pages_render_through_base_layout(fs):
    reg = _registry(fs)
    assert reg.layout_for("index.html") == "base.html"
    html = reg.renderer("index.html", PageVM()).render(PageVM(site_name="Acme", name="Bob"))
    assert "<title>Site</title>" in html
    assert "<nav>Acme</nav>" in html
    assert "<main>Hello Bob</main>" in html


def test_page_without_content_block_is_standalone(fs):
    reg = _registry(fs)
    assert reg.layout_for("plain.html") is None
    assert reg.renderer("plain.html", StandaloneVM()).render(StandaloneVM(name="x")) == "plain x"


def test_no_base_layout_means_standalone(tmp_path):
    _write(tmp_path, "www/index.html", "{% block content %}hi{% endblock %}")
    reg = TemplateRegistry(TemplateRegistryOptions(fs=tmp_path, root_dir="www"))
    assert reg.base_exists is False
    assert reg.layout_for("index.html") is None
    assert reg.renderer("index.html", None).render(None) == "hi"


def test_explicit_extends_is_left_alone(fs):
    _write(fs, "include/alt.html", "ALT[{% block content %}{% endblock %}]")
    _write(fs, "www/alt_page.html", '{% extends "alt.html" %}{% block content %}x{% endblock %}')
    reg = _registry(fs)
    assert reg.layout_for("alt_page.html") is None
    assert reg.renderer("alt_page.html", None).render(None) == "ALT[x]"


def test_unknown_template(fs):
    reg = _registry(fs)
    with pytest.raises(TemplateNotFound) as exc:
        reg.renderer("missing.html", None)
    assert str(exc.value) == "couldn't find template: missing.html"


def test_syntax_error_fails_load(fs):
    _write(fs, "www/broken.html", "{% if %}")
    with pytest.raises(TemplateStoreError, match="parsing template www/broken.html"):
        _registry(fs)


def test_missing_root_dir(tmp_path):
    with pytest.raises(TemplateStoreError, match="reading root dir"):
        TemplateRegistry(TemplateRegistryOptions(fs=tmp_path, root_dir="www"))


def test_missing_include_dir(tmp_path):
    _write(tmp_path, "www/index.html", "x")
    with pytest.raises(TemplateStoreError, match="reading include dir"):
        TemplateRegistry(TemplateRegistryOptions(fs=tmp_path, root_dir="www", include_dir="include"))


def test_page_colliding_with_include(fs):
    _write(fs, "www/base.html", "page")
    with pytest.raises(TemplateStoreError, match="collides with include"):
        _registry(fs)


def test_fs_is_required():
    with pytest.raises(TemplateStoreError, match="fs is required"):
        TemplateRegistry(TemplateRegistryOptions(fs=None, root_dir="www"))


def test_mismatched_view_model_is_rejected(fs):
    reg = _registry(fs)
    with pytest.raises(ViewModelError) as exc:
        reg.renderer("index.html", StandaloneVM())
    assert exc.value.missing == ["site_name"]
    assert exc.value.extra == []
    assert "[index.html]" in str(exc.value)


def test_overridden_layout_block_is_not_validated(fs):
    reg = _registry(fs)
    # users/list.html replaces the nav block, so site_name is not needed.
    reg.validate_view_model("users/list.html", None)


def test_build_handler_passes_renderer_and_view_args(fs):
    reg = _registry(fs)

    def view(renderer, name):
        return renderer.render(StandaloneVM(name=name))

    handler = reg.build_handler("plain.html", StandaloneVM(), view)
    assert handler.__name__ == "view"
    assert handler(name="z") == "plain z"


def test_build_handler_rejects_bad_view_model(fs):
    with pytest.raises(ViewModelError):
        _registry(fs).build_handler("plain.html", PageVM(), lambda r: "")


def test_escapes_html(fs):
    reg = _registry(fs)
    out = reg.renderer("plain.html", StandaloneVM()).render(StandaloneVM(name="<b>"))
    assert out == "plain &lt;b&gt;"


def test_execution_error_is_wrapped(fs):
    _write(fs, "www/strict.html", "{{ name.missing }}")
    reg = _registry(fs)
    renderer = reg.renderer("strict.html", {"name": {"missing": ""}})
    with pytest.raises(TemplateStoreError, match=r"error executing template \[strict.html\]"):
        renderer.render({"name": {}})


def test_write_to_writes_nothing_on_failure(fs):
    _write(fs, "www/strict.html", "before {{ name.missing }}")
    reg = _registry(fs)
    renderer = reg.renderer("strict.html", {"name": {"missing": ""}})
    buf = io.StringIO()
    with pytest.raises(TemplateStoreError):
        renderer.write_to(buf, {"name": {}})
    assert buf.getvalue() == ""


def test_func_map_is_available_and_not_a_field(fs):
    _write(fs, "www/link.html", "{{ url('home') }}")
    reg = _registry(fs, func_map={"url": lambda name: f"/{name}"})
    assert reg.renderer("link.html", None).render(None) == "/home"


def test_without_reload_changes_need_explicit_reload(fs):
    reg = _registry(fs)
    renderer = reg.renderer("plain.html", StandaloneVM())
    _write(fs, "www/plain.html", "changed {{ name }}")
    assert renderer.render(StandaloneVM(name="a")) == "plain a"
    reg.reload()
    assert renderer.render(StandaloneVM(name="a")) == "changed a"


def test_reload_mode_picks_up_edits(fs):
    reg = _registry(fs, reload=True)
    renderer = reg.renderer("plain.html", StandaloneVM())
    _write(fs, "www/plain.html", "edited {{ name }}")
    assert renderer.render(StandaloneVM(name="a")) == "edited a"


def test_reload_mode_surfaces_broken_edits(fs):
    reg = _registry(fs, reload=True)
    renderer = reg.renderer("plain.html", StandaloneVM())
    _write(fs, "www/plain.html", "{% for %}")
    with pytest.raises(TemplateStoreError, match="reloading templates"):
        renderer.render(StandaloneVM())


def test_get_template_validates(fs):
    reg = _registry(fs)
    tmpl = reg.get_template("plain.html", StandaloneVM())
    assert tmpl.render(name="q") == "plain q"
    with pytest.raises(ViewModelError):
        reg.get_template("plain.html", {"other": 1})


def test_renderer_layout_property(fs):
    reg = _registry(fs)
    assert reg.renderer("index.html", PageVM()).layout == "base.html"


def test_ambient_names_are_supplied_at_render_time(fs):
    _write(fs, "www/ambient.html", "{{ request_id }}:{{ name }}")
    reg = _registry(
        fs,
        ambient_names=frozenset({"request_id"}),
        ambient=lambda: {"request_id": "r-1", "unlisted": "ignored"},
    )
    renderer = reg.renderer("ambient.html", StandaloneVM())
    assert renderer.render(StandaloneVM(name="n")) == "r-1:n"


def test_ambient_provider_is_called_per_render(fs):
    _write(fs, "www/ambient.html", "{{ request_id }}")
    ids = iter(["a", "b"])
    reg = _registry(fs, ambient_names=frozenset({"request_id"}), ambient=lambda: {"request_id": next(ids)})
    renderer = reg.renderer("ambient.html", None)
    assert [renderer.render(None), renderer.render(None)] == ["a", "b"]


def test_undeclared_ambient_name_is_a_view_model_field(fs):
    _write(fs, "www/ambient.html", "{{ request_id }}")
    reg = _registry(fs, ambient=lambda: {"request_id": "r-1"})
    with pytest.raises(ViewModelError) as exc:
        reg.renderer("ambient.html", None)
    assert exc.value.missing == ["request_id"]


def test_ambient_names_need_a_provider(fs):
    with pytest.raises(TemplateStoreError, match="ambient provider"):
        _registry(fs, ambient_names=frozenset({"request_id"}))

import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.template_render import TemplateRenderError, is_template, render_config, render_template


CTX = {"record": {"name": "Asha", "email": "asha@x.io", "total": 1180.5}, "module_name": "Leads"}


class TestTemplateRender(unittest.TestCase):
    def test_render_template(self) -> None:
        self.assertEqual(render_template("Hi {{ record.name | upper }}", CTX), "Hi ASHA")
        self.assertEqual(render_template("{{ missing | default('n/a') }}", CTX), "n/a")

    def test_render_config_keeps_literals(self) -> None:
        config = {
            "to": "{{ record.email }}",
            "subject": "Quote for {{ record.name }}",
            "fields": {"total": 10, "flags": [True, "{{ module_name }}"]},
        }
        rendered = render_config(config, CTX)
        self.assertEqual(rendered["to"], "asha@x.io")
        self.assertEqual(rendered["subject"], "Quote for Asha")
        self.assertEqual(rendered["fields"], {"total": 10, "flags": [True, "Leads"]})

    def test_strict_missing_variable_names_path(self) -> None:
        with self.assertRaises(TemplateRenderError) as ctx:
            render_config({"body": {"lines": ["ok", "{{ record.phone }}"]}}, CTX)
        self.assertEqual(ctx.exception.path, "body.lines[1]")
        self.assertEqual(render_config({"x": "[{{ record.phone }}]"}, CTX, strict=False), {"x": "[]"})

    def test_sandbox_blocks_attribute_access(self) -> None:
        with self.assertRaises(TemplateRenderError):
            render_config({"x": "{{ record.__class__ }}"}, CTX)

    def test_is_template(self) -> None:
        self.assertTrue(is_template("{% if x %}y{% endif %}"))
        self.assertFalse(is_template("plain"))
        self.assertFalse(is_template(5))


if __name__ == "__main__":
    unittest.main()

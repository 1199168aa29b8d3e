"""Tests for call script rendering."""

import pytest

from calldispatch.shared.exceptions import NotFoundError, ValidationError
from calldispatch.templates.renderer import CallTemplate, StaticTemplateRenderer, default_templates


@pytest.fixture
def renderer() -> StaticTemplateRenderer:
    return StaticTemplateRenderer(
        [
            CallTemplate(
                template_id="reminder",
                script="Hi {{ name }}, your appointment is on {{date}}.",
                assistant_id="asst_reminder",
                voice="jennifer",
                defaults={"name": "there"},
            )
        ]
    )


class TestStaticTemplateRenderer:
    def test_substitutes_variables(self, renderer: StaticTemplateRenderer) -> None:
        rendered = renderer.render("reminder", {"name": "Ada", "date": "Monday"})

        assert rendered.script == "Hi Ada, your appointment is on Monday."
        assert rendered.assistant_id == "asst_reminder"
        assert rendered.voice == "jennifer"

    def test_defaults_fill_gaps(self, renderer: StaticTemplateRenderer) -> None:
        rendered = renderer.render("reminder", {"date": 3})

        assert rendered.script == "Hi there, your appointment is on 3."

    def test_missing_variable(self, renderer: StaticTemplateRenderer) -> None:
        with pytest.raises(ValidationError) as exc_info:
            renderer.render("reminder", {})

        assert exc_info.value.details == {"template_id": "reminder", "missing": ["date"]}

    def test_unknown_template(self, renderer: StaticTemplateRenderer) -> None:
        with pytest.raises(NotFoundError):
            renderer.render("nope", {})

    def test_default_catalog(self) -> None:
        renderer = StaticTemplateRenderer(default_templates())

        rendered = renderer.render("default", {"name": "Grace"})

        assert rendered.script.startswith("Hello Grace,")

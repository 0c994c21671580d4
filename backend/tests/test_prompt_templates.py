"""
Unit tests for the prompt template engine and the default prompt library.
"""
from datetime import datetime, timezone

import pytest

from caseai.core.errors import MissingVariableError, TemplateNotFoundError, ValidationError
from caseai.models.entities import AIOperation, ProcessStep
from caseai.services.ai.prompt_library import DEFAULT_TEMPLATES, build_default_engine
from caseai.services.ai.templates import PromptTemplate, PromptTemplateEngine, format_value


def make_template(version="1.0", user="Hello {{ name }}, case {{case_id}}.", **kwargs):
    return PromptTemplate(
        id="greeting",
        version=version,
        name="Greeting",
        operation="generate_summary",
        user=user,
        **kwargs,
    )


class TestRendering:
    def test_substitutes_all_placeholders(self):
        engine = PromptTemplateEngine([make_template(system="System for {{name}}")])
        prompt = engine.render("greeting", None, {"name": "Ada", "case_id": "c-1"})

        assert prompt.user == "Hello Ada, case c-1."
        assert prompt.system == "System for Ada"
        assert prompt.template_id == "greeting"
        assert prompt.version == "1.0"
        assert prompt.text == "System for Ada\n\nHello Ada, case c-1."

    def test_missing_required_variable_raises(self):
        engine = PromptTemplateEngine([make_template()])
        with pytest.raises(MissingVariableError) as exc_info:
            engine.render("greeting", None, {"name": "Ada"})
        assert exc_info.value.missing == ["case_id"]

    def test_none_counts_as_missing(self):
        engine = PromptTemplateEngine([make_template()])
        with pytest.raises(MissingVariableError):
            engine.render("greeting", None, {"name": "Ada", "case_id": None})

    def test_optional_variable_renders_empty(self):
        template = make_template(user="Notes: {{notes}} for {{case_id}}", optional_variables=["notes"])
        engine = PromptTemplateEngine([template])
        prompt = engine.render("greeting", None, {"case_id": "c-1"})
        assert prompt.user == "Notes:  for c-1"

    def test_optional_variable_must_be_used(self):
        with pytest.raises(ValidationError):
            PromptTemplateEngine([make_template(optional_variables=["unused"])])

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFoundError):
            PromptTemplateEngine().render("nope", None, {})

    def test_unknown_version(self):
        engine = PromptTemplateEngine([make_template()])
        with pytest.raises(TemplateNotFoundError):
            engine.render("greeting", "9.0", {"name": "a", "case_id": "b"})

    def test_latest_version_selected_by_default(self):
        engine = PromptTemplateEngine(
            [
                make_template(version="1.0"),
                make_template(version="1.10", user="v1.10 {{case_id}}"),
                make_template(version="1.2", user="v1.2 {{case_id}}"),
            ]
        )
        assert engine.get_template("greeting").version == "1.10"
        assert engine.render("greeting", "1.2", {"case_id": "x"}).user == "v1.2 x"

    def test_parameters_carried_to_prompt(self):
        engine = PromptTemplateEngine([make_template(parameters={"temperature": 0.2})])
        prompt = engine.render("greeting", None, {"name": "a", "case_id": "b"})
        assert prompt.parameters == {"temperature": 0.2}


class TestFormatValue:
    def test_enum_uses_value(self):
        assert format_value(ProcessStep.IN_REVIEW) == ProcessStep.IN_REVIEW.value

    def test_datetime_iso(self):
        value = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert format_value(value) == "2024-01-02T03:04:05+00:00"

    def test_list_joined(self):
        assert format_value(["a.pdf", "b.pdf"]) == "a.pdf, b.pdf"

    def test_mapping_as_json(self):
        assert format_value({"income": 10}) == '{\n  "income": 10\n}'


class TestDefaultLibrary:
    def test_every_operation_has_a_template(self):
        engine = build_default_engine()
        for operation in AIOperation:
            assert engine.templates_for_operation(operation.value), operation

    def test_judge_templates_registered(self):
        ids = {template.id for template in DEFAULT_TEMPLATES}
        assert {"judge_rubric", "judge_rubric_cot"} <= ids

    def test_step_recommendation_requires_step(self):
        engine = build_default_engine()
        variables = {
            "case_id": "c-1",
            "application_type": "permit",
            "applicant_name": "Ada",
            "status": "active",
            "current_step": "received",
        }
        with pytest.raises(MissingVariableError) as exc_info:
            engine.render("step_recommendation", None, variables)
        assert "step" in exc_info.value.missing

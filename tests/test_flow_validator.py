"""
Unit tests for structural flow validation.
"""

import unittest

from flow_models import FlowDefinition
from flow_validator import has_errors, split_issues, validate


def form_step(fields, step_id="form"):
    return {"id": step_id, "name": "Form", "type": "form-fill", "fields": fields}


def field(source, field_id="email"):
    return {"id": field_id, "type": "text", "selector": "#" + field_id, "source": source}


def flow(steps, **extra):
    data = {"metadata": {"name": "quote", "version": "1.0.0"}, "steps": steps}
    data.update(extra)
    return data


class TestValidate(unittest.TestCase):
    """Test validate() on raw and model input."""

    def test_well_formed_flow_has_no_errors(self):
        """A well-formed flow has no errors."""
        data = flow([
            {"id": "go", "name": "Go", "type": "navigation", "actions": [{"type": "goto", "url": "https://x"}]},
            form_step([field("input.email")]),
        ])
        self.assertFalse(has_errors(validate(data)))
        self.assertFalse(has_errors(validate(FlowDefinition.model_validate(data))))

    def test_missing_metadata(self):
        """Name and version are required."""
        issues = validate({"metadata": {}, "steps": []})
        errors, warnings = split_issues(issues)
        self.assertEqual({i.path for i in errors}, {"metadata.name", "metadata.version"})
        self.assertEqual([i.path for i in warnings], ["steps"])

    def test_empty_steps_is_warning(self):
        """An empty step list is only a warning."""
        issues = validate(flow([]))
        self.assertFalse(has_errors(issues))
        self.assertEqual(issues[0].severity, "warning")

    def test_step_identity(self):
        """Step ids must be present and unique."""
        data = flow([
            {"id": "a", "name": "A", "type": "custom", "actions": [{"type": "click", "selector": "#a"}]},
            {"id": "a", "name": "", "type": "custom", "actions": [{"type": "click", "selector": "#b"}]},
            {"id": "c", "name": "C", "type": "teleport"},
        ])
        messages = [i.message for i in validate(data) if i.severity == "error"]
        self.assertIn("Duplicate step id: a", messages)
        self.assertIn("Step name is required", messages)
        self.assertIn("Unknown step type: teleport", messages)

    def test_form_fill_requires_fields(self):
        """Form-fill steps need at least one field."""
        errors, _ = split_issues(validate(flow([form_step([])])))
        self.assertEqual(errors[0].path, "steps[0].fields")

    def test_field_requires_id_type_source(self):
        """Fields need an id, type and source."""
        errors, _ = split_issues(validate(flow([form_step([{"selector": "#x"}])])))
        paths = {i.path for i in errors}
        self.assertEqual(paths, {
            "steps[0].fields[0].id", "steps[0].fields[0].type", "steps[0].fields[0].source"})

    def test_navigation_without_actions_warns(self):
        """Navigation without actions is a warning."""
        issues = validate(flow([{"id": "go", "name": "Go", "type": "navigation"}]))
        self.assertFalse(has_errors(issues))
        self.assertEqual(issues[0].path, "steps[0].actions")

    def test_auth_requirements(self):
        """Auth steps need credentials and selectors."""
        errors, _ = split_issues(validate(flow([{"id": "login", "name": "Login", "type": "auth"}])))
        paths = {i.path for i in errors}
        self.assertIn("steps[0].credentials", paths)
        self.assertIn("steps[0].submitSelector", paths)
        self.assertIn("steps[0].successIndicator", paths)

    def test_extraction_requires_into(self):
        """Extractions need a target."""
        data = flow([{"id": "x", "name": "X", "type": "extraction",
                      "extractions": [{"selector": "#price"}]}])
        errors, _ = split_issues(validate(data))
        self.assertEqual(errors[0].path, "steps[0].extractions[0].into")

    def test_empty_selector_is_error(self):
        """Empty selectors are errors."""
        errors, _ = split_issues(validate(flow([form_step([{
            "id": "e", "type": "text", "selector": "  ", "source": "input.e"}])])))
        self.assertEqual(errors[0].path, "steps[0].fields[0].selector")

    def test_unknown_input_key_reference_warns(self):
        """References to undeclared input keys warn."""
        issues = validate(flow([form_step([field("${input.unknownscope.x}")])]))
        self.assertFalse(has_errors(issues))
        refs = [i for i in issues if i.path == "dataRef"]
        self.assertEqual(len(refs), 1)
        self.assertEqual(refs[0].severity, "warning")
        self.assertIn("${input.unknownscope.x}", refs[0].message)

    def test_invalid_scope_warns(self):
        """References to unknown scopes warn."""
        issues = validate(flow([form_step([field("${session.token}")])]))
        refs = [i for i in issues if i.path == "dataRef"]
        self.assertEqual(refs[0].message, "Invalid data reference: ${session.token}")

    def test_declared_input_reference_is_clean(self):
        """Declared input references do not warn."""
        data = flow(
            [form_step([field("${input.email}"), field("${vars.quote.id}", "quote"), field("${env.HOME}", "home")])],
            inputMapper={"name": "lead", "mappings": [{"from": "lead.email", "to": "email"}]},
        )
        self.assertEqual([i for i in validate(data) if i.path == "dataRef"], [])

    def test_never_raises(self):
        """Garbage input is reported, not raised."""
        self.assertTrue(has_errors(validate("not a flow")))
        self.assertTrue(has_errors(validate(None)))
        self.assertTrue(has_errors(validate({"metadata": "x", "steps": "y"})))


if __name__ == "__main__":
    unittest.main()

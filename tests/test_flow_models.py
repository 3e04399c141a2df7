"""
Unit tests for the flow definition models.
"""

import unittest

from pydantic import ValidationError

from flow_models import (
    AuthStep,
    CustomStep,
    FlowDefinition,
    NavigationStep,
    RetryPolicy,
    SelectorDef,
    SelectorFallback,
    selector_value,
)


def minimal_flow(steps):
    return {"metadata": {"name": "demo", "version": "1.0.0"}, "steps": steps}


class TestSelectorValue(unittest.TestCase):
    """Test effective selector resolution."""

    def test_plain_string(self):
        """A plain string is its own selector."""
        self.assertEqual(selector_value("#email"), "#email")

    def test_selector_def(self):
        """Selector objects yield their value."""
        self.assertEqual(selector_value(SelectorDef(strategy="xpath", value="//input")), "//input")

    def test_fallback_uses_primary(self):
        """Fallback chains resolve to the primary selector."""
        selector = SelectorFallback(primary=SelectorDef(value="#a"), fallbacks=["#b", "#c"])
        self.assertEqual(selector_value(selector), "#a")

    def test_raw_dicts(self):
        """Raw selector dicts are understood."""
        self.assertEqual(selector_value({"strategy": "css", "value": ".x"}), ".x")
        self.assertEqual(selector_value({"primary": "#p", "fallbacks": ["#q"]}), "#p")

    def test_none(self):
        """A missing selector yields None."""
        self.assertIsNone(selector_value(None))


class TestStepParsing(unittest.TestCase):
    """Test the step union and camelCase aliases."""

    def test_discriminated_union(self):
        """Steps are parsed into the model for their type."""
        flow = FlowDefinition.model_validate(minimal_flow([
            {"id": "go", "name": "Go", "type": "navigation", "actions": [{"type": "click", "selector": "#next"}]},
            {"id": "fetch", "name": "Fetch", "type": "custom", "handler": "fetch-quote"},
        ]))
        self.assertIsInstance(flow.steps[0], NavigationStep)
        self.assertIsInstance(flow.steps[1], CustomStep)
        self.assertEqual(flow.steps[1].registry_key, "fetch-quote")

    def test_custom_handler_defaults_to_id(self):
        """Custom steps fall back to their id as registry key."""
        step = CustomStep(id="compute", name="Compute")
        self.assertEqual(step.registry_key, "compute")

    def test_unknown_step_type_rejected(self):
        """Unknown step types fail model validation."""
        with self.assertRaises(ValidationError):
            FlowDefinition.model_validate(minimal_flow([{"id": "x", "name": "X", "type": "teleport"}]))

    def test_camel_case_fields(self):
        """camelCase keys populate snake_case fields."""
        flow = FlowDefinition.model_validate(minimal_flow([{
            "id": "login", "name": "Login", "type": "auth",
            "credentials": {
                "username": {"id": "u", "type": "text", "selector": "#u", "source": "input.user"},
                "password": {"id": "p", "type": "password", "selector": "#p", "source": "input.pass"},
            },
            "submitSelector": "#submit",
            "successIndicator": {"strategy": "css", "value": "#home"},
        }]))
        step = flow.steps[0]
        self.assertIsInstance(step, AuthStep)
        self.assertEqual(step.submit_selector, "#submit")
        self.assertEqual(selector_value(step.success_indicator), "#home")

    def test_condition_object_normalized(self):
        """Condition objects collapse to an expression."""
        step = NavigationStep(id="a", name="A", condition={"expression": "input.married", "type": "unless"})
        self.assertEqual(step.condition, "not (input.married)")
        step = NavigationStep(id="b", name="B", condition={"expression": "input.married", "type": "if"})
        self.assertEqual(step.condition, "input.married")

    def test_models_are_frozen(self):
        """Models cannot be mutated."""
        step = NavigationStep(id="a", name="A")
        with self.assertRaises(ValidationError):
            step.id = "b"

    def test_metadata_extra_keys_preserved(self):
        """Unknown metadata keys are kept."""
        flow = FlowDefinition.model_validate({
            "metadata": {"name": "demo", "version": "2.0.0", "platform": "alptis"},
            "steps": [],
        })
        dumped = flow.metadata.model_dump(by_alias=True)
        self.assertEqual(dumped["platform"], "alptis")

    def test_flow_key_and_index(self):
        """flow_key and step lookup helpers."""
        flow = FlowDefinition.model_validate(minimal_flow([
            {"id": "one", "name": "One", "type": "custom"},
            {"id": "two", "name": "Two", "type": "custom"},
        ]))
        self.assertEqual(flow.flow_key, "demo")
        self.assertEqual(flow.step_index("two"), 1)
        self.assertIsNone(flow.step_index("three"))


class TestRetryPolicy(unittest.TestCase):
    """Test retry backoff computation."""

    def test_attempts_alias(self):
        """attempts is accepted for maxAttempts."""
        self.assertEqual(RetryPolicy.model_validate({"attempts": 4}).max_attempts, 4)
        self.assertEqual(RetryPolicy.model_validate({"maxAttempts": 2}).max_attempts, 2)

    def test_exponential_delay(self):
        """Exponential backoff doubles the delay."""
        policy = RetryPolicy(max_attempts=4, delay_ms=100)
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3)], [100, 200, 400])

    def test_fixed_delay_and_cap(self):
        """Fixed backoff and the delay cap."""
        self.assertEqual(RetryPolicy(delay_ms=50, backoff="fixed").delay_for(3), 50)
        self.assertEqual(RetryPolicy(delay_ms=100, max_delay_ms=250).delay_for(3), 250)

    def test_serializes_max_attempts(self):
        """maxAttempts is written under its camelCase name."""
        dumped = RetryPolicy(max_attempts=3).model_dump(by_alias=True)
        self.assertEqual(dumped["maxAttempts"], 3)


if __name__ == "__main__":
    unittest.main()

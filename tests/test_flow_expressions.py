"""
Unit tests for data references, conditions, transforms and mappers.
"""

import unittest

from flow_errors import ConfigurationError
from flow_expressions import ExpressionResolver, evaluate_condition, get_path, set_path, MISSING
from flow_models import Mapper
from flow_transforms import apply_mapper, apply_transform, apply_transforms


def resolver():
    return ExpressionResolver(
        input={"email": "a@b.fr", "age": 42, "children": [{"name": "Léa"}], "married": False},
        variables={"quote": {"price": 12.5}},
        env={"PORTAL_USER": "agent"},
    )


class TestPaths(unittest.TestCase):
    """Test dotted path helpers."""

    def test_get_path(self):
        """Dotted paths walk dicts and list indexes."""
        data = {"a": {"b": [10, {"c": "x"}]}}
        self.assertEqual(get_path(data, "a.b.1.c"), "x")
        self.assertIs(get_path(data, "a.z"), MISSING)
        self.assertIs(get_path(data, "a.b.5"), MISSING)

    def test_set_path(self):
        """set_path creates intermediate dicts."""
        data = {}
        set_path(data, "quote.price", 10)
        set_path(data, "quote.ref", "Q1")
        self.assertEqual(data, {"quote": {"price": 10, "ref": "Q1"}})


class TestResolver(unittest.TestCase):
    """Test ${scope.path} resolution."""

    def test_single_reference_keeps_type(self):
        """A lone reference keeps the value's type."""
        r = resolver()
        self.assertEqual(r.resolve("${input.age}"), 42)
        self.assertEqual(r.resolve("${vars.quote.price}"), 12.5)

    def test_template_interpolation(self):
        """References inside text are interpolated."""
        self.assertEqual(resolver().resolve("Age: ${input.age}, user ${env.PORTAL_USER}"), "Age: 42, user agent")

    def test_unresolved_reference_left_literal(self):
        """Unresolved references stay as written."""
        r = resolver()
        self.assertEqual(r.resolve("${input.missing}"), "${input.missing}")
        self.assertEqual(r.resolve("x ${other.y}"), "x ${other.y}")

    def test_nested_structures(self):
        """Dicts and lists are resolved recursively."""
        self.assertEqual(
            resolver().resolve({"to": ["${input.email}"], "n": 1}),
            {"to": ["a@b.fr"], "n": 1},
        )

    def test_list_index(self):
        """Numeric path parts index into lists."""
        self.assertEqual(resolver().resolve("${input.children.0.name}"), "Léa")

    def test_resolve_source_forms(self):
        """Every supported source form resolves."""
        r = resolver()
        self.assertEqual(r.resolve_source("${input.email}"), "a@b.fr")
        self.assertEqual(r.resolve_source("input.email"), "a@b.fr")
        self.assertEqual(r.resolve_source("$input.email"), "a@b.fr")
        self.assertEqual(r.resolve_source("env.PORTAL_USER"), "agent")
        self.assertEqual(r.resolve_source("literal value"), "literal value")
        self.assertIsNone(r.resolve_source("input.nope"))


class TestConditions(unittest.TestCase):
    """Test the restricted condition evaluator."""

    def test_python_syntax(self):
        """Python-style conditions evaluate."""
        r = resolver()
        self.assertTrue(evaluate_condition("input.age > 18 and not input.married", r))
        self.assertFalse(evaluate_condition("vars.quote.price >= 20", r))
        self.assertTrue(evaluate_condition("input.email in ['a@b.fr', 'c@d.fr']", r))

    def test_js_syntax(self):
        """JavaScript-style operators and literals are accepted."""
        r = resolver()
        self.assertTrue(evaluate_condition("${input.age} === 42 && !${input.married}", r))
        self.assertTrue(evaluate_condition("${input.married} === false || ${input.age} < 0", r))
        self.assertTrue(evaluate_condition("${input.missing} === null", r))
        self.assertTrue(evaluate_condition("${input.age} !== 41", r))

    def test_string_literals_untouched(self):
        """Operators inside string literals are not rewritten."""
        r = ExpressionResolver(input={"plan": "a && b"})
        self.assertTrue(evaluate_condition("${input.plan} == 'a && b'", r))

    def test_reference_inside_quotes(self):
        """A quoted reference compares by its resolved value."""
        r = ExpressionResolver(input={"plan": "pro", "age": 42})
        self.assertTrue(evaluate_condition("'${input.plan}' == 'pro'", r))
        self.assertFalse(evaluate_condition("\"${input.plan}\" === 'basic'", r))
        self.assertTrue(evaluate_condition("'age ${input.age}' == 'age 42'", r))

    def test_dollar_shorthand(self):
        """$input.x references work like ${input.x}."""
        r = ExpressionResolver(input={"hasOption": True, "plan": "pro"}, variables={"n": 2})
        self.assertTrue(evaluate_condition("$input.hasOption == true", r))
        self.assertTrue(evaluate_condition("$input.plan === 'pro' && $vars.n > 1", r))
        self.assertFalse(evaluate_condition("!$input.hasOption", r))
        self.assertIsNone(r.resolve_source("$input.missing"))

    def test_empty_condition_is_true(self):
        """Empty conditions are true."""
        self.assertTrue(evaluate_condition("", resolver()))
        self.assertTrue(evaluate_condition(None, resolver()))

    def test_none_comparison_is_false(self):
        """Ordering comparisons against None are false."""
        self.assertFalse(evaluate_condition("input.missing > 3", resolver()))

    def test_malformed_expression(self):
        """Syntax errors raise ConfigurationError."""
        with self.assertRaises(ConfigurationError):
            evaluate_condition("input.age >", resolver())

    def test_unknown_name(self):
        """Unknown names raise ConfigurationError."""
        with self.assertRaises(ConfigurationError):
            evaluate_condition("lead.age > 3", resolver())

    def test_calls_rejected(self):
        """Function calls are not allowed."""
        with self.assertRaises(ConfigurationError):
            evaluate_condition("__import__('os')", resolver())


class TestTransforms(unittest.TestCase):
    """Test built-in transforms."""

    def test_string_transforms(self):
        """Case and whitespace transforms."""
        self.assertEqual(apply_transform("  Dupont ", "trim"), "Dupont")
        self.assertEqual(apply_transform("dupont", "uppercase"), "DUPONT")
        self.assertEqual(apply_transform("DUPONT", "lowercase"), "dupont")

    def test_to_number(self):
        """toNumber parses integers and decimal commas."""
        self.assertEqual(apply_transform("42", "toNumber"), 42)
        self.assertEqual(apply_transform("1,5", "toNumber"), 1.5)
        self.assertIsNone(apply_transform("abc", "toNumber"))

    def test_to_boolean(self):
        """toBoolean recognises common true strings."""
        self.assertTrue(apply_transform("true", "toBoolean"))
        self.assertFalse(apply_transform("no", "toBoolean"))

    def test_default(self):
        """default replaces empty values only."""
        self.assertEqual(apply_transform("", "default", {"value": "N/A"}), "N/A")
        self.assertEqual(apply_transform("x", "default", {"value": "N/A"}), "x")

    def test_format_date(self):
        """formatDate converts between date formats."""
        self.assertEqual(apply_transform("2024-03-05", "formatDate"), "05/03/2024")
        self.assertEqual(apply_transform("05/03/2024", "formatDate", {"format": "YYYY-MM-DD"}), "2024-03-05")
        self.assertEqual(apply_transform("not a date", "formatDate"), "not a date")

    def test_first_day_next_month(self):
        """firstDayNextMonth rolls over months and years."""
        self.assertEqual(apply_transform(None, "firstDayNextMonth", {"from": "2024-12-15"}), "01/01/2025")
        self.assertEqual(apply_transform(None, "firstDayNextMonth", {"from": "2024-02-29"}), "01/03/2024")

    def test_extract_departement(self):
        """extractDepartement takes the postcode prefix."""
        self.assertEqual(apply_transform("75011", "extractDepartement"), "75")
        self.assertIsNone(apply_transform("7", "extractDepartement"))

    def test_predicates(self):
        """isNotNull and hasLength return booleans."""
        self.assertTrue(apply_transform("x", "isNotNull"))
        self.assertFalse(apply_transform(None, "isNotNull"))
        self.assertTrue(apply_transform([1], "hasLength"))
        self.assertFalse(apply_transform([], "hasLength"))

    def test_list_and_text_transforms(self):
        """split, join, replace and format."""
        self.assertEqual(apply_transform("a, b", "split"), ["a", "b"])
        self.assertEqual(apply_transform(["a", "b"], "join", {"separator": "-"}), "a-b")
        self.assertEqual(apply_transform("01 02", "replace", {"pattern": " ", "replacement": ""}), "0102")
        self.assertEqual(apply_transform(3, "format", {"template": "{value} enfants"}), "3 enfants")

    def test_pipeline(self):
        """Transforms apply in order."""
        pipeline = [{"name": "trim"}, {"name": "uppercase"}]
        self.assertEqual(apply_transforms(" ab ", pipeline), "AB")

    def test_unknown_transform(self):
        """Unknown transforms raise ConfigurationError."""
        with self.assertRaises(ConfigurationError):
            apply_transform("x", "rot13")


class TestMapper(unittest.TestCase):
    """Test input/output mappers."""

    def test_mapping_with_transform_and_default(self):
        """Mappings apply transforms and defaults."""
        mapper = Mapper.model_validate({"name": "lead", "mappings": [
            {"from": "subscriber.lastName", "to": "nom", "transform": [{"name": "uppercase"}]},
            {"from": "subscriber.regime", "to": "regime", "default": "general"},
            {"from": "contract.start", "to": "dates.start"},
        ]})
        result = apply_mapper(mapper, {"subscriber": {"lastName": "dupont"}, "contract": {"start": "2025-01-01"}})
        self.assertEqual(result, {"nom": "DUPONT", "regime": "general", "dates": {"start": "2025-01-01"}})

    def test_lenient_missing_is_skipped(self):
        """Lenient mappers skip missing values."""
        mapper = Mapper.model_validate({"name": "m", "mappings": [{"from": "a", "to": "b"}]})
        self.assertEqual(apply_mapper(mapper, {}), {})

    def test_strict_missing_raises(self):
        """Strict mappers raise on missing values."""
        mapper = Mapper.model_validate({"name": "m", "strict": True, "mappings": [{"from": "a", "to": "b"}]})
        with self.assertRaises(ConfigurationError):
            apply_mapper(mapper, {})

    def test_no_mapper_copies(self):
        """Without a mapper the source is copied."""
        source = {"a": 1}
        result = apply_mapper(None, source)
        self.assertEqual(result, source)
        self.assertIsNot(result, source)


if __name__ == "__main__":
    unittest.main()

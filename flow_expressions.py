"""
Data references and step conditions.

References look like ${scope.path} where scope is input, vars or env.
Conditions are small boolean expressions over those references. They are
parsed with Python's ast module and walked against a whitelist of node
types; nothing is ever passed to eval().
"""

from __future__ import annotations

import ast
import operator
import re
from typing import Any, Mapping, Optional

from flow_errors import ConfigurationError

DATA_REF_RE = re.compile(r"\$\{([^}]+)\}")
DATA_SCOPES = ("input", "vars", "env")

MISSING = object()

_STRING_RE = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")
_NOT_RE = re.compile(r"!(?!=)")
_SHORT_REF_RE = re.compile(r"\$((?:input|vars|env)(?:\.[A-Za-z0-9_-]+)+)")
_LITERAL_RE = re.compile(r"\b(true|false|null|undefined)\b")
_LITERALS = {"true": "True", "false": "False", "null": "None", "undefined": "None"}
_JS_OPERATORS = (("===", "=="), ("!==", "!="), ("&&", " and "), ("||", " or "))

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def get_path(data: Any, path: str) -> Any:
    """Walk a dotted path through dicts and lists. Returns MISSING when absent."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            try:
                current = current[int(part)]
            except IndexError:
                return MISSING
        else:
            return MISSING
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path in a nested dict, creating intermediate dicts."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


class ExpressionResolver:
    """Resolves ${scope.path} references against input, vars and env."""

    def __init__(
        self,
        input: Mapping[str, Any] | None = None,
        variables: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.scopes: dict[str, Mapping[str, Any]] = {
            "input": input if input is not None else {},
            "vars": variables if variables is not None else {},
            "env": env if env is not None else {},
        }

    @classmethod
    def for_context(cls, context: Any) -> ExpressionResolver:
        return cls(context.input, context.vars, context.env)

    def lookup(self, reference: str, default: Any = None) -> Any:
        scope, _, path = reference.strip().partition(".")
        data = self.scopes.get(scope)
        if data is None:
            return default
        if not path:
            return data
        value = get_path(data, path)
        return default if value is MISSING else value

    def has(self, reference: str) -> bool:
        return self.lookup(reference, MISSING) is not MISSING

    def resolve(self, value: Any) -> Any:
        """
        Resolve references inside strings, dicts and lists.

        A string that is exactly one reference keeps the referenced value's
        type. References that cannot be resolved are left as written.
        """
        if isinstance(value, str):
            return self._resolve_text(value)
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        return value

    def _resolve_text(self, text: str) -> Any:
        match = DATA_REF_RE.fullmatch(text)
        if match:
            value = self.lookup(match.group(1), MISSING)
            return text if value is MISSING else value

        def replacer(m: re.Match) -> str:
            value = self.lookup(m.group(1), MISSING)
            if value is MISSING:
                return m.group(0)
            return "" if value is None else str(value)

        return DATA_REF_RE.sub(replacer, text)

    def resolve_source(self, source: Any) -> Any:
        """
        Resolve a field source.

        Accepts ${...} templates, bare scope paths (input.x, vars.x, env.X),
        $-prefixed paths ($input.x) and plain literals.
        """
        if not isinstance(source, str):
            return source
        match = DATA_REF_RE.fullmatch(source)
        if match:
            return self.lookup(match.group(1))
        if "${" in source:
            return self.resolve(source)
        candidate = source[1:] if source.startswith("$") else source
        scope, dot, _ = candidate.partition(".")
        if dot and scope in self.scopes:
            return self.lookup(candidate)
        return source


def _to_python_syntax(expression: str, bindings: dict[str, Any], resolver: ExpressionResolver) -> str:
    # String literals sit at odd indexes after split
    parts = _STRING_RE.split(expression)

    def bind_value(value: Any) -> str:
        name = f"__ref{len(bindings)}"
        bindings[name] = value
        return name

    for i in range(1, len(parts), 2):
        literal = parts[i]
        inner = literal[1:-1]
        match = DATA_REF_RE.fullmatch(inner)
        if match:
            parts[i] = bind_value(resolver.lookup(match.group(1)))
        elif DATA_REF_RE.search(inner):
            parts[i] = bind_value(str(resolver.resolve(inner)))

    for i in range(0, len(parts), 2):
        segment = parts[i]
        segment = DATA_REF_RE.sub(lambda m: bind_value(resolver.lookup(m.group(1))), segment)
        segment = _SHORT_REF_RE.sub(lambda m: bind_value(resolver.lookup(m.group(1))), segment)
        for js, py in _JS_OPERATORS:
            segment = segment.replace(js, py)
        segment = _NOT_RE.sub(" not ", segment)
        segment = _LITERAL_RE.sub(lambda m: _LITERALS[m.group(1)], segment)
        parts[i] = segment
    return "".join(parts).strip()


def _evaluate(node: ast.AST, names: dict[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body, names)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        raise ConfigurationError(f"Unknown name '{node.id}' in condition")
    if isinstance(node, ast.BoolOp):
        result: Any = None
        for value in node.values:
            result = _evaluate(value, names)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result
    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, names)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, names)
        for op, comparator in zip(node.ops, node.comparators):
            right = _evaluate(comparator, names)
            try:
                ok = _COMPARISONS[type(op)](left, right)
            except TypeError:
                # None < 3 and friends compare as false
                ok = False
            if not ok:
                return False
            left = right
        return True
    if isinstance(node, ast.Attribute):
        base = _evaluate(node.value, names)
        if isinstance(base, Mapping):
            return base.get(node.attr)
        return None
    if isinstance(node, ast.Subscript):
        base = _evaluate(node.value, names)
        key = _evaluate(node.slice, names)
        try:
            return base[key]
        except (KeyError, IndexError, TypeError):
            return None
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_evaluate(item, names) for item in node.elts]
    raise ConfigurationError(f"Unsupported element in condition: {type(node).__name__}")


def evaluate_condition(expression: Optional[str], resolver: ExpressionResolver) -> bool:
    """Evaluate a step condition. Empty conditions are true."""
    if expression is None or not str(expression).strip():
        return True
    bindings: dict[str, Any] = {}
    source = _to_python_syntax(str(expression), bindings, resolver)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConfigurationError(f"Invalid condition '{expression}': {e.msg}") from e
    names = dict(resolver.scopes)
    names.update(bindings)
    return bool(_evaluate(tree, names))

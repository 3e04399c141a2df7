"""
Structural validation of flow definitions.

validate() never raises: every problem is returned as a ValidationIssue.
It works on the plain-dict form so raw documents with unknown step types
can be reported before they are turned into models.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

from flow_expressions import DATA_REF_RE, DATA_SCOPES
from flow_models import STEP_TYPES

ERROR = "error"
WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str
    severity: str = ERROR

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    def __str__(self) -> str:
        return f"{self.severity}: {self.path}: {self.message}"


def has_errors(issues: Iterable[ValidationIssue]) -> bool:
    return any(issue.severity == ERROR for issue in issues)


def split_issues(issues: Iterable[ValidationIssue]) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    for issue in issues:
        (errors if issue.severity == ERROR else warnings).append(issue)
    return errors, warnings


def _as_plain(flow_def: Any) -> Any:
    if isinstance(flow_def, BaseModel):
        return flow_def.model_dump(by_alias=True, exclude_none=True, mode="json")
    return flow_def


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _check_selector(selector: Any, path: str, issues: list[ValidationIssue]) -> None:
    if selector is None:
        return
    if isinstance(selector, str):
        if not selector.strip():
            issues.append(ValidationIssue(path, "Selector cannot be empty"))
    elif isinstance(selector, Mapping):
        if "primary" in selector:
            _check_selector(selector.get("primary"), f"{path}.primary", issues)
        elif _is_blank(selector.get("value")):
            issues.append(ValidationIssue(f"{path}.value", "Selector value cannot be empty"))
    else:
        issues.append(ValidationIssue(path, "Selector must be a string or a selector object"))


def _check_field(field: Any, path: str, issues: list[ValidationIssue]) -> None:
    if not isinstance(field, Mapping):
        issues.append(ValidationIssue(path, "Field must be a mapping"))
        return
    for key in ("id", "type", "source"):
        if _is_blank(field.get(key)):
            issues.append(ValidationIssue(f"{path}.{key}", f"Field {key} is required"))
    _check_selector(field.get("selector"), f"{path}.selector", issues)


def _check_actions(step: Mapping, path: str, issues: list[ValidationIssue]) -> None:
    actions = step.get("actions") or []
    if not actions:
        issues.append(ValidationIssue(f"{path}.actions", "Step has no actions", WARNING))
        return
    for i, action in enumerate(actions):
        action_path = f"{path}.actions[{i}]"
        if not isinstance(action, Mapping) or _is_blank(action.get("type") or action.get("action")):
            issues.append(ValidationIssue(f"{action_path}.type", "Action type is required"))
            continue
        _check_selector(action.get("selector"), f"{action_path}.selector", issues)


def _check_step(step: Mapping, path: str, issues: list[ValidationIssue]) -> None:
    step_type = step.get("type")
    if step_type == "form-fill":
        fields = step.get("fields") or []
        if not fields:
            issues.append(ValidationIssue(f"{path}.fields", "Form-fill step requires at least one field"))
        for i, field in enumerate(fields):
            _check_field(field, f"{path}.fields[{i}]", issues)
        _check_selector(step.get("submitSelector"), f"{path}.submitSelector", issues)
    elif step_type in ("navigation", "custom"):
        _check_actions(step, path, issues)
    elif step_type == "auth":
        credentials = step.get("credentials")
        if not isinstance(credentials, Mapping):
            issues.append(ValidationIssue(f"{path}.credentials", "Auth step requires credentials"))
        else:
            for key in ("username", "password"):
                if not credentials.get(key):
                    issues.append(ValidationIssue(
                        f"{path}.credentials.{key}", f"Auth step requires a {key} field"))
                else:
                    _check_field(credentials[key], f"{path}.credentials.{key}", issues)
        for key in ("submitSelector", "successIndicator"):
            if _is_blank(step.get(key)):
                issues.append(ValidationIssue(f"{path}.{key}", f"Auth step requires {key}"))
            else:
                _check_selector(step.get(key), f"{path}.{key}", issues)
    elif step_type == "extraction":
        extractions = step.get("extractions") or []
        if not extractions:
            issues.append(ValidationIssue(f"{path}.extractions", "Extraction step has no extractions", WARNING))
        for i, extraction in enumerate(extractions):
            entry_path = f"{path}.extractions[{i}]"
            if not isinstance(extraction, Mapping) or _is_blank(extraction.get("into")):
                issues.append(ValidationIssue(f"{entry_path}.into", "Extraction target 'into' is required"))
                continue
            if _is_blank(extraction.get("selector")):
                issues.append(ValidationIssue(f"{entry_path}.selector", "Extraction selector is required"))
            else:
                _check_selector(extraction.get("selector"), f"{entry_path}.selector", issues)


def _declared_inputs(data: Mapping) -> set[str]:
    mapper = data.get("inputMapper") or data.get("input_mapper")
    if not isinstance(mapper, Mapping):
        return set()
    declared = set()
    for mapping in mapper.get("mappings") or []:
        if isinstance(mapping, Mapping) and isinstance(mapping.get("to"), str):
            declared.add(mapping["to"].split(".", 1)[0])
    return declared


def _check_data_refs(data: Mapping, issues: list[ValidationIssue]) -> None:
    text = json.dumps(data, default=str, ensure_ascii=False)
    declared = _declared_inputs(data)
    seen = set()
    for match in DATA_REF_RE.finditer(text):
        token = match.group(0)
        if token in seen:
            continue
        seen.add(token)
        parts = match.group(1).strip().split(".")
        if parts[0] not in DATA_SCOPES:
            issues.append(ValidationIssue("dataRef", f"Invalid data reference: {token}", WARNING))
        elif parts[0] == "input" and len(parts) > 1 and parts[1] not in declared:
            issues.append(ValidationIssue(
                "dataRef", f"Undeclared input reference: {token} (not a target of inputMapper)", WARNING))


def _validate(data: Any) -> list[ValidationIssue]:
    if not isinstance(data, Mapping):
        return [ValidationIssue("", "Flow definition must be a mapping")]
    issues: list[ValidationIssue] = []

    metadata = data.get("metadata")
    if not isinstance(metadata, Mapping):
        metadata = {}
    if _is_blank(metadata.get("name")):
        issues.append(ValidationIssue("metadata.name", "Flow name is required"))
    if _is_blank(metadata.get("version")):
        issues.append(ValidationIssue("metadata.version", "Flow version is required"))

    steps = data.get("steps") or []
    if not isinstance(steps, list):
        issues.append(ValidationIssue("steps", "Steps must be a list"))
        steps = []
    if not steps:
        issues.append(ValidationIssue("steps", "Flow has no steps", WARNING))

    seen_ids = set()
    for index, step in enumerate(steps):
        path = f"steps[{index}]"
        if not isinstance(step, Mapping):
            issues.append(ValidationIssue(path, "Step must be a mapping"))
            continue
        step_id = step.get("id")
        if _is_blank(step_id):
            issues.append(ValidationIssue(f"{path}.id", "Step id is required"))
        elif step_id in seen_ids:
            issues.append(ValidationIssue(f"{path}.id", f"Duplicate step id: {step_id}"))
        else:
            seen_ids.add(step_id)
        if _is_blank(step.get("name")):
            issues.append(ValidationIssue(f"{path}.name", "Step name is required"))
        if step.get("type") not in STEP_TYPES:
            issues.append(ValidationIssue(f"{path}.type", f"Unknown step type: {step.get('type')}"))
            continue
        _check_step(step, path, issues)

    _check_data_refs(data, issues)
    return issues


def validate(flow_def: Any) -> list[ValidationIssue]:
    """Check a FlowDefinition or a raw flow mapping and return all issues found."""
    try:
        return _validate(_as_plain(flow_def))
    except Exception as e:
        return [ValidationIssue("", f"Flow definition could not be validated: {e}")]

"""
Flow definition serializer.

Converts FlowDefinitions to the portable text format and back:

    # Auto-generated flow definition
    # Generator: formflow
    # Version: 1.0.0
    # Exported: 2026-01-01T00:00:00+00:00
    # Checksum: <sha256 of the YAML body>
    # Flow: my-flow v1.0.0

    metadata:
      name: my-flow
      ...

Selectors are flattened to their effective string on export; strategy and
fallback metadata does not survive a round trip.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, ValidationError

import flow_config
from flow_errors import ConfigurationError, InvalidFlowError
from flow_models import (
    ActionDefinition,
    AuthStep,
    CustomStep,
    ExtractionStep,
    FieldDefinition,
    FlowDefinition,
    FormFillStep,
    NavigationStep,
    selector_value,
)
from flow_validator import ValidationIssue, split_issues, validate

logger = logging.getLogger(__name__)

HEADER_MARKER = "# Auto-generated flow definition"
FLOW_SUFFIXES = (".flow.yaml", ".yaml", ".yml")

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass
class ExportMetadata:
    generator: str
    version: str
    exported_at: str
    checksum: str
    flow_id: str
    flow_version: str

    def to_dict(self) -> dict[str, str]:
        return {
            "generator": self.generator,
            "version": self.version,
            "exportedAt": self.exported_at,
            "checksum": self.checksum,
            "flowId": self.flow_id,
            "flowVersion": self.flow_version,
        }


@dataclass
class ExportResult:
    success: bool
    text: str = ""
    metadata: Optional[ExportMetadata] = None
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)


@dataclass
class ParseResult:
    valid: bool
    flow: Optional[FlowDefinition] = None
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    checksum: str = ""
    header: dict[str, str] = field(default_factory=dict)


# --- Serialization ---


def _dump(model: Optional[BaseModel]) -> Optional[dict[str, Any]]:
    if model is None:
        return None
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _dump_list(models: Optional[list[BaseModel]]) -> Optional[list[dict[str, Any]]]:
    if models is None:
        return None
    return [_dump(m) for m in models]


def serialize_selector(selector: Any) -> Optional[str]:
    return selector_value(selector)


def serialize_field(field_def: FieldDefinition) -> dict[str, Any]:
    return _compact({
        "id": field_def.id,
        "type": field_def.type,
        "selector": serialize_selector(field_def.selector),
        "source": field_def.source,
        "label": field_def.label,
        "optional": field_def.optional,
        "waitFor": field_def.wait_for,
        "transform": _dump_list(field_def.transform),
        "validation": _dump_list(field_def.validation),
    })


def serialize_action(action: ActionDefinition) -> dict[str, Any]:
    data = _dump(action)
    if action.selector is not None:
        data["selector"] = serialize_selector(action.selector)
    return data


def serialize_step(step: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": step.id,
        "name": step.name,
        "type": step.type,
        "description": step.description,
        "condition": step.condition,
        "optional": step.optional,
        "timeout": step.timeout,
        "retry": _dump(step.retry),
    }
    if isinstance(step, AuthStep):
        data["credentials"] = {
            "username": serialize_field(step.credentials.username),
            "password": serialize_field(step.credentials.password),
        }
        data["submitSelector"] = serialize_selector(step.submit_selector)
        data["successIndicator"] = serialize_selector(step.success_indicator)
    elif isinstance(step, FormFillStep):
        if step.before_fill is not None:
            data["beforeFill"] = [serialize_action(a) for a in step.before_fill]
        data["fields"] = [serialize_field(f) for f in step.fields]
        data["submitSelector"] = serialize_selector(step.submit_selector)
        if step.after_fill is not None:
            data["afterFill"] = [serialize_action(a) for a in step.after_fill]
    elif isinstance(step, ExtractionStep):
        data["extractions"] = [
            _compact({
                "selector": serialize_selector(e.selector),
                "attribute": e.attribute,
                "into": e.into,
                "transform": _dump_list(e.transform),
            })
            for e in step.extractions
        ]
    elif isinstance(step, CustomStep):
        data["handler"] = step.handler
        data["actions"] = [serialize_action(a) for a in step.actions]
    elif isinstance(step, NavigationStep):
        data["actions"] = [serialize_action(a) for a in step.actions]
    return _compact(data)


def _coerce(flow: Union[FlowDefinition, dict[str, Any]]) -> FlowDefinition:
    if isinstance(flow, FlowDefinition):
        return flow
    return FlowDefinition.model_validate(flow)


def serialize_flow(flow: Union[FlowDefinition, dict[str, Any]]) -> dict[str, Any]:
    """Plain-dict form of a flow, ready for YAML or JSON output."""
    flow = _coerce(flow)
    return _compact({
        "metadata": _dump(flow.metadata),
        "config": _dump(flow.config),
        "inputMapper": _dump(flow.input_mapper),
        "outputMapper": _dump(flow.output_mapper),
        "steps": [serialize_step(step) for step in flow.steps],
    })


def dump_flow(flow: Union[FlowDefinition, dict[str, Any]]) -> str:
    return yaml.safe_dump(
        serialize_flow(flow),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def compute_checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_header(metadata: ExportMetadata) -> str:
    lines = [
        HEADER_MARKER,
        f"# Generator: {metadata.generator}",
        f"# Version: {metadata.version}",
        f"# Exported: {metadata.exported_at}",
        f"# Checksum: {metadata.checksum}",
        f"# Flow: {metadata.flow_id} v{metadata.flow_version}",
        "",
    ]
    return "\n".join(lines) + "\n"


def split_header(text: str) -> tuple[dict[str, str], str]:
    """Separate leading '# key: value' comment lines from the body."""
    lines = text.splitlines(keepends=True)
    header: dict[str, str] = {}
    i = 0
    while i < len(lines) and lines[i].startswith("#"):
        key, sep, value = lines[i][1:].strip().partition(":")
        if sep:
            header[key.strip().lower()] = value.strip()
        i += 1
    if 0 < i < len(lines) and not lines[i].strip():
        i += 1
    return header, "".join(lines[i:])


def _pydantic_issues(error: ValidationError) -> list[ValidationIssue]:
    issues = []
    for err in error.errors():
        path = ".".join(str(part) for part in err.get("loc", ()))
        issues.append(ValidationIssue(path, err.get("msg", "invalid value")))
    return issues


def export_flow(flow: Union[FlowDefinition, dict[str, Any]], exported_at: Optional[str] = None) -> ExportResult:
    """
    Validate and export a flow to the text format.

    Validation errors abort the export; warnings are returned alongside
    the text.
    """
    errors, warnings = split_issues(validate(flow))
    if errors:
        return ExportResult(success=False, errors=errors, warnings=warnings)

    try:
        definition = _coerce(flow)
    except ValidationError as e:
        return ExportResult(success=False, errors=_pydantic_issues(e), warnings=warnings)

    body = dump_flow(definition)
    metadata = ExportMetadata(
        generator=flow_config.GENERATOR_NAME,
        version=flow_config.GENERATOR_VERSION,
        exported_at=exported_at or datetime.now(timezone.utc).isoformat(),
        checksum=compute_checksum(body),
        flow_id=definition.metadata.name,
        flow_version=definition.metadata.version,
    )
    return ExportResult(
        success=True,
        text=build_header(metadata) + body,
        metadata=metadata,
        warnings=warnings,
    )


def parse_flow(text: str, verify_checksum: bool = True, expected_version: Optional[str] = None) -> ParseResult:
    """
    Parse the text format (or a plain YAML/JSON document) into a FlowDefinition.

    The result is invalid when the checksum does not match the body, the
    YAML cannot be loaded, the document does not fit the model, or the
    validator reports errors.
    """
    header, body = split_header(text)
    checksum = compute_checksum(body)
    errors: list[ValidationIssue] = []

    expected = header.get("checksum")
    if verify_checksum and expected and expected != checksum:
        errors.append(ValidationIssue(
            "checksum", f"Checksum mismatch: header has {expected}, content is {checksum}"))

    try:
        data = yaml.safe_load(body)
    except yaml.YAMLError as e:
        errors.append(ValidationIssue("", f"Invalid YAML: {e}"))
        return ParseResult(valid=False, errors=errors, checksum=checksum, header=header)

    if not isinstance(data, dict):
        errors.append(ValidationIssue("", "Flow document must be a mapping"))
        return ParseResult(valid=False, errors=errors, checksum=checksum, header=header)

    validator_errors, warnings = split_issues(validate(data))
    errors.extend(validator_errors)

    flow = None
    try:
        flow = FlowDefinition.model_validate(data)
    except ValidationError as e:
        errors.extend(_pydantic_issues(e))

    if flow is not None and expected_version and flow.metadata.version != expected_version:
        errors.append(ValidationIssue(
            "metadata.version",
            f"Expected version {expected_version}, found {flow.metadata.version}"))

    return ParseResult(
        valid=not errors,
        flow=flow,
        errors=errors,
        warnings=warnings,
        checksum=checksum,
        header=header,
    )


def load_flow(file_path: Union[str, Path], verify_checksum: bool = True) -> FlowDefinition:
    """
    Load a flow from a file.

    Raises:
        FileNotFoundError: If file doesn't exist
        InvalidFlowError: If the flow does not parse or validate
    """
    path = Path(file_path)

    if not path.exists():
        raise FileNotFoundError(f"Flow file not found: {file_path}")

    with open(path, "r", encoding="utf-8") as f:
        result = parse_flow(f.read(), verify_checksum=verify_checksum)

    if not result.valid:
        raise InvalidFlowError(
            f"Invalid flow file {file_path}: {result.errors[0].path}: {result.errors[0].message}",
            result.errors,
        )
    for warning in result.warnings:
        logger.debug(f"{path.name}: {warning}")
    return result.flow


def save_flow(flow: Union[FlowDefinition, dict[str, Any]], file_path: Union[str, Path]) -> ExportResult:
    result = export_flow(flow)
    if not result.success:
        raise InvalidFlowError(
            f"Cannot export flow: {result.errors[0].path}: {result.errors[0].message}",
            result.errors,
        )
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(result.text)
    return result


class FlowLibrary:
    """
    Directory of flow files addressable by flow key.

    A key maps to <directory>/<key>.flow.yaml; plain .yaml and .yml files
    are also picked up.
    """

    def __init__(self, directory: Union[str, Path] = flow_config.FLOW_LIBRARY_DIR):
        self.directory = Path(directory)

    @staticmethod
    def _check_key(key: str) -> str:
        if not key or not _KEY_RE.match(key) or ".." in key:
            raise ConfigurationError(f"Invalid flow key: {key!r}")
        return key

    @staticmethod
    def key_for(path: Path) -> str:
        for suffix in FLOW_SUFFIXES:
            if path.name.endswith(suffix):
                return path.name[: -len(suffix)]
        return path.stem

    def _find(self, key: str) -> Optional[Path]:
        self._check_key(key)
        for suffix in FLOW_SUFFIXES:
            path = self.directory / f"{key}{suffix}"
            if path.is_file():
                return path
        return None

    def keys(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        keys = set()
        for path in self.directory.iterdir():
            if path.is_file() and path.name.endswith(FLOW_SUFFIXES):
                keys.add(self.key_for(path))
        return sorted(keys)

    def has(self, key: str) -> bool:
        try:
            return self._find(key) is not None
        except ConfigurationError:
            return False

    def path_for(self, key: str) -> Path:
        return self._find(key) or self.directory / f"{self._check_key(key)}.flow.yaml"

    def get(self, key: str) -> FlowDefinition:
        path = self._find(key)
        if path is None:
            raise ConfigurationError(f"Flow not found: {key}")
        return load_flow(path)

    def save(self, flow: Union[FlowDefinition, dict[str, Any]], key: Optional[str] = None) -> Path:
        definition = _coerce(flow)
        key = self._check_key(key or definition.flow_key)
        path = self.directory / f"{key}.flow.yaml"
        save_flow(definition, path)
        logger.info(f"Saved flow {key} to {path}")
        return path

    def delete(self, key: str) -> bool:
        path = self._find(key)
        if path is None:
            return False
        path.unlink()
        logger.info(f"Deleted flow {key}")
        return True

    def summaries(self) -> list[dict[str, Any]]:
        """Name, version and step count of every readable flow in the directory."""
        summaries = []
        for key in self.keys():
            try:
                flow = self.get(key)
            except (ConfigurationError, yaml.YAMLError) as e:
                logger.warning(f"Skipping unreadable flow {key}: {e}")
                summaries.append({"key": key, "error": str(e)})
                continue
            summaries.append({
                "key": key,
                "name": flow.metadata.name,
                "version": flow.metadata.version,
                "description": flow.metadata.description,
                "steps": len(flow.steps),
            })
        return summaries

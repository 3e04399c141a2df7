"""
Value transforms and input/output mappers.

A transform pipeline is a list of {name, args} entries applied left to
right. Mappers copy values between dotted paths, applying a pipeline and a
default on the way.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Iterable, Mapping as MappingType, Optional

from flow_errors import ConfigurationError
from flow_expressions import MISSING, get_path, set_path
from flow_models import Mapper, TransformConfig

logger = logging.getLogger(__name__)

TransformFn = Callable[[Any, dict[str, Any]], Any]

_TRUE_STRINGS = ("true", "1", "yes", "on", "oui")


def _uppercase(value, args):
    return value.upper() if isinstance(value, str) else value


def _lowercase(value, args):
    return value.lower() if isinstance(value, str) else value


def _trim(value, args):
    return value.strip() if isinstance(value, str) else value


def _to_number(value, args):
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return None
    text = str(value).strip().replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    return int(number) if number.is_integer() and "." not in text else number


def _to_boolean(value, args):
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def _default(value, args):
    if value is None or value == "":
        return args.get("value")
    return value


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    for fmt in ("%d/%m/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _render_date(day: date, fmt: str) -> str:
    return (
        fmt.replace("DD", f"{day.day:02d}")
        .replace("MM", f"{day.month:02d}")
        .replace("YYYY", f"{day.year:04d}")
        .replace("YY", f"{day.year % 100:02d}")
    )


def _format_date(value, args):
    day = _parse_date(value)
    if day is None:
        return value
    return _render_date(day, args.get("format", "DD/MM/YYYY"))


def _first_day_next_month(value, args):
    today = _parse_date(args.get("from")) or date.today()
    if today.month == 12:
        first = date(today.year + 1, 1, 1)
    else:
        first = date(today.year, today.month + 1, 1)
    return _render_date(first, args.get("format", "DD/MM/YYYY"))


def _extract_departement(value, args):
    # French postal code -> departement number
    if value is None:
        return None
    text = str(value).strip()
    return text[:2] if len(text) >= 2 else None


def _is_not_null(value, args):
    return value is not None and value != ""


def _has_length(value, args):
    try:
        return len(value) > 0
    except TypeError:
        return False


def _split(value, args):
    if not isinstance(value, str):
        return value
    return [part.strip() for part in value.split(args.get("separator", ","))]


def _join(value, args):
    if not isinstance(value, (list, tuple)):
        return value
    return args.get("separator", ",").join(str(v) for v in value)


def _replace(value, args):
    if not isinstance(value, str):
        return value
    return value.replace(args.get("pattern", ""), args.get("replacement", ""))


def _format(value, args):
    template = args.get("template", "{value}")
    return template.replace("{value}", "" if value is None else str(value))


BUILTIN_TRANSFORMS: dict[str, TransformFn] = {
    "uppercase": _uppercase,
    "lowercase": _lowercase,
    "trim": _trim,
    "toNumber": _to_number,
    "toBoolean": _to_boolean,
    "default": _default,
    "formatDate": _format_date,
    "firstDayNextMonth": _first_day_next_month,
    "extractDepartement": _extract_departement,
    "isNotNull": _is_not_null,
    "hasLength": _has_length,
    "split": _split,
    "join": _join,
    "replace": _replace,
    "format": _format,
}


def apply_transform(value: Any, name: str, args: dict[str, Any] | None = None) -> Any:
    fn = BUILTIN_TRANSFORMS.get(name)
    if fn is None:
        raise ConfigurationError(f"Unknown transform: {name}")
    return fn(value, args or {})


def apply_transforms(value: Any, pipeline: Iterable[TransformConfig | dict] | None) -> Any:
    for transform in pipeline or ():
        if isinstance(transform, TransformConfig):
            value = apply_transform(value, transform.name, transform.args)
        else:
            value = apply_transform(value, transform["name"], transform.get("args"))
    return value


def apply_mapper(mapper: Mapper | None, source: MappingType[str, Any]) -> dict[str, Any]:
    """
    Build a new dict from `source` following the mapper's mappings.

    Missing values fall back to the mapping default. A strict mapper raises
    ConfigurationError for a missing value without default; a lenient one
    leaves the target unset.
    """
    if mapper is None:
        return dict(source)
    result: dict[str, Any] = {}
    for mapping in mapper.mappings:
        value = get_path(source, mapping.source)
        if value is MISSING or value is None:
            if mapping.default_value is not None:
                value = mapping.default_value
            elif mapper.strict:
                raise ConfigurationError(
                    f"Mapper '{mapper.name}': no value for '{mapping.source}'"
                )
            else:
                logger.debug(f"Mapper '{mapper.name}': skipping missing '{mapping.source}'")
                continue
        if mapping.transform:
            value = apply_transforms(value, mapping.transform)
        set_path(result, mapping.to, value)
    return result

"""Parsing and resolution of cross-resource references in attribute values.

``${type.name}`` refers to a resource's provider id, ``${type.name.field}``
to one of its outputs (dotted fields walk into nested maps). A string that is
exactly one reference becomes a ``Reference``; a string with embedded
references becomes a ``Template``.
"""

import re
from typing import Any, Callable, List

from converge.config.models import Reference, Template

REFERENCE_PATTERN = re.compile(
    r"\$\{([A-Za-z][A-Za-z0-9_]*\.[A-Za-z0-9_-]+)((?:\.[A-Za-z0-9_-]+)*)\}"
)


class Unknown:
    """Marker for a value that is only known after a dependency is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (Unknown, ())


UNKNOWN = Unknown()


def _reference_from_match(match: "re.Match") -> Reference:
    field = match.group(2).lstrip(".") or "id"
    return Reference(resource_id=match.group(1), field=field)


def parse_value(value: Any) -> Any:
    """Convert textual references in a value into typed references."""
    if isinstance(value, (Reference, Template)):
        return value

    if isinstance(value, str):
        matches = list(REFERENCE_PATTERN.finditer(value))
        if not matches:
            return value
        if len(matches) == 1 and matches[0].span() == (0, len(value)):
            return _reference_from_match(matches[0])

        parts: List[Any] = []
        position = 0
        for match in matches:
            if match.start() > position:
                parts.append(value[position:match.start()])
            parts.append(_reference_from_match(match))
            position = match.end()
        if position < len(value):
            parts.append(value[position:])
        return Template(parts=tuple(parts))

    if isinstance(value, dict):
        return {key: parse_value(item) for key, item in value.items()}

    if isinstance(value, (list, tuple)):
        return [parse_value(item) for item in value]

    return value


def collect_references(value: Any) -> List[Reference]:
    """Get every reference in a value, in order of appearance."""
    if isinstance(value, Reference):
        return [value]
    if isinstance(value, Template):
        return value.references()
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in collect_references(item)]
    if isinstance(value, (list, tuple)):
        return [ref for item in value for ref in collect_references(item)]
    return []


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace references in a value with the values ``lookup`` returns.

    ``lookup`` may return ``UNKNOWN``; a template with an unknown part is
    itself unknown.
    """
    if isinstance(value, Reference):
        return lookup(value)

    if isinstance(value, Template):
        resolved = [resolve_value(part, lookup) for part in value.parts]
        if any(part is UNKNOWN for part in resolved):
            return UNKNOWN
        return "".join(_stringify(part) for part in resolved)

    if isinstance(value, dict):
        return {key: resolve_value(item, lookup) for key, item in value.items()}

    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]

    return value


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still has unknown parts."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(item) for item in value)
    return False


def render_value(value: Any) -> Any:
    """JSON-friendly rendering of a value that may hold references or unknowns."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, (Reference, Template)):
        return str(value)
    if isinstance(value, dict):
        return {key: render_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(item) for item in value]
    return value

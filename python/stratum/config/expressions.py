"""
stratum/config/expressions.py

Parses and evaluates `${...}` references inside attribute values.

Reference forms:
  - ${var.<name>}
  - ${<type>.<name>}            => the resource's "id"
  - ${<type>.<name>.<attr>...}  => dotted traversal into maps and list indices
  - ${output.<name>}

A string holding exactly one reference evaluates to the referenced value with
its type preserved. Any other string has its references interpolated as text.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, List, Literal, Tuple

from pydantic import BaseModel, ConfigDict

from stratum.errors import ConfigError, ReferenceError

REF_PATTERN = re.compile(r"\$\{([^}]*)\}")
_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


class _Unknown:
    """Marker for a value that is only known once the plan is applied."""

    _instance = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self) -> str:
        return "UNKNOWN"


UNKNOWN = _Unknown()

ReferenceKind = Literal["var", "resource", "output"]


class Reference(BaseModel):
    """A parsed `${...}` reference.

    Attributes:
        kind: What the reference points at.
        target: The variable name, output name, or resource address.
        path: Attribute path below the target (empty for variables/outputs).
        text: The reference exactly as written, without `${}`.
    """

    model_config = ConfigDict(frozen=True)

    kind: ReferenceKind
    target: str
    path: Tuple[str, ...] = ()
    text: str

    @property
    def node(self) -> str:
        """The dependency graph key this reference points at."""
        if self.kind == "var":
            return f"var.{self.target}"
        if self.kind == "output":
            return f"output.{self.target}"
        return self.target


def parse_reference(text: str) -> Reference:
    """Parse the inside of a `${...}` expression.

    Raises:
        ConfigError: If the text is not a well-formed reference.
    """
    stripped = text.strip()
    parts = stripped.split(".")
    if len(parts) < 2 or not all(_SEGMENT.match(p) for p in parts):
        raise ConfigError(f"Malformed reference: '${{{text}}}'")

    head = parts[0]
    if head == "var":
        return Reference(kind="var", target=parts[1], path=tuple(parts[2:]), text=stripped)
    if head == "output":
        return Reference(kind="output", target=parts[1], path=tuple(parts[2:]), text=stripped)

    address = f"{parts[0]}.{parts[1]}"
    path = tuple(parts[2:]) or ("id",)
    return Reference(kind="resource", target=address, path=path, text=stripped)


def find_references(value: Any) -> List[Reference]:
    """Collect every reference inside a (possibly nested) attribute value."""
    if isinstance(value, str):
        return [parse_reference(m.group(1)) for m in REF_PATTERN.finditer(value)]
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in find_references(item)]
    if isinstance(value, list):
        return [ref for item in value for ref in find_references(item)]
    return []


def contains_unknown(value: Any) -> bool:
    """True if `value` is UNKNOWN or holds UNKNOWN anywhere inside it."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def traverse(value: Any, path: Tuple[str, ...], ref_text: str) -> Any:
    """Follow `path` into nested maps and lists.

    UNKNOWN anywhere along the way yields UNKNOWN.

    Raises:
        ReferenceError: If a key or index along the path does not exist.
    """
    current = value
    for segment in path:
        if current is UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise ReferenceError(ref_text)
    return current


def to_text(value: Any) -> str:
    """Render a value for string interpolation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def evaluate(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Evaluate every reference in `value` through `lookup`.

    Args:
        value: A literal attribute value, possibly nested.
        lookup: Returns the value of a reference (or UNKNOWN).

    Returns:
        The evaluated value. Interpolated strings that touch an unknown value
        become UNKNOWN as a whole.
    """
    if isinstance(value, str):
        matches = list(REF_PATTERN.finditer(value))
        if not matches:
            return value
        if len(matches) == 1 and matches[0].group(0) == value:
            return lookup(parse_reference(matches[0].group(1)))

        pieces: List[str] = []
        last = 0
        for match in matches:
            resolved = lookup(parse_reference(match.group(1)))
            if contains_unknown(resolved):
                return UNKNOWN
            pieces.append(value[last : match.start()])
            pieces.append(to_text(resolved))
            last = match.end()
        pieces.append(value[last:])
        return "".join(pieces)
    if isinstance(value, dict):
        return {k: evaluate(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [evaluate(v, lookup) for v in value]
    return value

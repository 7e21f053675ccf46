"""
stratum/models/validator.py

Validates Python objects against pydantic-based types using TypeAdapter, and
maps the configuration's variable type names onto those types.
"""

from typing import Any, Dict, List, Type, TypeVar, Union
from pydantic import StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter, ValidationError

T = TypeVar("T")

VARIABLE_TYPES: Dict[str, Any] = {
    "string": StrictStr,
    "number": Union[StrictInt, StrictFloat],
    "bool": StrictBool,
    "list": List[Any],
    "map": Dict[str, Any],
    "any": Any,
}


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validates that a given Python object conforms to the expected pydantic-based type.

    Args:
        obj (Any): The object to validate.
        expected_type (Type[T]): The type (pydantic or otherwise) to validate against.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        ValueError: If validation fails.
    """
    try:
        adapter = TypeAdapter(expected_type)
        return adapter.validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e


def validate_variable_value(value: Any, type_name: str) -> Any:
    """Validate `value` against a declared variable type name.

    Args:
        value: The candidate value.
        type_name: One of the keys of VARIABLE_TYPES.

    Returns:
        The validated value.

    Raises:
        ValueError: If the type name is unknown or the value does not conform.
    """
    if type_name not in VARIABLE_TYPES:
        raise ValueError(f"Unknown variable type: {type_name!r}")
    return validate_type(value, VARIABLE_TYPES[type_name])

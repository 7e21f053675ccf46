"""
stratum/config/loader.py

Loads a YAML configuration into a `Configuration` and resolves its variables.

Variable precedence, lowest to highest:
  1) the declared default
  2) variable files (YAML mappings), in the order given
  3) environment variables named STRATUM_VAR_<name>
  4) explicit `name=value` overrides (e.g. from `--var`)
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, List, Mapping, Optional

import aiofiles
import yaml
from pydantic import ValidationError

from stratum.errors import ConfigError
from stratum.models.config import Configuration
from stratum.models.validator import validate_variable_value

ENV_VAR_PREFIX = "STRATUM_VAR_"

logger = logging.getLogger(__name__)


def parse_configuration(text: str, source: str = "<string>") -> Configuration:
    """Parse YAML text into a validated Configuration.

    Raises:
        ConfigError: On YAML syntax errors or invalid declarations.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{source}: invalid YAML: {exc}") from exc
    try:
        return Configuration.from_document(data)
    except (ValidationError, ValueError, TypeError) as exc:
        raise ConfigError(f"{source}: {exc}") from exc


async def load_configuration(path: str) -> Configuration:
    """Read and parse the configuration file at `path`.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    try:
        async with aiofiles.open(path, "r") as f:
            text = await f.read()
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    logger.debug("Loaded configuration from %s", path)
    return parse_configuration(text, source=path)


async def load_var_file(path: str) -> Dict[str, Any]:
    """Read a YAML mapping of variable values."""
    try:
        async with aiofiles.open(path, "r") as f:
            data = yaml.safe_load(await f.read())
    except FileNotFoundError as exc:
        raise ConfigError(f"Variable file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: variable file must be a mapping.")
    return data


def parse_var_assignments(assignments: List[str]) -> Dict[str, str]:
    """Split `name=value` strings into a dict.

    Raises:
        ConfigError: If an assignment has no '='.
    """
    result: Dict[str, str] = {}
    for item in assignments:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ConfigError(f"Invalid variable assignment {item!r}; expected name=value.")
        result[name.strip()] = value
    return result


def _coerce_text(value: str, type_name: str) -> Any:
    # Values from the CLI or environment arrive as text.
    if type_name == "string":
        return value
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def resolve_variables(
    config: Configuration,
    *,
    file_values: Optional[List[Dict[str, Any]]] = None,
    overrides: Optional[Dict[str, str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Resolve every declared variable to a validated value.

    Args:
        config: The parsed configuration.
        file_values: Parsed variable files; values keep their YAML types.
        overrides: Text values from `name=value` assignments.
        environ: Environment to read STRATUM_VAR_* from. Defaults to os.environ.

    Returns:
        Mapping of variable name to value.

    Raises:
        ConfigError: For undeclared names, missing required values, or type errors.
    """
    env = os.environ if environ is None else environ
    resolved: Dict[str, Any] = {
        name: decl.default for name, decl in config.variables.items() if decl.has_default
    }

    for values in file_values or []:
        for name, value in values.items():
            if name not in config.variables:
                raise ConfigError(f"Value given for undeclared variable '{name}'.")
            resolved[name] = value

    for name, decl in config.variables.items():
        env_key = f"{ENV_VAR_PREFIX}{name}"
        if env_key in env:
            resolved[name] = _coerce_text(env[env_key], decl.type)

    for name, text in (overrides or {}).items():
        if name not in config.variables:
            raise ConfigError(f"Value given for undeclared variable '{name}'.")
        resolved[name] = _coerce_text(text, config.variables[name].type)

    missing = [name for name in config.variables if name not in resolved]
    if missing:
        raise ConfigError(f"No value for required variable(s): {', '.join(sorted(missing))}")

    validated: Dict[str, Any] = {}
    for name, value in resolved.items():
        decl = config.variables[name]
        if value is None and decl.has_default and decl.default is None:
            validated[name] = None
            continue
        try:
            validated[name] = validate_variable_value(value, decl.type)
        except ValueError as exc:
            raise ConfigError(
                f"Invalid value for variable '{name}' (type {decl.type}): {value!r}"
            ) from exc
    return validated

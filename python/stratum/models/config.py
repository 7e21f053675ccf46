"""
stratum/models/config.py

Pydantic models for a declarative configuration:
 - VariableDecl: a typed, externally overridable input.
 - ResourceDecl: a named, typed desired cloud object.
 - OutputDecl: an expression exposed to the operator after apply.
 - Configuration: the whole document, with YAML (de)serialization.

The YAML layout groups resources by type, then name:

    resource:
      aws_security_group:
        web:
          name: web-sg
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stratum.models.validator import VARIABLE_TYPES

NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
META_ARGUMENTS = ("depends_on", "lifecycle")


def _check_name(value: str, what: str) -> str:
    if not NAME_PATTERN.match(value):
        raise ValueError(f"Invalid {what} name: {value!r}")
    return value


class ProviderBlock(BaseModel):
    """Which provider to use and its construction options.

    Without a name, the run falls back to the STRATUM_PROVIDER setting.
    """

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class VariableDecl(BaseModel):
    """A declared input variable.

    Attributes:
        name: Variable name.
        type: One of string, number, bool, list, map, any.
        default: Optional default. A variable without default must be supplied.
        description: Free-form description for operators.
        sensitive: Hide the value in rendered output.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    type: str = "any"
    default: Any = None
    has_default: bool = False
    description: str = ""
    sensitive: bool = False

    @field_validator("type")
    @classmethod
    def validate_type_name(cls, value: str) -> str:
        if value not in VARIABLE_TYPES:
            raise ValueError(
                f"Unknown variable type {value!r}; expected one of {sorted(VARIABLE_TYPES)}"
            )
        return value


class Lifecycle(BaseModel):
    """Per-resource lifecycle policy."""

    model_config = ConfigDict(extra="forbid")

    immutable: List[str] = Field(default_factory=list)
    prevent_destroy: bool = False


class ResourceDecl(BaseModel):
    """A declared resource.

    Attributes:
        type: Provider resource type, e.g. 'aws_instance'.
        name: Local name, unique within the type.
        attributes: Desired attributes, literals or reference expressions.
        depends_on: Explicit extra dependencies (resource addresses).
        lifecycle: Immutability and destroy protection policy.
    """

    model_config = ConfigDict(extra="forbid")

    type: str
    name: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @property
    def address(self) -> str:
        """Unique identity of this resource, '<type>.<name>'."""
        return f"{self.type}.{self.name}"


class OutputDecl(BaseModel):
    """A declared output value."""

    model_config = ConfigDict(extra="forbid")

    name: str
    value: Any = None
    description: str = ""
    sensitive: bool = False


class Configuration(BaseModel):
    """A full configuration: provider, variables, resources and outputs.

    Resources keep their declaration order, which is used to break ties in
    the dependency graph's topological order.
    """

    provider: ProviderBlock = Field(default_factory=ProviderBlock)
    variables: Dict[str, VariableDecl] = Field(default_factory=dict)
    resources: List[ResourceDecl] = Field(default_factory=list)
    outputs: Dict[str, OutputDecl] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_names(self) -> Configuration:
        """Ensure every name is well formed and every address is unique."""
        for name in self.variables:
            _check_name(name, "variable")
        for name in self.outputs:
            _check_name(name, "output")
        seen = set()
        for res in self.resources:
            _check_name(res.type, "resource type")
            _check_name(res.name, "resource")
            if res.address in seen:
                raise ValueError(f"Duplicate resource address: {res.address}")
            seen.add(res.address)
        return self

    def resource(self, address: str) -> Optional[ResourceDecl]:
        """Return the resource declared at `address`, if any."""
        return next((r for r in self.resources if r.address == address), None)

    @property
    def addresses(self) -> List[str]:
        return [r.address for r in self.resources]

    @classmethod
    def from_document(cls, data: Any) -> Configuration:
        """Build a Configuration from the parsed YAML document layout."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Configuration document must be a mapping.")
        unknown = set(data) - {"provider", "variable", "resource", "output"}
        if unknown:
            raise ValueError(f"Unknown top-level keys: {sorted(unknown)}")

        variables = {
            name: VariableDecl(
                name=name,
                has_default="default" in (body or {}),
                **(body or {}),
            )
            for name, body in _mapping(data.get("variable"), "variable").items()
        }

        resources: List[ResourceDecl] = []
        for rtype, by_name in _mapping(data.get("resource"), "resource").items():
            for rname, body in _mapping(by_name, f"resource {rtype}").items():
                attrs = dict(_mapping(body, f"resource {rtype}.{rname}"))
                meta = {k: attrs.pop(k) for k in META_ARGUMENTS if k in attrs}
                resources.append(
                    ResourceDecl(type=rtype, name=rname, attributes=attrs, **meta)
                )

        outputs = {
            name: OutputDecl(name=name, **_output_body(body))
            for name, body in _mapping(data.get("output"), "output").items()
        }

        return cls(
            provider=ProviderBlock(**(data.get("provider") or {})),
            variables=variables,
            resources=resources,
            outputs=outputs,
        )

    @classmethod
    def from_yaml(cls, yaml_str: str) -> Configuration:
        """Deserialize a Configuration from a YAML string."""
        return cls.from_document(yaml.safe_load(yaml_str))

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        """Serialize back to the YAML document layout."""
        resource: Dict[str, Dict[str, Any]] = {}
        for res in self.resources:
            body = dict(res.attributes)
            if res.depends_on:
                body["depends_on"] = list(res.depends_on)
            if res.lifecycle != Lifecycle():
                body["lifecycle"] = res.lifecycle.model_dump()
            resource.setdefault(res.type, {})[res.name] = body
        doc = {
            "provider": self.provider.model_dump(exclude_none=True),
            "variable": {
                n: v.model_dump(exclude=_variable_excludes(v))
                for n, v in self.variables.items()
            },
            "resource": resource,
            "output": {n: o.model_dump(exclude={"name"}) for n, o in self.outputs.items()},
        }
        return yaml.dump(doc, sort_keys=sort_keys)


def _mapping(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Expected a mapping for {what}, got {type(value).__name__}.")
    return value


def _variable_excludes(var: VariableDecl) -> set:
    excluded = {"name", "has_default"}
    if not var.has_default:
        excluded.add("default")
    return excluded


def _output_body(body: Any) -> Dict[str, Any]:
    # `output: {x: "${...}"}` is shorthand for `output: {x: {value: "${...}"}}`.
    if isinstance(body, dict) and "value" in body:
        return body
    return {"value": body}

"""
stratum/models/state.py

Pydantic models for persisted state:
 - StateRecord: last-known real-world attributes of one applied resource.
 - OutputValue: an output as persisted after apply.
 - StateDocument: the whole state, as stored by FileStateStore.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class StateRecord(BaseModel):
    """Represents one resource as last applied.

    Attributes:
        address: '<type>.<name>' identity of the resource.
        type: Provider resource type.
        name: Local resource name.
        id: Provider-assigned object id.
        attributes: Full attributes as last described by the provider,
            including computed ones.
        inputs: The declared attributes as resolved at the last apply.
        dependencies: Addresses this resource depended on at the last apply.
    """

    address: str
    type: str
    name: str
    id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)

    @field_validator("address")
    @classmethod
    def validate_address(cls, value: str) -> str:
        """Check that `address` has the '<type>.<name>' shape."""
        if value.count(".") != 1 or value.startswith(".") or value.endswith("."):
            raise ValueError(f"Invalid resource address: {value!r}")
        return value


class OutputValue(BaseModel):
    """Represents an output value as persisted after apply.

    Attributes:
        sensitive: True if the output is marked sensitive.
        value: Arbitrary output data.
        description: The output's declared description.
    """

    sensitive: bool = False
    value: Any = None
    description: str = ""


class StateDocument(BaseModel):
    """The full persisted state.

    Attributes:
        version: Document format version.
        serial: Incremented on every write; used to detect concurrent changes.
        lineage: Random id fixed when the state is first created.
        resources: Records in the order they were first written.
        outputs: Mapping of output name -> OutputValue.
    """

    version: int = 1
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: List[StateRecord] = Field(default_factory=list)
    outputs: Dict[str, OutputValue] = Field(default_factory=dict)

    def get(self, address: str) -> Optional[StateRecord]:
        return next((r for r in self.resources if r.address == address), None)

    def upsert(self, record: StateRecord) -> None:
        """Replace the record at the same address in place, or append it."""
        for i, existing in enumerate(self.resources):
            if existing.address == record.address:
                self.resources[i] = record
                return
        self.resources.append(record)

    def remove(self, address: str) -> bool:
        """Drop the record at `address`. Returns False if there was none."""
        before = len(self.resources)
        self.resources = [r for r in self.resources if r.address != address]
        return len(self.resources) != before

    def is_empty(self) -> bool:
        """True if the state tracks zero resources."""
        return not self.resources

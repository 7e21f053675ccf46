"""
stratum/models/plan.py

Pydantic models for plans and apply results:
 - Action: how one resource will be reconciled.
 - AttributeChange / ResourceChange: one planned resource change.
 - Plan: the ordered set of changes plus planned outputs.
 - OperationStatus / ResourceResult / ApplyReport: per-resource apply outcome.

Planned values may hold UNKNOWN (see stratum.config.expressions) for
anything that is only known after apply.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from stratum.models.state import OutputValue


class Action(str, Enum):
    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    REPLACE = "replace"


class AttributeChange(BaseModel):
    """One attribute that differs between recorded and desired state."""

    name: str
    before: Any = None
    after: Any = None
    forces_replacement: bool = False


class ResourceChange(BaseModel):
    """The planned reconciliation of one resource.

    Attributes:
        address: '<type>.<name>' identity.
        type: Resource type.
        name: Resource name.
        action: What the executor will do.
        before: Recorded (refreshed) attributes, None if there is no record.
        after: Desired attributes, None for Destroy.
        changes: Differing attributes; empty for NoOp, Create and Destroy.
        dependencies: Direct configured dependencies; creates and updates wait on them.
        prior_dependencies: Dependencies stored with the existing record; destroys
            are ordered by them.
        prior_id: Provider id of the existing object, if any.
        reason: Short human explanation, e.g. drift detected.
    """

    address: str
    type: str
    name: str
    action: Action
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    changes: List[AttributeChange] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    prior_dependencies: List[str] = Field(default_factory=list)
    prior_id: Optional[str] = None
    reason: str = ""

    @property
    def fields(self) -> List[str]:
        """Names of the changed attributes (the fields of an Update)."""
        return [c.name for c in self.changes]


class Plan(BaseModel):
    """An ordered set of resource changes.

    Changes are listed in the order their first operation can run (see
    stratum.graph.build_operation_graph): a destroy comes after the destroys
    of everything recorded as depending on it, and a create or update comes
    after the changes it depends on.

    Attributes:
        mode: 'apply' to converge on the configuration, 'destroy' to tear down.
        changes: The ordered changes, including NoOps.
        outputs: Planned output values (may hold UNKNOWN).
        state_serial: Store serial the plan was computed against.
        forget: Addresses whose objects vanished; their records are dropped on apply.
    """

    mode: Literal["apply", "destroy"] = "apply"
    changes: List[ResourceChange] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    state_serial: int = 0
    forget: List[str] = Field(default_factory=list)

    def change(self, address: str) -> Optional[ResourceChange]:
        return next((c for c in self.changes if c.address == address), None)

    @property
    def has_changes(self) -> bool:
        return bool(self.forget) or any(c.action != Action.NOOP for c in self.changes)

    def actions(self) -> List[tuple]:
        """(address, action) pairs in plan order."""
        return [(c.address, c.action) for c in self.changes]

    def summary(self) -> Dict[str, int]:
        """Counts of resources to add, change and destroy."""
        counts = {"add": 0, "change": 0, "destroy": 0}
        for c in self.changes:
            if c.action in (Action.CREATE, Action.REPLACE):
                counts["add"] += 1
            if c.action in (Action.DESTROY, Action.REPLACE):
                counts["destroy"] += 1
            if c.action == Action.UPDATE:
                counts["change"] += 1
        return counts


class OperationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    NOOP = "no-op"


class ResourceResult(BaseModel):
    """The outcome of applying one ResourceChange."""

    address: str
    action: Action
    status: OperationStatus
    id: Optional[str] = None
    error: Optional[str] = None


class ApplyReport(BaseModel):
    """Per-resource results of an apply plus the outputs that could be evaluated."""

    results: List[ResourceResult] = Field(default_factory=list)
    outputs: Dict[str, OutputValue] = Field(default_factory=dict)

    def result(self, address: str) -> Optional[ResourceResult]:
        return next((r for r in self.results if r.address == address), None)

    @property
    def failed(self) -> List[ResourceResult]:
        return [r for r in self.results if r.status == OperationStatus.FAILED]

    @property
    def ok(self) -> bool:
        """True when every change either succeeded or was a NoOp."""
        return all(
            r.status in (OperationStatus.SUCCESS, OperationStatus.NOOP) for r in self.results
        )

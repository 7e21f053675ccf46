"""
stratum/providers/memory.py

An in-process simulated cloud. Objects live in a dict keyed by id. Supports
per-type latency (to exercise concurrency and cancellation) and injected
failures (to exercise retries and partial-failure handling). Every call is
appended to `calls` so tests can assert on ordering.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from stratum.errors import NotFoundError, ProviderError
from stratum.providers.base import Provider, ResourceSchema
from stratum.providers.schemas import BUILTIN_SCHEMAS


class InjectedFailure(BaseModel):
    """A failure to raise for the next `times` matching calls."""

    op: str
    resource_type: str
    transient: bool = False
    times: int = 1
    message: str = "injected failure"


def _computed_value(attr: str, resource_id: str) -> str:
    digest = hashlib.sha256(f"{resource_id}:{attr}".encode()).digest()
    if attr.endswith("_ip"):
        return "10.{}.{}.{}".format(*digest[:3])
    if attr.endswith("_dns"):
        return f"ec2-{digest[0]}-{digest[1]}-{digest[2]}.compute.example.internal"
    if attr == "arn":
        return f"arn:stratum:memory::{resource_id}"
    if attr == "instance_state":
        return "running"
    return f"{attr}-{digest[:4].hex()}"


class MemoryProvider(Provider):
    """Simulated provider keeping every object in process memory.

    Args:
        schemas: Supported resource types. Defaults to the built-in schemas.
        latency: Optional mapping of resource type -> seconds each call sleeps.
    """

    name = "memory"

    def __init__(
        self,
        schemas: Optional[List[ResourceSchema]] = None,
        latency: Optional[Dict[str, float]] = None,
    ) -> None:
        super().__init__(schemas if schemas is not None else BUILTIN_SCHEMAS)
        self.latency: Dict[str, float] = dict(latency or {})
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._failures: List[InjectedFailure] = []
        self._counter = 0

    def inject_failure(
        self,
        op: str,
        resource_type: str,
        *,
        transient: bool = False,
        times: int = 1,
        message: str = "injected failure",
    ) -> None:
        """Make the next `times` calls of `op` on `resource_type` raise ProviderError."""
        self._failures.append(
            InjectedFailure(
                op=op,
                resource_type=resource_type,
                transient=transient,
                times=times,
                message=message,
            )
        )

    def ops(self, op: Optional[str] = None) -> List[Tuple[str, str, Optional[str]]]:
        """The call log, optionally filtered to one operation."""
        return [c for c in self.calls if op is None or c[0] == op]

    async def _call(self, op: str, resource_type: str, resource_id: Optional[str]) -> None:
        self.calls.append((op, resource_type, resource_id))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.latency.get(resource_type, 0.0)
            if delay:
                await asyncio.sleep(delay)
            for failure in self._failures:
                if failure.op == op and failure.resource_type == resource_type and failure.times > 0:
                    failure.times -= 1
                    raise ProviderError(
                        f"{op} {resource_type}: {failure.message}",
                        transient=failure.transient,
                    )
        finally:
            self.in_flight -= 1

    def _get(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        obj = self.objects.get(resource_id)
        if obj is None or obj["type"] != resource_type:
            raise NotFoundError(f"{resource_type} {resource_id} not found")
        return obj

    async def describe(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        await self._call("describe", resource_type, resource_id)
        obj = self.objects.get(resource_id)
        if obj is None or obj["type"] != resource_type:
            return None
        return copy.deepcopy(obj["attributes"])

    async def create(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        schema = self.schema(resource_type)
        await self._call("create", resource_type, None)
        self._counter += 1
        resource_id = f"{resource_type.split('_')[-1]}-{self._counter:08x}"
        attrs = copy.deepcopy(attributes)
        attrs.update({attr: _computed_value(attr, resource_id) for attr in schema.computed})
        attrs["id"] = resource_id
        self.objects[resource_id] = {"type": resource_type, "attributes": attrs}
        return resource_id

    async def update(
        self, resource_type: str, resource_id: str, attributes: Dict[str, Any]
    ) -> None:
        schema = self.schema(resource_type)
        await self._call("update", resource_type, resource_id)
        obj = self._get(resource_type, resource_id)
        kept = {
            k: v for k, v in obj["attributes"].items() if k in schema.computed or k == "id"
        }
        obj["attributes"] = {**copy.deepcopy(attributes), **kept}

    async def delete(self, resource_type: str, resource_id: str) -> None:
        await self._call("delete", resource_type, resource_id)
        self._get(resource_type, resource_id)
        del self.objects[resource_id]

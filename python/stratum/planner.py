"""
stratum/planner.py

Computes a Plan by comparing the configuration's desired state against the
state store, optionally refreshed from the provider first.

Classification per resource:
  - no record                                  => Create
  - record, not declared                       => Destroy
  - declared and recorded, nothing differs     => NoOp
  - any differing attribute is immutable       => Replace (never a partial Update)
  - otherwise                                  => Update(fields)

Values that depend on resources being created or replaced are UNKNOWN at plan
time, and an UNKNOWN desired value always counts as a change.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from stratum.config.expressions import (
    UNKNOWN,
    Reference,
    contains_unknown,
    evaluate,
    find_references,
    traverse,
)
from stratum.errors import ConfigError, ReferenceError, StratumError, is_transient
from stratum.graph import (
    DependencyGraph,
    build_graph,
    build_graph_from_state,
    build_operation_graph,
    split_operation_key,
)
from stratum.models.config import Configuration, ResourceDecl
from stratum.models.plan import Action, AttributeChange, Plan, ResourceChange
from stratum.models.settings import RetryPolicy
from stratum.models.state import StateRecord
from stratum.providers.base import Provider
from stratum.state.storage import StateStore
from stratum.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


def validate_configuration(
    config: Configuration,
    provider: Provider,
    variables: Optional[Dict[str, Any]] = None,
) -> DependencyGraph:
    """Check the graph, the resource types and every attribute reference.

    A reference into a resource must name 'id', a declared attribute or an
    attribute the provider computes. Paths below a declared literal value and
    below variables (when `variables` is given) are followed as well.

    Returns:
        The configuration's dependency graph.

    Raises:
        ReferenceError, CycleError, ConfigError: Before any provider call.
    """
    graph = build_graph(config)
    for res in config.resources:
        provider.schema(res.type)

    def check(ref: Reference, source: str) -> None:
        if ref.kind == "var":
            if variables is not None and ref.target in variables:
                traverse(variables[ref.target], ref.path, ref.text)
            return
        if ref.kind != "resource" or not ref.path:
            return
        target = config.resource(ref.target)
        if target is None:
            raise ReferenceError(ref.text, source)
        head, rest = ref.path[0], ref.path[1:]
        if head == "id" or head in provider.schema(target.type).computed:
            return
        if head not in target.attributes:
            raise ReferenceError(ref.text, source)
        value = target.attributes[head]
        if rest and not find_references(value):
            traverse(value, rest, ref.text)

    for res in config.resources:
        for ref in find_references(res.attributes):
            check(ref, res.address)
    for name, out in config.outputs.items():
        for ref in find_references(out.value):
            check(ref, f"output.{name}")
    return graph


def diff_attributes(
    decl: ResourceDecl,
    desired: Dict[str, Any],
    record: StateRecord,
    force_new: Set[str],
) -> List[AttributeChange]:
    """Compare desired attributes with a record, over declared and previously declared keys."""
    immutable = set(force_new) | set(decl.lifecycle.immutable)
    changes: List[AttributeChange] = []
    for key in sorted(set(desired) | set(record.inputs)):
        after = desired.get(key)
        before = record.attributes.get(key, record.inputs.get(key))
        if contains_unknown(after) or after != before:
            changes.append(
                AttributeChange(
                    name=key,
                    before=before,
                    after=after,
                    forces_replacement=key in immutable,
                )
            )
    return changes


def order_changes(changes: List[ResourceChange]) -> List[ResourceChange]:
    """List `changes` in the order their first operation can run."""
    by_addr = {c.address: c for c in changes}
    ordered: List[ResourceChange] = []
    seen: Set[str] = set()
    for key in build_operation_graph(changes).topological_order():
        _, address = split_operation_key(key)
        if address not in seen:
            seen.add(address)
            ordered.append(by_addr[address])
    return ordered


class Planner:
    """Builds plans for one configuration against an injected provider and store.

    Args:
        provider: The provider used for schemas and refresh.
        store: The state store holding last-applied records.
        retry: Retry policy for refresh calls.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.retry = retry or RetryPolicy()

    async def _describe(self, record: StateRecord) -> Optional[Dict[str, Any]]:
        @async_retry(
            retries=self.retry.attempts,
            delay=self.retry.base_delay,
            max_delay=self.retry.max_delay,
            retry_on=is_transient,
            noisy=True,
        )
        async def _call() -> Optional[Dict[str, Any]]:
            return await self.provider.describe(record.type, record.id)

        return await _call()

    async def refresh(
        self, records: List[StateRecord]
    ) -> Tuple[List[StateRecord], List[StateRecord]]:
        """Re-read every record from the provider.

        Returns:
            (refreshed records that still exist, records whose object vanished)
        """
        live = await asyncio.gather(*(self._describe(r) for r in records))
        present: List[StateRecord] = []
        vanished: List[StateRecord] = []
        for record, attrs in zip(records, live):
            if attrs is None:
                logger.info("%s (id=%s) no longer exists", record.address, record.id)
                vanished.append(record)
            else:
                present.append(record.model_copy(update={"attributes": attrs}))
        return present, vanished

    async def plan(
        self,
        config: Configuration,
        variables: Dict[str, Any],
        *,
        refresh: bool = True,
        destroy: bool = False,
    ) -> Plan:
        """Compute the plan for `config`.

        Args:
            config: The desired configuration.
            variables: Resolved variable values.
            refresh: Re-read recorded objects from the provider first.
            destroy: Plan the destruction of everything in state instead.

        Raises:
            ConfigError, CycleError, ReferenceError: Before any provider call.
            ProviderError: If a refresh call fails permanently.
        """
        graph = validate_configuration(config, self.provider, variables)
        serial = self.store.serial
        records = await self.store.list()

        vanished: List[StateRecord] = []
        if refresh and records:
            records, vanished = await self.refresh(records)
        by_addr = {r.address: r for r in records}

        if destroy:
            changes = order_changes(self._destroy_changes(records, records, config))
            return Plan(
                mode="destroy",
                changes=changes,
                state_serial=serial,
                forget=[r.address for r in vanished],
            )

        vanished_ids = {r.address: r.id for r in vanished}
        planned: Dict[str, Dict[str, Any]] = {}
        known: Dict[str, bool] = {}
        outputs: Dict[str, Any] = {}

        def lookup(ref: Reference) -> Any:
            if ref.kind == "var":
                return traverse(variables[ref.target], ref.path, ref.text)
            if ref.kind == "output":
                return traverse(outputs[ref.target], ref.path, ref.text)
            values = planned[ref.target]
            head, rest = ref.path[0], ref.path[1:]
            if head in values:
                return traverse(values[head], rest, ref.text)
            if not known[ref.target]:
                return UNKNOWN
            raise ReferenceError(ref.text)

        declared: List[ResourceChange] = []
        for address in graph.topological_order("resource"):
            decl = config.resource(address)
            if decl is None:
                raise StratumError(f"{address} is in the graph but not in the configuration")
            schema = self.provider.schema(decl.type)
            desired = evaluate(decl.attributes, lookup)
            record = by_addr.get(address)
            deps = graph.dependencies(address)

            if record is None:
                reason = "object no longer exists" if address in vanished_ids else ""
                change = ResourceChange(
                    address=address,
                    type=decl.type,
                    name=decl.name,
                    action=Action.CREATE,
                    after=desired,
                    dependencies=deps,
                    prior_id=vanished_ids.get(address),
                    reason=reason,
                )
                planned[address] = desired
                known[address] = False
            else:
                diffs = diff_attributes(decl, desired, record, set(schema.force_new))
                if not diffs:
                    action = Action.NOOP
                elif any(d.forces_replacement for d in diffs):
                    action = Action.REPLACE
                else:
                    action = Action.UPDATE
                change = ResourceChange(
                    address=address,
                    type=decl.type,
                    name=decl.name,
                    action=action,
                    before=record.attributes,
                    after=desired,
                    changes=diffs,
                    dependencies=deps,
                    prior_dependencies=record.dependencies,
                    prior_id=record.id,
                )
                if action == Action.REPLACE:
                    planned[address] = desired
                    known[address] = False
                else:
                    planned[address] = {**record.attributes, **desired}
                    known[address] = True

            if change.action == Action.REPLACE and decl.lifecycle.prevent_destroy:
                raise ConfigError(
                    f"{address} has lifecycle.prevent_destroy set but the plan requires replacing it."
                )
            declared.append(change)

        for key in graph.topological_order("output"):
            name = key[len("output.") :]
            outputs[name] = evaluate(config.outputs[name].value, lookup)

        orphans = [r for r in records if config.resource(r.address) is None]
        orphan_changes = self._destroy_changes(orphans, records, config)

        return Plan(
            mode="apply",
            changes=order_changes(orphan_changes + declared),
            outputs=outputs,
            state_serial=serial,
            forget=[
                r.address for r in vanished if config.resource(r.address) is None
            ],
        )

    def _destroy_changes(
        self,
        targets: List[StateRecord],
        records: List[StateRecord],
        config: Configuration,
    ) -> List[ResourceChange]:
        """Destroy changes for `targets`, dependents first.

        Declared targets are ordered by the configuration, the others by their
        recorded dependencies.

        Raises:
            ConfigError: If a declared target has lifecycle.prevent_destroy set.
        """
        if not targets:
            return []
        graph = build_graph_from_state(records, config)
        wanted = {r.address: r for r in targets}
        changes: List[ResourceChange] = []
        for address in graph.reverse_topological_order():
            record = wanted.get(address)
            if record is None:
                continue
            decl = config.resource(address)
            if decl is not None and decl.lifecycle.prevent_destroy:
                raise ConfigError(
                    f"{address} has lifecycle.prevent_destroy set and cannot be destroyed."
                )
            changes.append(
                ResourceChange(
                    address=address,
                    type=record.type,
                    name=record.name,
                    action=Action.DESTROY,
                    before=record.attributes,
                    dependencies=graph.dependencies(address),
                    prior_dependencies=record.dependencies,
                    prior_id=record.id,
                )
            )
        return changes

"""
stratum/executor.py

Applies a Plan against a provider, recording results in a state store.

Every Destroy (and the destroy half of every Replace) and every Create,
Update (and the create half of every Replace) becomes one operation of the
graph built by stratum.graph.build_operation_graph. Each operation runs as an
asyncio task that first waits for its prerequisites:

  - destroy X waits for the destroy of everything recorded in state as
    depending on X; when X is not kept, also for the update of those
  - create/update X waits for the create/update of everything X depends on
    in the configuration, and for X's own destroy when X is being replaced

If a prerequisite did not succeed, the operation is SKIPPED; independent
branches keep going. At most `parallelism` provider operations are in flight.
Once cancellation is requested, operations that have not started yet are
CANCELLED, while in-flight provider calls run to completion.

State is only written after the provider confirmed the operation; the one
exception is a NoOp whose configured dependencies changed, whose record gets
the new dependency list before anything runs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from pydantic import BaseModel

from stratum.config.expressions import Reference, evaluate, traverse
from stratum.errors import (
    NotFoundError,
    ProviderError,
    ReferenceError,
    StateConflictError,
    StratumError,
    is_transient,
)
from stratum.graph import (
    APPLY_PHASE,
    DESTROY_PHASE,
    build_graph,
    build_operation_graph,
    operation_key,
    split_operation_key,
)
from stratum.models.config import Configuration
from stratum.models.plan import (
    Action,
    ApplyReport,
    OperationStatus,
    Plan,
    ResourceChange,
    ResourceResult,
)
from stratum.models.settings import RetryPolicy
from stratum.models.state import OutputValue, StateRecord
from stratum.providers.base import Provider
from stratum.state.storage import StateStore
from stratum.utils.async_retry import async_retry

T = TypeVar("T")

logger = logging.getLogger(__name__)


class Outcome(BaseModel):
    """Result of one operation (one half of a Replace counts as one operation)."""

    status: OperationStatus
    id: Optional[str] = None
    error: Optional[str] = None


class _Unavailable(Exception):
    """A referenced resource has no applied value (it failed or was skipped)."""


class Executor:
    """Applies plans with bounded concurrency and partial-failure semantics.

    Args:
        provider: The provider to call.
        store: The state store to update after each confirmed operation.
        parallelism: Maximum number of concurrent provider operations.
        retry: Backoff policy for transient provider errors.
        cancel_event: Setting this event halts operations that have not started.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        *,
        parallelism: int = 10,
        retry: Optional[RetryPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.parallelism = parallelism
        self.retry = retry or RetryPolicy()
        self.cancel_event = cancel_event or asyncio.Event()

    def cancel(self) -> None:
        """Stop starting new operations; in-flight ones run to completion."""
        self.cancel_event.set()

    async def _with_retry(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        @async_retry(
            retries=self.retry.attempts,
            delay=self.retry.base_delay,
            max_delay=self.retry.max_delay,
            retry_on=is_transient,
            noisy=True,
        )
        async def _call() -> T:
            return await func(*args)

        return await _call()

    async def apply(
        self,
        plan: Plan,
        config: Configuration,
        variables: Dict[str, Any],
    ) -> ApplyReport:
        """Apply `plan` and report a result per planned change.

        Args:
            plan: The plan to apply.
            config: The configuration the plan was computed from; attribute
                references are re-evaluated from it with applied values.
            variables: Resolved variable values.

        Raises:
            StateConflictError: If the state changed since the plan was made.
            CycleError: If the plan's dependencies form a cycle.
        """
        if self.store.serial != plan.state_serial:
            raise StateConflictError(
                f"State changed since the plan was created (serial {plan.state_serial} "
                f"-> {self.store.serial}); plan again."
            )
        graph = build_operation_graph(plan.changes)
        changes = {c.address: c for c in plan.changes}

        for address in plan.forget:
            await self.store.delete(address)
        await self._sync_dependencies(plan)

        values: Dict[str, Dict[str, Any]] = {
            c.address: dict(c.before or {})
            for c in plan.changes
            if c.action == Action.NOOP
        }
        semaphore = asyncio.Semaphore(self.parallelism)

        # A NoOp's apply node does no work; waiting on what it waits on is enough.
        prereqs: Dict[str, List[str]] = {}
        for key in graph.keys():
            phase, address = split_operation_key(key)
            if phase == APPLY_PHASE and changes[address].action == Action.NOOP:
                continue
            prereqs[key] = [
                k
                for k in graph.ancestors(key)
                if changes[split_operation_key(k)[1]].action != Action.NOOP
            ]

        tasks: Dict[str, "asyncio.Task[Outcome]"] = {}

        async def run(key: str) -> Outcome:
            for dep_key in prereqs[key]:
                dep = await tasks[dep_key]
                if dep.status != OperationStatus.SUCCESS:
                    cancelled = dep.status == OperationStatus.CANCELLED
                    dep_phase, dep_address = split_operation_key(dep_key)
                    return Outcome(
                        status=OperationStatus.CANCELLED if cancelled else OperationStatus.SKIPPED,
                        error=f"{dep_phase} of {dep_address} did not succeed ({dep.status.value})",
                    )
            if self.cancel_event.is_set():
                return Outcome(status=OperationStatus.CANCELLED, error="apply was cancelled")
            async with semaphore:
                if self.cancel_event.is_set():
                    return Outcome(status=OperationStatus.CANCELLED, error="apply was cancelled")
                phase, address = split_operation_key(key)
                change = changes[address]
                try:
                    if phase == DESTROY_PHASE:
                        return await self._destroy(change)
                    return await self._create_or_update(change, config, variables, values)
                except StratumError as exc:
                    logger.error("%s %s failed: %s", phase, address, exc)
                    return Outcome(status=OperationStatus.FAILED, error=str(exc))

        for key in prereqs:
            tasks[key] = asyncio.create_task(run(key), name=key)
        if tasks:
            await asyncio.gather(*tasks.values())

        results = [self._result(c, tasks) for c in plan.changes]
        outputs: Dict[str, OutputValue] = {}
        if plan.mode == "apply":
            outputs = self._evaluate_outputs(config, variables, values)
        await self.store.write_outputs(outputs)
        return ApplyReport(results=results, outputs=outputs)

    async def _sync_dependencies(self, plan: Plan) -> None:
        """Store the configured dependencies of resources that stay as they are."""
        for change in plan.changes:
            if change.action != Action.NOOP or change.dependencies == change.prior_dependencies:
                continue
            record = await self.store.read(change.address)
            if record is not None:
                await self.store.upsert(
                    record.model_copy(update={"dependencies": list(change.dependencies)})
                )

    def _result(
        self, change: ResourceChange, tasks: Dict[str, "asyncio.Task[Outcome]"]
    ) -> ResourceResult:
        if change.action == Action.NOOP:
            return ResourceResult(
                address=change.address,
                action=change.action,
                status=OperationStatus.NOOP,
                id=change.prior_id,
            )
        destroy_key = operation_key(DESTROY_PHASE, change.address)
        apply_key = operation_key(APPLY_PHASE, change.address)
        outcome: Optional[Outcome] = None
        if destroy_key in tasks:
            outcome = tasks[destroy_key].result()
        if apply_key in tasks and (outcome is None or outcome.status == OperationStatus.SUCCESS):
            outcome = tasks[apply_key].result()
        if outcome is None:
            raise RuntimeError(f"No operation was scheduled for {change.address}")
        return ResourceResult(
            address=change.address,
            action=change.action,
            status=outcome.status,
            id=outcome.id,
            error=outcome.error,
        )

    async def _destroy(self, change: ResourceChange) -> Outcome:
        if change.prior_id is None:
            raise StratumError(f"{change.address} has no id to destroy")
        logger.info("Destroying %s (id=%s)", change.address, change.prior_id)
        try:
            await self._with_retry(self.provider.delete, change.type, change.prior_id)
        except NotFoundError:
            logger.warning(
                "%s (id=%s) was already gone; dropping it from state",
                change.address,
                change.prior_id,
            )
        await self.store.delete(change.address)
        return Outcome(status=OperationStatus.SUCCESS, id=change.prior_id)

    async def _create_or_update(
        self,
        change: ResourceChange,
        config: Configuration,
        variables: Dict[str, Any],
        values: Dict[str, Dict[str, Any]],
    ) -> Outcome:
        decl = config.resource(change.address)
        if decl is None:
            raise StratumError(f"{change.address} is not declared in the configuration")

        def lookup(ref: Reference) -> Any:
            if ref.kind == "var":
                return traverse(variables[ref.target], ref.path, ref.text)
            if ref.target not in values:
                raise ReferenceError(ref.text, change.address)
            return traverse(values[ref.target], ref.path, ref.text)

        attrs = evaluate(decl.attributes, lookup)
        dependencies = list(change.dependencies)

        if change.action == Action.UPDATE:
            if change.prior_id is None:
                raise StratumError(f"{change.address} has no id to update")
            resource_id = change.prior_id
            logger.info("Updating %s (id=%s): %s", change.address, resource_id, change.fields)
            await self._with_retry(self.provider.update, change.type, resource_id, attrs)
        else:
            logger.info("Creating %s", change.address)
            resource_id = await self._with_retry(self.provider.create, change.type, attrs)
            # The object exists now; record it before anything else can fail.
            await self.store.upsert(
                StateRecord(
                    address=change.address,
                    type=change.type,
                    name=change.name,
                    id=resource_id,
                    attributes={**attrs, "id": resource_id},
                    inputs=attrs,
                    dependencies=dependencies,
                )
            )

        described = await self._with_retry(self.provider.describe, change.type, resource_id)
        if described is None:
            raise ProviderError(
                f"{change.address} (id={resource_id}) disappeared right after {change.action.value}"
            )
        await self.store.upsert(
            StateRecord(
                address=change.address,
                type=change.type,
                name=change.name,
                id=resource_id,
                attributes=described,
                inputs=attrs,
                dependencies=dependencies,
            )
        )
        values[change.address] = described
        return Outcome(status=OperationStatus.SUCCESS, id=resource_id)

    def _evaluate_outputs(
        self,
        config: Configuration,
        variables: Dict[str, Any],
        values: Dict[str, Dict[str, Any]],
    ) -> Dict[str, OutputValue]:
        """Evaluate outputs from applied values, omitting those whose inputs failed."""
        evaluated: Dict[str, Any] = {}

        def lookup(ref: Reference) -> Any:
            if ref.kind == "var":
                return traverse(variables[ref.target], ref.path, ref.text)
            if ref.kind == "output":
                if ref.target not in evaluated:
                    raise _Unavailable(ref.text)
                return traverse(evaluated[ref.target], ref.path, ref.text)
            if ref.target not in values:
                raise _Unavailable(ref.text)
            return traverse(values[ref.target], ref.path, ref.text)

        outputs: Dict[str, OutputValue] = {}
        for name in _output_order(config):
            decl = config.outputs[name]
            try:
                evaluated[name] = evaluate(decl.value, lookup)
            except (_Unavailable, ReferenceError) as exc:
                logger.warning("Output %s is unavailable: %s", name, exc)
                continue
            outputs[name] = OutputValue(
                value=evaluated[name],
                sensitive=decl.sensitive,
                description=decl.description,
            )
        return outputs


def _output_order(config: Configuration) -> List[str]:
    return [k[len("output.") :] for k in build_graph(config).topological_order("output")]

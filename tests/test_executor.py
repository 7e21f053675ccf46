"""Tests for plan execution: ordering, concurrency, failures and cancellation."""

import asyncio

import pytest

from stratum.errors import StateConflictError
from stratum.executor import Executor
from stratum.models.plan import Action, OperationStatus, Plan, ResourceChange
from stratum.planner import Planner
from stratum.providers import MemoryProvider

from conftest import TEST_SCHEMAS, load

SUCCESS, FAILED, SKIPPED, CANCELLED, NOOP = (
    OperationStatus.SUCCESS,
    OperationStatus.FAILED,
    OperationStatus.SKIPPED,
    OperationStatus.CANCELLED,
    OperationStatus.NOOP,
)

INDEPENDENT = """
resource:
  test_network:
    n0: {zone: z1}
    n1: {zone: z1}
    n2: {zone: z1}
    n3: {zone: z1}
    n4: {zone: z1}
"""

TWO_BRANCHES = """
resource:
  test_network:
    a: {zone: z1}
    c: {zone: z2}
  test_server:
    b:
      zone: z1
      network_id: ${test_network.a}
    d:
      zone: z2
      network_id: ${test_network.c}
"""


SERVER_ON_C = """
resource:
  test_network:
    c: {zone: z1}
  test_server:
    b:
      zone: z1
      image: img-1
      network_id: ${test_network.c}
"""

SERVER_ON_A = """
resource:
  test_network:
    a: {zone: z1}
  test_server:
    b:
      zone: z1
      image: %s
      network_id: ${test_network.a}
"""

SERVER_BELOW_NETWORK = """
resource:
  test_network:
    a:
      zone: z1
      depends_on: [test_server.b]
  test_server:
    b:
      zone: z1
      network_id: net-external
"""


async def run(config, provider, store, retry, **kwargs):
    plan = await Planner(provider, store, retry=retry).plan(config, {})
    executor = Executor(provider, store, retry=retry, **kwargs)
    return plan, await executor.apply(plan, config, {})


def statuses(report):
    return {r.address: r.status for r in report.results}


class TestApply:
    @pytest.mark.asyncio
    async def test_creates_dependencies_first(self, chain_config, provider, store, no_wait) -> None:
        _, report = await run(chain_config, provider, store, no_wait)
        assert report.ok
        creates = [c[1] for c in provider.ops("create")]
        assert creates == ["test_network", "test_server"]

        network = await store.read("test_network.a")
        server = await store.read("test_server.b")
        assert server.inputs["network_id"] == network.id
        assert server.dependencies == ["test_network.a"]
        assert server.attributes["private_ip"].startswith("10.")

    @pytest.mark.asyncio
    async def test_outputs_are_persisted(self, chain_config, provider, store, no_wait) -> None:
        _, report = await run(chain_config, provider, store, no_wait)
        server = await store.read("test_server.b")
        assert report.outputs["server_ip"].value == server.attributes["private_ip"]
        assert (await store.read_outputs())["server_ip"].value == server.attributes["private_ip"]

    @pytest.mark.asyncio
    async def test_second_apply_makes_no_calls(self, chain_config, provider, store, no_wait) -> None:
        await run(chain_config, provider, store, no_wait)
        before = len(provider.ops("create")) + len(provider.ops("update"))
        _, report = await run(chain_config, provider, store, no_wait)
        assert set(statuses(report).values()) == {NOOP}
        assert len(provider.ops("create")) + len(provider.ops("update")) == before

    @pytest.mark.asyncio
    async def test_replace_destroys_then_creates(self, chain_config, provider, store, no_wait) -> None:
        await run(chain_config, provider, store, no_wait)
        old = await store.read("test_network.a")

        changed = chain_config.model_copy(deep=True)
        changed.resource("test_network.a").attributes["zone"] = "z2"
        plan, report = await run(changed, provider, store, no_wait)

        assert plan.change("test_network.a").action == Action.REPLACE
        assert report.ok
        new = await store.read("test_network.a")
        assert new.id != old.id
        assert old.id not in provider.objects
        assert provider.ops("delete") == [("delete", "test_network", old.id)]
        server = await store.read("test_server.b")
        assert server.inputs["network_id"] == new.id

    @pytest.mark.asyncio
    async def test_destroy_runs_dependents_first(self, chain_config, provider, store, no_wait) -> None:
        await run(chain_config, provider, store, no_wait)
        plan = await Planner(provider, store).plan(chain_config, {}, destroy=True)
        report = await Executor(provider, store, retry=no_wait).apply(plan, chain_config, {})

        assert report.ok
        assert [c[1] for c in provider.ops("delete")] == ["test_server", "test_network"]
        assert await store.list() == []
        assert provider.objects == {}
        assert await store.read_outputs() == {}

    @pytest.mark.asyncio
    async def test_delete_of_missing_object_succeeds(
        self, chain_config, provider, store, no_wait
    ) -> None:
        await run(chain_config, provider, store, no_wait)
        server = await store.read("test_server.b")
        del provider.objects[server.id]

        plan = await Planner(provider, store).plan(chain_config, {}, destroy=True, refresh=False)
        report = await Executor(provider, store, retry=no_wait).apply(plan, chain_config, {})
        assert report.ok
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_forgotten_records_are_dropped(self, chain_config, provider, store, no_wait) -> None:
        await run(chain_config, provider, store, no_wait)
        await run(chain_config, provider, store, no_wait)
        server = await store.read("test_server.b")
        del provider.objects[server.id]
        only_network = chain_config.model_copy(deep=True)
        only_network.resources = [r for r in only_network.resources if r.type == "test_network"]
        only_network.outputs = {}

        plan, report = await run(only_network, provider, store, no_wait)
        assert plan.forget == ["test_server.b"]
        assert report.ok
        assert [r.address for r in await store.list()] == ["test_network.a"]


class TestChangedDependencies:
    @pytest.mark.asyncio
    async def test_replaced_server_goes_before_its_old_network(
        self, provider, store, no_wait
    ) -> None:
        await run(load(SERVER_ON_C), provider, store, no_wait)
        old_server = await store.read("test_server.b")
        old_network = await store.read("test_network.c")

        _, report = await run(load(SERVER_ON_A % "img-2"), provider, store, no_wait)

        assert report.ok
        assert provider.ops("delete") == [
            ("delete", "test_server", old_server.id),
            ("delete", "test_network", old_network.id),
        ]
        server = await store.read("test_server.b")
        assert server.dependencies == ["test_network.a"]
        assert await store.read("test_network.c") is None

    @pytest.mark.asyncio
    async def test_old_network_outlives_the_update_of_its_server(
        self, provider, store, no_wait
    ) -> None:
        await run(load(SERVER_ON_C), provider, store, no_wait)
        server = await store.read("test_server.b")
        old_network = await store.read("test_network.c")

        plan, report = await run(load(SERVER_ON_A % "img-1"), provider, store, no_wait)

        assert plan.change("test_server.b").action == Action.UPDATE
        assert report.ok
        update = provider.calls.index(("update", "test_server", server.id))
        delete = provider.calls.index(("delete", "test_network", old_network.id))
        assert update < delete

    @pytest.mark.asyncio
    async def test_reversed_dependency_is_stored_and_destroyed_in_order(
        self, provider, store, no_wait
    ) -> None:
        before = load(
            """
            resource:
              test_network:
                a: {zone: z1}
                c: {zone: z1}
              test_server:
                b:
                  zone: z1
                  network_id: ${test_network.a}
            """
        )
        await run(before, provider, store, no_wait)

        after = load(SERVER_BELOW_NETWORK)
        plan, report = await run(after, provider, store, no_wait)
        assert plan.change("test_network.a").action == Action.NOOP
        assert report.ok
        assert (await store.read("test_network.a")).dependencies == ["test_server.b"]
        assert (await store.read("test_server.b")).dependencies == []

        deleted = len(provider.ops("delete"))
        plan = await Planner(provider, store).plan(after, {}, destroy=True)
        report = await Executor(provider, store, retry=no_wait).apply(plan, after, {})
        assert report.ok
        assert [c[1] for c in provider.ops("delete")][deleted:] == [
            "test_network",
            "test_server",
        ]


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, chain_config, provider, store, no_wait) -> None:
        provider.inject_failure("create", "test_network", transient=True, times=2)
        _, report = await run(chain_config, provider, store, no_wait)
        assert report.ok
        assert [c[1] for c in provider.ops("create")].count("test_network") == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_resource(
        self, chain_config, provider, store, no_wait
    ) -> None:
        provider.inject_failure("create", "test_network", transient=True, times=5)
        _, report = await run(chain_config, provider, store, no_wait)
        assert statuses(report) == {"test_network.a": FAILED, "test_server.b": SKIPPED}
        assert [c[1] for c in provider.ops("create")] == ["test_network"] * 3

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_independent_branches(
        self, provider, store, no_wait
    ) -> None:
        provider.inject_failure("create", "test_server", message="quota exceeded")

        _, report = await run(load(TWO_BRANCHES), provider, store, no_wait)

        result = statuses(report)
        assert result["test_network.a"] == SUCCESS
        assert result["test_network.c"] == SUCCESS
        assert sorted([result["test_server.b"], result["test_server.d"]]) == [FAILED, SUCCESS]
        assert not report.ok
        failed = report.failed[0]
        assert "quota exceeded" in failed.error
        assert len(await store.list()) == 3

    @pytest.mark.asyncio
    async def test_dependents_of_failure_are_skipped(self, provider, store, no_wait) -> None:
        provider.inject_failure("create", "test_network", message="bad cidr")
        config = load(TWO_BRANCHES)

        _, report = await run(config, provider, store, no_wait)

        result = statuses(report)
        # One network fails; only the server on top of it is skipped.
        failed_network = report.failed[0].address
        assert result[failed_network] == FAILED
        dependent = "test_server.b" if failed_network == "test_network.a" else "test_server.d"
        assert result[dependent] == SKIPPED
        assert list(result.values()).count(SUCCESS) == 2
        assert await store.read(failed_network) is None
        assert await store.read(dependent) is None

    @pytest.mark.asyncio
    async def test_state_is_recorded_once_object_exists(
        self, chain_config, provider, store, no_wait
    ) -> None:
        provider.inject_failure("describe", "test_network", message="describe broke")
        _, report = await run(chain_config, provider, store, no_wait)

        assert report.result("test_network.a").status == FAILED
        record = await store.read("test_network.a")
        assert record is not None
        assert record.id in provider.objects

    @pytest.mark.asyncio
    async def test_stale_plan_is_rejected(self, chain_config, provider, store, no_wait) -> None:
        plan = await Planner(provider, store).plan(chain_config, {})
        await run(chain_config, provider, store, no_wait)
        with pytest.raises(StateConflictError, match="plan again"):
            await Executor(provider, store, retry=no_wait).apply(plan, chain_config, {})

    @pytest.mark.asyncio
    async def test_destroy_without_id_fails_that_resource(
        self, chain_config, provider, store, no_wait
    ) -> None:
        plan = Plan(
            mode="destroy",
            changes=[
                ResourceChange(
                    address="test_network.a",
                    type="test_network",
                    name="a",
                    action=Action.DESTROY,
                )
            ],
            state_serial=store.serial,
        )
        report = await Executor(provider, store, retry=no_wait).apply(plan, chain_config, {})
        result = report.result("test_network.a")
        assert result.status == FAILED
        assert "no id to destroy" in result.error
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_update_of_undeclared_resource_fails_that_resource(
        self, chain_config, provider, store, no_wait
    ) -> None:
        plan = Plan(
            changes=[
                ResourceChange(
                    address="test_network.z",
                    type="test_network",
                    name="z",
                    action=Action.UPDATE,
                    prior_id="network-00000001",
                )
            ],
            state_serial=store.serial,
        )
        report = await Executor(provider, store, retry=no_wait).apply(plan, chain_config, {})
        assert report.result("test_network.z").status == FAILED
        assert "not declared" in report.result("test_network.z").error


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_parallelism_bounds_in_flight_calls(self, store, no_wait) -> None:
        provider = MemoryProvider(schemas=TEST_SCHEMAS, latency={"test_network": 0.02})
        _, report = await run(load(INDEPENDENT), provider, store, no_wait, parallelism=2)
        assert report.ok
        assert provider.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_independent_resources_run_concurrently(self, store, no_wait) -> None:
        provider = MemoryProvider(schemas=TEST_SCHEMAS, latency={"test_network": 0.02})
        await run(load(INDEPENDENT), provider, store, no_wait, parallelism=10)
        assert provider.max_in_flight == 5

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, chain_config, provider, store, no_wait) -> None:
        event = asyncio.Event()
        event.set()
        _, report = await run(chain_config, provider, store, no_wait, cancel_event=event)
        assert set(statuses(report).values()) == {CANCELLED}
        assert provider.ops("create") == []
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_work_finish(self, chain_config, store, no_wait) -> None:
        provider = MemoryProvider(schemas=TEST_SCHEMAS, latency={"test_network": 0.05})
        plan = await Planner(provider, store).plan(chain_config, {})
        executor = Executor(provider, store, retry=no_wait)

        async def cancel_soon() -> None:
            await asyncio.sleep(0.01)
            executor.cancel()

        report, _ = await asyncio.gather(executor.apply(plan, chain_config, {}), cancel_soon())

        assert statuses(report) == {"test_network.a": SUCCESS, "test_server.b": CANCELLED}
        assert await store.read("test_network.a") is not None
        assert await store.read("test_server.b") is None

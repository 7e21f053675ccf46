"""Tests for plan classification, unknown values and drift handling."""

import pytest

from stratum import engine
from stratum.config.expressions import UNKNOWN
from stratum.errors import ConfigError, ProviderError, ReferenceError
from stratum.models.plan import Action
from stratum.planner import Planner

from conftest import load, variables

CREATE, UPDATE, DESTROY, REPLACE, NOOP = (
    Action.CREATE,
    Action.UPDATE,
    Action.DESTROY,
    Action.REPLACE,
    Action.NOOP,
)


async def converge(config, provider, store, retry):
    planned, report = await engine.converge(config, variables(config), provider, store, retry=retry)
    assert report.ok, report.results
    return planned


def with_attribute(config, address, **attributes):
    """Copy of `config` with attributes of one resource changed."""
    updated = config.model_copy(deep=True)
    res = updated.resource(address)
    res.attributes.update(attributes)
    return updated


class TestFirstPlan:
    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self, chain_config, provider, store) -> None:
        plan = await Planner(provider, store).plan(chain_config, {})
        assert plan.actions() == [("test_network.a", CREATE), ("test_server.b", CREATE)]
        assert plan.summary() == {"add": 2, "change": 0, "destroy": 0}
        assert plan.has_changes

    @pytest.mark.asyncio
    async def test_values_of_new_resources_are_unknown(self, chain_config, provider, store) -> None:
        plan = await Planner(provider, store).plan(chain_config, {})
        server = plan.change("test_server.b")
        assert server is not None
        assert server.after["network_id"] is UNKNOWN
        assert server.after["zone"] == "z1"
        assert plan.outputs["server_ip"] is UNKNOWN

    @pytest.mark.asyncio
    async def test_planning_has_no_side_effects(self, chain_config, provider, store) -> None:
        await Planner(provider, store).plan(chain_config, {})
        assert provider.objects == {}
        assert provider.ops("create") == []
        assert store.serial == 0


class TestSecondPlan:
    @pytest.mark.asyncio
    async def test_no_drift_is_all_noop(self, chain_config, provider, store, no_wait) -> None:
        await converge(chain_config, provider, store, no_wait)
        plan = await Planner(provider, store).plan(chain_config, {})
        assert plan.actions() == [("test_network.a", NOOP), ("test_server.b", NOOP)]
        assert not plan.has_changes
        assert plan.outputs["server_ip"].startswith("10.")

    @pytest.mark.asyncio
    async def test_mutable_change_is_update(self, chain_config, provider, store, no_wait) -> None:
        await converge(chain_config, provider, store, no_wait)
        changed = with_attribute(chain_config, "test_server.b", size="large")
        plan = await Planner(provider, store).plan(changed, {})
        assert plan.actions() == [("test_network.a", NOOP), ("test_server.b", UPDATE)]
        assert plan.change("test_server.b").fields == ["size"]

    @pytest.mark.asyncio
    async def test_immutable_change_is_replace(self, chain_config, provider, store, no_wait) -> None:
        await converge(chain_config, provider, store, no_wait)
        changed = with_attribute(chain_config, "test_network.a", zone="z2", cidr="10.1.0.0/16")
        plan = await Planner(provider, store).plan(changed, {})

        network = plan.change("test_network.a")
        assert network.action == REPLACE
        assert {c.name: c.forces_replacement for c in network.changes} == {
            "cidr": False,
            "zone": True,
        }
        # The server's network id is unknown until the network is recreated.
        assert plan.change("test_server.b").action in (UPDATE, REPLACE)
        assert plan.change("test_server.b").after["network_id"] is UNKNOWN
        assert plan.summary() == {"add": 1, "change": 1, "destroy": 1}

    @pytest.mark.asyncio
    async def test_lifecycle_immutable_forces_replace(self, provider, store, no_wait) -> None:
        config = load(
            """
            resource:
              test_network:
                a:
                  zone: z1
                  cidr: 10.0.0.0/16
                  lifecycle:
                    immutable: [cidr]
            """
        )
        await converge(config, provider, store, no_wait)
        plan = await Planner(provider, store).plan(
            with_attribute(config, "test_network.a", cidr="10.9.0.0/16"), {}
        )
        assert plan.actions() == [("test_network.a", REPLACE)]

    @pytest.mark.asyncio
    async def test_removed_attribute_is_a_change(self, chain_config, provider, store, no_wait) -> None:
        await converge(chain_config, provider, store, no_wait)
        changed = chain_config.model_copy(deep=True)
        del changed.resource("test_server.b").attributes["size"]
        plan = await Planner(provider, store).plan(changed, {})
        change = plan.change("test_server.b")
        assert change.action == UPDATE
        assert change.changes[0].before == "small"
        assert change.changes[0].after is None

    @pytest.mark.asyncio
    async def test_prevent_destroy_blocks_replace(self, provider, store, no_wait) -> None:
        config = load(
            """
            resource:
              test_network:
                a:
                  zone: z1
                  lifecycle:
                    prevent_destroy: true
            """
        )
        await converge(config, provider, store, no_wait)
        with pytest.raises(ConfigError, match="prevent_destroy"):
            await Planner(provider, store).plan(
                with_attribute(config, "test_network.a", zone="z2"), {}
            )


class TestOrphansAndDrift:
    @pytest.mark.asyncio
    async def test_undeclared_resources_are_destroyed_first(
        self, chain_config, provider, store, no_wait
    ) -> None:
        await converge(chain_config, provider, store, no_wait)
        trimmed = load(
            """
            provider:
              name: memory
            resource:
              test_network:
                c:
                  zone: z1
            """
        )
        plan = await Planner(provider, store).plan(trimmed, {})
        assert plan.actions() == [
            ("test_server.b", DESTROY),
            ("test_network.a", DESTROY),
            ("test_network.c", CREATE),
        ]

    @pytest.mark.asyncio
    async def test_vanished_object_is_recreated(self, chain_config, provider, store, no_wait) -> None:
        await converge(chain_config, provider, store, no_wait)
        network = await store.read("test_network.a")
        del provider.objects[network.id]

        plan = await Planner(provider, store).plan(chain_config, {})
        change = plan.change("test_network.a")
        assert change.action == CREATE
        assert change.prior_id == network.id
        assert "no longer exists" in change.reason
        assert plan.change("test_server.b").action == UPDATE

    @pytest.mark.asyncio
    async def test_attribute_drift_is_corrected(self, chain_config, provider, store, no_wait) -> None:
        await converge(chain_config, provider, store, no_wait)
        network = await store.read("test_network.a")
        provider.objects[network.id]["attributes"]["cidr"] = "192.168.0.0/24"

        plan = await Planner(provider, store).plan(chain_config, {})
        change = plan.change("test_network.a")
        assert change.action == UPDATE
        assert change.changes[0].before == "192.168.0.0/24"

        stale = await Planner(provider, store).plan(chain_config, {}, refresh=False)
        assert stale.change("test_network.a").action == NOOP

    @pytest.mark.asyncio
    async def test_vanished_orphan_is_forgotten(self, chain_config, provider, store, no_wait) -> None:
        await converge(chain_config, provider, store, no_wait)
        server = await store.read("test_server.b")
        del provider.objects[server.id]
        trimmed = load(
            """
            resource:
              test_network:
                a:
                  zone: z1
                  cidr: 10.0.0.0/16
            """
        )
        plan = await Planner(provider, store).plan(trimmed, {})
        assert plan.forget == ["test_server.b"]
        assert plan.actions() == [("test_network.a", NOOP)]
        assert plan.has_changes

    @pytest.mark.asyncio
    async def test_permanent_refresh_failure_propagates(
        self, chain_config, provider, store, no_wait
    ) -> None:
        await converge(chain_config, provider, store, no_wait)
        provider.inject_failure("describe", "test_server", message="access denied")
        with pytest.raises(ProviderError, match="access denied"):
            await Planner(provider, store, retry=no_wait).plan(chain_config, {})


SWAP_BEFORE = """
resource:
  test_network:
    a: {zone: z1}
    c: {zone: z1}
  test_server:
    b:
      zone: z1
      network_id: ${test_network.a}
"""

# The network now waits for the server, and network c is gone.
SWAP_AFTER = """
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

MOVE_BEFORE = """
resource:
  test_network:
    c: {zone: z1}
  test_server:
    b:
      zone: z1
      image: img-1
      network_id: ${test_network.c}
"""

MOVE_AFTER = """
resource:
  test_network:
    a: {zone: z1}
  test_server:
    b:
      zone: z1
      image: img-2
      network_id: ${test_network.a}
"""


class TestChangedDependencies:
    @pytest.mark.asyncio
    async def test_reversed_dependency_with_removed_resource(
        self, provider, store, no_wait
    ) -> None:
        await converge(load(SWAP_BEFORE), provider, store, no_wait)
        plan = await Planner(provider, store).plan(load(SWAP_AFTER), {})
        assert plan.actions() == [
            ("test_network.c", DESTROY),
            ("test_server.b", UPDATE),
            ("test_network.a", NOOP),
        ]

    @pytest.mark.asyncio
    async def test_destroy_after_reversing_a_dependency(self, provider, store, no_wait) -> None:
        await converge(load(SWAP_BEFORE), provider, store, no_wait)
        plan = await Planner(provider, store).plan(load(SWAP_AFTER), {}, destroy=True)
        order = [a for a, _ in plan.actions()]
        assert sorted(order) == ["test_network.a", "test_network.c", "test_server.b"]
        # State still has the server on network a.
        assert order.index("test_server.b") < order.index("test_network.a")

    @pytest.mark.asyncio
    async def test_replaced_resource_comes_before_its_old_dependency(
        self, provider, store, no_wait
    ) -> None:
        await converge(load(MOVE_BEFORE), provider, store, no_wait)
        plan = await Planner(provider, store).plan(load(MOVE_AFTER), {})
        assert plan.actions() == [
            ("test_server.b", REPLACE),
            ("test_network.c", DESTROY),
            ("test_network.a", CREATE),
        ]
        server = plan.change("test_server.b")
        assert server.dependencies == ["test_network.a"]
        assert server.prior_dependencies == ["test_network.c"]


@pytest.mark.parametrize(
    "reference",
    ["${test_network.a.bogus}", "${test_network.a.cidr.bits}"],
)
@pytest.mark.asyncio
async def test_unresolvable_attribute_fails_before_provider_calls(
    reference, chain_config, provider, store, no_wait
) -> None:
    await converge(chain_config, provider, store, no_wait)
    calls = len(provider.calls)
    broken = with_attribute(chain_config, "test_server.b", label=reference)
    with pytest.raises(ReferenceError, match="test_network.a"):
        await Planner(provider, store).plan(broken, {})
    assert len(provider.calls) == calls


@pytest.mark.asyncio
async def test_unresolvable_variable_path_fails_before_provider_calls(provider, store) -> None:
    config = load(
        """
        variable:
          tags:
            type: map
            default: {team: web}
        resource:
          test_network:
            a:
              zone: z1
              owner: ${var.tags.owner}
        """
    )
    with pytest.raises(ReferenceError, match="var.tags.owner"):
        await Planner(provider, store).plan(config, variables(config))
    assert provider.calls == []


class TestDestroyPlan:
    @pytest.mark.asyncio
    async def test_reverse_dependency_order(self, chain_config, provider, store, no_wait) -> None:
        apply_plan = await converge(chain_config, provider, store, no_wait)
        plan = await Planner(provider, store).plan(chain_config, {}, destroy=True)
        create_order = [a for a, _ in apply_plan.actions()]
        assert plan.actions() == [(a, DESTROY) for a in reversed(create_order)]

    @pytest.mark.asyncio
    async def test_empty_state_has_nothing_to_destroy(self, chain_config, provider, store) -> None:
        plan = await Planner(provider, store).plan(chain_config, {}, destroy=True)
        assert plan.changes == []
        assert not plan.has_changes


@pytest.mark.asyncio
async def test_unsupported_type_fails_before_provider_calls(provider, store) -> None:
    config = load(
        """
        resource:
          test_database:
            main:
              engine: postgres
        """
    )
    with pytest.raises(ConfigError, match="does not support"):
        await Planner(provider, store).plan(config, {})
    assert provider.calls == []

"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import textwrap
from typing import Any, Dict, List, Optional

import pytest

from stratum.config.loader import parse_configuration, resolve_variables
from stratum.models.config import Configuration
from stratum.models.settings import RetryPolicy
from stratum.providers import MemoryProvider, ResourceSchema
from stratum.state.storage import MemoryStateStore

# Generic resource types: "zone" can only be set on create.
TEST_SCHEMAS: List[ResourceSchema] = [
    ResourceSchema(type="test_network", force_new=frozenset({"zone"})),
    ResourceSchema(
        type="test_server",
        force_new=frozenset({"zone", "image"}),
        computed=frozenset({"private_ip"}),
    ),
]


def load(text: str) -> Configuration:
    """Parse an indented YAML snippet into a Configuration."""
    return parse_configuration(textwrap.dedent(text))


def variables(config: Configuration, **overrides: str) -> Dict[str, Any]:
    return resolve_variables(config, overrides=overrides, environ={})


@pytest.fixture
def provider() -> MemoryProvider:
    """A simulated provider supporting the generic test types."""
    return MemoryProvider(schemas=TEST_SCHEMAS)


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def no_wait() -> RetryPolicy:
    """Retry policy with zero backoff so retry tests stay fast."""
    return RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def chain_config() -> Configuration:
    """test_network.a <- test_server.b: B references A's id."""
    return load(
        """
        provider:
          name: memory
        resource:
          test_network:
            a:
              zone: z1
              cidr: 10.0.0.0/16
          test_server:
            b:
              zone: z1
              image: img-1
              size: small
              network_id: ${test_network.a}
        output:
          server_ip:
            value: ${test_server.b.private_ip}
        """
    )


def empty_config(provider_name: Optional[str] = "memory") -> Configuration:
    return load(f"provider:\n  name: {provider_name}\n")

"""
filename: stratum/engine.py

Defines the run-level entry points shared by the CLI and tests:
validate, plan, apply and destroy a configuration against an injected
provider and state store.

Config, cycle and reference errors are raised before any provider call, so a
run either fails fast with no side effects or proceeds to the executor, whose
failures are reported per resource.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from stratum.config.loader import load_configuration, load_var_file, resolve_variables
from stratum.executor import Executor
from stratum.graph import DependencyGraph
from stratum.models.config import Configuration
from stratum.models.plan import ApplyReport, Plan
from stratum.models.settings import EngineSettings, RetryPolicy
from stratum.planner import Planner, validate_configuration
from stratum.providers import Provider, ProviderName, get_provider
from stratum.state.storage import FileStateStore, StateStore

logger = logging.getLogger(__name__)


async def load_workspace(
    config_path: str,
    *,
    var_files: Optional[List[str]] = None,
    overrides: Optional[Dict[str, str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Tuple[Configuration, Dict[str, Any]]:
    """Load a configuration file and resolve its variables.

    Args:
        config_path: Path to the YAML configuration.
        var_files: YAML variable files, lowest precedence first.
        overrides: `name=value` text overrides, highest precedence.
        environ: Environment for STRATUM_VAR_* lookups. Defaults to os.environ.

    Returns:
        (configuration, resolved variables)
    """
    config = await load_configuration(config_path)
    file_values = [await load_var_file(p) for p in var_files or []]
    variables = resolve_variables(
        config, file_values=file_values, overrides=overrides, environ=environ
    )
    return config, variables


def build_provider(
    config: Configuration,
    settings: EngineSettings,
    name: Optional[str] = None,
) -> Provider:
    """Construct the provider for a run.

    The name comes from `name`, else the configuration's provider block. The
    local provider's data file defaults to `settings.provider_path`.
    """
    provider_name = name or config.provider.name or settings.provider
    options = dict(config.provider.options)
    if provider_name == ProviderName.local.value:
        options.setdefault("path", settings.provider_path)
    return get_provider(provider_name, options)


def build_store(settings: EngineSettings) -> StateStore:
    """The file-backed state store configured by `settings`."""
    return FileStateStore(settings.state_path, lock=settings.lock)


def validate(
    config: Configuration,
    provider: Provider,
    variables: Optional[Dict[str, Any]] = None,
) -> DependencyGraph:
    """Graph and type check only; never calls the provider API."""
    return validate_configuration(config, provider, variables)


async def plan(
    config: Configuration,
    variables: Dict[str, Any],
    provider: Provider,
    store: StateStore,
    *,
    refresh: bool = True,
    destroy: bool = False,
    retry: Optional[RetryPolicy] = None,
) -> Plan:
    """Compute a read-only plan for `config`."""
    planner = Planner(provider, store, retry=retry)
    result = await planner.plan(config, variables, refresh=refresh, destroy=destroy)
    logger.info("Planned %s: %s", result.mode, result.summary())
    return result


async def apply(
    plan_: Plan,
    config: Configuration,
    variables: Dict[str, Any],
    provider: Provider,
    store: StateStore,
    *,
    parallelism: int = 10,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> ApplyReport:
    """Execute a previously computed plan."""
    executor = Executor(
        provider,
        store,
        parallelism=parallelism,
        retry=retry,
        cancel_event=cancel_event,
    )
    report = await executor.apply(plan_, config, variables)
    if report.failed:
        logger.warning("%d resource(s) failed to apply", len(report.failed))
    return report


async def converge(
    config: Configuration,
    variables: Dict[str, Any],
    provider: Provider,
    store: StateStore,
    *,
    destroy: bool = False,
    refresh: bool = True,
    parallelism: int = 10,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> Tuple[Plan, ApplyReport]:
    """Plan and immediately apply, without confirmation.

    Returns:
        (the plan that was applied, the apply report)
    """
    planned = await plan(
        config,
        variables,
        provider,
        store,
        refresh=refresh,
        destroy=destroy,
        retry=retry,
    )
    report = await apply(
        planned,
        config,
        variables,
        provider,
        store,
        parallelism=parallelism,
        retry=retry,
        cancel_event=cancel_event,
    )
    return planned, report

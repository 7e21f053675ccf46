#!/usr/bin/env python3
"""
stratum/cli/main.py

The `stratum` command line. Subcommands:

  1) "validate": Load the configuration, resolve variables and check the graph.
  2) "plan":     Show what apply would do, without changing anything.
  3) "apply":    Plan, confirm, then converge the infrastructure.
  4) "destroy":  Plan and confirm the teardown of everything in state.
  5) "output":   Print the outputs recorded by the last apply.
  6) "show":     Print the state document as JSON.

Exit codes: 0 on success (or no changes), 1 on any error, 2 when `plan`
found changes.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from stratum import engine
from stratum.config.loader import parse_var_assignments
from stratum.errors import StratumError
from stratum.models.config import Configuration
from stratum.models.settings import EngineSettings
from stratum.providers import Provider
from stratum.render import render_outputs, render_plan, render_report
from stratum.state.storage import FileStateStore

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2

logger = logging.getLogger(__name__)


def _settings(args: argparse.Namespace) -> EngineSettings:
    """Environment-backed settings, overridden by any flag given explicitly."""
    overrides: Dict[str, Any] = {}
    for flag, field in (
        ("state", "state_path"),
        ("provider_path", "provider_path"),
        ("parallelism", "parallelism"),
        ("refresh", "refresh"),
        ("lock", "lock"),
        ("log_level", "log_level"),
    ):
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field] = value
    return EngineSettings(**overrides)


async def _load(
    args: argparse.Namespace, settings: EngineSettings
) -> Tuple[Configuration, Dict[str, Any], Provider]:
    config, variables = await engine.load_workspace(
        args.config,
        var_files=args.var_file,
        overrides=parse_var_assignments(args.var),
    )
    provider = engine.build_provider(config, settings, args.provider)
    return config, variables, provider


async def _confirm(question: str) -> bool:
    print(f"\n{question}\n  Only 'yes' will be accepted to approve.\n")
    loop = asyncio.get_running_loop()
    answer = await loop.run_in_executor(None, input, "  Enter a value: ")
    return answer.strip() == "yes"


async def _run_validate(args: argparse.Namespace, settings: EngineSettings) -> int:
    """Handle the 'validate' subcommand. Never calls the provider API."""
    config, variables, provider = await _load(args, settings)
    engine.validate(config, provider, variables)
    print(
        f"The configuration is valid ({len(config.resources)} resources, "
        f"{len(config.outputs)} outputs)."
    )
    return EXIT_OK


async def _run_plan(args: argparse.Namespace, settings: EngineSettings) -> int:
    """Handle the 'plan' subcommand: a read-only diff."""
    config, variables, provider = await _load(args, settings)
    engine.validate(config, provider, variables)
    async with provider, engine.build_store(settings) as store:
        planned = await engine.plan(
            config,
            variables,
            provider,
            store,
            refresh=settings.refresh,
            destroy=args.destroy,
            retry=settings.retry_policy(),
        )
    print(render_plan(planned))
    return EXIT_CHANGES if planned.has_changes else EXIT_OK


async def _run_apply(args: argparse.Namespace, settings: EngineSettings) -> int:
    """Handle the 'apply' and 'destroy' subcommands."""
    destroy = args.command == "destroy"
    config, variables, provider = await _load(args, settings)
    engine.validate(config, provider, variables)

    async with provider, engine.build_store(settings) as store:
        planned = await engine.plan(
            config,
            variables,
            provider,
            store,
            refresh=settings.refresh,
            destroy=destroy,
            retry=settings.retry_policy(),
        )
        print(render_plan(planned))
        if destroy and not planned.has_changes:
            return EXIT_OK

        if planned.has_changes and not args.auto_approve:
            verb = "destroy all resources" if destroy else "perform these actions"
            if not await _confirm(f"Do you really want to {verb}?"):
                print("Apply cancelled.")
                return EXIT_ERROR

        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        try:
            report = await engine.apply(
                planned,
                config,
                variables,
                provider,
                store,
                parallelism=settings.parallelism,
                retry=settings.retry_policy(),
                cancel_event=cancel_event,
            )
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    if cancel_event.is_set():
        print("Interrupt received; operations not yet started were cancelled.")
    print(render_report(report))
    if report.outputs:
        print("\nOutputs:\n")
        print(render_outputs(report.outputs))
    return EXIT_OK if report.ok else EXIT_ERROR


async def _run_output(args: argparse.Namespace, settings: EngineSettings) -> int:
    """Handle the 'output' subcommand: print outputs from state."""
    async with FileStateStore(settings.state_path, lock=False) as store:
        outputs = await store.read_outputs()

    if args.name is not None:
        if args.name not in outputs:
            print(f"Error: Output '{args.name}' not found.", file=sys.stderr)
            return EXIT_ERROR
        outputs = {args.name: outputs[args.name]}

    if args.json:
        if args.name is not None:
            print(json.dumps(outputs[args.name].value, indent=2))
        else:
            doc = {name: out.model_dump() for name, out in outputs.items()}
            print(json.dumps(doc, indent=2))
    elif outputs:
        print(render_outputs(outputs, show_sensitive=args.show_sensitive))
    else:
        print("No outputs found.")
    return EXIT_OK


async def _run_show(args: argparse.Namespace, settings: EngineSettings) -> int:
    """Handle the 'show' subcommand: print the raw state document."""
    async with FileStateStore(settings.state_path, lock=False) as store:
        print(store.document.model_dump_json(indent=2))
    return EXIT_OK


def _add_state_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--state",
        default=None,
        help="Path to the state file (default: $STRATUM_STATE_PATH or stratum.state.json).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: $STRATUM_LOG_LEVEL or WARNING).",
    )


def _add_run_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("config", help="Path to the YAML configuration file.")
    _add_state_flags(parser)
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set a variable; may be repeated. Overrides files and environment.",
    )
    parser.add_argument(
        "--var-file",
        action="append",
        default=[],
        help="YAML file of variable values; may be repeated, later files win.",
    )
    parser.add_argument(
        "--provider",
        default=None,
        help="Provider name, overriding the configuration's provider block.",
    )
    parser.add_argument(
        "--provider-path",
        default=None,
        help="Data file of the 'local' provider (default: .stratum/provider.json).",
    )
    parser.add_argument(
        "--parallelism",
        type=int,
        default=None,
        help="Maximum concurrent provider operations (default: 10).",
    )
    parser.add_argument(
        "--no-refresh",
        dest="refresh",
        action="store_const",
        const=False,
        default=None,
        help="Skip re-reading recorded objects from the provider before planning.",
    )
    parser.add_argument(
        "--lock",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Hold an exclusive lock on the state file for the run (default: on).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stratum",
        description="Declarative infrastructure reconciliation: validate, plan and apply.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser(
        "validate", help="Check a configuration without calling the provider."
    )
    _add_run_flags(validate_parser)
    validate_parser.set_defaults(func=_run_validate)

    plan_parser = subparsers.add_parser(
        "plan", help="Show the changes apply would make (exit code 2 if any)."
    )
    _add_run_flags(plan_parser)
    plan_parser.add_argument(
        "--destroy",
        action="store_true",
        default=False,
        help="Plan the destruction of every resource in state.",
    )
    plan_parser.set_defaults(func=_run_plan)

    for name, help_text in (
        ("apply", "Converge the infrastructure on the configuration."),
        ("destroy", "Destroy every resource recorded in state."),
    ):
        run_parser = subparsers.add_parser(name, help=help_text)
        _add_run_flags(run_parser)
        run_parser.add_argument(
            "--auto-approve",
            action="store_true",
            default=False,
            help="Skip the interactive 'yes' confirmation.",
        )
        run_parser.set_defaults(func=_run_apply)

    output_parser = subparsers.add_parser(
        "output", help="Print outputs recorded by the last apply."
    )
    output_parser.add_argument("name", nargs="?", default=None, help="A single output.")
    _add_state_flags(output_parser)
    output_parser.add_argument(
        "--json", action="store_true", default=False, help="Print outputs as JSON."
    )
    output_parser.add_argument(
        "--show-sensitive",
        action="store_true",
        default=False,
        help="Print sensitive values instead of hiding them.",
    )
    output_parser.set_defaults(func=_run_output)

    show_parser = subparsers.add_parser("show", help="Print the state document as JSON.")
    _add_state_flags(show_parser)
    show_parser.set_defaults(func=_run_show)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    try:
        settings = _settings(args)
    except ValidationError as exc:
        print(f"Error: invalid settings: {exc}", file=sys.stderr)
        return EXIT_ERROR

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(args.func(args, settings))
    except StratumError as exc:
        logger.debug("Run failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())

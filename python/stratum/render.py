"""
stratum/render.py

Human-readable rendering of plans, apply reports and outputs for the CLI.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

from stratum.config.expressions import UNKNOWN, contains_unknown
from stratum.models.plan import Action, ApplyReport, OperationStatus, Plan
from stratum.models.state import OutputValue

SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DESTROY: "-",
    Action.REPLACE: "-/+",
}

VERBS = {
    Action.CREATE: "will be created",
    Action.UPDATE: "will be updated in-place",
    Action.DESTROY: "will be destroyed",
    Action.REPLACE: "must be replaced",
}


def format_value(value: Any, sensitive: bool = False) -> str:
    """Render one value: JSON for known data, placeholders otherwise."""
    if sensitive:
        return "(sensitive value)"
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if contains_unknown(value):
        return "(partially known after apply)"
    return json.dumps(value, sort_keys=True, default=str)


def render_plan(plan: Plan) -> str:
    """Render `plan` as text, ending with the add/change/destroy summary."""
    lines: List[str] = []
    for change in plan.changes:
        if change.action == Action.NOOP:
            continue
        header = f"  # {change.address} {VERBS[change.action]}"
        if change.reason:
            header += f" ({change.reason})"
        lines.append(header)
        lines.append(
            f'  {SYMBOLS[change.action]} resource "{change.type}" "{change.name}" {{'
        )
        if change.action == Action.CREATE:
            for key, value in sorted((change.after or {}).items()):
                lines.append(f"      + {key} = {format_value(value)}")
        elif change.action == Action.DESTROY:
            for key, value in sorted((change.before or {}).items()):
                lines.append(f"      - {key} = {format_value(value)}")
        else:
            if change.prior_id:
                lines.append(f"        id = {format_value(change.prior_id)}")
            for attr in change.changes:
                line = (
                    f"      ~ {attr.name} = {format_value(attr.before)}"
                    f" -> {format_value(attr.after)}"
                )
                if attr.forces_replacement:
                    line += "  # forces replacement"
                lines.append(line)
        lines.append("    }")
        lines.append("")

    for address in plan.forget:
        lines.append(f"  # {address} no longer exists and will be removed from state")

    if not plan.has_changes:
        lines.append("No changes. Infrastructure matches the configuration.")
    else:
        counts = plan.summary()
        lines.append(
            f"Plan: {counts['add']} to add, {counts['change']} to change, "
            f"{counts['destroy']} to destroy."
        )

    if plan.outputs:
        lines.append("")
        lines.append("Outputs:")
        for name, value in plan.outputs.items():
            lines.append(f"  {name} = {format_value(value)}")
    return "\n".join(lines)


def render_report(report: ApplyReport) -> str:
    """Render per-resource apply results and a one-line summary."""
    lines: List[str] = []
    added = changed = destroyed = 0
    for result in report.results:
        if result.status == OperationStatus.NOOP:
            continue
        line = f"{result.address}: {result.action.value} {result.status.value}"
        if result.id:
            line += f" [id={result.id}]"
        if result.error:
            line += f" - {result.error}"
        lines.append(line)
        if result.status == OperationStatus.SUCCESS:
            added += result.action in (Action.CREATE, Action.REPLACE)
            changed += result.action == Action.UPDATE
            destroyed += result.action in (Action.DESTROY, Action.REPLACE)

    summary = f"Resources: {added} added, {changed} changed, {destroyed} destroyed."
    if report.ok:
        lines.append(f"Apply complete! {summary}")
    else:
        lines.append(f"Apply finished with errors. {summary}")
    return "\n".join(lines)


def render_outputs(outputs: Dict[str, OutputValue], show_sensitive: bool = False) -> str:
    """Render persisted outputs as 'name = value' lines."""
    return "\n".join(
        f"{name} = {format_value(out.value, sensitive=out.sensitive and not show_sensitive)}"
        for name, out in outputs.items()
    )

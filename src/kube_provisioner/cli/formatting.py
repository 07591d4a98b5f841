"""Plan and apply output rendering (Terraform-style)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from kube_provisioner.engine.handlers import diff_values
from kube_provisioner.engine.types import Action, RunStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from kube_provisioner.engine.types import ApplyResult, Plan, ResourceChange, ResourceOutcome


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


ACTION_STYLES: dict[str, _ActionStyle] = {
    "create": _ActionStyle("green", "+", "Creating", "Creation complete"),
    "update": _ActionStyle("yellow", "~", "Updating", "Update complete"),
    "replace": _ActionStyle("magenta", "-/+", "Replacing", "Replacement complete"),
    "delete": _ActionStyle("red", "-", "Destroying", "Destroy complete"),
    "no-op": _ActionStyle("bright_black", " ", "", ""),
}

_ACTION_DESC: dict[str, str] = {
    "create": "will be created",
    "update": "will be updated in-place",
    "replace": "must be replaced",
    "delete": "will be destroyed",
    "no-op": "is up-to-date",
}

_STATUS_COLORS: dict[RunStatus, str] = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.SKIPPED: "yellow",
    RunStatus.NOOP: "bright_black",
}


def styler(color: bool) -> Callable[..., str]:
    """Return ``typer.style`` when *color* is True, otherwise a passthrough."""
    if color:
        return typer.style
    return lambda text, **_kw: text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def has_actionable_changes(plan: Plan) -> bool:
    """Return True if the plan contains any non-NOOP changes."""
    return any(c.action != Action.NOOP for c in plan.changes)


def _align_values(items: dict[str, str]) -> list[tuple[str, str]]:
    """Right-pad keys so ``=`` signs align."""
    if not items:
        return []
    max_key = max(len(k) for k in items)
    return [(k.ljust(max_key), v) for k, v in items.items()]


def _format_value(value: Any) -> str:
    """Format a value for display in a plan diff block."""
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _change_attrs(change: ResourceChange) -> dict[str, str]:
    """Extract displayable ``dotted.key -> formatted value`` pairs from a change."""
    if change.action == Action.CREATE and change.desired:
        flat = diff_values({}, change.desired.get("inputs") or {})
        return {k: _format_value(d["to"]) for k, d in flat.items()}
    if change.action in (Action.UPDATE, Action.REPLACE) and change.diff:
        return {
            k: f"{_format_value(d['from'])} -> {_format_value(d['to'])}"
            for k, d in change.diff.items()
        }
    return {}


def format_change(change: ResourceChange, *, color: bool = True) -> str:
    """Render a single ResourceChange as a Terraform-style block."""
    style = styler(color)
    action_val = change.action.value
    sc = {"fg": ACTION_STYLES[action_val].color}
    symbol = ACTION_STYLES[action_val].symbol

    desc = _ACTION_DESC[action_val]
    if change.action == Action.REPLACE:
        order = "delete first" if change.delete_before_create else "create first"
        desc = f"{desc} ({order})"
    lines = [style(f"  # {change.name} {desc}", bold=True, **sc)]
    if change.reason and change.action != Action.CREATE:
        lines.append(style(f"  # ({change.reason})", **sc))
    lines.append(style(f'  {symbol} resource "{change.resource_type}" "{change.name}" {{', **sc))
    lines.extend(
        style(f"      {symbol} {k} = {v}", **sc) for k, v in _align_values(_change_attrs(change))
    )
    lines.append(style("    }", **sc))
    return "\n".join(lines)


def format_changes(changes: list[ResourceChange], *, color: bool = True) -> str:
    """Render a list of changes as Terraform-style diff blocks."""
    blocks = [format_change(c, color=color) for c in changes if c.action != Action.NOOP]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


def format_plan(plan: Plan, *, color: bool = True) -> str:
    """Render the full plan output with per-change diff blocks."""
    return format_changes(plan.changes, color=color)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to replace", "to destroy")
_APPLY_VERBS = ("added", "changed", "replaced", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "magenta", "red")


def _format_summary(summary: dict[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, ...`` part of a summary line."""
    style = styler(color)
    counts = (
        summary.get("create", 0),
        summary.get("update", 0),
        summary.get("replace", 0),
        summary.get("delete", 0),
    )
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(counts, verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def format_plan_summary(summary: dict[str, int], *, color: bool = True) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to replace, 0 to destroy.``"""
    return f"Plan: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_outcome(outcome: ResourceOutcome, *, color: bool = True) -> str:
    """Render one line of the apply report, e.g. ``  web: Failed: quota exceeded``."""
    style = styler(color)
    text = outcome.describe()
    if outcome.attempts > 1:
        text = f"{text} (after {outcome.attempts} attempts)"
    return f"  {outcome.name}: " + style(text, fg=_STATUS_COLORS.get(outcome.status))


def format_apply_report(result: ApplyResult, *, color: bool = True) -> str:
    """Render the per-resource outcome list followed by a summary line."""
    style = styler(color)
    lines = ["Outcome:"]
    lines.extend(format_outcome(o, color=color) for o in result.outcomes)
    lines.append("")

    resources = _format_summary(result.summary(), _APPLY_VERBS, color=color)
    if result.ok:
        lines.append(f"{style('Apply complete!', fg='green', bold=True)} Resources: {resources}.")
        return "\n".join(lines)

    counts = result.status_counts()
    header = "Apply canceled." if result.canceled else "Apply finished with errors."
    lines.append(
        f"{style(header, fg='red', bold=True)} Resources: {resources}; "
        f"{counts['failed']} failed, {counts['skipped']} skipped."
    )
    return "\n".join(lines)

"""Plan and apply output rendering (Terraform-style)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from lab_provisioner.engine.types import Action

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from lab_provisioner.engine.types import ApplyResult, Plan, ResourceChange


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


_ACTION_STYLES: dict[str, _ActionStyle] = {
    "create": _ActionStyle("green", "+", "Creating", "Creation complete"),
    "update": _ActionStyle("yellow", "~", "Updating", "Update complete"),
    "delete": _ActionStyle("red", "-", "Destroying", "Destroy complete"),
    "no-op": _ActionStyle("bright_black", " ", "", ""),
}
_REPLACE_STYLE = _ActionStyle("magenta", "-/+", "Replacing", "Replacement complete")

_ACTION_DESC: dict[str, str] = {
    "create": "will be created",
    "update": "will be updated in-place",
    "delete": "will be destroyed",
    "no-op": "is up-to-date",
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
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _change_attrs(change: ResourceChange) -> dict[str, str]:
    """Extract displayable ``key -> formatted value`` pairs from a change."""
    if change.replace and change.diff:
        return {
            k: f"{_format_value(d['from'])} -> {_format_value(d['to'])}"
            for k, d in change.diff.items()
        }
    if change.action == Action.CREATE and change.planned:
        return {k: _format_value(v) for k, v in change.planned.items()}
    if change.action == Action.UPDATE and change.diff:
        return {
            k: f"{_format_value(d['from'])} -> {_format_value(d['to'])}"
            for k, d in change.diff.items()
        }
    return {}


def _style_for(change: ResourceChange) -> tuple[_ActionStyle, str]:
    if change.replace:
        return _REPLACE_STYLE, "must be replaced"
    return _ACTION_STYLES[change.action.value], _ACTION_DESC[change.action.value]


def format_change(change: ResourceChange, *, color: bool = True) -> str:
    """Render a single ResourceChange as a Terraform-style block."""
    style = styler(color)
    action_style, desc = _style_for(change)
    sc = {"fg": action_style.color}
    symbol = action_style.symbol

    lines = [
        style(f"  # {change.address} {desc}", bold=True, **sc),
        style(f'  {symbol} resource "{change.resource_type}" "{change.name}" {{', **sc),
        *[
            style(f"      {symbol} {k} = {v}", **sc)
            for k, v in _align_values(_change_attrs(change))
        ],
        style("    }", **sc),
    ]
    return "\n".join(lines)


def format_changes(changes: list[ResourceChange], *, color: bool = True) -> str:
    """Render a list of changes as Terraform-style diff blocks.

    A replacement (delete + create of one address) is rendered once.
    """
    blocks = [
        format_change(c, color=color)
        for c in changes
        if c.action != Action.NOOP and not (c.replace and c.action == Action.DELETE)
    ]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


def format_plan(plan: Plan, *, color: bool = True) -> str:
    """Render the full plan output with per-change diff blocks."""
    out = format_changes(plan.changes, color=color)
    if plan.retained:
        style = styler(color)
        kept = "\n".join(
            style(f"  # {addr} is protected and will be kept", fg="cyan") for addr in plan.retained
        )
        out = f"{out}\n\n{kept}"
    if plan.replacements:
        style = styler(color)
        warning = style(
            f"Warning: {len(plan.replacements)} resource(s) must be replaced "
            "(destroyed and re-created).",
            fg="magenta",
            bold=True,
        )
        out = f"{out}\n\n{warning}"
    return out


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to destroy")
_APPLY_VERBS = ("added", "changed", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "red")


def _format_summary(summary: Mapping[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, N verb`` part of a summary line."""
    style = styler(color)
    counts = (summary.get("create", 0), summary.get("update", 0), summary.get("delete", 0))
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(counts, verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def changes_summary(changes: list[ResourceChange]) -> dict[str, int]:
    """Count changes by action type (create/update/delete)."""
    summary: dict[str, int] = {"create": 0, "update": 0, "delete": 0}
    for c in changes:
        if c.action != Action.NOOP:
            summary[c.action.value] += 1
    return summary


def format_plan_summary(
    summary: Mapping[str, int], *, color: bool = True, header: str = "Plan"
) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to destroy.``"""
    return f"{header}: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_apply_summary(summary: Mapping[str, int], *, color: bool = True) -> str:
    """Render ``Apply complete! Resources: 2 added, 0 changed, 0 destroyed.``"""
    style = styler(color)
    header = style("Apply complete!", fg="green", bold=True)
    return f"{header} Resources: {_format_summary(summary, _APPLY_VERBS, color=color)}."


def format_partial_result(result: ApplyResult) -> list[str]:
    """Lines describing a partial apply: ``N of M operations applied`` plus details."""
    lines = [f"{len(result.applied)} of {result.total} operations applied."]
    lines.extend(
        f"  failed: {f.address} ({f.action.value}): {f.message}" for f in result.failures
    )
    if result.not_attempted:
        lines.append(
            "  not attempted: " + ", ".join(c.address for c in result.not_attempted)
        )
    if result.timed_out:
        lines.append("  the apply deadline was reached before every operation started")
    return lines


def format_outputs(outputs: Mapping[str, Any], *, color: bool = True) -> str:
    """Render exported values as ``key = value`` lines."""
    if not outputs:
        return "No outputs. Run apply first."
    style = styler(color)
    return "\n".join(
        f"{style(k, fg='cyan')} = {_format_value(v)}"
        for k, v in _align_values({k: outputs[k] for k in sorted(outputs)})
    )

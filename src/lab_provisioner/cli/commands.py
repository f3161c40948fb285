"""CLI command implementations."""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer

from lab_provisioner.cli import app
from lab_provisioner.cli.errors import handle_error

if TYPE_CHECKING:
    from collections.abc import Iterator

    from lab_provisioner.config.schema import Config
    from lab_provisioner.engine.executor import ProgressEvent
    from lab_provisioner.engine.types import ApplyResult, Plan, ResourceChange

DEFAULT_CONFIG = Path("lab-provisioner.yaml")

ConfigPath = Annotated[
    Path,
    typer.Option("--config", "-c", help="Path to the configuration file."),
]

NoColor = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output."),
]

AutoApprove = Annotated[
    bool,
    typer.Option("--auto-approve", help="Skip interactive approval."),
]

NoRefresh = Annotated[
    bool,
    typer.Option("--no-refresh", help="Skip refreshing state from the providers."),
]

AllowReplace = Annotated[
    bool,
    typer.Option(
        "--allow-replace",
        help="Allow destroying and re-creating resources whose immutable fields changed.",
    ),
]

ContinueOnError = Annotated[
    bool,
    typer.Option(
        "--continue-on-error",
        help="Keep applying independent operations after a failure.",
    ),
]

Parallelism = Annotated[
    int,
    typer.Option("--parallelism", "-p", min=1, help="Maximum concurrent operations."),
]

Timeout = Annotated[
    float | None,
    typer.Option("--timeout", min=0, help="Stop starting new operations after N seconds."),
]


def _use_color(no_color: bool) -> bool:
    return not (no_color or os.environ.get("NO_COLOR"))


@contextmanager
def _exit_on_error(color: bool) -> Iterator[None]:
    """Turn any exception raised in the block into a CLI exit code."""
    try:
        yield
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc


def _confirm_or_exit(question: str, canceled: str) -> None:
    try:
        typer.confirm(question, abort=True)
    except typer.Abort as e:
        typer.echo(canceled, err=True)
        raise typer.Exit(1) from e


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def _apply_with_progress(
    plan_obj: Plan,
    cfg: Config,
    *,
    color: bool,
    allow_replace: bool,
    parallelism: int,
    continue_on_error: bool,
    timeout: float | None,
) -> ApplyResult:
    """Apply a plan with a Rich progress bar and per-resource status lines."""
    from rich.console import Console
    from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

    from lab_provisioner.cli.formatting import _ACTION_STYLES
    from lab_provisioner.config import apply
    from lab_provisioner.engine.types import Action

    console = Console(no_color=not color)
    actionable = [c for c in plan_obj.changes if c.action != Action.NOOP]

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Applying", total=len(actionable))

        def on_progress(change: ResourceChange, event: ProgressEvent) -> None:
            s = _ACTION_STYLES[change.action.value]
            if event == "start":
                progress.update(task, description=f"{change.address}: {s.progress_verb}...")
            elif event == "done":
                progress.console.print(f"  {change.address}: {s.done_verb}")
                progress.advance(task)
            elif event == "failed":
                progress.console.print(f"  {change.address}: [red]{change.action.value} failed[/]")
                progress.advance(task)

        return apply(
            plan_obj,
            cfg,
            allow_replace=allow_replace,
            parallelism=parallelism,
            continue_on_error=continue_on_error,
            timeout=timeout,
            progress=on_progress,
        )


def _confirm_and_apply(
    plan_obj: Plan,
    cfg: Config,
    *,
    color: bool,
    auto_approve: bool,
    confirm_msg: str,
    empty_msg: str,
    allow_replace: bool = False,
    parallelism: int = 1,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> None:
    """Shared flow: show plan -> confirm -> apply with progress -> print summary.

    Exits with code 0 if no actionable changes.
    """
    from lab_provisioner.cli.formatting import (
        format_apply_summary,
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )

    if not has_actionable_changes(plan_obj):
        typer.echo(empty_msg)
        raise typer.Exit(0)

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))
    typer.echo()

    if not auto_approve:
        _confirm_or_exit(confirm_msg, "Apply canceled.")

    with _exit_on_error(color):
        result = _apply_with_progress(
            plan_obj,
            cfg,
            color=color,
            allow_replace=allow_replace,
            parallelism=parallelism,
            continue_on_error=continue_on_error,
            timeout=timeout,
        )

    typer.echo()
    typer.echo(format_apply_summary(result.summary(), color=color))


@app.command()
def plan(
    config: ConfigPath = DEFAULT_CONFIG,
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Save plan to file."),
    ] = None,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
) -> None:
    """Show changes required by the current configuration."""
    from lab_provisioner.cli.formatting import (
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )
    from lab_provisioner.config import load
    from lab_provisioner.config import plan as plan_fn

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        plan_obj = plan_fn(cfg, refresh=not no_refresh)

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))

    if out is not None:
        plan_obj.save(out)
        typer.echo(f"\nPlan saved to {out}")

    if has_actionable_changes(plan_obj):
        raise typer.Exit(2)


@app.command(name="apply")
def apply_cmd(
    plan_file: Annotated[
        Path | None,
        typer.Argument(help="Saved plan file to apply."),
    ] = None,
    config: ConfigPath = DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    allow_replace: AllowReplace = False,
    continue_on_error: ContinueOnError = False,
    parallelism: Parallelism = 1,
    timeout: Timeout = None,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
) -> None:
    """Apply the changes required by the current configuration."""
    from lab_provisioner.config import load
    from lab_provisioner.config import plan as plan_fn
    from lab_provisioner.engine.types import Plan

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        plan_obj = (
            Plan.load(plan_file) if plan_file is not None else plan_fn(cfg, refresh=not no_refresh)
        )

    _confirm_and_apply(
        plan_obj,
        cfg,
        color=color,
        auto_approve=auto_approve,
        confirm_msg="Do you want to apply these changes?",
        empty_msg="No changes. Resources are up-to-date.",
        allow_replace=allow_replace,
        parallelism=parallelism,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


@app.command()
def destroy(
    config: ConfigPath = DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    continue_on_error: ContinueOnError = False,
    parallelism: Parallelism = 1,
    no_color: NoColor = False,
) -> None:
    """Destroy all managed resources except protected ones."""
    from lab_provisioner.config import load
    from lab_provisioner.config import plan as plan_fn

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        plan_obj = plan_fn(cfg, destroy=True)

    _confirm_and_apply(
        plan_obj,
        cfg,
        color=color,
        auto_approve=auto_approve,
        confirm_msg="Do you really want to destroy all resources?",
        empty_msg="No resources to destroy.",
        parallelism=parallelism,
        continue_on_error=continue_on_error,
    )


@app.command(name="refresh")
def refresh_cmd(
    config: ConfigPath = DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    no_color: NoColor = False,
) -> None:
    """Refresh state from the live providers."""
    from lab_provisioner.cli.formatting import changes_summary, format_changes, format_plan_summary
    from lab_provisioner.config import load, save_state
    from lab_provisioner.config import refresh as refresh_fn

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        changes, state = refresh_fn(cfg)

    if not changes:
        typer.echo("No changes. State is up-to-date with the providers.")
        raise typer.Exit(0)

    typer.echo(format_changes(changes, color=color))
    typer.echo()
    typer.echo(format_plan_summary(changes_summary(changes), color=color, header="Refresh"))
    typer.echo()

    if not auto_approve:
        _confirm_or_exit("Do you want to update the state file?", "Refresh canceled.")

    with _exit_on_error(color):
        save_state(cfg, state)
    typer.echo(f"State refreshed. {_plural(len(state.resources), 'resource')} tracked.")


@app.command()
def drift(
    config: ConfigPath = DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Show drift between state and the live providers."""
    from lab_provisioner.cli.formatting import format_changes
    from lab_provisioner.config import drift as drift_fn
    from lab_provisioner.config import load

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        changes = drift_fn(cfg)

    if not changes:
        typer.echo("No drift detected. State is up-to-date with the providers.")
        raise typer.Exit(0)

    typer.echo("Drift detected:\n")
    typer.echo(format_changes(changes, color=color))
    raise typer.Exit(2)


@app.command()
def validate(
    config: ConfigPath = DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Validate the configuration file without contacting any provider."""
    from lab_provisioner.cli.formatting import styler
    from lab_provisioner.config import load
    from lab_provisioner.config import validate as validate_fn

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        desired = validate_fn(cfg)

    declared = _plural(len(desired.resources), "resource")
    typer.echo(styler(color)(f"Configuration is valid. {declared} declared.", fg="green"))


@app.command()
def output(
    config: ConfigPath = DEFAULT_CONFIG,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print outputs as a JSON object."),
    ] = False,
    no_color: NoColor = False,
) -> None:
    """Show the values exported by the last successful apply."""
    from lab_provisioner.cli.formatting import format_outputs
    from lab_provisioner.config import load
    from lab_provisioner.config import outputs as outputs_fn

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        values = outputs_fn(cfg)

    if as_json:
        typer.echo(json.dumps(values, indent=2, sort_keys=True))
    else:
        typer.echo(format_outputs(values, color=color))


@app.command()
def inventory(
    config: ConfigPath = DEFAULT_CONFIG,
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", help="Write the inventory to this file instead of stdout."),
    ] = None,
    no_color: NoColor = False,
) -> None:
    """Generate an Ansible inventory from the applied state."""
    from lab_provisioner.config import load
    from lab_provisioner.core.state import State
    from lab_provisioner.inventory import generate_inventory, render_inventory, write_inventory

    color = _use_color(no_color)
    with _exit_on_error(color):
        cfg = load(config)
        state = State.load_or_create(cfg.state_path, cfg.stack)
        edge_vars = None
        if cfg.edge is not None:
            edge_vars = {
                "ingress_ip": cfg.edge.ingress_ip,
                "home_endpoint": cfg.edge.home_endpoint,
                "home_wg_public_key": cfg.edge.home_wg_public_key,
            }
        inv = generate_inventory(state, edge_vars=edge_vars)
        if out is not None:
            write_inventory(inv, out)

    if out is None:
        typer.echo(render_inventory(inv), nl=False)
    else:
        typer.echo(f"Inventory written to {out}")

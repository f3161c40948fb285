"""Map exceptions to clean stderr messages and exit codes."""

from __future__ import annotations

import typer


def _err(msg: str, *, fg: str | None) -> None:
    """Print a styled message to stderr."""
    typer.echo(typer.style(msg, fg=fg), err=True)


def handle_error(exc: Exception, *, color: bool = True) -> int:
    """Print a clean error message to stderr and return an exit code.

    All errors map to exit code 1.  No tracebacks are printed.
    """
    from lab_provisioner.cli.formatting import format_partial_result
    from lab_provisioner.engine.errors import (
        ApplyCanceled,
        ApplyError,
        ApplyTimeoutError,
        ConfigError,
        DestructiveChangeError,
        DuplicateExportError,
        EngineError,
        ProviderError,
        StalePlanError,
        StateLockError,
        StateStackMismatchError,
        ValidationError,
    )
    from lab_provisioner.inventory import DuplicateHostError

    fg = typer.colors.RED if color else None

    if isinstance(exc, ValidationError):
        _err("Validation failed:", fg=fg)
        for e in exc.errors:
            _err(f"  - {e}", fg=fg)
    elif isinstance(exc, ConfigError):
        _err(f"Configuration error: {exc}", fg=fg)
    elif isinstance(exc, DestructiveChangeError):
        _err(
            f"Refusing to apply: {', '.join(exc.addresses)} must be replaced "
            "(destroyed and re-created).",
            fg=fg,
        )
        _err("  Re-run with --allow-replace to proceed.", fg=fg)
    elif isinstance(exc, StalePlanError):
        _err(f"Plan is stale: {exc}", fg=fg)
    elif isinstance(exc, StateStackMismatchError):
        _err(f"State mismatch: {exc}", fg=fg)
    elif isinstance(exc, StateLockError):
        _err(f"State lock error: {exc}", fg=fg)
    elif isinstance(exc, ApplyTimeoutError):
        _err(f"Apply timed out: {exc}", fg=fg)
        for line in format_partial_result(exc.result):
            _err(f"  {line}", fg=fg)
    elif isinstance(exc, ApplyError):
        _err(f"Apply failed: {exc}", fg=fg)
        for line in format_partial_result(exc.result):
            _err(f"  {line}", fg=fg)
    elif isinstance(exc, ProviderError):
        _err(f"Provider error: {exc}", fg=fg)
    elif isinstance(exc, ApplyCanceled):
        _err("Apply canceled.", fg=fg)
    elif isinstance(exc, DuplicateExportError):
        _err(f"Apply failed: {exc}", fg=fg)
        if exc.result is not None:
            for line in format_partial_result(exc.result):
                _err(f"  {line}", fg=fg)
    elif isinstance(exc, EngineError):
        _err(f"{exc.phase.capitalize()} error: {exc}", fg=fg)
    elif isinstance(exc, DuplicateHostError):
        _err(f"Inventory error: {exc}", fg=fg)
    else:
        _err(f"Error: {exc}", fg=fg)

    return 1

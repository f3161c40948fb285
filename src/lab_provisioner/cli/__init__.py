"""CLI application for lab-provisioner."""

from __future__ import annotations

import logging
import os
import sys

import typer

from lab_provisioner import __version__

app = typer.Typer(
    name="lab-provisioner",
    no_args_is_help=True,
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"lab-provisioner {__version__}")
        raise typer.Exit


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# HTTP clients of the Proxmox and Linode APIs; chatty at DEBUG.
_CLIENT_LOGGERS = ("urllib3", "proxmoxer", "linode_api4")


def _requested_level(verbose: int) -> int | None:
    """Level asked for by ``LAB_LOG`` (wins) or the ``-v`` count; None means silent."""
    name = os.environ.get("LAB_LOG", "").upper()
    if name:
        if name not in _LEVELS:
            print(
                f"WARNING: invalid LAB_LOG level '{name}', "
                f"expected one of {', '.join(sorted(_LEVELS))}; defaulting to INFO",
                file=sys.stderr,
            )
        return _LEVELS.get(name, logging.INFO)
    if verbose <= 0:
        return None
    return logging.DEBUG if verbose >= 2 else logging.INFO


def _configure_logging(verbose: int) -> None:
    """Log to stderr at the requested level.

    The root logger stays at WARNING so API client libraries only show up
    with ``-vvv``.
    """
    level = _requested_level(verbose)
    if level is None:
        return
    logging.basicConfig(
        level=logging.WARNING,
        format=_LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("lab_provisioner").setLevel(level)
    if verbose >= 3:
        for name in _CLIENT_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase log verbosity (-v info, -vv debug, -vvv adds API client logs).",
    ),
) -> None:
    """Declarative provisioning for a Proxmox home lab and its Linode edge."""
    _ = version
    _configure_logging(verbose)


# Register commands after app is created to avoid circular imports.
from lab_provisioner.cli import commands as _commands  # noqa: E402, F401

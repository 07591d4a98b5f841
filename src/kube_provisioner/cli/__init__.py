"""kube-provisioner command line."""

from __future__ import annotations

import logging
import os
import sys

import typer

from kube_provisioner import __version__

LOG_ENV_VAR = "KUBE_PROVISIONER_LOG"

app = typer.Typer(name="kube-provisioner", no_args_is_help=True, add_completion=False)


def _show_version(value: bool) -> None:
    if not value:
        return
    typer.echo(f"kube-provisioner {__version__}")
    raise typer.Exit


def _log_level(verbose: int) -> int | None:
    """Level for the ``kube_provisioner`` logger, or None to stay silent.

    ``KUBE_PROVISIONER_LOG`` wins over ``-v``; an unknown name falls back to INFO.
    """
    name = os.environ.get(LOG_ENV_VAR, "").strip().upper()
    if name:
        level = logging.getLevelNamesMapping().get(name)
        if level is None or name == "NOTSET":
            print(
                f"WARNING: invalid {LOG_ENV_VAR} level '{name}', "
                "expected one of CRITICAL, DEBUG, ERROR, INFO, WARNING; defaulting to INFO",
                file=sys.stderr,
            )
            return logging.INFO
        return level
    return {0: None, 1: logging.INFO}.get(verbose, logging.DEBUG)


def _configure_logging(verbose: int) -> None:
    level = _log_level(verbose)
    if level is None:
        return
    # Third-party loggers (kubernetes, urllib3) stay at WARNING.
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("kube_provisioner").setLevel(level)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_show_version,
        is_eager=True,
    ),
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="-v for info logs, -vv for debug."
    ),
) -> None:
    """Terraform-style reconciliation for Kubernetes resources."""
    _ = version
    _configure_logging(verbose)


# Commands import ``app``; load them last.
from kube_provisioner.cli import commands as _commands  # noqa: E402, F401

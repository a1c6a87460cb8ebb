"""Command line entry point: ``vaultsync sync|resync|delete PATH``."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Awaitable, Callable

import typer

from vaultsync.commands import (
    CommandContext,
    delete_current_record,
    resync_command,
    sync_command,
)
from vaultsync.core.settings import Settings
from vaultsync.main import init_app

app = typer.Typer(
    name="vaultsync",
    help="Mirror your Omnivore library into a Markdown vault.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
    )] = False,
):
    """Mirror your Omnivore library into a Markdown vault."""
    logging.basicConfig(level=logging.DEBUG if verbose else Settings.from_env().log_level)


def _run(command: Callable[[CommandContext], Awaitable[list[str]]]) -> None:
    context = init_app()
    for notice in asyncio.run(command(context)):
        typer.echo(notice)


@app.command()
def sync():
    """Sync items saved or changed since the last run."""
    _run(sync_command)


@app.command()
def resync():
    """Forget the last sync time and sync everything again."""
    _run(resync_command)


@app.command()
def delete(
    path: Annotated[str, typer.Argument(help="Vault-relative path of the note")],
):
    """Delete a synced note and its item in the remote library."""
    _run(lambda context: delete_current_record(context, path))


if __name__ == "__main__":
    app()

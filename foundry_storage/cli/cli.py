#!/usr/bin/env python3
"""
Main CLI entry point using Typer.
"""

import logging
import sys

import click
import typer

from foundry_storage.cli.commands import disk, truenas

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

app = typer.Typer(
    name="foundry-storage",
    help="Foundry storage backend tool (TrueNAS and Longhorn)",
    add_completion=False,
)

# Add command groups
app.add_typer(truenas.app, name="truenas", help="TrueNAS backend commands")
app.add_typer(disk.app, name="disk", help="Longhorn disk commands")


@app.callback()
def root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Configure logging for every command."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


def main() -> int:
    """Main entry point."""
    try:
        # Aborts propagate here so Ctrl-C exits 130.
        rv = app(standalone_mode=False)
        return rv if isinstance(rv, int) else 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except (click.exceptions.Abort, KeyboardInterrupt):
        typer.echo("\nOperation cancelled by user", err=True)
        return 130
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())

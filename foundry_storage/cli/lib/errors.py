"""
User-facing error output for CLI commands.
"""

from typing import List

import typer


def _message(exc: BaseException) -> str:
    return getattr(exc, "message", None) or str(exc) or type(exc).__name__


def error_lines(exc: BaseException) -> List[str]:
    """``Error: <message>`` followed by one ``caused by`` line per cause."""
    lines = [f"Error: {_message(exc)}"]
    seen = {id(exc)}
    cause = exc.__cause__
    while cause is not None and id(cause) not in seen:
        seen.add(id(cause))
        lines.append(f"  caused by: {_message(cause)}")
        cause = cause.__cause__
    return lines


def echo_error(exc: BaseException) -> None:
    for line in error_lines(exc):
        typer.echo(line, err=True)

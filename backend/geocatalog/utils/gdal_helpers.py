"""Safe execution wrapper for GDAL/OGR command-line utilities.

This module runs GDAL and OGR command-line tools (mainly ogr2ogr) as
subprocesses. Non-zero exit codes and timeouts are raised as CommandError
carrying the command's stderr output, so callers can decide whether a
failure is worth retrying.

Example:
    Convert a shapefile to GeoJSON in Web Mercator:
        >>> from geocatalog.utils.gdal_helpers import run_command, CommandError

        >>> try:
        ...     run_command([
        ...         "ogr2ogr",
        ...         "-f", "GeoJSON",
        ...         "-t_srs", "EPSG:3857",
        ...         "out.geojson",
        ...         "data.shp",
        ...     ])
        ... except CommandError as e:
        ...     print(f"Command failed: {e}")
"""

from __future__ import annotations

import logging
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Exception raised when a GDAL/OGR subprocess command fails.

    The message is the stderr output of the failed command.
    """


class CommandTimeout(CommandError):
    """Raised when a command did not finish within its timeout."""


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
    timeout: float | None = None,
) -> str:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g., ["ogr2ogr", "-f", ...]).
        workdir: Optional working directory for the command execution.
        timeout: Seconds before the command is killed, None waits forever.

    Returns:
        Captured stdout of the command.

    Raises:
        CommandTimeout: if the command exceeds ``timeout``.
        CommandError: if the command exits with a non-zero status code.
            The exception message contains the stderr output from the command.
    """
    args = [str(part) for part in command]
    logger.debug("Running %s", " ".join(args))
    try:
        result = subprocess.run(
            args,
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeout(
            f"{args[0]} timed out after {timeout} seconds"
        ) from exc
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")
    return result.stdout

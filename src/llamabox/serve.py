"""Launch the serving executable on a resolved model."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from llamabox.errors import NotFoundError, RunError

logger = logging.getLogger(__name__)


def server_command(server_path: Path, model_path: Path, extra_args: Sequence[str] = ()) -> list[str]:
    return [str(server_path), "-m", str(model_path), *extra_args]


def run_server(
    server_path: str | Path,
    model_path: str | Path,
    extra_args: Sequence[str] = (),
) -> int:
    """Run the serving executable in the foreground until it exits.

    Returns:
        The process exit status (always 0; non-zero raises)

    Raises:
        NotFoundError: The serving executable does not exist
        RunError: The process could not be started or exited non-zero
    """
    server_path = Path(server_path)
    if not server_path.exists():
        raise NotFoundError(f"Llama path '{server_path}' does not exist")

    cmd = server_command(server_path, Path(model_path), extra_args)
    logger.info("Running the model")
    logger.debug(f"Command: {' '.join(cmd)}")
    try:
        returncode = subprocess.run(cmd, check=False).returncode
    except OSError as e:
        raise RunError(f"Failed to start '{server_path}': {e}") from e

    if returncode != 0:
        raise RunError(f"Llama exited with code {returncode}")
    logger.info("Llama exited successfully")
    return returncode

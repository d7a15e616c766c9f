"""
Standalone llamafile builder.

The output starts as a byte-for-byte copy of the serving executable. The
alignment tool (zipalign) then appends the model and an `.args` manifest to it
so the runtime can memory-map the weights straight out of the executable.

    zipalign -j0 <output> <model-0> [<model-1> ...] <.args>

Only the first model is named in `.args`; any further models are stored in the
bundle but not loaded at startup. `.args` only lives for the duration of one
build, so several builds can share an output directory.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from llamabox.build.base import Packager
from llamabox.errors import AlreadyExistsError, BuildError, IoError

logger = logging.getLogger(__name__)

ARGS_FILE_NAME = ".args"
DEFAULT_HOST = "0.0.0.0"


def _make_executable(path: Path) -> None:
    if os.name != "posix":
        return
    try:
        os.chmod(path, 0o755)
    except OSError as e:
        raise IoError(f"Failed to set permissions on '{path}': {e}") from e


def _create_new(path: Path, mode: int) -> int:
    """Open `path` for writing, failing if it already exists."""
    try:
        return os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0), mode)
    except FileExistsError as e:
        raise AlreadyExistsError(f"Refusing to overwrite existing '{path}'") from e
    except OSError as e:
        raise IoError(f"Failed to create '{path}': {e}") from e


def _remove(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to remove '{path}': {e}")


def server_args(model_path: Path, host: str = DEFAULT_HOST) -> list[str]:
    """Arguments baked into the llamafile: load the bundled model, bind `host`."""
    return ["-m", model_path.name, "--host", host]


def default_output_path(model_path: Path, output_dir: str | Path) -> Path:
    """Output path for a model when only an output directory was given."""
    output_dir = Path(output_dir)
    if not output_dir.exists():
        logger.info(f"Creating output directory {output_dir}")
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IoError(f"Failed to create directory '{output_dir}': {e}") from e
    return output_dir / Path(model_path).stem


class ZipalignPackager(Packager):
    """Runs the zipalign binary from the llamafile release."""

    def __init__(self, zipalign_path: str | Path):
        self.zipalign_path = Path(zipalign_path)

    def command(self, output_path: Path, model_paths: Sequence[Path], args_path: Path) -> list[str]:
        # -j0: no parallelism
        return [
            str(self.zipalign_path),
            "-j0",
            str(output_path),
            *(str(p) for p in model_paths),
            str(args_path),
        ]

    def align(self, output_path: Path, model_paths: Sequence[Path], args_path: Path) -> None:
        if not self.zipalign_path.is_file():
            raise BuildError(f"zipalign not found at '{self.zipalign_path}'")
        _make_executable(self.zipalign_path)
        cmd = self.command(output_path, model_paths, args_path)
        logger.info("Zipaligning models..")
        logger.debug(f"Command: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise BuildError(f"Failed to run zipalign at '{self.zipalign_path}': {e}") from e

        if result.returncode != 0:
            if result.stderr:
                logger.error(result.stderr.strip())
            raise BuildError(f"zipalign exited with code {result.returncode}")


class LlamafileAssembler:
    """Builds a single launchable file from a serving executable and a model."""

    def __init__(self, packager: Packager, args_dir: str | Path | None = None):
        """Initialize the assembler.

        Args:
            packager: Alignment backend (ZipalignPackager, or a fake in tests)
            args_dir: Where `.args` is written; defaults to the output's directory
        """
        self.packager = packager
        self.args_dir = Path(args_dir) if args_dir is not None else None

    def build(
        self,
        server_path: str | Path,
        model_paths: Sequence[str | Path],
        output_path: str | Path,
    ) -> Path:
        """Assemble `output_path` from `server_path` and `model_paths`.

        Returns:
            The output path

        Raises:
            ValueError: No models given
            AlreadyExistsError: Output or `.args` already exists
            IoError: Reading the executable or writing the output failed
            BuildError: The packager failed
        """
        if not model_paths:
            raise ValueError("At least one model is required to build a llamafile")
        server_path = Path(server_path)
        models = [Path(p) for p in model_paths]
        output_path = Path(output_path)

        logger.info("Building llamafile..")
        logger.debug(f"Models: {[str(m) for m in models]}")
        args_path = (self.args_dir or output_path.parent) / ARGS_FILE_NAME
        for path in (output_path, args_path):
            if path.exists():
                raise AlreadyExistsError(f"Refusing to overwrite existing '{path}'")

        self._copy_server(server_path, output_path)
        try:
            self._write_args(models[0], args_path)
            try:
                self.packager.align(output_path, models, args_path)
            finally:
                _remove(args_path)
        except Exception:
            _remove(output_path)
            raise

        logger.info(f"Finished building {output_path}")
        return output_path

    def _copy_server(self, server_path: Path, output_path: Path) -> None:
        try:
            src = server_path.open("rb")
        except OSError as e:
            raise IoError(f"Failed to open serving executable '{server_path}': {e}") from e

        with src:
            _make_executable(server_path)
            logger.debug(f"Building into: {output_path}")
            fd = _create_new(output_path, 0o755)
            try:
                with os.fdopen(fd, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                    dst.flush()
                    os.fsync(dst.fileno())
            except OSError as e:
                _remove(output_path)
                raise IoError(f"Failed to write '{output_path}': {e}") from e
        _make_executable(output_path)

    def _write_args(self, model_path: Path, args_path: Path) -> None:
        content = "\n".join(server_args(model_path)) + "\n"

        fd = _create_new(args_path, 0o644)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            _remove(args_path)
            raise IoError(f"Failed to write '{args_path}': {e}") from e
